import json

import pytest
from fastapi.testclient import TestClient

from conftest import GFF_BYTES, THREE_SEQUENCES, FakeRunner
from main import create_app
from worker import Worker


@pytest.fixture
def client(settings):
    app = create_app(settings, runner=FakeRunner(), start_workers=False)
    with TestClient(app) as client:
        yield client


def post_job(client, options=None, content=THREE_SEQUENCES):
    data = {"options": json.dumps(options)} if options is not None else {}
    return client.post("/api/jobs", files={"file": ("genome.fasta", content)}, data=data)


def work(client, runner=None):
    services = client.app.state.services
    return Worker(services.queue, services.settings, runner=runner or FakeRunner()).run_once()


def test_submit_poll_download(client):
    resp = post_job(client, {"annotationType": "Pyrodigal", "minOrf": 120})
    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "pending"
    assert body["filename"] == "genome.fasta"
    job_id = body["job_id"]

    status = client.get(f"/api/jobs/{job_id}").json()
    assert status["status"] == "pending"
    assert status["progress"] == 0
    assert status["queue_position"] == 0

    assert work(client)

    status = client.get(f"/api/jobs/{job_id}").json()
    assert status["status"] == "completed"
    assert status["progress"] == 100
    assert status["error"] is None
    assert status["outputs"]["gff"] == "input_StORF-Reporter.gff"
    assert status["outputs"]["fasta"] == "input_StORF-Reporter.fasta"
    assert status["outputs"]["log"] == "StORF-Reporter finished\n"

    resp = client.get(f"/api/jobs/{job_id}/download/gff")
    assert resp.status_code == 200
    assert resp.content == GFF_BYTES
    assert resp.headers["content-disposition"] == 'attachment; filename="storf_results.gff"'
    assert resp.headers["content-type"].startswith("text/plain")


def test_failed_job_reports_error(settings):
    app = create_app(settings.model_copy(update={"max_attempts": 1}), start_workers=False)
    with TestClient(app) as client:
        job_id = post_job(client).json()["job_id"]
        work(client, FakeRunner(script=[1]))

        status = client.get(f"/api/jobs/{job_id}").json()
        assert status["status"] == "failed"
        assert status["attempts"] == 1
        assert status["error"] == "Command failed with exit code 1: Error: invalid FASTA header"
        assert status["outputs"] is None
        assert client.get(f"/api/jobs/{job_id}/download/gff").status_code == 404


def test_invalid_options_are_rejected(client):
    resp = post_job(client, {"minLen": 500, "maxLen": 100})
    assert resp.status_code == 400
    assert resp.json()["error"] == "validation_error"
    assert "minLen must not exceed maxLen" in resp.json()["detail"]
    assert client.get("/api/jobs").json()["total"] == 0


def test_unknown_option_is_rejected(client):
    resp = post_job(client, {"shell": "rm -rf /"})
    assert resp.status_code == 400


def test_missing_and_empty_file(client):
    assert client.post("/api/jobs", data={"options": "{}"}).status_code == 400
    assert post_job(client, content=b"").status_code == 400


def test_unknown_job(client):
    resp = client.get("/api/jobs/doesnotexist")
    assert resp.status_code == 404
    assert resp.json() == {"error": "not_found", "detail": "Job doesnotexist not found"}


def test_download_before_completion(client):
    job_id = post_job(client).json()["job_id"]
    assert client.get(f"/api/jobs/{job_id}/download/gff").status_code == 404


def test_invalid_file_type(client):
    job_id = post_job(client).json()["job_id"]
    resp = client.get(f"/api/jobs/{job_id}/download/exe")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid file type"


def test_list_jobs(client):
    for _ in range(3):
        post_job(client)
    body = client.get("/api/jobs", params={"size": 2}).json()
    assert body["total"] == 3
    assert body["pages"] == 2
    assert len(body["items"]) == 2
    assert body["items"][0]["state"] == "pending"

    assert client.get("/api/jobs", params={"status": "completed"}).json()["total"] == 0
    assert client.get("/api/jobs", params={"status": "bogus"}).status_code == 422


def test_delete_job(client):
    job_id = post_job(client).json()["job_id"]
    assert client.delete(f"/api/jobs/{job_id}").status_code == 204
    assert client.get(f"/api/jobs/{job_id}").status_code == 404


def test_delete_running_job_conflicts(client):
    job_id = post_job(client).json()["job_id"]
    client.app.state.services.queue.claim("w1")
    resp = client.delete(f"/api/jobs/{job_id}")
    assert resp.status_code == 409
    assert resp.json()["error"] == "conflict"


def test_health(client):
    body = client.get("/api/health").json()
    assert body["status"] == "healthy"
    assert body["queues"]["database"] == "connected"
    assert body["queues"]["active_workers"] == 0
    assert "Internal Threading" in body["message"]


def test_debug_queue_requires_token(settings):
    app = create_app(settings.model_copy(update={"admin_token": "s3cret"}), start_workers=False)
    with TestClient(app) as client:
        post_job(client)
        assert client.get("/api/debug/queue").status_code == 401
        assert client.get("/api/debug/queue", headers={"Authorization": "Bearer nope"}).status_code == 401

        resp = client.get("/api/debug/queue", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["queue"]["waiting"] == 1
        assert len(body["waiting_jobs"]) == 1
        assert body["active_jobs"] == []
