import gzip
import os
import time

import pytest

from conftest import FASTA_BYTES, GFF_BYTES, FakeRunner, submit
from errors import ExecutionError
from models import EntryState, JobState
from schemas import ArtifactKind
from services import build_services
from worker import Worker, WorkerPool, client_message


@pytest.fixture
def progress_events(services):
    seen = []

    def on_event(event):
        if event.name == "progress":
            seen.append(event.snapshot.progress)

    services.queue.subscribe(on_event)
    return seen


def make_worker(services, runner):
    return Worker(services.queue, services.settings, runner=runner, worker_id="w1")


def test_idle_worker_reports_nothing_to_do(services, runner):
    assert make_worker(services, runner).run_once() is None
    assert [w["id"] for w in services.queue.active_workers()] == ["w1"]


def test_successful_job(services, runner, progress_events):
    job = submit(services)
    assert services.queue.counts()["waiting"] == 1
    assert make_worker(services, runner).run_once().job_id == job.job_id

    assert progress_events == [10, 20, 80, 100]
    record = services.store.get(job.job_id)
    assert record.state == JobState.COMPLETED
    assert record.progress == 100
    assert record.error_message is None
    outputs = record.result.outputs
    assert outputs[ArtifactKind.PRIMARY_ANNOTATION].filename == "input_StORF-Reporter.gff"
    assert outputs[ArtifactKind.PRIMARY_SEQUENCE].filename == "input_StORF-Reporter.fasta"
    assert outputs[ArtifactKind.PRIMARY_ANNOTATION].location == f"{job.job_id}/output/input_StORF-Reporter.gff"
    assert record.result.stdout == "StORF-Reporter finished\n"

    job_dir = services.settings.job_dir(job.job_id)
    with open(os.path.join(job_dir, "stdout.log")) as f:
        assert f.read() == "StORF-Reporter finished\n"
    assert not os.path.exists(os.path.join(job_dir, "error.log"))


def test_command_runs_the_analysis_image(services, runner):
    job = submit(services, options={"minOrf": 150, "annotationType": "Prokka"})
    make_worker(services, runner).run_once()

    (command,) = runner.calls
    assert command[:3] == ["docker", "run", "--rm"]
    assert FakeRunner.mount(command, "/data") == os.path.abspath(services.settings.job_dir(job.job_id))
    assert command[-9:] == [
        "-anno", "Prokka", "Single_FASTA",
        "-p", "/data/input.fasta",
        "-odir", "/output",
        "-minorf", "150",
    ]


def test_failed_command_is_retried_then_failed(services, clock):
    runner = FakeRunner(script=[1])
    worker = make_worker(services, runner)
    job = submit(services)

    assert worker.run_once()
    snapshot = services.queue.get(job.job_id)
    assert snapshot.state == EntryState.DELAYED
    assert services.status.get_status(job.job_id).state == JobState.RUNNING

    assert not worker.run_once()  # still backing off
    clock.advance(2)
    assert worker.run_once()
    clock.advance(4)
    assert worker.run_once()

    message = "Command failed with exit code 1: Error: invalid FASTA header"
    record = services.store.get(job.job_id)
    assert record.state == JobState.FAILED
    assert record.attempts == 3
    assert record.error_message == message
    assert record.result is None
    assert len(runner.calls) == 3

    job_dir = services.settings.job_dir(job.job_id)
    with open(os.path.join(job_dir, "error.log")) as f:
        assert f.read() == message
    assert os.path.exists(os.path.join(job_dir, "stderr.log"))


def test_retry_succeeds_and_clears_the_error(services, clock):
    runner = FakeRunner(script=[2, {"genome.gff": GFF_BYTES}])
    worker = make_worker(services, runner)
    job = submit(services)

    worker.run_once()
    assert os.path.exists(os.path.join(services.settings.job_dir(job.job_id), "error.log"))
    clock.advance(2)
    worker.run_once()

    record = services.store.get(job.job_id)
    assert record.state == JobState.COMPLETED
    assert record.attempts == 1
    assert set(record.result.outputs) == {ArtifactKind.PRIMARY_ANNOTATION}
    assert not os.path.exists(os.path.join(services.settings.job_dir(job.job_id), "error.log"))


def test_each_attempt_starts_with_an_empty_output_dir(services, runner):
    job = submit(services)
    output_dir = services.settings.output_dir(job.job_id)
    os.makedirs(output_dir)
    with open(os.path.join(output_dir, "a_stale.gff"), "wb") as f:
        f.write(b"old")

    make_worker(services, runner).run_once()

    assert sorted(os.listdir(output_dir)) == ["input_StORF-Reporter.fasta", "input_StORF-Reporter.gff"]
    record = services.store.get(job.job_id)
    assert record.result.outputs[ArtifactKind.PRIMARY_ANNOTATION].filename == "input_StORF-Reporter.gff"


def test_no_outputs_is_a_failure(services):
    job = submit(services)
    make_worker(services, FakeRunner(script=[{}])).run_once()

    snapshot = services.queue.get(job.job_id)
    assert snapshot.state == EntryState.DELAYED
    assert snapshot.failed_reason == "Analysis finished but produced no annotation or sequence output"


def test_missing_shared_input_is_a_failure(services, runner):
    job = submit(services)
    os.remove(job.input_ref.path)
    make_worker(services, runner).run_once()

    assert services.queue.get(job.job_id).failed_reason == "Input file is missing from shared storage"
    assert runner.calls == []


def test_compressed_outputs(services):
    runner = FakeRunner(script=[{"input.gff.gz": gzip.compress(GFF_BYTES)}])
    job = submit(services, options={"gzOutput": True})
    make_worker(services, runner).run_once()

    artifact = services.store.get(job.job_id).result.outputs[ArtifactKind.PRIMARY_ANNOTATION]
    assert artifact.compressed
    assert "-gz" in runner.calls[0]


@pytest.fixture
def embedded_services(settings, clock):
    services = build_services(settings.model_copy(update={"storage_mode": "embedded"}), clock=clock)
    services.db.create_all()
    yield services
    services.close()


def test_embedded_mode_carries_bytes_through_the_queue(embedded_services, runner):
    services = embedded_services
    job = submit(services)
    job_dir = services.settings.job_dir(job.job_id)
    assert job.input_ref.kind == "content"
    assert not os.path.exists(job_dir)

    make_worker(services, runner).run_once()

    with open(os.path.join(job_dir, "input.fasta"), "rb") as f:
        assert f.read().startswith(b">contig_1")
    record = services.store.get(job.job_id)
    artifact = record.result.outputs[ArtifactKind.PRIMARY_SEQUENCE]
    assert artifact.location is None
    assert artifact.content is not None
    assert services.materializer.download(job.job_id, "fasta").data == FASTA_BYTES


def test_client_message_hides_internal_errors():
    assert client_message(ExecutionError("Analysis timed out after 5 seconds")) == "Analysis timed out after 5 seconds"
    assert client_message(KeyError("/srv/jobs/secret")) == "Internal error while processing job (KeyError)"


def test_pool_processes_jobs_in_background(services, runner):
    job = submit(services)
    pool = WorkerPool(services.queue, services.settings, runner=runner)
    pool.start(2)
    assert len(pool) == 2
    try:
        for _ in range(500):
            if services.store.get(job.job_id).state == JobState.COMPLETED:
                break
            time.sleep(0.01)
    finally:
        pool.stop(timeout=5)
    assert services.store.get(job.job_id).state == JobState.COMPLETED
    assert len(pool) == 0


class ReclaimingRunner(FakeRunner):
    """Finishes the analysis only after the lease has run out and another worker took the job."""

    def __init__(self, queue, clock):
        super().__init__()
        self.queue = queue
        self.clock = clock
        self.reclaimed = None

    def run(self, command, timeout=None, on_start=None, cwd=None):
        result = super().run(command, timeout=timeout, on_start=on_start, cwd=cwd)
        self.clock.advance(301)
        self.reclaimed = self.queue.claim("w2")
        return result


def test_worker_that_lost_its_lease_leaves_the_job_alone(services, clock):
    job = submit(services)
    runner = ReclaimingRunner(services.queue, clock)
    make_worker(services, runner).run_once()

    assert runner.reclaimed is not None
    snapshot = services.queue.get(job.job_id)
    assert snapshot.state == EntryState.ACTIVE
    assert snapshot.worker_id == "w2"
    assert not os.path.exists(os.path.join(services.settings.job_dir(job.job_id), "error.log"))


@pytest.fixture
def celery_wakeups(services, monkeypatch):
    import worker as worker_module

    failing = make_worker(services, FakeRunner(script=[1]))
    woken = []
    monkeypatch.setattr(worker_module, "get_celery_worker", lambda: failing)
    monkeypatch.setattr(worker_module, "schedule_wakeup", lambda job_id, countdown: woken.append((job_id, countdown)))
    return worker_module.celery_task, woken


def test_celery_task_wakes_the_job_it_actually_ran(services, celery_wakeups):
    celery_task, woken = celery_wakeups
    first = submit(services)
    second = submit(services)

    # each task claims the oldest ready entry, not necessarily its own
    assert celery_task(second.job_id) == first.job_id
    assert celery_task(first.job_id) == second.job_id

    assert services.queue.get(first.job_id).state == EntryState.DELAYED
    assert services.queue.get(second.job_id).state == EntryState.DELAYED
    assert {job_id for job_id, _ in woken} == {first.job_id, second.job_id}
    assert all(countdown == 2.0 for _, countdown in woken)


def test_celery_retries_run_until_attempts_are_used_up(services, clock, celery_wakeups):
    celery_task, woken = celery_wakeups
    job = submit(services)

    celery_task(job.job_id)
    clock.advance(2)
    celery_task(job.job_id)
    clock.advance(4)
    celery_task(job.job_id)

    assert [countdown for _, countdown in woken] == [2.0, 4.0]
    assert services.store.get(job.job_id).state == JobState.FAILED
    assert celery_task(job.job_id) is None
