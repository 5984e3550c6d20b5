import json
import os
import sys
import time

import requests

API_BASE = os.getenv("STORF_API", "http://localhost:8001/api")
POLL_SECONDS = 2


def submit_genome(file_path, options=None):
    """Upload a FASTA file; returns the job id or None."""
    print(f"📤 Submitting: {os.path.basename(file_path)}...")
    with open(file_path, "rb") as f:
        resp = requests.post(
            f"{API_BASE}/jobs",
            files={"file": f},
            data={"options": json.dumps(options or {})},
        )
    if resp.status_code != 201:
        body = resp.json()
        print(f"❌ Rejected ({body.get('error')}): {body.get('detail')}")
        return None
    job_id = resp.json()["job_id"]
    print(f"✅ Job created: {job_id}")
    return job_id


def wait_for_job(job_id):
    """Poll until the job finishes; returns the final status document."""
    last = None
    while True:
        job = requests.get(f"{API_BASE}/jobs/{job_id}").json()
        if job.get("condition") == "no_available_workers":
            line = f"⚠️ {job['message']}"
        elif job["status"] == "pending":
            line = f"🕒 Waiting in queue (position {job.get('queue_position')})"
        else:
            line = f"⏳ {job['status']} {job['progress']}% (attempt {job['attempts'] or 1})"
        if line != last:
            print(line)
            last = line

        if job["status"] in ("completed", "failed"):
            return job
        time.sleep(POLL_SECONDS)


def download_results(job_id, target_dir="."):
    print("⬇️ Downloading results...")
    for file_type in ("gff", "fasta", "log"):
        resp = requests.get(f"{API_BASE}/jobs/{job_id}/download/{file_type}")
        if resp.status_code == 404:
            print(f"   no {file_type} output")
            continue
        resp.raise_for_status()
        disposition = resp.headers.get("Content-Disposition", "")
        name = disposition.split("filename=")[-1].strip('"') or f"storf_results.{file_type}"
        path = os.path.join(target_dir, f"{job_id}_{name}")
        with open(path, "wb") as f:
            f.write(resp.content)
        print(f"💾 Saved {file_type} to: {path}")


def process_file(file_path, options=None):
    if not os.path.exists(file_path):
        print(f"File not found: {file_path}")
        return

    job_id = submit_genome(file_path, options)
    if job_id is None:
        return
    job = wait_for_job(job_id)
    if job["status"] == "failed":
        print(f"❌ Job failed: {job.get('error')}")
        return
    download_results(job_id)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python submit_job.py genome.fasta ['{\"annotationType\": \"Pyrodigal\", \"minOrf\": 120}']")
        sys.exit(1)
    process_file(sys.argv[1], json.loads(sys.argv[2]) if len(sys.argv) > 2 else None)
