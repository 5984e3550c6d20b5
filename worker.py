import os
import shlex
import shutil
import signal
import socket
import logging
import threading
import uuid
from typing import Dict, Optional

import click
from celery import Celery
from celery.signals import worker_ready, worker_shutdown
from dotenv import load_dotenv

# Local imports
from errors import ExecutionError, JobServiceError, LeaseLostError, StorageError
from invocation import RunResult, SubprocessRunner, build_command
from materializer import scan_outputs
from models import EntryState
from schemas import ArtifactKind, ContentInput, JobPayload, JobResult, OutputArtifact
from utils import INPUT_FILENAME, Settings, decode_content, encode_content
from work_queue import Lease, Outcome, WorkQueue

# Load environment variables
load_dotenv()

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Coarse progress model reported to the queue
PROGRESS_STAGED = 10
PROGRESS_DISPATCHED = 20
PROGRESS_RETURNED = 80
PROGRESS_PERSISTED = 100

ERROR_TAIL_CHARS = 2000

REDIS_URL = Settings.from_env().redis_url

# Initialize Celery
celery_app = Celery(
    "storf_worker",
    broker=REDIS_URL,
    backend=REDIS_URL
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
)


def _tail(text: str, limit: int = ERROR_TAIL_CHARS) -> str:
    text = (text or "").strip()
    return text[-limit:] if len(text) > limit else text


def client_message(error: Exception) -> str:
    """Failure text safe to show to clients (no tracebacks, no internal paths)."""
    if isinstance(error, JobServiceError):
        return error.message
    return f"Internal error while processing job ({error.__class__.__name__})"


class _LeaseKeeper(threading.Thread):
    """Renews a lease and the worker heartbeat while the external process runs."""

    def __init__(self, queue: WorkQueue, lease: Lease, interval: float):
        super().__init__(name=f"lease-{lease.job_id}", daemon=True)
        self.queue = queue
        self.lease = lease
        self.interval = interval
        self._stop_event = threading.Event()

    def run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.queue.heartbeat(self.lease.worker_id, current_job_id=self.lease.job_id)
                self.queue.extend_lease(self.lease.token)
            except LeaseLostError:
                logger.warning(f"Job {self.lease.job_id} lease lost while running (attempt {self.lease.attempt})")
                return
            except StorageError as e:
                logger.warning(f"Could not renew lease or heartbeat for job {self.lease.job_id}: {e}")

    def stop(self):
        self._stop_event.set()
        self.join(timeout=self.interval + 1)


class Worker:
    """Claims one job at a time, runs the analysis, and acks the outcome."""

    def __init__(self, queue: WorkQueue, settings: Settings, runner=None, worker_id: Optional[str] = None):
        self.queue = queue
        self.settings = settings
        self.runner = runner or SubprocessRunner()
        self.worker_id = worker_id or f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"
        self.running = False
        self._stop_event = threading.Event()
        self.current_job: Optional[str] = None

    def stop(self):
        self.running = False
        self._stop_event.set()

    def run(self):
        """Main worker loop"""
        self.running = True
        logger.info(f"🔧 Worker {self.worker_id} started")
        while not self._stop_event.is_set():
            try:
                if not self.run_once():
                    self._stop_event.wait(self.settings.poll_interval)
            except Exception as e:
                logger.error(f"Worker {self.worker_id} error: {e}", exc_info=True)
                self._stop_event.wait(self.settings.poll_interval)
        try:
            self.queue.unregister(self.worker_id)
        except StorageError as e:
            logger.warning(f"Could not unregister worker {self.worker_id}: {e}")
        self.running = False
        logger.info(f"Worker {self.worker_id} stopped")

    def run_once(self) -> Optional[Lease]:
        """Claim and process a single job. Returns its lease, or None when nothing was ready."""
        self.queue.heartbeat(self.worker_id)
        lease = self.queue.claim(self.worker_id)
        if lease is None:
            return None
        self.process(lease)
        return lease

    def process(self, lease: Lease) -> Outcome:
        self.current_job = lease.job_id
        self.queue.heartbeat(self.worker_id, current_job_id=lease.job_id)
        keeper = _LeaseKeeper(
            self.queue, lease, min(self.settings.lease_seconds / 2, self.settings.heartbeat_ttl / 3)
        )
        keeper.start()
        try:
            try:
                outcome = Outcome.success(self.execute(lease))
            except Exception as e:
                outcome = Outcome.failure(client_message(e))
            finally:
                keeper.stop()

            try:
                self.queue.ack(lease.token, outcome)
            except LeaseLostError:
                logger.warning(
                    f"Job {lease.job_id} attempt {lease.attempt} finished after its lease was lost; result dropped"
                )
            return outcome
        finally:
            self.current_job = None
            self.queue.heartbeat(self.worker_id)

    def execute(self, lease: Lease) -> dict:
        """Stage input, run the analysis, persist logs and outputs.

        Any failure is written to ``error.log`` in the job directory and
        re-raised so the queue can apply its retry policy.
        """
        payload = JobPayload.model_validate(lease.payload)
        job_id = payload.job_id
        job_dir = self.settings.job_dir(job_id)
        output_dir = self.settings.output_dir(job_id)
        logger.info(f"Processing job {job_id} (attempt {lease.attempt})")

        try:
            input_path = self._stage_input(payload, job_dir, output_dir)
            self.queue.progress(lease.token, PROGRESS_STAGED)

            command = build_command(self.settings, input_path, output_dir, payload.options)
            logger.info(f"Job {job_id} executing: {shlex.join(command)}")
            run = self.runner.run(
                command,
                timeout=self.settings.execution_timeout,
                on_start=lambda: self.queue.progress(lease.token, PROGRESS_DISPATCHED),
            )
            if run.returncode != 0:
                self._write_logs(job_dir, run)
                raise ExecutionError(f"Command failed with exit code {run.returncode}: {_tail(run.stderr)}")
            self.queue.progress(lease.token, PROGRESS_RETURNED)

            self._write_logs(job_dir, run)
            outputs = self._collect_outputs(job_id, output_dir)
            if not outputs:
                raise ExecutionError("Analysis finished but produced no annotation or sequence output")
            self.queue.progress(lease.token, PROGRESS_PERSISTED)
        except LeaseLostError:
            # the job directory now belongs to whichever worker reclaimed the entry
            logger.warning(f"Job {job_id} attempt {lease.attempt} lost its lease, abandoning")
            raise
        except Exception as e:
            logger.error(
                f"Job {job_id} failed on attempt {lease.attempt}: {e}",
                exc_info=not isinstance(e, JobServiceError),
            )
            self._write_error_log(job_dir, str(e) or e.__class__.__name__)
            raise

        logger.info(f"Job {job_id} completed successfully.")
        return JobResult(stdout=run.stdout, stderr=run.stderr, outputs=outputs).model_dump(mode="json")

    def _stage_input(self, payload: JobPayload, job_dir: str, output_dir: str) -> str:
        os.makedirs(job_dir, exist_ok=True)
        # each attempt starts from an empty output directory and no stale error log
        if os.path.isdir(output_dir):
            shutil.rmtree(output_dir)
        os.makedirs(output_dir)
        error_log = os.path.join(job_dir, "error.log")
        if os.path.exists(error_log):
            os.remove(error_log)

        if isinstance(payload.input, ContentInput):
            input_path = os.path.join(job_dir, INPUT_FILENAME)
            data = decode_content(payload.input.content)
            with open(input_path, "wb") as f:
                f.write(data)
            logger.info(f"Job {payload.job_id} input materialized ({len(data)} bytes)")
            return input_path

        input_path = payload.input.path
        if not os.path.isfile(input_path):
            raise ExecutionError("Input file is missing from shared storage")
        return input_path

    def _write_logs(self, job_dir: str, run: RunResult):
        with open(os.path.join(job_dir, "stdout.log"), "w", encoding="utf-8") as f:
            f.write(run.stdout)
        with open(os.path.join(job_dir, "stderr.log"), "w", encoding="utf-8") as f:
            f.write(run.stderr)

    def _write_error_log(self, job_dir: str, message: str):
        try:
            os.makedirs(job_dir, exist_ok=True)
            with open(os.path.join(job_dir, "error.log"), "w", encoding="utf-8") as f:
                f.write(message)
        except OSError as e:
            logger.error(f"Could not write error log in {job_dir}: {e}")

    def _collect_outputs(self, job_id: str, output_dir: str) -> Dict[ArtifactKind, OutputArtifact]:
        outputs = {}
        for kind, filename in scan_outputs(output_dir).items():
            path = os.path.join(output_dir, filename)
            compressed = filename.endswith(".gz")
            if self.settings.storage_mode == "embedded":
                # stateless workers: bytes travel back through the queue
                with open(path, "rb") as f:
                    artifact = OutputArtifact(filename=filename, compressed=compressed, content=encode_content(f.read()))
            else:
                location = os.path.relpath(path, self.settings.jobs_dir)
                artifact = OutputArtifact(filename=filename, compressed=compressed, location=location)
            outputs[kind] = artifact
            logger.info(f"Job {job_id} produced {kind.value}: {filename}")
        return outputs


class WorkerPool:
    """Fixed number of in-process worker threads sharing one queue."""

    def __init__(self, queue: WorkQueue, settings: Settings, runner=None):
        self.queue = queue
        self.settings = settings
        self.runner = runner
        self.workers = {}
        self._lock = threading.Lock()

    def start(self, count: int):
        with self._lock:
            for _ in range(count):
                index = len(self.workers) + 1
                worker_id = f"{socket.gethostname()}-{os.getpid()}-{index}"
                worker = Worker(self.queue, self.settings, runner=self.runner, worker_id=worker_id)
                thread = threading.Thread(target=worker.run, name=f"worker-{index}", daemon=True)
                self.workers[worker_id] = (worker, thread)
                thread.start()
        logger.info(f"✅ {count} internal worker(s) started in background threads.")

    def stop(self, timeout: Optional[float] = None):
        """Stop all workers; each finishes its current job first."""
        with self._lock:
            for worker, _ in self.workers.values():
                worker.stop()
            for _, thread in self.workers.values():
                thread.join(timeout)
            self.workers.clear()

    def __len__(self):
        return len(self.workers)


# Celery mode: tasks are wake-ups, the durable queue decides which job runs.

_celery_services = None
_celery_worker: Optional[Worker] = None
_celery_lock = threading.Lock()
_heartbeat_stop = threading.Event()


def get_celery_worker() -> Worker:
    global _celery_services, _celery_worker
    with _celery_lock:
        if _celery_worker is None:
            from services import build_services

            _celery_services = build_services(Settings.from_env())
            _celery_services.db.create_all()
            _celery_worker = Worker(_celery_services.queue, _celery_services.settings)
    return _celery_worker


def schedule_wakeup(job_id: str, countdown: float):
    celery_task.apply_async((job_id,), countdown=countdown)


@celery_app.task(name="process_storf_job")
def celery_task(job_id: str):
    worker = get_celery_worker()
    lease = worker.run_once()

    # the claim is FIFO, so the job processed here need not be the one this task was sent for;
    # any of them left waiting out a backoff gets a wake-up for when it is due
    job_ids = [job_id]
    if lease is not None and lease.job_id != job_id:
        job_ids.append(lease.job_id)
    for delayed_id in job_ids:
        snapshot = worker.queue.get(delayed_id)
        if snapshot is not None and snapshot.state == EntryState.DELAYED:
            countdown = max(0.0, (snapshot.available_at - worker.queue.clock()).total_seconds())
            schedule_wakeup(delayed_id, countdown)
            logger.info(f"Job {delayed_id} retry scheduled in {countdown:.1f}s")
    return lease.job_id if lease is not None else None


def _celery_heartbeat():
    worker = get_celery_worker()
    while not _heartbeat_stop.wait(worker.settings.heartbeat_ttl / 3):
        try:
            worker.queue.heartbeat(worker.worker_id, current_job_id=worker.current_job)
        except StorageError as e:
            logger.warning(f"Heartbeat failed: {e}")


@worker_ready.connect
def _on_worker_ready(**kwargs):
    threading.Thread(target=_celery_heartbeat, name="heartbeat", daemon=True).start()


@worker_shutdown.connect
def _on_worker_shutdown(**kwargs):
    _heartbeat_stop.set()
    if _celery_worker is not None:
        try:
            _celery_worker.queue.unregister(_celery_worker.worker_id)
        except StorageError as e:
            logger.warning(f"Could not unregister worker: {e}")
    if _celery_services is not None:
        _celery_services.close()


def run_worker():
    """Start this process as a Celery node."""
    logger.info("Starting worker as Celery node...")
    celery_app.start(argv=['worker', '--loglevel=info', '-P', 'solo'])


def run_standalone(count: int):
    """Run a worker pool against the database queue without Celery."""
    from services import build_services

    services = build_services(Settings.from_env())
    services.db.create_all()
    pool = WorkerPool(services.queue, services.settings)
    stopped = threading.Event()

    def _handle_shutdown(signum, frame):
        logger.info("Shutdown signal received, finishing current jobs...")
        stopped.set()

    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    pool.start(count)
    try:
        while not stopped.wait(1.0):
            pass
    finally:
        pool.stop()
        services.close()


@click.command()
@click.option("--standalone", is_flag=True, help="Run a worker pool without Celery")
@click.option("--count", default=None, type=int, help="Number of workers (standalone mode)")
def main(standalone: bool, count: Optional[int]):
    """StORF job worker."""
    if standalone:
        run_standalone(count or Settings.from_env().worker_pool_size or 1)
    else:
        run_worker()


if __name__ == "__main__":
    main()
