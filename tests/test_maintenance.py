from conftest import FakeRunner, submit
from maintenance import EXPIRED_MESSAGE
from models import EntryState, JobState
from work_queue import Outcome, WorkQueue
from worker import Worker


def test_idle_sweep_does_nothing(services):
    submit(services)
    assert services.maintenance.run_once() == {"reconciled": 0, "pruned": 0, "expired": 0, "purged": 0}


def test_unclaimed_job_expires(services, clock):
    job = submit(services)
    clock.advance(services.settings.pending_max_age + 1)

    summary = services.maintenance.run_once()
    assert summary["expired"] == 1
    record = services.store.get(job.job_id)
    assert record.state == JobState.FAILED
    assert record.error_message == EXPIRED_MESSAGE
    assert services.queue.get(job.job_id) is None


def test_finished_entries_are_folded_in_before_pruning(services, clock):
    job = submit(services)
    other = WorkQueue(services.db, clock=clock)
    lease = other.claim("remote")
    other.ack(lease.token, Outcome.success({"stdout": "done"}))
    clock.advance(services.settings.keep_completed_seconds + 1)

    summary = services.maintenance.run_once()
    assert summary["reconciled"] == 1
    assert summary["pruned"] == 1
    assert services.queue.get(job.job_id) is None
    assert services.status.get_status(job.job_id).state == JobState.COMPLETED


def test_old_jobs_are_purged(services, clock):
    job = submit(services)
    Worker(services.queue, services.settings, runner=FakeRunner()).run_once()
    clock.advance(services.settings.job_retention_seconds + 1)

    summary = services.maintenance.run_once()
    assert summary["purged"] == 1
    assert services.store.find(job.job_id) is None
    assert services.queue.get(job.job_id) is None


def test_background_loop_starts_and_stops(services):
    services.maintenance.start()
    services.maintenance.stop()
    assert services.maintenance._thread is None


def test_claimed_jobs_outlive_the_retention_window(services, clock):
    job = submit(services)
    # claimed by a worker process whose events never reach this one
    WorkQueue(services.db, clock=clock).claim("remote")
    clock.advance(services.settings.job_retention_seconds + 1)

    summary = services.maintenance.run_once()
    assert summary["purged"] == 0
    assert services.store.get(job.job_id).state == JobState.PENDING
    assert services.queue.get(job.job_id).state == EntryState.ACTIVE
