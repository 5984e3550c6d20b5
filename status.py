"""Client-facing job status.

The queue is authoritative once a worker has touched a job; the job record is
authoritative before that. Whenever the two disagree on a read, the record is
brought in line with the queue. Queue events feed a small per-job cache so
polls do not have to rescan the queue.
"""

import logging
import threading
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from errors import NoWorkerAvailable, NotFoundError
from models import EntryState, JobState
from schemas import JobRecord, JobResult
from store import JobStore
from utils import utc_now
from work_queue import EntrySnapshot, QueueEvent, WorkQueue

logger = logging.getLogger(__name__)

ENTRY_TO_JOB_STATE = {
    EntryState.WAITING: JobState.PENDING,
    EntryState.DELAYED: JobState.RUNNING,
    EntryState.ACTIVE: JobState.RUNNING,
    EntryState.COMPLETED: JobState.COMPLETED,
    EntryState.FAILED: JobState.FAILED,
}

_STATE_RANK = {
    EntryState.WAITING: 0,
    EntryState.DELAYED: 1,
    EntryState.ACTIVE: 1,
    EntryState.COMPLETED: 2,
    EntryState.FAILED: 2,
}

MAX_CACHED_JOBS = 10000


def snapshot_rank(snapshot: EntrySnapshot) -> tuple:
    """Ordering under which a job's observed history never goes backwards."""
    return (snapshot.attempts_made, _STATE_RANK[snapshot.state], snapshot.progress)


class StatusCache:
    def __init__(self, ttl: float, clock: Callable[[], datetime] = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._entries = OrderedDict()
        self._lock = threading.Lock()

    def put(self, snapshot: EntrySnapshot) -> EntrySnapshot:
        """Store ``snapshot`` unless a later one is already known; returns the newest."""
        with self._lock:
            existing = self._entries.get(snapshot.job_id)
            if existing is not None and snapshot_rank(existing[0]) > snapshot_rank(snapshot):
                return existing[0]
            self._entries[snapshot.job_id] = (snapshot, self.clock())
            self._entries.move_to_end(snapshot.job_id)
            while len(self._entries) > MAX_CACHED_JOBS:
                self._entries.popitem(last=False)
            return snapshot

    def get(self, job_id: str) -> Optional[EntrySnapshot]:
        with self._lock:
            cached = self._entries.get(job_id)
        if cached is None:
            return None
        snapshot, stored_at = cached
        if snapshot.terminal:
            return snapshot
        if (self.clock() - stored_at).total_seconds() <= self.ttl:
            return snapshot
        return None

    def discard(self, job_id: str):
        with self._lock:
            self._entries.pop(job_id, None)


@dataclass
class JobStatusView:
    job_id: str
    state: JobState
    progress: int
    attempts: int
    created_at: datetime
    updated_at: Optional[datetime]
    filename: Optional[str] = None
    result: Optional[JobResult] = None
    error: Optional[str] = None
    condition: Optional[str] = None
    message: Optional[str] = None
    queue_position: Optional[int] = None


def _disagrees(record: JobRecord, snapshot: EntrySnapshot) -> bool:
    return (
        record.state != ENTRY_TO_JOB_STATE[snapshot.state]
        or record.progress != snapshot.progress
        or record.attempts != snapshot.attempts_made
    )


class StatusService:
    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        stuck_threshold: float = 60.0,
        cache_ttl: float = 1.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.stuck_threshold = stuck_threshold
        self.cache = StatusCache(cache_ttl, clock)

    def on_queue_event(self, event: QueueEvent):
        if event.name == "removed":
            self.cache.discard(event.snapshot.job_id)
            return
        snapshot = self.cache.put(event.snapshot)
        if snapshot.terminal:
            self.reconcile(snapshot)

    def _entry(self, job_id: str) -> Optional[EntrySnapshot]:
        cached = self.cache.get(job_id)
        if cached is not None:
            return cached
        snapshot = self.queue.get(job_id)
        if snapshot is None:
            return None
        return self.cache.put(snapshot)

    def reconcile(self, snapshot: EntrySnapshot) -> Optional[JobRecord]:
        """Refresh the job record from the queue's view of the job."""

        def mutate(record: JobRecord):
            if record.state.terminal:
                return
            record.state = ENTRY_TO_JOB_STATE[snapshot.state]
            record.attempts = max(record.attempts, snapshot.attempts_made)
            record.progress = snapshot.progress
            if snapshot.state == EntryState.COMPLETED:
                record.result = JobResult.model_validate(snapshot.return_value or {})
                record.progress = 100
            elif snapshot.state == EntryState.FAILED:
                record.error_message = snapshot.failed_reason or "Job failed"

        try:
            return self.store.update(snapshot.job_id, mutate)
        except NotFoundError:
            logger.warning(f"Queue entry for job {snapshot.job_id} has no job record")
            return None

    def reconcile_finished(self) -> int:
        count = 0
        for snapshot in self.queue.query([EntryState.COMPLETED, EntryState.FAILED]):
            record = self.store.find(snapshot.job_id)
            if record is not None and not record.state.terminal:
                self.reconcile(snapshot)
                count += 1
        return count

    def get_status(self, job_id: str) -> JobStatusView:
        record = self.store.get(job_id)
        snapshot = None
        if not record.state.terminal:
            snapshot = self._entry(job_id)
            if snapshot is not None and _disagrees(record, snapshot):
                record = self.reconcile(snapshot) or record

        view = JobStatusView(
            job_id=record.job_id,
            state=record.state,
            progress=record.progress,
            attempts=record.attempts,
            created_at=record.created_at,
            updated_at=record.updated_at,
            filename=record.filename,
            result=record.result,
            error=record.error_message,
        )
        if record.state == JobState.PENDING and snapshot is not None:
            view.queue_position = self.queue.position(job_id)
            if self.queue.is_stuck(snapshot, self.stuck_threshold):
                waited = int((self.queue.clock() - snapshot.enqueued_at).total_seconds())
                view.condition = NoWorkerAvailable.code
                view.message = f"No available workers: job has waited {waited}s without being picked up"
        return view

    def ensure_worker_available(self, job_id: str) -> JobStatusView:
        view = self.get_status(job_id)
        if view.condition == NoWorkerAvailable.code:
            raise NoWorkerAvailable(view.message)
        return view
