import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from errors import ConflictError, JobServiceError, NotFoundError
from models import EntryState, JobState
from schemas import JobRecord
from status import StatusService
from store import JobStore
from utils import Settings, utc_now
from work_queue import WorkQueue

logger = logging.getLogger(__name__)

EXPIRED_MESSAGE = "Job expired before a worker claimed it"


class Maintenance:
    """Periodic retention sweep over the queue and the job records."""

    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        status: StatusService,
        settings: Settings,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.queue = queue
        self.status = status
        self.settings = settings
        self.clock = clock
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> dict:
        # finished entries are folded into the records before they can be pruned
        reconciled = self.status.reconcile_finished()
        pruned = self.queue.prune()

        expired = self.queue.sweep_stale_pending(self.settings.pending_max_age)
        for job_id in expired:
            self._expire(job_id)

        cutoff = self.clock() - timedelta(seconds=self.settings.job_retention_seconds)
        # a job a worker has touched is kept until its queue entry finishes
        busy = [s.job_id for s in self.queue.query([EntryState.ACTIVE, EntryState.DELAYED])]
        purged = self.store.purge_older_than(
            cutoff,
            states=[JobState.PENDING, JobState.COMPLETED, JobState.FAILED],
            exclude=busy,
        )
        for job_id in purged:
            try:
                self.queue.remove(job_id)
            except ConflictError:
                logger.warning(f"Job {job_id} was claimed while its record was purged")

        summary = {
            "reconciled": reconciled,
            "pruned": len(pruned),
            "expired": len(expired),
            "purged": len(purged),
        }
        if any(summary.values()):
            logger.info(f"Maintenance: {summary}")
        return summary

    def _expire(self, job_id: str):
        def mutate(record: JobRecord):
            if not record.state.terminal:
                record.state = JobState.FAILED
                record.error_message = EXPIRED_MESSAGE

        try:
            self.store.update(job_id, mutate)
            logger.warning(f"Job {job_id} expired while waiting for a worker")
        except NotFoundError:
            logger.debug(f"Expired queue entry {job_id} had no job record")

    def _loop(self):
        while not self._stop_event.wait(self.settings.maintenance_interval):
            try:
                self.run_once()
            except JobServiceError as e:
                logger.error(f"Maintenance sweep failed: {e.message}")

    def start(self):
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="maintenance", daemon=True)
        self._thread.start()

    def stop(self):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
