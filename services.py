"""Wires the job components together for one process."""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from database import Database
from jobs import JobService
from maintenance import Maintenance
from materializer import ResultMaterializer
from status import StatusService
from store import JobStore
from utils import Settings, utc_now
from work_queue import RetentionPolicy, RetryPolicy, WorkQueue, log_event


@dataclass
class Services:
    settings: Settings
    db: Database
    store: JobStore
    queue: WorkQueue
    status: StatusService
    materializer: ResultMaterializer
    jobs: JobService
    maintenance: Maintenance

    def close(self):
        self.maintenance.stop()
        self.db.dispose()


def build_services(
    settings: Settings,
    dispatch: Optional[Callable[[str], None]] = None,
    clock: Callable[[], datetime] = utc_now,
) -> Services:
    db = Database(settings.database_url)
    store = JobStore(db, clock=clock)
    queue = WorkQueue(
        db,
        retry=RetryPolicy(max_attempts=settings.max_attempts, base_delay=settings.backoff_delay),
        retention=RetentionPolicy(
            completed_age=settings.keep_completed_seconds,
            completed_count=settings.keep_completed_count,
            failed_age=settings.keep_failed_seconds,
            failed_count=settings.keep_failed_count,
        ),
        lease_seconds=settings.lease_seconds,
        heartbeat_ttl=settings.heartbeat_ttl,
        clock=clock,
    )
    status = StatusService(
        store,
        queue,
        stuck_threshold=settings.stuck_threshold,
        cache_ttl=settings.status_cache_ttl,
        clock=clock,
    )
    queue.subscribe(log_event)
    queue.subscribe(status.on_queue_event)

    return Services(
        settings=settings,
        db=db,
        store=store,
        queue=queue,
        status=status,
        materializer=ResultMaterializer(status, settings.jobs_dir),
        jobs=JobService(store, queue, settings, dispatch=dispatch),
        maintenance=Maintenance(store, queue, status, settings, clock=clock),
    )
