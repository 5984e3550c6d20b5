"""Durable job records.

Each record is written once on submission and afterwards changed only through
:meth:`JobStore.update`, which applies a mutation as a compare-and-swap on the
row's ``version`` column so concurrent updates of the same job never interleave.
"""

import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError

from database import Database
from errors import ConflictError, NotFoundError, StorageError
from models import Job, JobState
from schemas import JobRecord
from utils import utc_now

logger = logging.getLogger(__name__)

# Allowed forward moves; staying in the same state is always allowed.
TRANSITIONS = {
    JobState.PENDING: {JobState.RUNNING, JobState.COMPLETED, JobState.FAILED},
    JobState.RUNNING: {JobState.COMPLETED, JobState.FAILED},
    JobState.COMPLETED: set(),
    JobState.FAILED: set(),
}

MAX_CAS_RETRIES = 10


def _row_values(record: JobRecord) -> dict:
    return {
        "filename": record.filename,
        "input_checksum": record.input_checksum,
        "options": record.options.model_dump(mode="json"),
        "input_ref": record.input_ref.model_dump(mode="json"),
        "state": record.state,
        "progress": record.progress,
        "attempts": record.attempts,
        "result": record.result.model_dump(mode="json") if record.result else None,
        "error_message": record.error_message,
    }


def check_record(old: JobRecord, new: JobRecord) -> JobRecord:
    """Enforce lifecycle invariants on a mutated copy of ``old``."""
    if new.job_id != old.job_id:
        raise ConflictError("Job id is immutable")
    if new.state != old.state and new.state not in TRANSITIONS[old.state]:
        raise ConflictError(f"Job {old.job_id} cannot move from {old.state.value} to {new.state.value}")
    if new.attempts < old.attempts:
        raise ConflictError("Attempt count cannot decrease")
    if new.attempts == old.attempts and new.progress < old.progress:
        # progress only goes back when a new attempt starts
        new.progress = old.progress
    new.progress = max(0, min(100, new.progress))

    if new.state == JobState.COMPLETED:
        new.error_message = None
    elif new.state == JobState.FAILED:
        new.result = None
    else:
        new.result = None
        new.error_message = None
    return new


class JobStore:
    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    def create(self, record: JobRecord) -> str:
        now = self.clock()
        row = Job(
            job_id=record.job_id,
            created_at=now,
            updated_at=now,
            version=0,
            **_row_values(record),
        )
        try:
            with self.db.session() as db:
                db.add(row)
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConflictError(f"Job {record.job_id} already exists") from e
            raise
        logger.info(f"Created job record {record.job_id}")
        return record.job_id

    def get(self, job_id: str) -> JobRecord:
        with self.db.session() as db:
            row = db.query(Job).filter(Job.job_id == job_id).first()
            if row is None:
                raise NotFoundError(f"Job {job_id} not found")
            return JobRecord.model_validate(row)

    def find(self, job_id: str) -> Optional[JobRecord]:
        try:
            return self.get(job_id)
        except NotFoundError:
            return None

    def update(self, job_id: str, mutation: Callable[[JobRecord], None]) -> JobRecord:
        """Apply ``mutation`` to a copy of the record and write it back atomically.

        The write only lands if nobody else updated the row in between; on a
        lost race the mutation is re-applied to the fresh record.
        """
        for _ in range(MAX_CAS_RETRIES):
            current = self.get(job_id)
            candidate = current.model_copy(deep=True)
            mutation(candidate)
            candidate = check_record(current, candidate)
            if _row_values(candidate) == _row_values(current):
                return current

            now = self.clock()
            values = _row_values(candidate)
            values["updated_at"] = now
            values["version"] = current.version + 1
            with self.db.session() as db:
                updated = (
                    db.query(Job)
                    .filter(Job.job_id == job_id, Job.version == current.version)
                    .update(values, synchronize_session=False)
                )
            if updated == 1:
                candidate.updated_at = now
                candidate.version = current.version + 1
                return candidate
            logger.debug(f"Concurrent update on job {job_id}, retrying")
        raise StorageError(f"Could not update job {job_id}: too much contention")

    def list(
        self,
        state: Optional[JobState] = None,
        offset: int = 0,
        limit: Optional[int] = None,
        created_before: Optional[datetime] = None,
    ) -> List[JobRecord]:
        with self.db.session() as db:
            query = db.query(Job)
            if state:
                query = query.filter(Job.state == state)
            if created_before:
                query = query.filter(Job.created_at < created_before)
            query = query.order_by(Job.created_at.desc()).offset(offset)
            if limit:
                query = query.limit(limit)
            return [JobRecord.model_validate(row) for row in query.all()]

    def count(self, state: Optional[JobState] = None) -> int:
        with self.db.session() as db:
            query = db.query(Job)
            if state:
                query = query.filter(Job.state == state)
            return query.count()

    def delete(self, job_id: str) -> bool:
        with self.db.session() as db:
            deleted = db.query(Job).filter(Job.job_id == job_id).delete(synchronize_session=False)
        return deleted == 1

    def purge_older_than(
        self,
        cutoff: datetime,
        states: Optional[Iterable[JobState]] = None,
        exclude: Iterable[str] = (),
    ) -> List[str]:
        """Delete records created before ``cutoff``; returns their ids.

        ``states`` limits the purge to records in those states and ``exclude``
        names jobs that must be kept regardless.
        """
        exclude = list(exclude)
        with self.db.session() as db:
            query = db.query(Job.job_id).filter(Job.created_at < cutoff)
            if states is not None:
                query = query.filter(Job.state.in_(list(states)))
            if exclude:
                query = query.filter(Job.job_id.notin_(exclude))
            ids = [row.job_id for row in query.all()]
            if ids:
                db.query(Job).filter(Job.job_id.in_(ids)).delete(synchronize_session=False)
        return ids
