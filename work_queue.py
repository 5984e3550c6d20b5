"""Durable FIFO work queue on top of the jobs database.

Delivery is at-least-once: a claim hands out a lease token that expires after
``lease_seconds`` unless the holder renews it. Every state change is a
conditional UPDATE, so two workers can never hold the same entry at once.
"""

import logging
import os
import socket
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, List, Optional

from sqlalchemy import and_, case, or_
from sqlalchemy.exc import IntegrityError

from database import Database
from errors import ConflictError, LeaseLostError, StorageError
from models import CLAIMABLE_STATES, EntryState, QueueEntry, WorkerHeartbeat
from utils import utc_now

logger = logging.getLogger(__name__)

CLAIM_BATCH = 10
STALLED_REASON = "job stalled more than allowable limit"


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0  # seconds, doubled per failed attempt

    def delay_for(self, attempts_made: int) -> float:
        return self.base_delay * (2 ** max(0, attempts_made - 1))


@dataclass(frozen=True)
class RetentionPolicy:
    completed_age: float = 24 * 3600
    completed_count: int = 1000
    failed_age: float = 7 * 24 * 3600
    failed_count: int = 5000


@dataclass(frozen=True)
class EntrySnapshot:
    entry_id: int
    job_id: str
    state: EntryState
    progress: int
    attempts_made: int
    max_attempts: int
    enqueued_at: datetime
    available_at: datetime
    processed_at: Optional[datetime]
    finished_at: Optional[datetime]
    updated_at: datetime
    worker_id: Optional[str]
    return_value: Optional[dict]
    failed_reason: Optional[str]

    @classmethod
    def from_row(cls, row: QueueEntry) -> "EntrySnapshot":
        return cls(
            entry_id=row.id,
            job_id=row.job_id,
            state=row.state,
            progress=row.progress or 0,
            attempts_made=row.attempts_made or 0,
            max_attempts=row.max_attempts,
            enqueued_at=row.enqueued_at,
            available_at=row.available_at,
            processed_at=row.processed_at,
            finished_at=row.finished_at,
            updated_at=row.updated_at,
            worker_id=row.worker_id,
            return_value=row.return_value,
            failed_reason=row.failed_reason,
        )

    @property
    def terminal(self) -> bool:
        return self.state.terminal

    def to_dict(self) -> dict:
        return {
            "id": self.entry_id,
            "job_id": self.job_id,
            "state": self.state.value,
            "progress": self.progress,
            "attempts": self.attempts_made,
            "enqueued_at": self.enqueued_at.isoformat() if self.enqueued_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "worker_id": self.worker_id,
        }


@dataclass(frozen=True)
class Lease:
    token: str
    entry_id: int
    job_id: str
    attempt: int
    payload: dict
    worker_id: str


@dataclass(frozen=True)
class Outcome:
    succeeded: bool
    return_value: Optional[dict] = None
    error: Optional[str] = None

    @classmethod
    def success(cls, return_value: Optional[dict] = None) -> "Outcome":
        return cls(True, return_value=return_value)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(False, error=error or "Unknown error")


@dataclass(frozen=True)
class QueueEvent:
    name: str
    snapshot: EntrySnapshot


Listener = Callable[[QueueEvent], None]


def log_event(event: QueueEvent):
    """Default listener: one log line per queue transition."""
    snap = event.snapshot
    if event.name == "progress":
        logger.debug(f"Job {snap.job_id} progress {snap.progress}%")
    elif event.name in ("failed", "stalled"):
        logger.error(f"Job {snap.job_id} has {event.name}: {snap.failed_reason}")
    elif event.name == "retrying":
        logger.warning(
            f"Job {snap.job_id} failed attempt {snap.attempts_made}/{snap.max_attempts}, "
            f"retry at {snap.available_at.isoformat()}"
        )
    else:
        logger.info(f"Job {snap.job_id} is {event.name}")


class WorkQueue:
    def __init__(
        self,
        db: Database,
        retry: RetryPolicy = RetryPolicy(),
        retention: RetentionPolicy = RetentionPolicy(),
        lease_seconds: float = 30.0,
        heartbeat_ttl: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.db = db
        self.retry = retry
        self.retention = retention
        self.lease_seconds = lease_seconds
        self.heartbeat_ttl = heartbeat_ttl
        self.clock = clock
        self._listeners: List[Listener] = []
        self._listeners_lock = threading.Lock()

    # Events

    def subscribe(self, listener: Listener):
        with self._listeners_lock:
            self._listeners.append(listener)

    def unsubscribe(self, listener: Listener):
        with self._listeners_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def _emit(self, name: str, snapshot: Optional[EntrySnapshot]):
        if snapshot is None:
            return
        event = QueueEvent(name, snapshot)
        with self._listeners_lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception(f"Queue listener failed on {name} for job {snapshot.job_id}")

    def _snapshot(self, job_id: str) -> Optional[EntrySnapshot]:
        with self.db.session() as db:
            row = db.query(QueueEntry).filter(QueueEntry.job_id == job_id).first()
            return EntrySnapshot.from_row(row) if row else None

    # Producer side

    def enqueue(self, job_id: str, payload: dict) -> EntrySnapshot:
        now = self.clock()
        row = QueueEntry(
            job_id=job_id,
            payload=payload,
            state=EntryState.WAITING,
            progress=0,
            attempts_made=0,
            max_attempts=self.retry.max_attempts,
            available_at=now,
            enqueued_at=now,
            updated_at=now,
        )
        try:
            with self.db.session() as db:
                db.add(row)
                db.flush()
                snapshot = EntrySnapshot.from_row(row)
        except StorageError as e:
            if isinstance(e.__cause__, IntegrityError):
                raise ConflictError(f"Job {job_id} is already queued") from e
            raise
        self._emit("waiting", snapshot)
        return snapshot

    # Consumer side

    def claim(self, worker_id: str) -> Optional[Lease]:
        """Claim the oldest ready entry, or an active one whose lease ran out."""
        now = self.clock()
        with self.db.session() as db:
            candidates = (
                db.query(QueueEntry.id, QueueEntry.job_id, QueueEntry.state,
                         QueueEntry.lease_token, QueueEntry.attempts_made, QueueEntry.max_attempts)
                .filter(
                    or_(
                        and_(QueueEntry.state.in_(CLAIMABLE_STATES), QueueEntry.available_at <= now),
                        and_(QueueEntry.state == EntryState.ACTIVE, QueueEntry.lease_expires_at <= now),
                    )
                )
                .order_by(QueueEntry.id.asc())
                .limit(CLAIM_BATCH)
                .all()
            )

        for candidate in candidates:
            if candidate.state == EntryState.ACTIVE:
                lease = self._reclaim_stalled(candidate, worker_id, now)
            else:
                lease = self._try_claim(candidate, worker_id, now)
            if lease is not None:
                return lease
        return None

    def _lease_values(self, worker_id: str, now: datetime) -> dict:
        return {
            "state": EntryState.ACTIVE,
            "lease_token": uuid.uuid4().hex,
            "lease_expires_at": now + timedelta(seconds=self.lease_seconds),
            "worker_id": worker_id,
            "processed_at": now,
            "progress": 0,
            "updated_at": now,
        }

    def _grant(self, entry_id: int, values: dict, worker_id: str) -> Lease:
        with self.db.session() as db:
            row = db.query(QueueEntry).filter(QueueEntry.id == entry_id).one()
            snapshot = EntrySnapshot.from_row(row)
            lease = Lease(
                token=values["lease_token"],
                entry_id=row.id,
                job_id=row.job_id,
                attempt=row.attempts_made + 1,
                payload=row.payload,
                worker_id=worker_id,
            )
        self._emit("active", snapshot)
        return lease

    def _try_claim(self, candidate, worker_id: str, now: datetime) -> Optional[Lease]:
        values = self._lease_values(worker_id, now)
        with self.db.session() as db:
            updated = (
                db.query(QueueEntry)
                .filter(
                    QueueEntry.id == candidate.id,
                    QueueEntry.state.in_(CLAIMABLE_STATES),
                    QueueEntry.available_at <= now,
                )
                .update(values, synchronize_session=False)
            )
        if updated != 1:
            return None  # another worker won
        return self._grant(candidate.id, values, worker_id)

    def _reclaim_stalled(self, candidate, worker_id: str, now: datetime) -> Optional[Lease]:
        attempts = candidate.attempts_made + 1
        stale = and_(
            QueueEntry.id == candidate.id,
            QueueEntry.state == EntryState.ACTIVE,
            QueueEntry.lease_token == candidate.lease_token,
        )
        if attempts >= candidate.max_attempts:
            with self.db.session() as db:
                updated = db.query(QueueEntry).filter(stale).update(
                    {
                        "state": EntryState.FAILED,
                        "attempts_made": attempts,
                        "failed_reason": STALLED_REASON,
                        "finished_at": now,
                        "lease_token": None,
                        "lease_expires_at": None,
                        "updated_at": now,
                    },
                    synchronize_session=False,
                )
            if updated == 1:
                self._emit("failed", self._snapshot(candidate.job_id))
            return None

        values = self._lease_values(worker_id, now)
        values["attempts_made"] = attempts
        values["failed_reason"] = STALLED_REASON
        with self.db.session() as db:
            updated = db.query(QueueEntry).filter(stale).update(values, synchronize_session=False)
        if updated != 1:
            return None
        logger.warning(f"Job {candidate.job_id} lease expired, reclaimed by {worker_id} (attempt {attempts + 1})")
        self._emit("stalled", self._snapshot(candidate.job_id))
        return self._grant(candidate.id, values, worker_id)

    def _held(self, token: str):
        return and_(QueueEntry.lease_token == token, QueueEntry.state == EntryState.ACTIVE)

    def progress(self, token: str, percent: int) -> EntrySnapshot:
        """Record progress for a held lease. Lower values than already seen are ignored."""
        if not 0 <= percent <= 100:
            raise ValueError(f"Progress must be between 0 and 100, got {percent}")
        now = self.clock()
        with self.db.session() as db:
            updated = (
                db.query(QueueEntry)
                .filter(self._held(token))
                .update(
                    {
                        "progress": case((QueueEntry.progress < percent, percent), else_=QueueEntry.progress),
                        "lease_expires_at": now + timedelta(seconds=self.lease_seconds),
                        "updated_at": now,
                    },
                    synchronize_session=False,
                )
            )
            if updated != 1:
                raise LeaseLostError("Lease is no longer held")
            snapshot = EntrySnapshot.from_row(
                db.query(QueueEntry).filter(QueueEntry.lease_token == token).one()
            )
        self._emit("progress", snapshot)
        return snapshot

    def extend_lease(self, token: str):
        now = self.clock()
        with self.db.session() as db:
            updated = (
                db.query(QueueEntry)
                .filter(self._held(token))
                .update(
                    {"lease_expires_at": now + timedelta(seconds=self.lease_seconds)},
                    synchronize_session=False,
                )
            )
        if updated != 1:
            raise LeaseLostError("Lease is no longer held")

    def ack(self, token: str, outcome: Outcome) -> EntrySnapshot:
        """Finish a held lease: complete it, schedule a retry, or fail it for good."""
        now = self.clock()
        with self.db.session() as db:
            row = db.query(QueueEntry).filter(self._held(token)).first()
            if row is None:
                raise LeaseLostError("Lease is no longer held")
            cleared = {"lease_token": None, "lease_expires_at": None, "updated_at": now}

            if outcome.succeeded:
                event = "completed"
                values = dict(
                    cleared,
                    state=EntryState.COMPLETED,
                    progress=100,
                    return_value=outcome.return_value,
                    failed_reason=None,
                    finished_at=now,
                )
            else:
                attempts = row.attempts_made + 1
                if attempts >= row.max_attempts:
                    event = "failed"
                    values = dict(
                        cleared,
                        state=EntryState.FAILED,
                        attempts_made=attempts,
                        failed_reason=outcome.error,
                        finished_at=now,
                    )
                else:
                    event = "retrying"
                    values = dict(
                        cleared,
                        state=EntryState.DELAYED,
                        attempts_made=attempts,
                        failed_reason=outcome.error,
                        progress=0,
                        worker_id=None,
                        available_at=now + timedelta(seconds=self.retry.delay_for(attempts)),
                    )

            updated = (
                db.query(QueueEntry)
                .filter(QueueEntry.id == row.id, QueueEntry.lease_token == token)
                .update(values, synchronize_session=False)
            )
            if updated != 1:
                raise LeaseLostError("Lease is no longer held")
            job_id = row.job_id

        snapshot = self._snapshot(job_id)
        self._emit(event, snapshot)
        return snapshot

    # Reads

    def get(self, job_id: str) -> Optional[EntrySnapshot]:
        return self._snapshot(job_id)

    def query(self, states: Optional[Iterable[EntryState]] = None, limit: Optional[int] = None) -> List[EntrySnapshot]:
        with self.db.session() as db:
            query = db.query(QueueEntry)
            if states is not None:
                query = query.filter(QueueEntry.state.in_(list(states)))
            query = query.order_by(QueueEntry.id.asc())
            if limit:
                query = query.limit(limit)
            return [EntrySnapshot.from_row(row) for row in query.all()]

    def counts(self) -> dict:
        counts = {state.value: 0 for state in EntryState}
        with self.db.session() as db:
            for state in EntryState:
                counts[state.value] = db.query(QueueEntry).filter(QueueEntry.state == state).count()
        return counts

    def position(self, job_id: str) -> Optional[int]:
        """How many claimable entries sit ahead of this one; None unless it is claimable."""
        with self.db.session() as db:
            row = db.query(QueueEntry).filter(QueueEntry.job_id == job_id).first()
            if row is None or row.state not in CLAIMABLE_STATES:
                return None
            return (
                db.query(QueueEntry)
                .filter(QueueEntry.state.in_(CLAIMABLE_STATES), QueueEntry.id < row.id)
                .count()
            )

    # Removal and retention

    def remove(self, job_id: str, force: bool = False) -> bool:
        snapshot = self._snapshot(job_id)
        if snapshot is None:
            return False
        if snapshot.state == EntryState.ACTIVE and not force:
            raise ConflictError(f"Job {job_id} is running and cannot be removed")
        with self.db.session() as db:
            query = db.query(QueueEntry).filter(QueueEntry.job_id == job_id)
            if not force:
                # a claim may have landed since the snapshot was taken
                query = query.filter(QueueEntry.state != EntryState.ACTIVE)
            deleted = query.delete(synchronize_session=False)
        if deleted:
            self._emit("removed", snapshot)
        elif not force and self._snapshot(job_id) is not None:
            raise ConflictError(f"Job {job_id} is running and cannot be removed")
        return deleted == 1

    def prune(self) -> List[str]:
        """Drop finished entries past their retention age or count; returns job ids."""
        now = self.clock()
        rules = (
            (EntryState.COMPLETED, self.retention.completed_age, self.retention.completed_count),
            (EntryState.FAILED, self.retention.failed_age, self.retention.failed_count),
        )
        pruned = []
        with self.db.session() as db:
            for state, max_age, max_count in rules:
                cutoff = now - timedelta(seconds=max_age)
                expired = (
                    db.query(QueueEntry.id, QueueEntry.job_id)
                    .filter(QueueEntry.state == state, QueueEntry.finished_at < cutoff)
                    .all()
                )
                overflow = (
                    db.query(QueueEntry.id, QueueEntry.job_id)
                    .filter(QueueEntry.state == state)
                    .order_by(QueueEntry.finished_at.desc(), QueueEntry.id.desc())
                    .offset(max_count)
                    .all()
                )
                doomed = {row.id: row.job_id for row in list(expired) + list(overflow)}
                if doomed:
                    db.query(QueueEntry).filter(QueueEntry.id.in_(list(doomed))).delete(synchronize_session=False)
                    pruned.extend(doomed.values())
        if pruned:
            logger.info(f"Pruned {len(pruned)} finished queue entries")
        return pruned

    def sweep_stale_pending(self, max_age: float) -> List[str]:
        """Remove never-claimed entries older than ``max_age`` seconds."""
        cutoff = self.clock() - timedelta(seconds=max_age)
        with self.db.session() as db:
            stale = [
                row.job_id
                for row in db.query(QueueEntry.job_id)
                .filter(QueueEntry.state == EntryState.WAITING, QueueEntry.enqueued_at < cutoff)
                .all()
            ]
        removed = []
        for job_id in stale:
            snapshot = self._snapshot(job_id)
            with self.db.session() as db:
                deleted = (
                    db.query(QueueEntry)
                    .filter(QueueEntry.job_id == job_id, QueueEntry.state == EntryState.WAITING)
                    .delete(synchronize_session=False)
                )
            if deleted:
                removed.append(job_id)
                self._emit("removed", snapshot)
        return removed

    # Workers

    def heartbeat(self, worker_id: str, current_job_id: Optional[str] = None):
        now = self.clock()
        with self.db.session() as db:
            row = db.query(WorkerHeartbeat).filter(WorkerHeartbeat.worker_id == worker_id).first()
            if row is None:
                db.add(WorkerHeartbeat(
                    worker_id=worker_id,
                    hostname=socket.gethostname(),
                    pid=os.getpid(),
                    started_at=now,
                    last_seen=now,
                    current_job_id=current_job_id,
                ))
            else:
                row.last_seen = now
                row.current_job_id = current_job_id

    def unregister(self, worker_id: str):
        with self.db.session() as db:
            db.query(WorkerHeartbeat).filter(WorkerHeartbeat.worker_id == worker_id).delete(synchronize_session=False)

    def active_workers(self) -> List[dict]:
        cutoff = self.clock() - timedelta(seconds=self.heartbeat_ttl)
        with self.db.session() as db:
            rows = (
                db.query(WorkerHeartbeat)
                .filter(WorkerHeartbeat.last_seen >= cutoff)
                .order_by(WorkerHeartbeat.started_at.asc())
                .all()
            )
            return [
                {
                    "id": row.worker_id,
                    "hostname": row.hostname,
                    "pid": row.pid,
                    "started": row.started_at.isoformat() if row.started_at else None,
                    "last_seen": row.last_seen.isoformat() if row.last_seen else None,
                    "current_job_id": row.current_job_id,
                }
                for row in rows
            ]

    def is_stuck(self, snapshot: EntrySnapshot, threshold: float) -> bool:
        """True when a claimable entry has waited past ``threshold`` and no worker is alive."""
        if snapshot.state not in CLAIMABLE_STATES:
            return False
        waiting_since = max(snapshot.enqueued_at, snapshot.available_at)
        if (self.clock() - waiting_since).total_seconds() <= threshold:
            return False
        return not self.active_workers()
