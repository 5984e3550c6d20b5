from sqlalchemy import Column, String, Integer, DateTime, Text, Enum, JSON
from database import Base
import enum
from utils import utc_now


class JobState(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


class EntryState(str, enum.Enum):
    WAITING = "waiting"
    DELAYED = "delayed"  # retry scheduled, waiting out its backoff
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (EntryState.COMPLETED, EntryState.FAILED)


CLAIMABLE_STATES = (EntryState.WAITING, EntryState.DELAYED)


class Job(Base):
    __tablename__ = "jobs"

    job_id = Column(String(32), primary_key=True)
    filename = Column(String, nullable=True)
    input_checksum = Column(String(64), index=True)
    options = Column(JSON, nullable=False)
    input_ref = Column(JSON, nullable=False)
    state = Column(Enum(JobState), default=JobState.PENDING, index=True)
    progress = Column(Integer, default=0)
    attempts = Column(Integer, default=0)
    result = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utc_now, index=True)
    updated_at = Column(DateTime, default=utc_now)
    version = Column(Integer, default=0, nullable=False)


class QueueEntry(Base):
    __tablename__ = "queue_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String(32), unique=True, nullable=False)
    payload = Column(JSON, nullable=False)
    state = Column(Enum(EntryState), default=EntryState.WAITING, index=True)
    progress = Column(Integer, default=0)
    attempts_made = Column(Integer, default=0)
    max_attempts = Column(Integer, default=3)
    available_at = Column(DateTime, default=utc_now)
    enqueued_at = Column(DateTime, default=utc_now)
    processed_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utc_now)
    lease_token = Column(String(32), nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    worker_id = Column(String, nullable=True)
    return_value = Column(JSON, nullable=True)
    failed_reason = Column(Text, nullable=True)


class WorkerHeartbeat(Base):
    __tablename__ = "workers"

    worker_id = Column(String, primary_key=True)
    hostname = Column(String, nullable=True)
    pid = Column(Integer, nullable=True)
    started_at = Column(DateTime, default=utc_now)
    last_seen = Column(DateTime, default=utc_now)
    current_job_id = Column(String(32), nullable=True)
