import base64
import hashlib
import os
from datetime import datetime, timezone
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

load_dotenv()

INPUT_FILENAME = "input.fasta"

# Settings field -> environment variable
ENV_KEYS = {
    "database_url": "DATABASE_URL",
    "jobs_dir": "JOBS_DIR",
    "host_jobs_dir": "HOST_JOBS_DIR",
    "storage_mode": "STORAGE_MODE",
    "redis_url": "REDIS_URL",
    "use_celery": "USE_CELERY",
    "worker_pool_size": "WORKER_POOL_SIZE",
    "max_attempts": "JOB_MAX_ATTEMPTS",
    "backoff_delay": "JOB_BACKOFF_DELAY",
    "lease_seconds": "LEASE_SECONDS",
    "poll_interval": "WORKER_POLL_INTERVAL",
    "heartbeat_ttl": "WORKER_HEARTBEAT_TTL",
    "execution_timeout": "EXECUTION_TIMEOUT",
    "stuck_threshold": "STUCK_JOB_THRESHOLD",
    "status_cache_ttl": "STATUS_CACHE_TTL",
    "keep_completed_seconds": "KEEP_COMPLETED_SECONDS",
    "keep_completed_count": "KEEP_COMPLETED_COUNT",
    "keep_failed_seconds": "KEEP_FAILED_SECONDS",
    "keep_failed_count": "KEEP_FAILED_COUNT",
    "pending_max_age": "PENDING_MAX_AGE",
    "job_retention_seconds": "JOB_RETENTION_SECONDS",
    "maintenance_interval": "MAINTENANCE_INTERVAL",
    "analysis_runtime": "ANALYSIS_RUNTIME",
    "analysis_image": "ANALYSIS_IMAGE",
    "analysis_network": "ANALYSIS_NETWORK",
    "max_upload_bytes": "MAX_UPLOAD_BYTES",
    "admin_token": "ADMIN_TOKEN",
    "port": "PORT",
}


class Settings(BaseModel):
    """Runtime configuration, built once by the entry point and passed down."""

    database_url: str = "sqlite:///./jobs.db"
    jobs_dir: str = "./jobs"
    host_jobs_dir: Optional[str] = None
    storage_mode: Literal["shared", "embedded"] = "shared"
    redis_url: str = "redis://localhost:6379/0"
    use_celery: bool = False
    worker_pool_size: int = Field(2, ge=0)

    # Queue
    max_attempts: int = Field(3, ge=1)
    backoff_delay: float = Field(2.0, ge=0)
    lease_seconds: float = Field(30.0, gt=0)
    poll_interval: float = Field(1.0, gt=0)
    heartbeat_ttl: float = Field(30.0, gt=0)
    stuck_threshold: float = Field(60.0, ge=0)
    status_cache_ttl: float = Field(1.0, ge=0)

    # Retention (seconds / counts)
    keep_completed_seconds: float = 24 * 3600
    keep_completed_count: int = 1000
    keep_failed_seconds: float = 7 * 24 * 3600
    keep_failed_count: int = 5000
    pending_max_age: float = 24 * 3600
    job_retention_seconds: float = 30 * 24 * 3600
    maintenance_interval: float = Field(60.0, gt=0)

    # External analysis
    analysis_runtime: str = "docker"
    analysis_image: str = "jamesdimonaco/storf-reporter:latest"
    analysis_network: str = "host"
    execution_timeout: float = Field(3600.0, gt=0)

    max_upload_bytes: int = 100 * 1024 * 1024
    admin_token: Optional[str] = None
    port: int = 8001

    @classmethod
    def from_env(cls, **overrides) -> "Settings":
        values = {}
        for field, env_key in ENV_KEYS.items():
            raw = os.getenv(env_key)
            if raw is not None and raw != "":
                values[field] = raw
        values.update(overrides)
        return cls(**values)

    def job_dir(self, job_id: str) -> str:
        return os.path.join(self.jobs_dir, job_id)

    def output_dir(self, job_id: str) -> str:
        return os.path.join(self.jobs_dir, job_id, "output")


def utc_now() -> datetime:
    """Naive UTC timestamp, the form SQLite hands back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def calculate_checksum(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def encode_content(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_content(text: str) -> bytes:
    return base64.b64decode(text.encode("ascii"))
