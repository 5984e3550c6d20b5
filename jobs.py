import logging
import os
import secrets
import shutil
from typing import Callable, Optional

import aiofiles

from errors import JobServiceError, StorageError, ValidationError
from schemas import ContentInput, JobPayload, JobRecord, PathInput, parse_options
from store import JobStore
from utils import INPUT_FILENAME, Settings, calculate_checksum, encode_content
from work_queue import WorkQueue

logger = logging.getLogger(__name__)


class JobService:
    """Submission and explicit deletion of jobs.

    A job record is committed before its queue entry exists, and nothing is
    written at all when the file or options are invalid.
    """

    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        settings: Settings,
        dispatch: Optional[Callable[[str], None]] = None,
    ):
        self.store = store
        self.queue = queue
        self.settings = settings
        self.dispatch = dispatch

    async def submit(self, filename: Optional[str], content: bytes, options=None) -> JobRecord:
        job_options = parse_options(options)
        if not content:
            raise ValidationError("No file provided")
        if len(content) > self.settings.max_upload_bytes:
            raise ValidationError(f"File exceeds the {self.settings.max_upload_bytes} byte upload limit")

        filename = os.path.basename(filename or "") or "upload.fasta"
        job_id = secrets.token_hex(16)
        job_dir = self.settings.job_dir(job_id)

        if self.settings.storage_mode == "shared":
            input_path = os.path.abspath(os.path.join(job_dir, INPUT_FILENAME))
            try:
                os.makedirs(job_dir, exist_ok=True)
                async with aiofiles.open(input_path, "wb") as out_file:
                    await out_file.write(content)
            except OSError as e:
                logger.error(f"Could not store upload for job {job_id}: {e}")
                raise StorageError("Could not store uploaded file") from e
            input_ref = PathInput(path=input_path, filename=filename)
        else:
            input_ref = ContentInput(content=encode_content(content), filename=filename)

        record = JobRecord(
            job_id=job_id,
            filename=filename,
            input_checksum=calculate_checksum(content),
            options=job_options,
            input_ref=input_ref,
        )
        try:
            self.store.create(record)
        except JobServiceError:
            shutil.rmtree(job_dir, ignore_errors=True)
            raise

        payload = JobPayload(job_id=job_id, filename=filename, input=input_ref, options=job_options)
        try:
            self.queue.enqueue(job_id, payload.model_dump(mode="json"))
        except JobServiceError:
            self.store.delete(job_id)
            shutil.rmtree(job_dir, ignore_errors=True)
            raise

        if self.dispatch is not None:
            try:
                self.dispatch(job_id)
                logger.info(f"🚀 Job {job_id} sent to Celery")
            except Exception as e:
                # the entry is durable; it stays visible as pending until a worker claims it
                logger.error(f"Could not notify workers about job {job_id}: {e}")
        else:
            logger.info(f"🔧 Job {job_id} queued for internal workers")

        return self.store.get(job_id)

    def delete(self, job_id: str):
        """Remove a job that is not currently running, with its working directory."""
        self.store.get(job_id)
        self.queue.remove(job_id)  # refuses while the job is running
        self.store.delete(job_id)
        shutil.rmtree(self.settings.job_dir(job_id), ignore_errors=True)
        logger.info(f"Deleted job {job_id}")
