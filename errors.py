"""Error taxonomy shared by the API, the queue and the worker."""


class JobServiceError(Exception):
    """Base class for errors that map to a client-visible response."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        return {"error": self.code, "detail": self.message}


class ValidationError(JobServiceError):
    """Bad or missing input/options, rejected before anything is enqueued."""

    code = "validation_error"
    status_code = 400


class NotFoundError(JobServiceError):
    code = "not_found"
    status_code = 404


class ConflictError(JobServiceError):
    """Illegal state transition, or a delete while the job is running."""

    code = "conflict"
    status_code = 409


class ExecutionError(JobServiceError):
    """The external analysis failed or produced no usable output."""

    code = "execution_error"
    status_code = 500


class NoWorkerAvailable(JobServiceError):
    code = "no_available_workers"
    status_code = 503


class StorageError(JobServiceError):
    """Database or filesystem backend unavailable. Not retried by the core."""

    code = "storage_error"
    status_code = 503


class LeaseLostError(JobServiceError):
    """A worker tried to report on a claim it no longer holds."""

    code = "lease_lost"
    status_code = 409
