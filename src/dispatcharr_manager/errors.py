from typing import Any, Optional


class ManagerError(Exception):
    """
    Base class for every error raised by the manager.

    `http_status` is a hint for an API layer mapping errors onto responses.
    """
    http_status: int = 500


class ValidationError(ManagerError):
    http_status = 400


class NotFoundError(ManagerError):
    http_status = 404


class ConflictError(ManagerError):
    http_status = 409


class AuthenticationError(ManagerError):
    """Remote credentials were rejected or no token was issued."""
    http_status = 401

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RemoteRequestError(ManagerError):
    """The remote API answered with a non-2xx status."""
    http_status = 502

    def __init__(self, method: str, endpoint: str, status: int, body: Any = None):
        super().__init__(f"{method} {endpoint} failed with status {status}")
        self.method = method
        self.endpoint = endpoint
        self.status = status
        self.body = body


class TransientItemError(ManagerError):
    """
    A single record could not be written.

    Pipelines count these and move on; they never reach the caller.
    """

    def __init__(self, key: Any, cause: BaseException):
        super().__init__(f"{key}: {cause}")
        self.key = key
        self.cause = cause


class JobCancelledError(ManagerError):
    """Raised at a cancellation checkpoint once the owning job was cancelled."""
    http_status = 499

    def __init__(self, job_id: str, reason: Optional[str] = None):
        super().__init__(reason or f"Job {job_id} was cancelled")
        self.job_id = job_id
        self.reason = reason
