"""
Exception hierarchy for the job scheduler.

Every error carries the HTTP status a web layer would answer with, so the
boundary can translate them without knowing the engine's internals.
"""
from typing import Any, Dict, List, Optional


class SchedulerError(Exception):
    """Base class for all scheduler errors."""

    http_status: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message}


class JobValidationError(SchedulerError):
    """Malformed submission or query input. Nothing was mutated."""

    http_status = 400

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors: List[Dict[str, Any]] = errors or []

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.errors:
            body["errors"] = self.errors
        return body


class JobNotFoundError(SchedulerError):
    http_status = 404

    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class JobConflictError(SchedulerError):
    """The requested transition is not legal from the job's current status."""

    http_status = 409

    def __init__(self, job_id: int, status: Any, message: Optional[str] = None):
        status_value = getattr(status, "value", status)
        super().__init__(message or f"Job {job_id} is already {status_value}")
        self.job_id = job_id
        self.status = status


class SchedulerInternalError(SchedulerError):
    http_status = 500


class StorageError(SchedulerInternalError):
    """The job store failed to carry out an operation."""
