"""Orchestration error taxonomy.

Every error carries a machine-readable ``code`` and a human-readable
``message``; the API layer renders them as ``{"success": false, "code", "message"}``
with the matching HTTP status.
"""

from typing import Any, Dict, Optional


class OrchestrationError(Exception):
    """Base class for errors surfaced to callers."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None, **details: Any):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: Dict[str, Any] = details

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "code": self.code,
            "message": self.message,
            **self.details,
        }


class ValidationFailedError(OrchestrationError):
    """Caller input is malformed or incomplete. Never enqueued."""

    code = "MISSING_FIELDS"
    status_code = 400


class SubjectNotFoundError(OrchestrationError):
    code = "SUBJECT_NOT_FOUND"
    status_code = 404


class UnauthorizedError(OrchestrationError):
    code = "UNAUTHORIZED"
    status_code = 403


class StoreUnavailableError(OrchestrationError):
    """A backing store (queue, cache, database) failed or timed out."""

    code = "STORE_UNAVAILABLE"
    status_code = 503

    def __init__(self, store: str, message: str, **details: Any):
        super().__init__(f"{store} unavailable: {message}", store=store, **details)
        self.store = store


class EnqueueFailedError(OrchestrationError):
    """The durable record exists but the job never reached the work queue."""

    code = "ENQUEUE_FAILED"
    status_code = 502

    def __init__(self, job_id: str, message: str):
        super().__init__(message, jobId=job_id)
        self.job_id = job_id


class JobNotFoundError(OrchestrationError):
    code = "JOB_NOT_FOUND"
    status_code = 404


class CannotCancelError(OrchestrationError):
    code = "CANNOT_CANCEL"
    status_code = 400
