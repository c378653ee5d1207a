from __future__ import annotations

from typing import Optional


class NotebookError(Exception):
    """Base class for errors raised by the processing subsystem."""


class SubmissionError(NotebookError, ValueError):
    """
    Upload rejected before any page or job exists (bad, missing or oversize
    file), or a submission step failed and was rolled back.
    """

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class CapabilityError(NotebookError, RuntimeError):
    """Extraction service unreachable, rate limited, timed out or unusable."""


class MalformedExtractionError(CapabilityError):
    """The extraction service answered, but not with the expected structure."""


class PersistenceError(NotebookError, RuntimeError):
    """Database unavailable or a write could not be applied."""


class InvalidTransitionError(NotebookError, ValueError):
    def __init__(self, current, target):
        super().__init__(f"Illegal page status transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class ExhaustedRetryError(NotebookError, RuntimeError):
    """Terminal: the queue gave up on a job after its last allowed attempt."""

    def __init__(self, job, attempts: int, last_error: Optional[BaseException] = None):
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Job for page {job.page_id} failed after {attempts} attempts{detail}")
        self.job = job
        self.attempts = attempts
        self.last_error = last_error


def describe_error(exc: BaseException) -> str:
    """Human-readable message stored on a page's error_message."""
    message = str(exc).strip()
    if not message:
        return type(exc).__name__
    return message
