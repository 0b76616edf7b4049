"""Fault taxonomy for the orchestrator.

Every failure crossing a component boundary is one of these. The worker
pool decides retry vs. terminal failure purely from the class.
"""

import asyncio

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError


class SharpFlowError(Exception):
    """Base exception for all SharpFlow errors."""

    def __init__(self, message: str, *, details: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationFault(SharpFlowError):
    """Bad input. Never retried, surfaced to the caller immediately."""


class TransientFault(SharpFlowError):
    """Timeout, rate limit or transient I/O. Retried under the broker policy."""


class TerminalPipelineFault(SharpFlowError):
    """Irrecoverable business failure. The job fails without retry."""


class PersistenceFault(SharpFlowError):
    """The job or conversation store is unavailable."""


class JobNotFoundError(SharpFlowError):
    """Raised when a job does not exist or belongs to another owner."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", details={"job_id": job_id})


class SessionNotFoundError(SharpFlowError):
    """Raised when a conversation session does not exist for the owner."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}", details={"session_id": session_id})


class JobCancelled(SharpFlowError):
    """Raised inside a pipeline when the owner cancelled the job."""


class ClassifierUnavailable(SharpFlowError):
    """The primary classifier could not produce a usable result."""


# HTTP statuses worth retrying
_RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def classify_exception(exc: BaseException) -> SharpFlowError:
    """Map an arbitrary exception into the fault taxonomy.

    Already-classified faults pass through unchanged. Unknown errors are
    treated as transient so the bounded retry policy gets a chance.
    """
    if isinstance(exc, SharpFlowError):
        return exc
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, httpx.TimeoutException)):
        return TransientFault(f"Timed out: {exc}" if str(exc) else "Timed out")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        message = f"Upstream returned HTTP {status}"
        if status in _RETRYABLE_STATUSES:
            return TransientFault(message, details={"status_code": status})
        return TerminalPipelineFault(message, details={"status_code": status})
    if isinstance(exc, httpx.TransportError):
        return TransientFault(f"Transport error: {exc}")
    if isinstance(exc, (OperationalError, DBAPIError, ConnectionError)):
        return PersistenceFault(f"Store unavailable: {exc}")
    return TransientFault(f"{type(exc).__name__}: {exc}")
