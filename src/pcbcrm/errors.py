"""Exception hierarchy for pagination, caching, and background jobs.

Request handlers never catch these directly; the app factory registers
exception handlers that translate each class into an HTTP response.
"""

from __future__ import annotations

from typing import Any


class PCBError(Exception):
    """Base class for all application errors."""


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------


class CursorDecodeError(PCBError, ValueError):
    """A pagination cursor could not be decoded into a valid position."""


class InvalidCursorError(CursorDecodeError):
    """An inbound cursor was rejected by the paginator.

    User-correctable; surfaced as a 400 and never retried.
    """


class InvalidQueryError(PCBError, ValueError):
    """A sort or filter parameter is outside the resource's allow-list."""


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


class ComputeError(PCBError):
    """The compute function passed to the cache failed.

    Carries the entry that was cached before the failed recompute (if
    any) so the caller can decide explicitly whether to serve it.

    Args:
        key: Cache key whose recompute failed.
        stale: The previous cache entry, or None if nothing was cached.
    """

    def __init__(self, key: str, stale: Any | None = None) -> None:
        super().__init__(f"Failed to compute cache value for '{key}'")
        self.key = key
        self.stale = stale


# ---------------------------------------------------------------------------
# Background jobs
# ---------------------------------------------------------------------------


class JobError(PCBError):
    """Base class for background job ledger errors."""

    def __init__(self, job_id: str, message: str) -> None:
        super().__init__(message)
        self.job_id = job_id


class JobNotFoundError(JobError):
    def __init__(self, job_id: str) -> None:
        super().__init__(job_id, f"Job not found: {job_id}")


class AlreadyClaimedError(JobError):
    """The job is no longer pending; another worker claimed it first."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(job_id, f"Job {job_id} cannot be claimed (status={status})")
        self.status = status


class InvalidJobTransitionError(JobError):
    """A status transition not allowed by the job state machine."""

    def __init__(self, job_id: str, status: str, target: str) -> None:
        super().__init__(
            job_id, f"Job {job_id} cannot move from '{status}' to '{target}'"
        )
        self.status = status
        self.target = target


class JobHandlerError(PCBError):
    """Raised by a job handler with a message safe to show the user."""


class OrphanedJobError(JobError):
    """A job abandoned in a non-terminal state by a dead worker.

    Only produced by the recovery sweep. Its message is what gets stored
    as the job's ``error_message``.
    """

    message = "Server restart - please retry"

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(job_id, self.message)
        self.status = status
