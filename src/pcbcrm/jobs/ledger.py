"""Durable ledger of long-running background jobs.

The ``background_jobs`` table is the only source of truth for job state.
Every transition is a single conditional ``UPDATE ... WHERE status = ...``
so two workers racing for the same job cannot both win, and a terminal
job is never rewritten. When the conditional update matches nothing the
row is re-read only to report why.

State machine::

    pending -> processing -> completed
       |            |
       +------------+-----> failed
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Collection
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pcbcrm.errors import (
    AlreadyClaimedError,
    InvalidJobTransitionError,
    JobNotFoundError,
    OrphanedJobError,
)
from pcbcrm.models.background_job import (
    ACTIVE_JOB_STATUSES,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PENDING,
    JOB_PROCESSING,
    TERMINAL_JOB_STATUSES,
    BackgroundJob,
)
from pcbcrm.models.base import utcnow

logger = logging.getLogger(__name__)

DEFAULT_STALE_THRESHOLD = timedelta(minutes=2)


class JobLedger:
    """Creates, transitions, and recovers background jobs.

    Each operation opens its own session and commits before returning,
    so callers never hold a transaction across a long-running job.

    Args:
        session_factory: Async SQLAlchemy session factory.
        clock: Returns the current aware datetime (injectable for tests).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.session_factory = session_factory
        self._clock = clock

    async def create(self, job_type: str, input: dict[str, Any] | None = None) -> str:
        """Insert a ``pending`` job and return its id."""
        now = self._clock()
        async with self.session_factory() as session:
            job = BackgroundJob(
                job_type=job_type,
                status=JOB_PENDING,
                input=input,
                created_at=now,
                updated_at=now,
            )
            session.add(job)
            await session.commit()
            job_id = job.id
        logger.info("Created %s job %s", job_type, job_id)
        return job_id

    async def get(self, job_id: str) -> BackgroundJob:
        """Return the job row.

        Raises:
            JobNotFoundError: If no job has this id.
        """
        _check_id(job_id)
        async with self.session_factory() as session:
            job = await session.get(BackgroundJob, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def claim(self, job_id: str) -> BackgroundJob:
        """Move a job from ``pending`` to ``processing`` atomically.

        Returns:
            The claimed job.

        Raises:
            AlreadyClaimedError: If the job is not ``pending``; its status is
                left unchanged.
            JobNotFoundError: If no job has this id.
        """
        now = self._clock()
        claimed = await self._transition(
            job_id,
            BackgroundJob.status == JOB_PENDING,
            status=JOB_PROCESSING,
            started_at=now,
            updated_at=now,
        )
        if not claimed:
            status = await self._status_of(job_id)
            raise AlreadyClaimedError(job_id, status)
        logger.info("Claimed job %s", job_id)
        return await self.get(job_id)

    async def complete(self, job_id: str, result: dict[str, Any] | None) -> None:
        """Move a ``processing`` job to ``completed`` and store its result.

        Raises:
            InvalidJobTransitionError: If the job is not ``processing``.
            JobNotFoundError: If no job has this id.
        """
        now = self._clock()
        done = await self._transition(
            job_id,
            BackgroundJob.status == JOB_PROCESSING,
            status=JOB_COMPLETED,
            result=result,
            completed_at=now,
            updated_at=now,
        )
        if not done:
            status = await self._status_of(job_id)
            raise InvalidJobTransitionError(job_id, status, JOB_COMPLETED)
        logger.info("Completed job %s", job_id)

    async def fail(self, job_id: str, error_message: str) -> None:
        """Move a non-terminal job to ``failed`` with a user-facing message.

        Raises:
            InvalidJobTransitionError: If the job is already terminal.
            JobNotFoundError: If no job has this id.
        """
        now = self._clock()
        done = await self._transition(
            job_id,
            BackgroundJob.status.in_(ACTIVE_JOB_STATUSES),
            status=JOB_FAILED,
            error_message=error_message,
            completed_at=now,
            updated_at=now,
        )
        if not done:
            status = await self._status_of(job_id)
            raise InvalidJobTransitionError(job_id, status, JOB_FAILED)
        logger.info("Failed job %s: %s", job_id, error_message)

    async def update_progress(self, job_id: str, progress: dict[str, Any]) -> bool:
        """Record progress for a ``processing`` job.

        Returns:
            False if the job is no longer processing (the update is dropped).
        """
        return await self._transition(
            job_id,
            BackgroundJob.status == JOB_PROCESSING,
            progress=progress,
            updated_at=self._clock(),
        )

    async def recover_stale(
        self,
        threshold: timedelta = DEFAULT_STALE_THRESHOLD,
        exclude: Collection[str] = (),
    ) -> list[str]:
        """Force-fail jobs orphaned by a dead worker.

        A job is orphaned when it is ``pending`` and was created more than
        ``threshold`` ago, or ``processing`` and started more than
        ``threshold`` ago. The threshold must exceed the longest
        legitimate job runtime.

        Jobs in ``exclude`` are skipped: they are owned by a live runner in
        this process, possibly still queued behind other jobs.

        Returns:
            Ids of the jobs that were failed by this sweep.
        """
        cutoff = self._clock() - threshold
        stale = or_(
            and_(BackgroundJob.status == JOB_PENDING, BackgroundJob.created_at < cutoff),
            and_(
                BackgroundJob.status == JOB_PROCESSING,
                BackgroundJob.started_at < cutoff,
            ),
        )

        async with self.session_factory() as session:
            result = await session.execute(
                select(BackgroundJob.id, BackgroundJob.status).where(stale)
            )
            candidates = [row for row in result.all() if row.id not in exclude]

        recovered: list[str] = []
        for job_id, status in candidates:
            orphan = OrphanedJobError(job_id, status)
            now = self._clock()
            # Re-check the predicate so a job that finished meanwhile is kept.
            done = await self._transition(
                job_id,
                stale,
                status=JOB_FAILED,
                error_message=str(orphan),
                completed_at=now,
                updated_at=now,
            )
            if done:
                recovered.append(job_id)
                logger.warning("Recovered orphaned job %s (was %s): %s", job_id, status, orphan)

        if recovered:
            logger.info("Job recovery failed %d orphaned jobs", len(recovered))
        return recovered

    async def purge_finished(self, older_than: timedelta) -> int:
        """Delete terminal jobs that finished more than ``older_than`` ago."""
        cutoff = self._clock() - older_than
        async with self.session_factory() as session:
            result = await session.execute(
                delete(BackgroundJob).where(
                    BackgroundJob.status.in_(TERMINAL_JOB_STATUSES),
                    BackgroundJob.completed_at < cutoff,
                )
            )
            await session.commit()
        if result.rowcount:
            logger.info("Purged %d finished jobs", result.rowcount)
        return result.rowcount

    async def _transition(self, job_id: str, condition: Any, **values: Any) -> bool:
        """Apply ``values`` only if ``condition`` holds; True if a row changed."""
        _check_id(job_id)
        async with self.session_factory() as session:
            result = await session.execute(
                update(BackgroundJob)
                .where(BackgroundJob.id == job_id, condition)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount == 1

    async def _status_of(self, job_id: str) -> str:
        async with self.session_factory() as session:
            status = await session.scalar(
                select(BackgroundJob.status).where(BackgroundJob.id == job_id)
            )
        if status is None:
            raise JobNotFoundError(job_id)
        return status


def _check_id(job_id: str) -> None:
    """Reject ids that are not UUIDs before they reach the database."""
    try:
        uuid.UUID(str(job_id))
    except ValueError:
        raise JobNotFoundError(job_id) from None
