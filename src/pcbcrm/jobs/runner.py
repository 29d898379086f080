"""In-process executor for background jobs recorded in the ledger.

Jobs are created through :meth:`JobRunner.submit`, which writes the
``pending`` row first and then schedules execution on the event loop.
A handler only runs after the runner has won the atomic claim, so a job
picked up by two runners executes once. The ledger row is the only state
that survives a restart; anything lost in flight is force-failed later
by :class:`~pcbcrm.jobs.recovery.JobRecoveryLoop`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pcbcrm.errors import AlreadyClaimedError, JobError, JobHandlerError
from pcbcrm.jobs.ledger import JobLedger

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[dict[str, Any]], Awaitable[None]]
JobHandler = Callable[[dict[str, Any], ProgressCallback], Awaitable[dict[str, Any]]]

GENERIC_FAILURE = "Processing failed - please retry"
SHUTDOWN_FAILURE = "Server shutting down - please retry"


class JobRunner:
    """Runs registered job handlers with bounded concurrency and a timeout.

    Args:
        ledger: Ledger that owns the job rows.
        max_concurrent: Maximum number of handlers running at once.
        timeout: Seconds a handler may run before the job is failed.
    """

    def __init__(
        self,
        ledger: JobLedger,
        max_concurrent: int = 2,
        timeout: float = 90.0,
    ) -> None:
        self.ledger = ledger
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self._handlers: dict[str, JobHandler] = {}
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._tasks: set[asyncio.Task[None]] = set()
        self._held: set[str] = set()

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler
        logger.debug("Registered handler for %s jobs", job_type)

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    @property
    def active(self) -> int:
        return len(self._tasks)

    @property
    def held_ids(self) -> frozenset[str]:
        """Ids of jobs scheduled here and not yet finished, queued or running."""
        return frozenset(self._held)

    async def submit(self, job_type: str, input: dict[str, Any] | None = None) -> str:
        """Record a new job and schedule it.

        Returns:
            The id of the ``pending`` job.

        Raises:
            ValueError: If no handler is registered for ``job_type``.
        """
        if job_type not in self._handlers:
            raise ValueError(
                f"Unknown job type '{job_type}'. Allowed: {', '.join(self.job_types)}"
            )
        job_id = await self.ledger.create(job_type, input)
        self.schedule(job_id)
        return job_id

    def schedule(self, job_id: str) -> asyncio.Task[None]:
        """Run an existing job in the background."""
        task = asyncio.create_task(self._run(job_id))
        self._tasks.add(task)
        self._held.add(job_id)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(lambda _: self._held.discard(job_id))
        return task

    async def drain(self) -> None:
        """Wait for every scheduled job to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Cancel running jobs; each is failed with a retry message."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Job runner stopped (%d jobs cancelled)", len(tasks))

    async def _run(self, job_id: str) -> None:
        async with self._semaphore:
            try:
                job = await self.ledger.claim(job_id)
            except AlreadyClaimedError as exc:
                logger.info("Skipping job %s: claimed elsewhere (%s)", job_id, exc.status)
                return

            handler = self._handlers.get(job.job_type)
            if handler is None:
                await self._fail(job_id, f"No handler for job type '{job.job_type}'")
                return

            async def report(progress: dict[str, Any]) -> None:
                await self.ledger.update_progress(job_id, progress)

            try:
                result = await asyncio.wait_for(handler(job.input or {}, report), self.timeout)
            except asyncio.TimeoutError:
                logger.warning("Job %s timed out after %ss", job_id, self.timeout)
                await self._fail(job_id, "Processing timed out - please retry")
            except asyncio.CancelledError:
                await self._fail(job_id, SHUTDOWN_FAILURE)
                raise
            except JobHandlerError as exc:
                logger.warning("Job %s failed: %s", job_id, exc)
                await self._fail(job_id, str(exc))
            except Exception:
                logger.exception("Job %s handler crashed", job_id)
                await self._fail(job_id, GENERIC_FAILURE)
            else:
                try:
                    await self.ledger.complete(job_id, result)
                except JobError:
                    # Recovery swept the job while the handler was finishing.
                    logger.warning("Could not complete job %s", job_id, exc_info=True)

    async def _fail(self, job_id: str, message: str) -> None:
        try:
            await self.ledger.fail(job_id, message)
        except JobError:
            logger.warning("Could not fail job %s", job_id, exc_info=True)
