"""Periodic sweep that fails orphaned jobs and purges old finished ones."""

from __future__ import annotations

import logging
from datetime import timedelta

from pcbcrm.jobs.ledger import JobLedger
from pcbcrm.jobs.runner import JobRunner
from pcbcrm.services.periodic import PeriodicLoop

logger = logging.getLogger(__name__)


class JobRecoveryLoop(PeriodicLoop):
    """Runs :meth:`JobLedger.recover_stale` at startup and then periodically.

    The first cycle runs as soon as the loop starts, which is what cleans
    up jobs left behind by a previous process. Jobs still held by this
    process's runner are never treated as orphaned, however long they
    have been queued.

    Args:
        ledger: The job ledger.
        runner: This process's job runner, if any.
        interval: Seconds between sweeps.
        stale_threshold: Seconds after which a non-terminal job is orphaned.
        retention: Seconds finished jobs are kept before being purged.
    """

    name = "job recovery loop"

    def __init__(
        self,
        ledger: JobLedger,
        runner: JobRunner | None = None,
        interval: float = 60,
        stale_threshold: float = 120,
        retention: float = 3600,
    ) -> None:
        super().__init__(interval)
        self.ledger = ledger
        self.runner = runner
        self.stale_threshold = timedelta(seconds=stale_threshold)
        self.retention = timedelta(seconds=retention)

    async def run_once(self) -> None:
        held = self.runner.held_ids if self.runner is not None else frozenset()
        recovered = await self.ledger.recover_stale(self.stale_threshold, exclude=held)
        purged = await self.ledger.purge_finished(self.retention)
        if recovered or purged:
            logger.info(
                "Job recovery cycle: %d orphaned jobs failed, %d finished jobs purged",
                len(recovered),
                purged,
            )
