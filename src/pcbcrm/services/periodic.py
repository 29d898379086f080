"""Base class for asyncio background loops owned by the app lifespan."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod

logger = logging.getLogger(__name__)


class PeriodicLoop(ABC):
    """Runs :meth:`run_once` every ``interval`` seconds until stopped.

    The first cycle runs immediately on :meth:`start`. A failing cycle
    is logged and the loop keeps going; only :meth:`stop` ends it.

    Args:
        interval: Seconds to sleep between cycles.
    """

    name: str = "periodic loop"

    def __init__(self, interval: float) -> None:
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background task."""
        self._task = asyncio.create_task(self._run_loop())
        logger.info("%s started (interval=%ss)", self.name.capitalize(), self.interval)

    async def stop(self) -> None:
        """Cancel and await the background task."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("%s stopped", self.name.capitalize())

    async def _run_loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("%s cycle failed", self.name.capitalize())
            await asyncio.sleep(self.interval)

    @abstractmethod
    async def run_once(self) -> None:
        """Run one cycle."""
        ...
