import logging

from pcbcrm.cache.tiered import TieredCache
from pcbcrm.services.periodic import PeriodicLoop

logger = logging.getLogger(__name__)


class CacheSweepLoop(PeriodicLoop):
    """Periodically drops expired entries so they stop holding memory."""

    name = "cache sweep loop"

    def __init__(self, cache: TieredCache, interval: float = 300) -> None:
        super().__init__(interval)
        self.cache = cache

    async def run_once(self) -> None:
        removed = self.cache.cleanup()
        if removed:
            logger.info("Swept %d expired cache entries (%d remain)", removed, len(self.cache))
