"""RefreshScheduler: Periodic cache warming during market hours."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from .errors import PriceDiscoveryError

if TYPE_CHECKING:
    from .models import PriceSnapshot
    from .PriceDiscovery import PriceDiscovery

logger = logging.getLogger(__name__)


class RefreshScheduler:
    """Refreshes current prices for a set of commodities on a fixed period.

    :ivar discovery: Engine used for the lookups.
    :ivar commodities: Commodities to refresh.
    :ivar refresh_period: Seconds between rounds.
    :ivar market_hours: (open, close) local hours, both inclusive.
    :ivar pause: Seconds between consecutive commodities.
    """

    def __init__(
        self,
        discovery: PriceDiscovery,
        commodities: list[str],
        refresh_period: float = 900,
        market_hours: tuple[int, int] = (9, 18),
        pause: float = 1.0,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        """Initialize the scheduler.

        :raises ValueError: If the period or market hours are invalid.
        """
        if refresh_period <= 0:
            raise ValueError("refresh_period must be positive")
        start, end = market_hours
        if not (0 <= start <= end <= 23):
            raise ValueError("market_hours must satisfy 0 <= open <= close <= 23")

        self.discovery = discovery
        self.commodities = commodities
        self.refresh_period = refresh_period
        self.market_hours = market_hours
        self.pause = pause
        self._clock = clock
        self._stop = asyncio.Event()

    def in_market_hours(self, now: datetime | None = None) -> bool:
        now = now or self._clock()
        start, end = self.market_hours
        return start <= now.hour <= end

    async def refresh_all(self) -> dict[str, PriceSnapshot | None]:
        """Refresh every commodity once; failures are logged and yield None."""
        results: dict[str, PriceSnapshot | None] = {}
        for i, commodity in enumerate(self.commodities):
            if self._stop.is_set():
                break
            try:
                results[commodity] = await self.discovery.get_current_price(commodity)
            except PriceDiscoveryError as e:
                logger.warning(f"Refresh failed for {commodity}: {e}")
                results[commodity] = None
            except Exception as e:
                logger.error(f"Unexpected error refreshing {commodity}: {e!r}")
                results[commodity] = None
            if i < len(self.commodities) - 1 and self.pause > 0:
                await self._sleep(self.pause)

        refreshed = sum(1 for s in results.values() if s is not None)
        logger.info(f"Refreshed {refreshed}/{len(self.commodities)} commodities")
        return results

    async def run(self) -> None:
        """Run refresh rounds until stop() is called."""
        logger.info(
            f"Refresh loop started: {len(self.commodities)} commodities every "
            f"{self.refresh_period}s, hours {self.market_hours[0]}-{self.market_hours[1]}"
        )
        while not self._stop.is_set():
            if self.in_market_hours():
                await self.refresh_all()
            else:
                logger.debug("Outside market hours, skipping refresh")
            await self._sleep(self.refresh_period)
        logger.info("Refresh loop stopped")

    def stop(self) -> None:
        """Stop the loop, interrupting any pending sleep."""
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
