"""FallbackOrchestrator: Resilient current-price lookup.

Strategies, tried in order until one produces a snapshot:
    1. Fresh cache entry (age <= 4h)
    2. Live fetch from all sources -> validate -> aggregate, written through
       to the cache and the persistent store
    3. Latest persistent store record, tagged with the "database" source
    4. Stale-but-usable cache entry (4h < age <= 48h), flagged stale
    5. DataUnavailableError

Per-source failures, cache failures, store failures and alert failures are
all absorbed here. Alerts run as background tasks and never delay the
lookup. Only DataUnavailableError reaches the caller.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import time
import warnings
from typing import TYPE_CHECKING

from .AnomalyValidator import AnomalyValidator
from .CacheTier import CacheTier
from .errors import DataUnavailableError, NoObservationsError, StaleCacheUsed
from .PriceAggregator import PriceAggregator

if TYPE_CHECKING:
    from .AlertDispatcher import AlertDispatcher
    from .models import PriceSnapshot
    from .PriceStore import PriceStore
    from .SourceFetchCoordinator import SourceFetchCoordinator

logger = logging.getLogger(__name__)


class FallbackOrchestrator:
    """Serves the best available snapshot for a commodity.

    :ivar coordinator: Source fan-out.
    :ivar validator: Structural and anomaly checks.
    :ivar aggregator: Observation merge.
    :ivar cache: Snapshot cache.
    :ivar store: Persistent store, or None to skip the database fallback.
    :ivar dispatcher: Alert dispatcher, or None to disable alerts.
    :ivar alert_threshold: Volatility at or above which alerts are sent.
    :ivar slow_threshold: Seconds after which a lookup is logged as slow.
    :ivar history_days: Days of stored history used as anomaly reference.
    """

    ALERT_THRESHOLD = 0.10
    SLOW_THRESHOLD = 3.0
    HISTORY_DAYS = 7

    def __init__(
        self,
        coordinator: SourceFetchCoordinator,
        validator: AnomalyValidator | None = None,
        aggregator: PriceAggregator | None = None,
        cache: CacheTier | None = None,
        store: PriceStore | None = None,
        dispatcher: AlertDispatcher | None = None,
        alert_threshold: float = ALERT_THRESHOLD,
        slow_threshold: float = SLOW_THRESHOLD,
        history_days: int = HISTORY_DAYS,
    ) -> None:
        self.coordinator = coordinator
        self.validator = validator or AnomalyValidator()
        self.aggregator = aggregator or PriceAggregator()
        self.cache = cache or CacheTier()
        self.store = store
        self.dispatcher = dispatcher
        self.alert_threshold = alert_threshold
        self.slow_threshold = slow_threshold
        self.history_days = history_days
        self._alert_tasks: set[asyncio.Task] = set()

    async def get_current_price(
        self, commodity: str, location: str | None = None
    ) -> PriceSnapshot:
        """Get the current snapshot for a commodity.

        :param commodity: Commodity name.
        :param location: Optional market filter.
        :returns: Fresh, live, database-backed or stale snapshot.
        :raises DataUnavailableError: If every strategy failed.
        """
        started = time.monotonic()
        try:
            return await self._resolve(commodity, location)
        finally:
            elapsed = time.monotonic() - started
            if elapsed > self.slow_threshold:
                logger.warning(
                    f"Slow price lookup for {commodity}: {elapsed:.2f}s "
                    f"(threshold {self.slow_threshold:.1f}s)"
                )

    async def _resolve(self, commodity: str, location: str | None) -> PriceSnapshot:
        key = CacheTier.price_key(commodity, location)

        lookup = await self.cache.get(key)
        if lookup.fresh and lookup.snapshot is not None:
            logger.debug(f"{commodity}: served from cache (age {lookup.age:.0f}s)")
            return lookup.snapshot

        snapshot = await self._from_sources(commodity, location)
        if snapshot is not None:
            await self.cache.set(key, snapshot)
            await self._persist(snapshot)
            self._maybe_alert(snapshot)
            return snapshot

        snapshot = await self._from_store(commodity)
        if snapshot is not None:
            logger.info(f"{commodity}: live sources unavailable, served from database")
            return snapshot

        if lookup.stale and lookup.snapshot is not None:
            message = (
                f"{commodity}: serving stale cache entry "
                f"({lookup.age / 3600:.1f}h old)"
            )
            logger.warning(message)
            warnings.warn(message, StaleCacheUsed, stacklevel=3)
            return lookup.snapshot.as_stale()

        logger.error(f"No price data available for {commodity}")
        raise DataUnavailableError(commodity, location)

    async def _from_sources(
        self, commodity: str, location: str | None
    ) -> PriceSnapshot | None:
        """Fetch, validate and aggregate live observations."""
        by_source = await self.coordinator.fetch_all(commodity, location)
        observations = [obs for batch in by_source.values() for obs in batch]
        if not observations:
            return None

        historical = await self._reference_history(commodity)
        report = self.validator.filter(observations, historical)
        try:
            snapshot = self.aggregator.aggregate(
                report.accepted,
                commodity=commodity,
                location=location,
                low_confidence=report.low_confidence,
            )
        except NoObservationsError:
            logger.warning(f"{commodity}: no valid observations from {sorted(by_source)}")
            return None

        if not self.validator.validate_snapshot(snapshot):
            logger.warning(f"{commodity}: aggregated snapshot failed validation")
            return None

        logger.info(
            f"{commodity}: {snapshot.current_price} from {', '.join(snapshot.sources)} "
            f"(volatility {snapshot.volatility:.4f})"
        )
        return snapshot

    async def _reference_history(self, commodity: str) -> list[float]:
        if self.store is None:
            return []
        try:
            history = await self.store.query_range(commodity, self.history_days)
        except Exception as e:
            logger.warning(f"{commodity}: history lookup failed, using sibling sources: {e}")
            return []
        return [entry.price for entry in history]

    async def _persist(self, snapshot: PriceSnapshot) -> None:
        if self.store is None:
            return
        try:
            await self.store.insert_or_update_snapshot(snapshot)
        except Exception as e:
            logger.error(f"Failed to store {snapshot.commodity} snapshot: {e}")

    async def _from_store(self, commodity: str) -> PriceSnapshot | None:
        if self.store is None:
            return None
        try:
            record = await self.store.query_latest(commodity)
        except Exception as e:
            logger.error(f"Database fallback failed for {commodity}: {e}")
            return None
        if record is None:
            return None
        snapshot = record.to_snapshot()
        if not self.validator.validate_snapshot(snapshot):
            logger.warning(f"{commodity}: latest database record is invalid")
            return None
        return snapshot

    def _maybe_alert(self, snapshot: PriceSnapshot) -> None:
        if self.dispatcher is None or snapshot.volatility < self.alert_threshold:
            return
        logger.warning(
            f"High volatility detected for {snapshot.commodity}: "
            f"{snapshot.volatility * 100:.1f}%"
        )
        self.schedule_alert(snapshot.commodity, snapshot.volatility)

    def schedule_alert(self, commodity: str, volatility: float) -> asyncio.Task | None:
        """Dispatch an alert in the background without blocking the caller.

        :param commodity: Commodity whose price moved.
        :param volatility: Volatility as a fraction.
        :returns: The dispatch task, or None if alerts are disabled.
        """
        if self.dispatcher is None:
            return None
        task = asyncio.create_task(
            self.dispatcher.dispatch(commodity, volatility),
            name=f"alert-{commodity}",
        )
        self._alert_tasks.add(task)
        task.add_done_callback(functools.partial(self._alert_done, commodity))
        return task

    def _alert_done(self, commodity: str, task: asyncio.Task) -> None:
        self._alert_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Alert dispatch failed for {commodity}: {exc}")

    async def wait_for_alerts(self) -> None:
        """Wait until every scheduled alert dispatch has finished."""
        while self._alert_tasks:
            await asyncio.gather(*self._alert_tasks, return_exceptions=True)
