"""PriceDiscovery: Public operations of the price discovery engine.

Wires the fetchers, circuit breakers, validator, aggregator, cache, store
and alert dispatcher together and exposes:

    - get_current_price(commodity, location)
    - get_price_history(commodity, days)
    - get_price_trends(commodity)
    - calculate_price_ranges(commodity, days)
    - subscribe_to_alerts(vendor_id, commodities)

.. code-block:: python

    discovery = PriceDiscovery(sources=["agmarknet"], api_keys={"agmarknet": key})
    snapshot = await discovery.get_current_price("Wheat")
    trends = await discovery.get_price_trends("Wheat")
    await discovery.close()
"""

from __future__ import annotations

import logging
from statistics import mean as _mean

from .AlertDispatcher import (
    DEFAULT_THRESHOLD_PERCENT,
    AlertDispatcher,
    InMemorySubscriptionStore,
    NotificationSink,
    SubscriptionStore,
)
from .AnomalyValidator import AnomalyValidator
from .CacheTier import CacheTier
from .CircuitBreaker import CircuitBreakerRegistry
from .FallbackOrchestrator import FallbackOrchestrator
from .fetchers import BaseFetcher, get_available_fetchers, get_fetcher
from .models import (
    AlertSubscription,
    HistoricalRange,
    HistoryEntry,
    PriceRanges,
    PriceSnapshot,
    TrendResult,
    VolatilityLevel,
)
from .PriceAggregator import PriceAggregator, coefficient_of_variation
from .PriceStore import PriceStore
from .SourceFetchCoordinator import SourceFetchCoordinator
from .TrendAnalyzer import TrendAnalyzer, classify_volatility

logger = logging.getLogger(__name__)

SUPPORTED_COMMODITIES: list[str] = [
    "Rice", "Wheat", "Jowar", "Bajra", "Maize", "Ragi",
    "Arhar", "Moong", "Urad", "Masoor", "Gram",
    "Groundnut", "Sesamum", "Nigerseed", "Safflower", "Sunflower",
    "Soyabean", "Castor seed", "Cotton", "Jute", "Mesta",
    "Sugarcane", "Potato", "Onion", "Turmeric", "Coriander",
    "Garlic", "Ginger", "Chillies",
]

HISTORY_TTL = 3600  # 1 hour
TRENDS_TTL = 1800  # 30 minutes
TREND_WINDOW_DAYS = 30


class PriceDiscovery:
    """Facade over the price discovery components.

    :ivar sources: Enabled source names.
    :ivar fetchers: Dict mapping source names to fetcher instances.
    :ivar breakers: Per-source circuit breakers.
    :ivar cache: Snapshot and auxiliary cache.
    :ivar store: Persistent store, or None.
    :ivar orchestrator: Current-price fallback chain.
    :ivar analyzer: Trend analyzer.
    :ivar dispatcher: Alert dispatcher.
    """

    def __init__(
        self,
        sources: list[str] | None = None,
        api_keys: dict[str, str] | None = None,
        cache: CacheTier | None = None,
        store: PriceStore | None = None,
        subscriptions: SubscriptionStore | None = None,
        sink: NotificationSink | None = None,
        fetchers: dict[str, BaseFetcher] | None = None,
        request_timeout: float | None = None,
        fetch_timeout: float = 5.0,
        overall_timeout: float = 8.0,
        retry_count: int = 2,
        retry_delay: float = 1.0,
        max_deviation: float = AnomalyValidator.DEFAULT_MAX_DEVIATION,
        alert_threshold: float = FallbackOrchestrator.ALERT_THRESHOLD,
    ) -> None:
        """Initialize the engine.

        :param sources: Source names to enable (default: all registered).
        :param api_keys: Dict mapping source names to API keys.
        :param cache: Cache tier (in-memory if omitted).
        :param store: Persistent store (database fallback disabled if omitted).
        :param subscriptions: Alert subscription store (the store itself when
            it implements SubscriptionStore, else in-memory).
        :param sink: Alert notification channel (logging if omitted).
        :param fetchers: Pre-built fetchers; overrides sources/api_keys.
        :param request_timeout: HTTP timeout passed to each fetcher.
        :param fetch_timeout: Per-attempt source timeout (default: 5.0).
        :param overall_timeout: Fan-out timeout (default: 8.0).
        :param retry_count: Retries per source (default: 2).
        :param retry_delay: Base retry backoff (default: 1.0).
        :param max_deviation: Anomaly threshold (default: 0.25).
        :param alert_threshold: Volatility alert threshold (default: 0.10).
        :raises ValueError: If an unknown source is requested.
        """
        self.api_keys = api_keys or {}

        if fetchers is None:
            available = get_available_fetchers()
            sources = available if sources is None else sources
            invalid = [s for s in sources if s not in available]
            if invalid:
                raise ValueError(f"Unknown sources: {invalid}. Available: {available}")
            fetchers = {
                source: get_fetcher(
                    source, api_key=self.api_keys.get(source), timeout=request_timeout
                )
                for source in sources
            }
        self.fetchers = fetchers
        self.sources = list(fetchers)

        self.breakers = CircuitBreakerRegistry(self.sources)
        self.cache = cache or CacheTier()
        self.store = store

        if subscriptions is None:
            if isinstance(store, SubscriptionStore):
                subscriptions = store
            else:
                subscriptions = InMemorySubscriptionStore()
        self.subscriptions = subscriptions
        self.dispatcher = AlertDispatcher(subscriptions, sink)
        self.alert_threshold = alert_threshold

        coordinator = SourceFetchCoordinator(
            fetchers=self.fetchers,
            breakers=self.breakers,
            fetch_timeout=fetch_timeout,
            overall_timeout=overall_timeout,
            retry_count=retry_count,
            retry_delay=retry_delay,
        )
        self.orchestrator = FallbackOrchestrator(
            coordinator=coordinator,
            validator=AnomalyValidator(max_deviation),
            aggregator=PriceAggregator(),
            cache=self.cache,
            store=store,
            dispatcher=self.dispatcher,
            alert_threshold=alert_threshold,
        )
        self.analyzer = TrendAnalyzer()

        logger.info(
            f"PriceDiscovery initialized: sources={self.sources}, "
            f"store={'enabled' if store is not None else 'disabled'}"
        )

    @property
    def supported_commodities(self) -> list[str]:
        """Commodities known to the upstream data sources."""
        return list(SUPPORTED_COMMODITIES)

    async def get_current_price(
        self, commodity: str, location: str | None = None
    ) -> PriceSnapshot:
        """Get the current price snapshot.

        :raises DataUnavailableError: If no source, store or cache can answer.
        """
        return await self.orchestrator.get_current_price(commodity, location)

    async def get_price_history(self, commodity: str, days: int = 30) -> list[HistoryEntry]:
        """Get up to ``days`` days of history, newest first.

        Store failures are logged and yield an empty list.
        """
        key = CacheTier.history_key(commodity, days)
        cached = await self.cache.get_json(key)
        if isinstance(cached, list):
            try:
                return [HistoryEntry.from_dict(item) for item in cached]
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding corrupt history cache for {commodity}: {e}")

        if self.store is None:
            return []
        try:
            history = await self.store.query_range(commodity, days)
        except Exception as e:
            logger.error(f"Failed to load price history for {commodity}: {e}")
            return []

        if history:
            await self.cache.set_json(key, [h.to_dict() for h in history], HISTORY_TTL)
        return history

    async def get_price_trends(self, commodity: str) -> TrendResult:
        """Analyze the last 30 days of history for a commodity."""
        key = CacheTier.trends_key(commodity)
        cached = await self.cache.get_json(key)
        if isinstance(cached, dict):
            try:
                return TrendResult.from_dict(cached)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Discarding corrupt trends cache for {commodity}: {e}")

        history = await self.get_price_history(commodity, TREND_WINDOW_DAYS)
        result = self.analyzer.analyze_trend(commodity, history)
        await self.cache.set_json(key, result.to_dict(), TRENDS_TTL)

        if result.volatility >= self.alert_threshold:
            logger.warning(
                f"High volatility detected for {commodity}: {result.volatility * 100:.1f}%"
            )
            self.orchestrator.schedule_alert(commodity, result.volatility)
        return result

    async def calculate_price_ranges(self, commodity: str, days: int = 30) -> PriceRanges:
        """Compare the current price range with the historical one.

        :raises DataUnavailableError: If there is no current price.
        """
        snapshot = await self.get_current_price(commodity)
        current = snapshot.price_range

        history = await self.get_price_history(commodity, days)
        prices = [h.price for h in history]
        if not prices:
            return PriceRanges(
                current=current,
                historical=HistoricalRange(
                    min=current.min, max=current.max, average=current.modal
                ),
                volatility_level=VolatilityLevel.LOW,
            )

        return PriceRanges(
            current=current,
            historical=HistoricalRange(
                min=min(prices), max=max(prices), average=round(_mean(prices), 2)
            ),
            volatility_level=classify_volatility(coefficient_of_variation(prices)),
        )

    async def subscribe_to_alerts(
        self, vendor_id: str, commodities: list[str]
    ) -> list[AlertSubscription]:
        """Replace a vendor's alert subscriptions.

        :param vendor_id: Vendor identifier.
        :param commodities: Commodities to watch; an empty list unsubscribes.
        :returns: The stored subscriptions.
        """
        unique = list(dict.fromkeys(c.strip() for c in commodities if c.strip()))
        subscriptions = [
            AlertSubscription(
                vendor_id=vendor_id,
                commodity=commodity,
                threshold_percent=DEFAULT_THRESHOLD_PERCENT,
            )
            for commodity in unique
        ]
        await self.subscriptions.replace_subscriptions(vendor_id, subscriptions)
        logger.info(f"Vendor {vendor_id} subscribed to alerts for {unique}")
        return subscriptions

    async def close(self) -> None:
        """Deliver pending alerts, then release the HTTP client, cache and store."""
        await self.orchestrator.wait_for_alerts()
        await BaseFetcher.close_shared_client()
        await self.cache.close()
        if self.store is not None:
            await self.store.close()
