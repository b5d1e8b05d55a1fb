"""Unit tests for FallbackOrchestrator."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mandi.src.CacheTier import CacheTier
from mandi.src.errors import DataUnavailableError, StaleCacheUsed
from mandi.src.FallbackOrchestrator import FallbackOrchestrator
from mandi.src.PriceStore import InMemoryPriceStore


def make_coordinator(results=None):
    coordinator = MagicMock()
    coordinator.fetch_all = AsyncMock(return_value=results or {})
    return coordinator


@pytest.fixture
def store():
    return InMemoryPriceStore()


@pytest.fixture
def dispatcher():
    dispatcher = MagicMock()
    dispatcher.dispatch = AsyncMock(return_value=[])
    return dispatcher


class TestFreshCache:
    """Step 1: fresh cache entries short-circuit everything."""

    @pytest.mark.asyncio
    async def test_fresh_cache_hit(self, make_snapshot, store) -> None:
        cache = CacheTier()
        cached = make_snapshot(1999.0)
        await cache.set(CacheTier.price_key("Wheat"), cached)
        coordinator = make_coordinator()

        orchestrator = FallbackOrchestrator(coordinator, cache=cache, store=store)
        snapshot = await orchestrator.get_current_price("Wheat")

        assert snapshot == cached
        coordinator.fetch_all.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_location_uses_its_own_key(self, make_snapshot) -> None:
        cache = CacheTier()
        await cache.set(CacheTier.price_key("Wheat", "Khanna"), make_snapshot(2100.0))
        orchestrator = FallbackOrchestrator(make_coordinator(), cache=cache)

        snapshot = await orchestrator.get_current_price("Wheat", "Khanna")
        assert snapshot.current_price == 2100.0

        with pytest.raises(DataUnavailableError, match="No price data available for Wheat"):
            await orchestrator.get_current_price("Wheat")


class TestLiveSources:
    """Step 2: live fetch, validate, aggregate, write through."""

    @pytest.mark.asyncio
    async def test_live_snapshot_written_through(self, make_observation, store) -> None:
        coordinator = make_coordinator(
            {
                "agmarknet": [make_observation(1950, source="agmarknet")],
                "datagov": [make_observation(2000, source="datagov")],
                "enam": [make_observation(2050, source="enam")],
            }
        )
        cache = CacheTier()
        orchestrator = FallbackOrchestrator(coordinator, cache=cache, store=store)

        snapshot = await orchestrator.get_current_price("Wheat")

        assert snapshot.current_price == 2000.0
        assert snapshot.sources == ["agmarknet", "datagov", "enam"]
        assert not snapshot.stale

        cached = await cache.get(CacheTier.price_key("Wheat"))
        assert cached.fresh and cached.snapshot == snapshot

        latest = await store.query_latest("Wheat")
        assert latest is not None and latest.modal_price == 2000.0

    @pytest.mark.asyncio
    async def test_anomaly_excluded_against_history(
        self, make_observation, make_record, store
    ) -> None:
        """Stored history is the anomaly reference for live observations."""
        for day, price in enumerate([2000, 2050, 1980, 2100, 1990, 2040, 2010], start=1):
            store.add_record(make_record(price, days_ago=day))
        coordinator = make_coordinator(
            {
                "agmarknet": [make_observation(2020, source="agmarknet")],
                "datagov": [make_observation(2700, source="datagov")],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, store=store)

        snapshot = await orchestrator.get_current_price("Wheat")
        assert snapshot.sources == ["agmarknet"]
        assert snapshot.current_price == 2020.0

    @pytest.mark.asyncio
    async def test_all_anomalous_is_low_confidence(self, make_observation, make_record, store) -> None:
        store.add_record(make_record(1000, days_ago=1))
        coordinator = make_coordinator(
            {
                "agmarknet": [make_observation(2000, source="agmarknet")],
                "datagov": [make_observation(2100, source="datagov")],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, store=store)

        snapshot = await orchestrator.get_current_price("Wheat")
        assert snapshot.low_confidence
        assert snapshot.current_price == 2050.0

    @pytest.mark.asyncio
    async def test_store_failures_do_not_fail_request(self, make_observation, caplog) -> None:
        store = MagicMock()
        store.query_range = AsyncMock(side_effect=RuntimeError("db locked"))
        store.insert_or_update_snapshot = AsyncMock(side_effect=RuntimeError("db locked"))
        coordinator = make_coordinator({"a": [make_observation(2000, source="a")]})
        orchestrator = FallbackOrchestrator(coordinator, store=store)

        snapshot = await orchestrator.get_current_price("Wheat")
        assert snapshot.current_price == 2000.0
        assert "Failed to store Wheat snapshot" in caplog.text


class TestDatabaseFallback:
    """Step 3: latest stored record."""

    @pytest.mark.asyncio
    async def test_database_record_served(self, make_record, store) -> None:
        store.add_record(make_record(1800.0, days_ago=2))
        store.add_record(make_record(1850.0, days_ago=1))
        orchestrator = FallbackOrchestrator(make_coordinator(), store=store)

        snapshot = await orchestrator.get_current_price("Wheat")

        assert snapshot.current_price == 1850.0
        assert snapshot.sources == ["database"]
        assert not snapshot.stale

    @pytest.mark.asyncio
    async def test_database_preferred_over_stale_cache(
        self, make_record, make_snapshot, store
    ) -> None:
        cache = CacheTier()
        with patch("mandi.src.CacheTier.time.time", return_value=1000.0):
            await cache.set(CacheTier.price_key("Wheat"), make_snapshot(1700.0))
        store.add_record(make_record(1850.0))
        orchestrator = FallbackOrchestrator(make_coordinator(), cache=cache, store=store)

        with patch("mandi.src.CacheTier.time.time", return_value=1000.0 + 5 * 3600):
            snapshot = await orchestrator.get_current_price("Wheat")
        assert snapshot.sources == ["database"]


class TestStaleCache:
    """Step 4: stale-but-usable cache."""

    @pytest.mark.asyncio
    async def test_stale_entry_flagged(self, make_snapshot, store, caplog) -> None:
        cache = CacheTier()
        cached = make_snapshot(1750.0)
        with patch("mandi.src.CacheTier.time.time", return_value=1000.0):
            await cache.set(CacheTier.price_key("Wheat"), cached)
        orchestrator = FallbackOrchestrator(make_coordinator(), cache=cache, store=store)

        with patch("mandi.src.CacheTier.time.time", return_value=1000.0 + 5 * 3600):
            with pytest.warns(StaleCacheUsed):
                snapshot = await orchestrator.get_current_price("Wheat")

        assert snapshot.stale
        assert snapshot.current_price == 1750.0
        assert "serving stale cache entry" in caplog.text

    @pytest.mark.asyncio
    async def test_expired_entry_unavailable(self, make_snapshot, store) -> None:
        cache = CacheTier()
        with patch("mandi.src.CacheTier.time.time", return_value=1000.0):
            await cache.set(CacheTier.price_key("Wheat"), make_snapshot())
        orchestrator = FallbackOrchestrator(make_coordinator(), cache=cache, store=store)

        with patch("mandi.src.CacheTier.time.time", return_value=1000.0 + 49 * 3600):
            with pytest.raises(DataUnavailableError):
                await orchestrator.get_current_price("Wheat")


class TestUnavailable:
    """Step 5: everything failed."""

    @pytest.mark.asyncio
    async def test_raises_data_unavailable(self) -> None:
        orchestrator = FallbackOrchestrator(make_coordinator())
        with pytest.raises(DataUnavailableError) as exc_info:
            await orchestrator.get_current_price("Ragi", "Mysuru")
        assert exc_info.value.commodity == "Ragi"
        assert exc_info.value.location == "Mysuru"

    @pytest.mark.asyncio
    async def test_store_lookup_error_absorbed(self) -> None:
        store = MagicMock()
        store.query_latest = AsyncMock(side_effect=RuntimeError("db down"))
        orchestrator = FallbackOrchestrator(make_coordinator(), store=store)
        with pytest.raises(DataUnavailableError):
            await orchestrator.get_current_price("Wheat")


class TestAlerts:
    """Volatility alerts on live snapshots."""

    @pytest.mark.asyncio
    async def test_high_volatility_dispatches(self, make_observation, dispatcher) -> None:
        coordinator = make_coordinator(
            {
                "a": [make_observation(1700, source="a", spread=10)],
                "b": [make_observation(2000, source="b", spread=10)],
                "c": [make_observation(2300, source="c", spread=10)],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, dispatcher=dispatcher)

        snapshot = await orchestrator.get_current_price("Onion")

        assert snapshot.volatility >= 0.10
        await orchestrator.wait_for_alerts()
        dispatcher.dispatch.assert_awaited_once_with("Onion", snapshot.volatility)

    @pytest.mark.asyncio
    async def test_low_volatility_does_not_dispatch(self, make_observation, dispatcher) -> None:
        coordinator = make_coordinator(
            {
                "a": [make_observation(1950, source="a")],
                "b": [make_observation(2050, source="b")],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, dispatcher=dispatcher)

        await orchestrator.get_current_price("Wheat")
        await orchestrator.wait_for_alerts()
        dispatcher.dispatch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dispatch_failure_is_logged(self, make_observation, dispatcher, caplog) -> None:
        dispatcher.dispatch = AsyncMock(side_effect=RuntimeError("smtp down"))
        coordinator = make_coordinator(
            {
                "a": [make_observation(1700, source="a", spread=10)],
                "b": [make_observation(2300, source="b", spread=10)],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, dispatcher=dispatcher)

        snapshot = await orchestrator.get_current_price("Onion")
        assert snapshot.current_price == 2000.0
        await orchestrator.wait_for_alerts()
        assert "Alert dispatch failed for Onion" in caplog.text

    @pytest.mark.asyncio
    async def test_slow_dispatch_does_not_delay_lookup(self, make_observation, dispatcher) -> None:
        delivered = asyncio.Event()

        async def slow_dispatch(commodity, volatility):
            await asyncio.sleep(1.0)
            delivered.set()
            return []

        dispatcher.dispatch = AsyncMock(side_effect=slow_dispatch)
        coordinator = make_coordinator(
            {
                "a": [make_observation(1700, source="a", spread=10)],
                "b": [make_observation(2300, source="b", spread=10)],
            }
        )
        orchestrator = FallbackOrchestrator(coordinator, dispatcher=dispatcher)

        loop = asyncio.get_running_loop()
        started = loop.time()
        await orchestrator.get_current_price("Onion")

        assert loop.time() - started < 0.5
        assert not delivered.is_set()

        await orchestrator.wait_for_alerts()
        assert delivered.is_set()
        dispatcher.dispatch.assert_awaited_once()


class TestSlowLookup:
    """Slow lookups are logged."""

    @pytest.mark.asyncio
    async def test_slow_warning(self, make_snapshot, caplog) -> None:
        cache = CacheTier()
        await cache.set(CacheTier.price_key("Wheat"), make_snapshot())
        orchestrator = FallbackOrchestrator(make_coordinator(), cache=cache)

        with patch("mandi.src.FallbackOrchestrator.time") as mock_time:
            mock_time.monotonic.side_effect = [0.0, 3.5]
            await orchestrator.get_current_price("Wheat")
        assert "Slow price lookup for Wheat" in caplog.text
