"""Unit tests for RefreshScheduler."""

import asyncio
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from mandi.src.errors import DataUnavailableError
from mandi.src.RefreshScheduler import RefreshScheduler


def clock_at(hour: int):
    return lambda: datetime(2026, 10, 19, hour, 30)


@pytest.fixture
def discovery(make_snapshot):
    discovery = MagicMock()
    discovery.get_current_price = AsyncMock(return_value=make_snapshot())
    return discovery


class TestRefreshSchedulerInit:
    """Test scheduler configuration."""

    def test_defaults(self, discovery) -> None:
        scheduler = RefreshScheduler(discovery, ["Wheat"])
        assert scheduler.refresh_period == 900
        assert scheduler.market_hours == (9, 18)

    def test_invalid_settings(self, discovery) -> None:
        with pytest.raises(ValueError, match="refresh_period must be positive"):
            RefreshScheduler(discovery, ["Wheat"], refresh_period=0)
        with pytest.raises(ValueError, match="market_hours"):
            RefreshScheduler(discovery, ["Wheat"], market_hours=(18, 9))
        with pytest.raises(ValueError, match="market_hours"):
            RefreshScheduler(discovery, ["Wheat"], market_hours=(9, 24))


class TestMarketHours:
    """Test the operating window."""

    @pytest.mark.parametrize(
        "hour,expected", [(8, False), (9, True), (13, True), (18, True), (19, False)]
    )
    def test_window_is_inclusive(self, discovery, hour, expected) -> None:
        scheduler = RefreshScheduler(discovery, ["Wheat"], clock=clock_at(hour))
        assert scheduler.in_market_hours() is expected


class TestRefreshAll:
    """Test a single refresh round."""

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, discovery, make_snapshot, caplog) -> None:
        snapshot = make_snapshot()
        discovery.get_current_price = AsyncMock(
            side_effect=[snapshot, DataUnavailableError("Onion"), RuntimeError("bug")]
        )
        scheduler = RefreshScheduler(discovery, ["Wheat", "Onion", "Rice"], pause=0)

        results = await scheduler.refresh_all()

        assert results == {"Wheat": snapshot, "Onion": None, "Rice": None}
        assert "Refresh failed for Onion" in caplog.text
        assert "Unexpected error refreshing Rice" in caplog.text
        assert "Refreshed 1/3 commodities" in caplog.text


class TestRun:
    """Test the refresh loop."""

    @pytest.mark.asyncio
    async def test_refreshes_during_market_hours(self, discovery, make_snapshot) -> None:
        scheduler = RefreshScheduler(
            discovery, ["Wheat", "Onion"], refresh_period=60, pause=0, clock=clock_at(10)
        )
        calls = []

        async def refresh(commodity):
            calls.append(commodity)
            if len(calls) == 2:
                scheduler.stop()
            return make_snapshot(commodity=commodity)

        discovery.get_current_price = AsyncMock(side_effect=refresh)

        await asyncio.wait_for(scheduler.run(), timeout=2.0)
        assert calls == ["Wheat", "Onion"]

    @pytest.mark.asyncio
    async def test_idle_outside_market_hours(self, discovery) -> None:
        scheduler = RefreshScheduler(
            discovery, ["Wheat"], refresh_period=60, clock=clock_at(22)
        )
        asyncio.get_running_loop().call_later(0.05, scheduler.stop)

        await asyncio.wait_for(scheduler.run(), timeout=2.0)
        discovery.get_current_price.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_interrupts_sleep(self, discovery) -> None:
        scheduler = RefreshScheduler(
            discovery, ["Wheat"], refresh_period=3600, clock=clock_at(10)
        )
        task = asyncio.create_task(scheduler.run())
        await asyncio.sleep(0.05)
        scheduler.stop()

        await asyncio.wait_for(task, timeout=2.0)
        discovery.get_current_price.assert_awaited_once_with("Wheat")
