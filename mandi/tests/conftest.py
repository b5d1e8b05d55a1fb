import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from mandi.src.fetchers import BaseFetcher
from mandi.src.models import (
    HistoryEntry,
    MarketRecord,
    PriceObservation,
    PriceRange,
    PriceSnapshot,
)


class FakeFetcher(BaseFetcher):
    """In-process fetcher returning canned results.

    Each call pops the next item of ``results``; exceptions are raised,
    lists are returned. The last item repeats once the list is exhausted.
    """

    name = "fake"

    def __init__(self, source, results, delay=0.0, configured=True):
        super().__init__()
        self.source = source
        self.results = list(results)
        self.delay = delay
        self.configured = configured
        self.calls = 0

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def fetch(self, commodity, location=None):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def make_observation():
    """Factory for PriceObservation with sensible defaults."""

    def _make(modal, source="agmarknet", commodity="Wheat", spread=50.0, **kwargs):
        return PriceObservation(
            source=source,
            commodity=commodity,
            min_price=kwargs.pop("min_price", modal - spread),
            max_price=kwargs.pop("max_price", modal + spread),
            modal_price=modal,
            arrivals=kwargs.pop("arrivals", 10),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_snapshot():
    """Factory for PriceSnapshot with sensible defaults."""

    def _make(price=2000.0, commodity="Wheat", **kwargs):
        return PriceSnapshot(
            commodity=commodity,
            current_price=price,
            price_range=kwargs.pop(
                "price_range", PriceRange(min=price - 50, max=price + 50, modal=price)
            ),
            volatility=kwargs.pop("volatility", 0.02),
            sources=kwargs.pop("sources", ["agmarknet", "datagov"]),
            arrivals=kwargs.pop("arrivals", 20),
            last_updated=kwargs.pop(
                "last_updated", datetime(2026, 10, 1, 9, 30, tzinfo=timezone.utc)
            ),
            **kwargs,
        )

    return _make


@pytest.fixture
def make_history():
    """Factory for daily history, newest first, ending today."""

    def _make(prices, commodity="Wheat", market="Khanna"):
        today = datetime.now(timezone.utc).date()
        return [
            HistoryEntry(
                commodity=commodity,
                market=market,
                date=today - timedelta(days=i),
                price=price,
                arrivals=10,
            )
            for i, price in enumerate(prices)
        ]

    return _make


@pytest.fixture
def make_record():
    """Factory for stored market rows."""

    def _make(price=2000.0, commodity="Wheat", days_ago=0, market="Khanna", **kwargs):
        return MarketRecord(
            commodity=commodity,
            market=market,
            date=kwargs.pop("date", datetime.now(timezone.utc).date() - timedelta(days=days_ago)),
            min_price=kwargs.pop("min_price", price - 50),
            max_price=kwargs.pop("max_price", price + 50),
            modal_price=price,
            **kwargs,
        )

    return _make


@pytest.fixture
def fake_fetcher():
    return FakeFetcher


@pytest.fixture(autouse=True)
def _capture_info_logs(caplog):
    caplog.set_level(logging.INFO)
    yield
