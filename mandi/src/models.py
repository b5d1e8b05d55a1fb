"""Data model for commodity price discovery.

All records are plain dataclasses. Snapshots and market records convert to
and from JSON-compatible dicts so they can cross the cache and store
boundaries unchanged.

.. code-block:: python

    >>> rng = PriceRange(min=1950.0, max=2050.0, modal=2000.0)
    >>> rng.is_consistent
    True
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any

# Source tag used for snapshots served from the persistent store.
DATABASE_SOURCE = "database"


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _is_positive_finite(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
        and value > 0
    )


@dataclass(frozen=True)
class PriceObservation:
    """A single normalized price reading from one source.

    :ivar source: Source identifier (e.g., "agmarknet").
    :ivar commodity: Commodity name as requested (e.g., "Wheat").
    :ivar min_price: Minimum traded price (per quintal).
    :ivar max_price: Maximum traded price (per quintal).
    :ivar modal_price: Modal (representative) price (per quintal).
    :ivar arrivals: Reported arrivals in tonnes.
    :ivar observed_at: When the source reported the price.
    :ivar market: Market (mandi) name, if reported.
    :ivar state: State of the market, if reported.
    """

    source: str
    commodity: str
    min_price: float
    max_price: float
    modal_price: float
    arrivals: int = 0
    observed_at: datetime = field(default_factory=utcnow)
    market: str | None = None
    state: str | None = None


@dataclass(frozen=True)
class PriceRange:
    """Min/max/modal price triple."""

    min: float
    max: float
    modal: float

    @property
    def is_consistent(self) -> bool:
        """Check all prices are finite, positive and min <= modal <= max."""
        values = (self.min, self.max, self.modal)
        if not all(_is_positive_finite(v) for v in values):
            return False
        return self.min <= self.modal <= self.max


@dataclass(frozen=True)
class PriceSnapshot:
    """Canonical aggregated price for a commodity.

    :ivar commodity: Commodity name.
    :ivar current_price: Price served to callers (the modal price).
    :ivar price_range: Aggregated min/max/modal.
    :ivar volatility: Coefficient of variation across sources, in [0, 1].
    :ivar sources: Contributing source identifiers.
    :ivar arrivals: Total reported arrivals.
    :ivar last_updated: When the snapshot was aggregated.
    :ivar market: Requested location, if any.
    :ivar state: State of the market, if known.
    :ivar stale: True when served from a stale cache entry.
    :ivar low_confidence: True when anomaly filtering was bypassed.
    """

    commodity: str
    current_price: float
    price_range: PriceRange
    volatility: float
    sources: list[str]
    arrivals: int
    last_updated: datetime
    market: str | None = None
    state: str | None = None
    stale: bool = False
    low_confidence: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-compatible dict."""
        data = asdict(self)
        data["last_updated"] = self.last_updated.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PriceSnapshot:
        """Build a snapshot from a dict produced by to_dict().

        :param data: Dict with snapshot fields.
        :returns: New PriceSnapshot.
        :raises KeyError: If a required field is missing.
        :raises ValueError: If a field cannot be parsed.
        """
        rng = data["price_range"]
        return cls(
            commodity=data["commodity"],
            current_price=float(data["current_price"]),
            price_range=PriceRange(
                min=float(rng["min"]), max=float(rng["max"]), modal=float(rng["modal"])
            ),
            volatility=float(data["volatility"]),
            sources=list(data["sources"]),
            arrivals=int(data["arrivals"]),
            last_updated=datetime.fromisoformat(data["last_updated"]),
            market=data.get("market"),
            state=data.get("state"),
            stale=bool(data.get("stale", False)),
            low_confidence=bool(data.get("low_confidence", False)),
        )

    def to_json(self) -> bytes:
        """Serialize to canonical JSON bytes (sorted keys)."""
        return json.dumps(self.to_dict(), sort_keys=True).encode()

    @classmethod
    def from_json(cls, payload: bytes | str) -> PriceSnapshot:
        """Deserialize from JSON produced by to_json()."""
        return cls.from_dict(json.loads(payload))

    def as_stale(self) -> PriceSnapshot:
        """Return a copy flagged as served from stale cache."""
        return replace(self, stale=True)


@dataclass(frozen=True)
class HistoryEntry:
    """One day of history for a commodity in a market."""

    commodity: str
    market: str
    date: date
    price: float
    arrivals: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        return cls(
            commodity=data["commodity"],
            market=data["market"],
            date=date.fromisoformat(data["date"]),
            price=float(data["price"]),
            arrivals=int(data.get("arrivals", 0)),
        )


@dataclass(frozen=True)
class MarketRecord:
    """A full stored row of the market data table.

    Returned by the store's latest-record query so a fallback snapshot can be
    rebuilt with its complete price range.
    """

    commodity: str
    market: str
    date: date
    min_price: float
    max_price: float
    modal_price: float
    arrivals: int = 0
    volatility: float = 0.0
    sources: list[str] = field(default_factory=list)
    state: str | None = None

    def to_history_entry(self) -> HistoryEntry:
        return HistoryEntry(
            commodity=self.commodity,
            market=self.market,
            date=self.date,
            price=self.modal_price,
            arrivals=self.arrivals,
        )

    def to_snapshot(self) -> PriceSnapshot:
        """Frame this record as a snapshot tagged with the database source."""
        return PriceSnapshot(
            commodity=self.commodity,
            current_price=self.modal_price,
            price_range=PriceRange(
                min=self.min_price, max=self.max_price, modal=self.modal_price
            ),
            volatility=min(max(self.volatility, 0.0), 1.0),
            sources=[DATABASE_SOURCE],
            arrivals=self.arrivals,
            last_updated=datetime.combine(self.date, datetime.min.time(), timezone.utc),
            market=self.market,
            state=self.state,
        )


class Trend(str, Enum):
    """Direction of a price trend."""

    RISING = "rising"
    FALLING = "falling"
    STABLE = "stable"


class VolatilityLevel(str, Enum):
    """Coarse volatility classification."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class Prediction:
    """Next-period price prediction."""

    next_period: float
    confidence: float


@dataclass(frozen=True)
class TrendResult:
    """Result of trend analysis over price history."""

    commodity: str
    trend: Trend
    change_percent: float
    volatility: float
    prediction: Prediction

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trend"] = self.trend.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrendResult:
        return cls(
            commodity=data["commodity"],
            trend=Trend(data["trend"]),
            change_percent=float(data["change_percent"]),
            volatility=float(data["volatility"]),
            prediction=Prediction(
                next_period=float(data["prediction"]["next_period"]),
                confidence=float(data["prediction"]["confidence"]),
            ),
        )


@dataclass(frozen=True)
class HistoricalRange:
    """Min/max/average over a history window."""

    min: float
    max: float
    average: float


@dataclass(frozen=True)
class PriceRanges:
    """Current versus historical price ranges for a commodity."""

    current: PriceRange
    historical: HistoricalRange
    volatility_level: VolatilityLevel


@dataclass(frozen=True)
class AlertSubscription:
    """A vendor's subscription to volatility alerts for one commodity."""

    vendor_id: str
    commodity: str
    threshold_percent: float = 10.0


@dataclass(frozen=True)
class PriceAlert:
    """A volatility alert addressed to one subscriber."""

    alert_id: str
    vendor_id: str
    commodity: str
    threshold: float
    current_value: float
    message: str
    created_at: datetime = field(default_factory=utcnow)
    alert_type: str = "volatility"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data
