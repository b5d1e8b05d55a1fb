"""Error taxonomy for price discovery.

Per-source and per-observation errors are absorbed inside the engine.
Only NoObservationsError (from aggregation) and DataUnavailableError
(from the fallback chain) ever reach a caller.
"""

from __future__ import annotations


class PriceDiscoveryError(Exception):
    """Base exception for price discovery errors."""

    pass


class SourceUnavailableError(PriceDiscoveryError):
    """A single source could not deliver observations.

    :ivar source: Name of the failing source.
    """

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"[{source}] {message}")


class CircuitOpenError(SourceUnavailableError):
    """Raised when a call is rejected because the source's breaker is open.

    :ivar next_retry_at: Unix timestamp when a trial call will be allowed.
    """

    def __init__(self, source: str, next_retry_at: float | None = None):
        self.next_retry_at = next_retry_at
        super().__init__(source, "circuit breaker is open")


class ValidationFailure(PriceDiscoveryError):
    """An observation failed the structural price check."""

    pass


class AnomalyDetected(PriceDiscoveryError):
    """An observation deviates too far from the reference median.

    :ivar deviation: Relative deviation from the median (0.3 = 30%).
    :ivar median: Reference median the observation was compared against.
    """

    def __init__(self, source: str, price: float, median: float, deviation: float):
        self.source = source
        self.price = price
        self.median = median
        self.deviation = deviation
        super().__init__(
            f"[{source}] price {price} deviates {deviation * 100:.1f}% "
            f"from median {median}"
        )


class NoObservationsError(PriceDiscoveryError):
    """No valid observation survived fetching and filtering."""

    pass


class DataUnavailableError(PriceDiscoveryError):
    """Live sources, persistent store and cache all failed for a request.

    :ivar commodity: Commodity that was requested.
    :ivar location: Optional market filter that was requested.
    """

    def __init__(self, commodity: str, location: str | None = None):
        self.commodity = commodity
        self.location = location
        where = f" at {location}" if location else ""
        super().__init__(f"No price data available for {commodity}{where}")


class StaleCacheUsed(UserWarning):
    """Degraded-success signal: a stale cache entry was served."""

    pass
