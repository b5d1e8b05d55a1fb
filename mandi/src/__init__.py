"""
Mandi Price Discovery - Resilient commodity price engine

This module provides multi-source commodity price discovery:
- CircuitBreaker: Per-source failure isolation over a rolling window
- SourceFetchCoordinator: Concurrent fan-out with timeouts and retries
- AnomalyValidator: Structural checks and median-based outlier filtering
- PriceAggregator: Median aggregation with volatility
- CacheTier: Fresh / stale-but-usable snapshot cache
- FallbackOrchestrator: Cache -> sources -> database -> stale cache chain
- TrendAnalyzer: Regression trend and next-period prediction
- AlertDispatcher: Volatility alerts to subscribed vendors
- PriceDiscovery: Public operations over all of the above
- fetchers: Modular market data fetcher implementations
"""

from .AlertDispatcher import AlertDispatcher
from .AnomalyValidator import AnomalyValidator, ValidationReport
from .CacheTier import CacheTier
from .CircuitBreaker import CircuitBreaker, CircuitBreakerRegistry, CircuitState
from .errors import DataUnavailableError, PriceDiscoveryError, StaleCacheUsed
from .FallbackOrchestrator import FallbackOrchestrator
from .models import PriceObservation, PriceSnapshot, TrendResult
from .PriceAggregator import PriceAggregator
from .PriceDiscovery import SUPPORTED_COMMODITIES, PriceDiscovery
from .RefreshScheduler import RefreshScheduler
from .TrendAnalyzer import TrendAnalyzer

__all__ = [
    "AlertDispatcher",
    "AnomalyValidator",
    "CacheTier",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "DataUnavailableError",
    "FallbackOrchestrator",
    "PriceAggregator",
    "PriceDiscovery",
    "PriceDiscoveryError",
    "PriceObservation",
    "PriceSnapshot",
    "RefreshScheduler",
    "StaleCacheUsed",
    "SUPPORTED_COMMODITIES",
    "TrendAnalyzer",
    "TrendResult",
    "ValidationReport",
]
