"""
Price fetchers for commodity market data sources.

This module provides a unified interface for fetching mandi prices from
the public agricultural market APIs.

Usage:
    from mandi.src.fetchers import get_fetcher, get_available_fetchers

    # Get list of available fetchers
    available = get_available_fetchers()
    # ['agmarknet', 'datagov']

    # Create a fetcher instance
    fetcher = get_fetcher("datagov")
    observations = await fetcher.fetch("Onion", "Lasalgaon")

    # For fetchers requiring API keys
    fetcher = get_fetcher("agmarknet", api_key="your-api-key")
"""

# Import base classes and utilities
from .base import (
    FETCHER_REGISTRY,
    BaseFetcher,
    FetcherConfigError,
    FetcherError,
    FetcherHTTPError,
    get_available_fetchers,
    get_fetcher,
    latest_observation,
    parse_date,
    parse_number,
    register_fetcher,
)

# Import all fetcher implementations to trigger registration
from .agmarknet import AgmarknetFetcher
from .datagov import DataGovFetcher

__all__ = [
    # Base classes
    "BaseFetcher",
    "FetcherError",
    "FetcherConfigError",
    "FetcherHTTPError",
    # Registry functions
    "register_fetcher",
    "get_fetcher",
    "get_available_fetchers",
    "FETCHER_REGISTRY",
    # Parsing helpers
    "parse_number",
    "parse_date",
    "latest_observation",
    # Fetcher implementations
    "AgmarknetFetcher",
    "DataGovFetcher",
]
