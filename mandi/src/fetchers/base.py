"""Base fetcher interface and shared HTTP client management.

All price fetchers inherit from BaseFetcher and implement the fetch() method,
which returns zero or more normalized PriceObservation records. A shared
httpx.AsyncClient is used across all fetchers to avoid connection overhead.

Transport failures raise FetcherError so the caller's circuit breaker can
count them. A source that answers but has no records for the commodity
returns an empty list, which is not a failure.

.. code-block:: python

    @register_fetcher
    class MyFetcher(BaseFetcher):
        name = "myfetcher"

        async def fetch(
            self, commodity: str, location: str | None = None
        ) -> list[PriceObservation]:
            response = await self._get("https://api.example.com/prices")
            return [self._observation(commodity, r) for r in response.json()]
"""

import logging
import math
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, ClassVar

import httpx

from ..models import PriceObservation

logger = logging.getLogger(__name__)


class FetcherError(Exception):
    """Base exception for fetcher errors."""

    pass


class FetcherConfigError(FetcherError):
    """Raised when fetcher configuration is invalid (e.g., missing API key)."""

    pass


class FetcherHTTPError(FetcherError):
    """Raised when HTTP request fails.

    :ivar status_code: HTTP status code from the failed request.
    """

    def __init__(self, status_code: int, message: str):
        """Initialize the HTTP error.

        :param status_code: HTTP status code.
        :param message: Error message from response.
        """
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}")


def parse_number(value: Any) -> float | None:
    """Parse a possibly string-encoded number.

    Accepts ints, floats and strings such as "2,150.00" or " 1800 ".

    :param value: Raw value from an upstream payload.
    :returns: Finite float, or None if the value is missing or unparseable.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def parse_date(value: Any, formats: tuple[str, ...]) -> datetime | None:
    """Parse an upstream date string into an aware UTC datetime.

    :param value: Raw date value.
    :param formats: strptime formats to try in order.
    :returns: Parsed datetime, or None if no format matched.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    for fmt in formats:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def latest_observation(
    candidates: list[tuple[datetime | None, PriceObservation]],
) -> PriceObservation:
    """Pick the most recently dated observation.

    Records without a parseable date rank after every dated one; among
    themselves the first one wins.

    :param candidates: (upstream date or None, observation) pairs, non-empty.
    :returns: The selected observation.
    """
    dated = [(when, obs) for when, obs in candidates if when is not None]
    if dated:
        return max(dated, key=lambda item: item[0])[1]
    return candidates[0][1]


class BaseFetcher(ABC):
    """Abstract base class for commodity price fetchers.

    Subclasses must implement:
        - name: Class variable identifying the source (e.g., "agmarknet")
        - fetch(): Async method returning normalized observations

    :cvar name: Unique identifier for this fetcher.
    :cvar DEFAULT_TIMEOUT: Default HTTP request timeout in seconds.
    :cvar requires_api_key: Whether fetch() refuses to run without a key.
    :ivar api_key: Optional API key for authenticated endpoints.
    :ivar timeout: Request timeout in seconds.
    """

    # Class-level shared HTTP client
    _shared_client: ClassVar[httpx.AsyncClient | None] = None

    # Fetcher identification
    name: ClassVar[str] = ""

    requires_api_key: ClassVar[bool] = False

    # Default timeout for HTTP requests (seconds)
    DEFAULT_TIMEOUT = 5.0

    def __init__(self, api_key: str | None = None, timeout: float | None = None):
        """Initialize the fetcher.

        :param api_key: Optional API key for authenticated endpoints.
        :param timeout: Request timeout in seconds (default: 5).
        """
        self.api_key = api_key
        self.timeout = timeout or self.DEFAULT_TIMEOUT

    @property
    def has_api_key(self) -> bool:
        """Check if this fetcher has an API key configured."""
        return self.api_key is not None and len(self.api_key) > 0

    @property
    def is_configured(self) -> bool:
        """Check if the fetcher can be called with its current configuration."""
        return self.has_api_key or not self.requires_api_key

    @classmethod
    def get_shared_client(cls) -> httpx.AsyncClient:
        """Get or create the shared HTTP client.

        The client is shared across all fetcher instances to reuse connections.

        :returns: Shared httpx.AsyncClient instance.
        """
        if BaseFetcher._shared_client is None or BaseFetcher._shared_client.is_closed:
            BaseFetcher._shared_client = httpx.AsyncClient(
                timeout=httpx.Timeout(30.0, connect=10.0),
                limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
                follow_redirects=True,
            )
        return BaseFetcher._shared_client

    @classmethod
    def set_shared_client(cls, client: httpx.AsyncClient | None) -> None:
        """Replace the shared HTTP client (e.g., with a mock transport)."""
        BaseFetcher._shared_client = client

    @classmethod
    async def close_shared_client(cls) -> None:
        """Close the shared HTTP client."""
        client = BaseFetcher._shared_client
        if client is not None and not client.is_closed:
            await client.aclose()
        BaseFetcher._shared_client = None

    @abstractmethod
    async def fetch(
        self, commodity: str, location: str | None = None
    ) -> list[PriceObservation]:
        """Fetch current observations for a commodity.

        :param commodity: Commodity name (e.g., "Wheat", "Onion").
        :param location: Optional market name to filter on.
        :returns: Normalized observations (possibly empty).
        :raises FetcherError: On transport or configuration failure.
        """
        pass

    def _require_api_key(self) -> str:
        if not self.has_api_key:
            raise FetcherConfigError(f"[{self.name}] API key not configured")
        assert self.api_key is not None
        return self.api_key

    async def _get(
        self,
        url: str,
        *,
        params: dict | None = None,
        headers: dict | None = None,
    ) -> httpx.Response:
        """Make an HTTP GET request using the shared client.

        :param url: Request URL.
        :param params: Optional query parameters.
        :param headers: Optional request headers.
        :returns: httpx.Response object.
        :raises FetcherHTTPError: On non-2xx response.
        :raises FetcherError: On network/timeout errors.
        """
        client = self.get_shared_client()
        try:
            response = await client.get(
                url,
                params=params,
                headers=headers,
                timeout=self.timeout,
            )
            if not response.is_success:
                logger.debug(
                    "HTTP GET %s failed with status %s: %s",
                    url,
                    response.status_code,
                    response.text[:200],
                )
                raise FetcherHTTPError(response.status_code, response.text[:200])
            return response
        except httpx.TimeoutException as e:
            raise FetcherError(f"Request timeout: {e}") from e
        except httpx.RequestError as e:
            raise FetcherError(f"Request failed: {e}") from e

    async def _get_json(self, url: str, **kwargs: Any) -> Any:
        """GET a URL and decode the JSON body.

        :raises FetcherError: If the body is not valid JSON.
        """
        response = await self._get(url, **kwargs)
        try:
            return response.json()
        except ValueError as e:
            raise FetcherError(f"Invalid JSON from {self.name}: {e}") from e


# Registry of available fetchers (populated by subclass imports)
FETCHER_REGISTRY: dict[str, type[BaseFetcher]] = {}


def register_fetcher(cls: type[BaseFetcher]) -> type[BaseFetcher]:
    """Decorator to register a fetcher class in the global registry.

    :param cls: Fetcher class to register.
    :returns: The registered class (unchanged).
    :raises ValueError: If fetcher has no name defined.
    """
    if not cls.name:
        raise ValueError(f"Fetcher {cls.__name__} must define a 'name' class variable")
    FETCHER_REGISTRY[cls.name] = cls
    return cls


def get_fetcher(
    name: str, api_key: str | None = None, timeout: float | None = None
) -> BaseFetcher:
    """Get a fetcher instance by name.

    :param name: Fetcher name (e.g., "agmarknet", "datagov").
    :param api_key: Optional API key.
    :param timeout: Optional request timeout in seconds.
    :returns: Fetcher instance.
    :raises ValueError: If fetcher name is unknown.
    """
    if name not in FETCHER_REGISTRY:
        available = ", ".join(sorted(FETCHER_REGISTRY.keys()))
        raise ValueError(f"Unknown fetcher '{name}'. Available: {available}")
    return FETCHER_REGISTRY[name](api_key=api_key, timeout=timeout)


def get_available_fetchers() -> list[str]:
    """Get list of available fetcher names.

    :returns: Sorted list of registered fetcher names.
    """
    return sorted(FETCHER_REGISTRY.keys())
