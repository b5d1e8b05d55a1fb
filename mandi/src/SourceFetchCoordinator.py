"""SourceFetchCoordinator: Concurrent fan-out to every price source.

Architecture:
    - One task per configured source, each routed through that source's
      circuit breaker, which records one outcome per round
    - Each attempt is bounded by fetch_timeout; failed attempts are retried
      up to retry_count times with linear backoff before the round fails
    - The whole round is bounded by overall_timeout; sources still running
      when it elapses are cancelled and contribute nothing
    - Returns observations keyed by the sources that answered
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from .CircuitBreaker import CircuitBreakerRegistry
from .errors import CircuitOpenError
from .fetchers import FetcherConfigError, FetcherError

if TYPE_CHECKING:
    from .fetchers import BaseFetcher
    from .models import PriceObservation

logger = logging.getLogger(__name__)


class SourceFetchCoordinator:
    """Fetches one commodity from all sources concurrently.

    Partial success is the normal case: whichever sources answer within the
    overall timeout are returned, the rest are dropped silently.

    :ivar fetchers: Dict mapping source names to fetcher instances.
    :ivar breakers: Per-source circuit breakers.
    :ivar fetch_timeout: Timeout for a single fetch attempt in seconds.
    :ivar overall_timeout: Timeout for the whole fan-out in seconds.
    :ivar retry_count: Extra attempts after the first failure.
    :ivar retry_delay: Base delay between attempts in seconds.
    """

    def __init__(
        self,
        fetchers: dict[str, BaseFetcher],
        breakers: CircuitBreakerRegistry | None = None,
        fetch_timeout: float = 5.0,
        overall_timeout: float = 8.0,
        retry_count: int = 2,
        retry_delay: float = 1.0,
    ) -> None:
        """Initialize the coordinator.

        :param fetchers: Dict mapping source names to fetcher instances.
        :param breakers: Circuit breaker registry (one created if omitted).
        :param fetch_timeout: Per-attempt timeout (default: 5.0).
        :param overall_timeout: Timeout for the whole round (default: 8.0).
        :param retry_count: Retries after the first attempt (default: 2).
        :param retry_delay: Base backoff delay (default: 1.0).
        :raises ValueError: If timeouts or retry settings are invalid.
        """
        if fetch_timeout <= 0 or overall_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if retry_count < 0:
            raise ValueError("retry_count must not be negative")

        self.fetchers = fetchers
        self.breakers = breakers or CircuitBreakerRegistry(list(fetchers))
        self.fetch_timeout = fetch_timeout
        self.overall_timeout = overall_timeout
        self.retry_count = retry_count
        self.retry_delay = retry_delay

        for source, fetcher in fetchers.items():
            self.breakers.get(source)
            if not fetcher.is_configured:
                logger.warning(
                    f"[{source}] API key not configured; source will be skipped"
                )

    @property
    def active_sources(self) -> list[str]:
        """Sources that are configured and whose breaker allows calls."""
        return [
            source
            for source, fetcher in self.fetchers.items()
            if fetcher.is_configured and not self.breakers.get(source).is_open()
        ]

    async def fetch_all(
        self, commodity: str, location: str | None = None
    ) -> dict[str, list[PriceObservation]]:
        """Fetch a commodity from every configured source.

        :param commodity: Commodity name.
        :param location: Optional market filter.
        :returns: Dict mapping source name to its observations, containing
            only sources that answered with at least one observation.
        """
        tasks: dict[asyncio.Task, str] = {}
        for source, fetcher in self.fetchers.items():
            if not fetcher.is_configured:
                continue
            task = asyncio.create_task(
                self._fetch_source(source, fetcher, commodity, location),
                name=f"fetch-{source}-{commodity}",
            )
            tasks[task] = source

        if not tasks:
            logger.warning(f"No configured sources to fetch {commodity}")
            return {}

        done, pending = await asyncio.wait(tasks, timeout=self.overall_timeout)

        for task in pending:
            logger.warning(
                f"[{tasks[task]}] Abandoned after overall timeout "
                f"({self.overall_timeout:.1f}s) for {commodity}"
            )
            task.cancel()

        # Results keep registration order
        results: dict[str, list[PriceObservation]] = {}
        for task, source in tasks.items():
            if task not in done or task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning(f"[{source}] Fetch task failed: {exc}")
                continue
            observations = task.result()
            if observations:
                results[source] = observations

        logger.debug(
            f"{commodity}: {len(results)}/{len(tasks)} sources answered "
            f"({', '.join(sorted(results)) or 'none'})"
        )
        return results

    async def _fetch_source(
        self,
        source: str,
        fetcher: BaseFetcher,
        commodity: str,
        location: str | None,
    ) -> list[PriceObservation]:
        """Fetch from one source through its breaker.

        The breaker records a single outcome per round, once retries are
        exhausted or an attempt succeeds.

        :returns: Observations, or an empty list if the round failed.
        """
        breaker = self.breakers.get(source)
        try:
            return await breaker.execute(
                lambda: self._fetch_with_retries(source, fetcher, commodity, location)
            )
        except CircuitOpenError:
            logger.debug(f"[{source}] Circuit open, skipping {commodity}")
        except FetcherConfigError as e:
            logger.warning(f"[{source}] Misconfigured: {e}")
        except Exception as e:
            logger.warning(
                f"[{source}] Giving up on {commodity} after "
                f"{self.retry_count + 1} attempts: {e!r}"
            )
        return []

    async def _fetch_with_retries(
        self,
        source: str,
        fetcher: BaseFetcher,
        commodity: str,
        location: str | None,
    ) -> list[PriceObservation]:
        """Run up to retry_count + 1 attempts with linear backoff.

        :raises Exception: The last attempt's error.
        """
        attempts = self.retry_count + 1
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(
                    fetcher.fetch(commodity, location),
                    timeout=self.fetch_timeout,
                )
            except FetcherConfigError:
                raise
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{source}] Timeout fetching {commodity} "
                    f"(attempt {attempt}/{attempts})"
                )
                if attempt == attempts:
                    raise
            except FetcherError as e:
                logger.warning(
                    f"[{source}] Error fetching {commodity} "
                    f"(attempt {attempt}/{attempts}): {e}"
                )
                if attempt == attempts:
                    raise
            except Exception as e:
                logger.warning(
                    f"[{source}] Unexpected error fetching {commodity} "
                    f"(attempt {attempt}/{attempts}): {e!r}"
                )
                if attempt == attempts:
                    raise

            await asyncio.sleep(self.retry_delay * attempt)

        return []
