"""PriceAggregator: Merge validated observations into one PriceSnapshot.

Algorithm:
    1. Collect the modal price of every surviving observation
    2. min / max of those modal prices give the price range bounds
    3. The median gives the modal (and current) price, resisting skew from
       a single outlier source
    4. Volatility is the coefficient of variation (population stdDev / mean),
       0 with fewer than 2 observations
    5. Arrivals are summed, contributing sources listed once each

.. code-block:: python

    >>> aggregator = PriceAggregator()
    >>> snapshot = aggregator.aggregate(observations)  # modal 1950, 2000, 2050
    >>> snapshot.price_range
    PriceRange(min=1950.0, max=2050.0, modal=2000.0)
    >>> round(snapshot.volatility, 4)
    0.0204
"""

from __future__ import annotations

from collections.abc import Sequence
from statistics import mean as _mean
from statistics import median as _median
from statistics import pstdev as _pstdev

from .errors import NoObservationsError
from .models import PriceObservation, PriceRange, PriceSnapshot, utcnow


def coefficient_of_variation(prices: Sequence[float]) -> float:
    """Population standard deviation divided by mean, clamped to [0, 1].

    :param prices: Positive prices.
    :returns: Volatility, or 0.0 with fewer than 2 prices.
    """
    if len(prices) < 2:
        return 0.0
    avg = _mean(prices)
    if avg <= 0:
        return 0.0
    return min(max(_pstdev(prices) / avg, 0.0), 1.0)


class PriceAggregator:
    """Aggregates observations from multiple sources into a snapshot.

    :ivar decimals: Rounding applied to aggregated prices.
    """

    def __init__(self, decimals: int = 2) -> None:
        """Initialize the aggregator.

        :param decimals: Decimal places for aggregated prices (default 2).
        :raises ValueError: If decimals is negative.
        """
        if decimals < 0:
            raise ValueError("decimals must not be negative")
        self.decimals = decimals

    def aggregate(
        self,
        observations: Sequence[PriceObservation],
        *,
        commodity: str | None = None,
        location: str | None = None,
        low_confidence: bool = False,
    ) -> PriceSnapshot:
        """Aggregate observations into a single snapshot.

        :param observations: Validated observations (all for one commodity).
        :param commodity: Requested commodity name (defaults to the first
            observation's).
        :param location: Requested market, recorded on the snapshot.
        :param low_confidence: Propagated onto the snapshot.
        :returns: Aggregated PriceSnapshot.
        :raises NoObservationsError: If observations is empty.
        """
        if not observations:
            raise NoObservationsError("No observations left to aggregate")

        prices = [o.modal_price for o in observations]
        modal = round(_median(prices), self.decimals)
        low = round(min(prices), self.decimals)
        high = round(max(prices), self.decimals)

        sources: list[str] = []
        for obs in observations:
            if obs.source not in sources:
                sources.append(obs.source)

        markets = {o.market for o in observations if o.market}
        states = {o.state for o in observations if o.state}
        market = location or (markets.pop() if len(markets) == 1 else None)
        state = states.pop() if len(states) == 1 else None

        return PriceSnapshot(
            commodity=commodity or observations[0].commodity,
            current_price=modal,
            price_range=PriceRange(min=low, max=high, modal=modal),
            volatility=coefficient_of_variation(prices),
            sources=sources,
            arrivals=sum(max(o.arrivals, 0) for o in observations),
            last_updated=utcnow(),
            market=market,
            state=state,
            low_confidence=low_confidence,
        )
