"""AnomalyValidator: Structural checks and median-based anomaly filtering.

Algorithm:
    1. Drop observations whose prices are not finite, not positive, or not
       ordered min <= modal <= max
    2. Pick a reference: modal prices of the historical observations, or of
       the sibling observations in this round when there is no history
    3. Flag observations whose modal price deviates from the reference
       median by strictly more than 25%
    4. If every valid observation was flagged, keep the unfiltered valid set
       and mark the result as low confidence

.. code-block:: python

    >>> validator = AnomalyValidator()
    >>> history = [2000, 2050, 1980, 2100, 1990, 2040, 2010]
    >>> validator.is_anomalous(2700, history)
    True
    >>> validator.is_anomalous(2500, history)
    False
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from statistics import median as _median

from .errors import AnomalyDetected, ValidationFailure
from .models import PriceObservation, PriceRange, PriceSnapshot

logger = logging.getLogger(__name__)


@dataclass
class ValidationReport:
    """Outcome of filtering one fetch round.

    :ivar accepted: Observations to aggregate.
    :ivar invalid: Observations dropped by the structural check.
    :ivar anomalies: Observations flagged as anomalous.
    :ivar reference_median: Median the round was compared against.
    :ivar low_confidence: True if anomaly filtering was bypassed because it
        would have rejected everything.
    """

    accepted: list[PriceObservation] = field(default_factory=list)
    invalid: list[tuple[PriceObservation, ValidationFailure]] = field(
        default_factory=list
    )
    anomalies: list[tuple[PriceObservation, AnomalyDetected]] = field(
        default_factory=list
    )
    reference_median: float | None = None
    low_confidence: bool = False


def _reference_prices(values: Iterable[object]) -> list[float]:
    prices = []
    for value in values:
        price = value.modal_price if isinstance(value, PriceObservation) else value
        if (
            isinstance(price, (int, float))
            and not isinstance(price, bool)
            and math.isfinite(price)
            and price > 0
        ):
            prices.append(float(price))
    return prices


class AnomalyValidator:
    """Validates observations and filters statistical outliers.

    :ivar max_deviation: Relative deviation above which a price is anomalous.
    """

    DEFAULT_MAX_DEVIATION = 0.25

    def __init__(self, max_deviation: float = DEFAULT_MAX_DEVIATION) -> None:
        """Initialize the validator.

        :param max_deviation: Relative deviation threshold (default 0.25).
        :raises ValueError: If max_deviation is not positive.
        """
        if max_deviation <= 0:
            raise ValueError("max_deviation must be positive")
        self.max_deviation = max_deviation

    def validate(self, observation: PriceObservation) -> bool:
        """Structural check: prices finite, positive and range-consistent."""
        return self._check(observation) is None

    def validate_snapshot(self, snapshot: PriceSnapshot) -> bool:
        """Structural check for an aggregated or cached snapshot."""
        if not snapshot.price_range.is_consistent:
            return False
        current = snapshot.current_price
        if not (isinstance(current, (int, float)) and math.isfinite(current) and current > 0):
            return False
        return 0.0 <= snapshot.volatility <= 1.0

    def deviation(self, price: float, reference: Sequence[object]) -> float | None:
        """Relative deviation of price from the reference median.

        :param price: Price under test.
        :param reference: Historical prices or observations.
        :returns: Deviation (0.3 = 30%), or None if there is no usable reference.
        """
        prices = _reference_prices(reference)
        if not prices:
            return None
        med = _median(prices)
        return abs(price - med) / med

    def is_anomalous(self, price: float, reference: Sequence[object]) -> bool:
        """Check a bare price against a reference set."""
        dev = self.deviation(price, reference)
        return dev is not None and dev > self.max_deviation

    def detect_anomaly(
        self,
        observation: PriceObservation,
        historical_observations: Sequence[object],
    ) -> bool:
        """Check whether an observation is anomalous.

        Structurally invalid observations are always anomalous. With no
        usable history nothing can be judged and the result is False.

        :param observation: Observation under test.
        :param historical_observations: Past observations or bare prices.
        :returns: True if the modal price deviates more than the threshold.
        """
        if not self.validate(observation):
            return True
        return self.is_anomalous(observation.modal_price, historical_observations)

    def filter(
        self,
        observations: Sequence[PriceObservation],
        historical: Sequence[object] | None = None,
    ) -> ValidationReport:
        """Validate and filter one fetch round.

        :param observations: Observations from all sources.
        :param historical: Optional historical prices/observations used as
            reference. Sibling observations are used when empty.
        :returns: ValidationReport describing what was kept and why.
        """
        report = ValidationReport()

        valid: list[PriceObservation] = []
        for obs in observations:
            failure = self._check(obs)
            if failure is None:
                valid.append(obs)
            else:
                logger.warning(f"[{obs.source}] Dropping invalid observation: {failure}")
                report.invalid.append((obs, failure))

        if not valid:
            return report

        reference = _reference_prices(historical or [])
        if not reference:
            reference = [o.modal_price for o in valid]
        med = _median(reference)
        report.reference_median = med

        for obs in valid:
            dev = abs(obs.modal_price - med) / med
            if dev > self.max_deviation:
                anomaly = AnomalyDetected(obs.source, obs.modal_price, med, dev)
                logger.warning(f"Anomaly excluded for {obs.commodity}: {anomaly}")
                report.anomalies.append((obs, anomaly))
            else:
                report.accepted.append(obs)

        if not report.accepted:
            logger.warning(
                f"Data quality warning for {valid[0].commodity}: all {len(valid)} "
                f"observations deviate > {self.max_deviation:.0%} from median "
                f"{med}; using unfiltered set (low confidence)"
            )
            report.accepted = list(valid)
            report.low_confidence = True

        return report

    def _check(self, obs: PriceObservation) -> ValidationFailure | None:
        rng = PriceRange(min=obs.min_price, max=obs.max_price, modal=obs.modal_price)
        if rng.is_consistent:
            return None
        return ValidationFailure(
            f"{obs.commodity}: min={obs.min_price} modal={obs.modal_price} "
            f"max={obs.max_price} is not a finite positive ordered range"
        )
