"""Unit tests for PriceAggregator."""

import pytest

from mandi.src.errors import NoObservationsError
from mandi.src.models import PriceRange
from mandi.src.PriceAggregator import PriceAggregator, coefficient_of_variation


class TestPriceAggregatorInit:
    """Test PriceAggregator initialization."""

    def test_default_values(self) -> None:
        """Prices are rounded to 2 decimals by default."""
        assert PriceAggregator().decimals == 2

    def test_invalid_decimals(self) -> None:
        """Negative decimals should raise ValueError."""
        with pytest.raises(ValueError, match="decimals must not be negative"):
            PriceAggregator(decimals=-1)


class TestCoefficientOfVariation:
    """Test the volatility measure."""

    def test_fewer_than_two_prices(self) -> None:
        """Zero or one price has no volatility."""
        assert coefficient_of_variation([]) == 0.0
        assert coefficient_of_variation([2000.0]) == 0.0

    def test_identical_prices(self) -> None:
        """Identical prices have zero volatility."""
        assert coefficient_of_variation([100.0, 100.0, 100.0]) == 0.0

    def test_population_stddev_over_mean(self) -> None:
        """Volatility uses the population standard deviation."""
        assert coefficient_of_variation([1950.0, 2000.0, 2050.0]) == pytest.approx(
            0.020412, abs=1e-6
        )

    def test_clamped_to_one(self) -> None:
        """Extreme dispersion is clamped to 1."""
        assert coefficient_of_variation([1.0, 1.0, 1.0, 1000.0]) == 1.0


class TestPriceAggregatorAggregate:
    """Test aggregation of observations."""

    def test_worked_example(self, make_observation) -> None:
        """Modal prices 1950/2000/2050 aggregate to 2000 with ~2% volatility."""
        observations = [
            make_observation(1950, source="agmarknet", arrivals=10),
            make_observation(2000, source="datagov", arrivals=20),
            make_observation(2050, source="enam", arrivals=5),
        ]
        snapshot = PriceAggregator().aggregate(observations)

        assert snapshot.commodity == "Wheat"
        assert snapshot.current_price == 2000.0
        assert snapshot.price_range == PriceRange(min=1950.0, max=2050.0, modal=2000.0)
        assert round(snapshot.volatility, 4) == 0.0204
        assert snapshot.sources == ["agmarknet", "datagov", "enam"]
        assert snapshot.arrivals == 35
        assert not snapshot.stale
        assert not snapshot.low_confidence

    def test_even_count_median(self, make_observation) -> None:
        """Median of an even count is the mean of the middle pair."""
        observations = [make_observation(p, source=str(p)) for p in (100, 200, 300, 400)]
        snapshot = PriceAggregator().aggregate(observations)
        assert snapshot.current_price == 250.0
        assert snapshot.price_range.modal == 250.0

    def test_single_observation(self, make_observation) -> None:
        """One observation aggregates to itself with zero volatility."""
        snapshot = PriceAggregator().aggregate([make_observation(2150.5)])
        assert snapshot.current_price == 2150.5
        assert snapshot.volatility == 0.0

    def test_rounding(self, make_observation) -> None:
        """Aggregated prices are rounded to the configured decimals."""
        observations = [
            make_observation(100.004, source="a"),
            make_observation(100.0041, source="b"),
            make_observation(100.006, source="c"),
        ]
        snapshot = PriceAggregator().aggregate(observations)
        assert snapshot.current_price == 100.0
        assert snapshot.price_range.min == 100.0
        assert snapshot.price_range.max == 100.01

    def test_sources_listed_once(self, make_observation) -> None:
        """A source contributing several observations is listed once."""
        observations = [
            make_observation(2000, source="a"),
            make_observation(2010, source="a"),
            make_observation(2020, source="b"),
        ]
        assert PriceAggregator().aggregate(observations).sources == ["a", "b"]

    def test_location_and_market(self, make_observation) -> None:
        """The requested location wins; otherwise a single common market is kept."""
        observations = [
            make_observation(2000, source="a", market="Khanna", state="Punjab"),
            make_observation(2010, source="b", market="Khanna", state="Punjab"),
        ]
        aggregator = PriceAggregator()

        snapshot = aggregator.aggregate(observations)
        assert snapshot.market == "Khanna"
        assert snapshot.state == "Punjab"

        snapshot = aggregator.aggregate(observations, location="Azadpur")
        assert snapshot.market == "Azadpur"

        mixed = observations + [make_observation(2020, source="c", market="Indore")]
        assert aggregator.aggregate(mixed).market is None

    def test_low_confidence_propagates(self, make_observation) -> None:
        """The low-confidence flag is carried onto the snapshot."""
        snapshot = PriceAggregator().aggregate(
            [make_observation(2000)], low_confidence=True
        )
        assert snapshot.low_confidence

    def test_empty_raises(self) -> None:
        """Aggregating nothing raises NoObservationsError."""
        with pytest.raises(NoObservationsError):
            PriceAggregator().aggregate([])
