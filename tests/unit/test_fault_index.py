"""
Unit tests for Fault Index calculation
"""

from decimal import Decimal

import pytest

from riskcore.config import FaultWeights, RiskConfig
from riskcore.fault_index import (
    FaultBand,
    ViolationScoreComponents,
    classify,
    clamp_score,
    combine_domain_fi,
    compute_fi,
    compute_fi_from,
    ratio_score,
)
from riskcore.validation import PreconditionError


@pytest.fixture
def weights():
    return FaultWeights()


class TestComputeFI:
    """Weighted sum of the four sub-scores."""

    def test_equal_scores(self, weights):
        assert compute_fi(50, 50, 50, 50, weights) == 50

    def test_single_component(self, weights):
        assert compute_fi(100, 0, 0, 0, weights) == 30
        assert compute_fi(0, 100, 0, 0, weights) == 20
        assert compute_fi(0, 0, 100, 0, weights) == 30
        assert compute_fi(0, 0, 0, 100, weights) == 20

    def test_result_is_floored(self, weights):
        # 30 * 33 / 100 = 9.9
        assert compute_fi(33, 0, 0, 0, weights) == 9

    def test_bounds(self, weights):
        assert compute_fi(0, 0, 0, 0, weights) == 0
        assert compute_fi(100, 100, 100, 100, weights) == 100

    def test_decimal_and_float_inputs(self, weights):
        assert compute_fi(Decimal("66.7"), 0.0, 0, 0, weights) == 20

    def test_deterministic(self, weights):
        results = {compute_fi(12.5, 77, 3, 41, weights) for _ in range(100)}
        assert len(results) == 1

    def test_custom_weights(self):
        weights = FaultWeights(limit=40, behavior=10, damage=40, intent=10)
        assert compute_fi(100, 0, 50, 0, weights) == 60

    @pytest.mark.parametrize("bad", [101, -1, Decimal("NaN"), float("inf")])
    def test_out_of_range_component_raises(self, weights, bad):
        with pytest.raises(PreconditionError):
            compute_fi(bad, 0, 0, 0, weights)

    def test_bool_component_raises(self, weights):
        with pytest.raises(PreconditionError):
            compute_fi(True, 0, 0, 0, weights)

    def test_weights_must_sum_to_100(self):
        with pytest.raises(PreconditionError):
            FaultWeights(limit=30, behavior=20, damage=30, intent=10)

    def test_negative_weight_raises(self):
        with pytest.raises(PreconditionError):
            FaultWeights(limit=-10, behavior=40, damage=50, intent=20)

    def test_from_components(self, weights):
        components = ViolationScoreComponents.of(limit=100, intent=100)
        assert compute_fi_from(components, weights) == 50
        assert components.to_dict() == {"L": "100", "B": "0", "D": "0", "I": "100"}


class TestCombineDomains:
    """Worst domain wins."""

    def test_max_not_average(self):
        assert combine_domain_fi([12, 45, 30]) == 45

    def test_empty_is_zero(self):
        assert combine_domain_fi([]) == 0

    def test_out_of_range_raises(self):
        with pytest.raises(PreconditionError):
            combine_domain_fi([10, 101])


class TestClassify:

    @pytest.mark.parametrize("fi,band", [
        (0, FaultBand.CLEAN),
        (9, FaultBand.CLEAN),
        (10, FaultBand.WARNING),
        (29, FaultBand.WARNING),
        (30, FaultBand.SLASHING),
        (84, FaultBand.SLASHING),
        (85, FaultBand.BAN),
        (100, FaultBand.BAN),
    ])
    def test_default_bands(self, fi, band):
        assert classify(fi, RiskConfig()) == band

    def test_bands_follow_config(self):
        config = RiskConfig(version=2, min_slashing_fi=40, ban_threshold_fi=90, warning_fi=20)
        assert classify(35, config) == FaultBand.WARNING
        assert classify(40, config) == FaultBand.SLASHING
        assert classify(89, config) == FaultBand.SLASHING


class TestScoreHelpers:

    def test_ratio_score(self):
        assert ratio_score(4, 5) == 0
        assert ratio_score(5, 5) == 0
        assert ratio_score(Decimal("7.5"), 5) == 50
        assert ratio_score(10, 5) == 100
        assert ratio_score(50, 5) == 100

    def test_ratio_score_zero_limit(self):
        assert ratio_score(1, 0) == 100
        assert ratio_score(0, 0) == 0

    def test_clamp_score(self):
        assert clamp_score(-5) == 0
        assert clamp_score(150) == 100
        assert clamp_score(Decimal("42.5")) == Decimal("42.5")
