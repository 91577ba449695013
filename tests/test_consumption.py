"""
Tests for the per-plug consumption model.
"""

import math

import pytest

from plugmesh.balancer.consumption import ConsumptionModel
from plugmesh.config import BalancerConfig


@pytest.fixture
def model():
    return ConsumptionModel(BalancerConfig())


class TestRecordSample:
    """Tests for sample acceptance."""

    def test_first_sample_accepted(self, model):
        assert model.record_sample(0.0, 100.0) is True
        assert len(model.history) == 1

    def test_rejects_same_timestamp(self, model):
        """Re-applying the same sample is a no-op."""
        model.record_sample(5.0, 100.0)
        crossing = model.last_threshold_crossing

        assert model.record_sample(5.0, 100.0) is False
        assert model.record_sample(5.0, 400.0) is False
        assert len(model.history) == 1
        assert model.last_threshold_crossing == crossing

    def test_rejects_older_timestamp(self, model):
        model.record_sample(5.0, 100.0)
        assert model.record_sample(4.0, 300.0) is False
        assert model.latest_watts == 100.0

    def test_rejects_small_changes(self, model):
        """Changes under min_significant_change are noise."""
        model.record_sample(0.0, 100.0)
        assert model.record_sample(1.0, 103.0) is False
        assert model.record_sample(2.0, 106.0) is True
        assert [s.watts for s in model.history] == [100.0, 106.0]

    def test_empty_history_accepts_any_value(self, model):
        model.record_sample(0.0, 100.0)
        model.set_circuit_closed(False)
        assert len(model.history) == 0

        # Same wattage as before the clear still lands
        assert model.record_sample(1.0, 100.0) is True

    def test_ordering_survives_history_clear(self, model):
        model.record_sample(10.0, 100.0)
        model.set_circuit_closed(False)
        assert model.record_sample(9.0, 0.0) is False


class TestPruning:
    """Tests for the retention window."""

    def test_old_samples_dropped(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(100.0, 200.0)
        model.record_sample(400.0, 300.0)

        # Cutoff is 400 - 300 = 100; the sample at exactly 100 stays
        assert [s.timestamp for s in model.history] == [100.0, 400.0]

    def test_average_ignores_pruned_samples(self, model):
        model.record_sample(0.0, 5000.0)
        model.record_sample(500.0, 100.0)
        model.record_sample(501.0, 120.0)

        assert model.history[0].timestamp == 500.0
        assert model.average_consumption() == pytest.approx(120.0)


class TestAverage:
    """Tests for the decay-weighted average."""

    def test_empty(self, model):
        assert model.average_consumption() == 0.0

    def test_single_sample(self, model):
        model.record_sample(0.0, 750.0)
        assert model.average_consumption() == 750.0

    def test_two_samples_uses_newest_value(self, model):
        model.record_sample(0.0, 1000.0)
        model.record_sample(5.0, 40.0)
        assert model.average_consumption() == pytest.approx(40.0)

    def test_recent_samples_weigh_more(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(1.0, 300.0)
        model.record_sample(2.0, 500.0)

        # 300 weighted 1/4 over 1s, 500 weighted 1/2 over 1s
        assert model.average_consumption() == pytest.approx((75.0 + 250.0) / 0.75)


class TestPeakAndDemand:
    """Tests for peak tracking across relay changes."""

    def test_peak_tracks_maximum_while_closed(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(1.0, 300.0)
        model.record_sample(2.0, 200.0)
        assert model.peak_consumption == 300.0
        assert model.budget_watts == 300.0

    def test_opening_clears_history_and_peak(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(1.0, 300.0)
        model.record_sample(2.0, 200.0)

        assert model.set_circuit_closed(False) is True
        assert len(model.history) == 0
        assert math.isnan(model.peak_consumption)
        # Demand estimate is max(average, latest) from while it was on
        assert model.budget_watts == pytest.approx(175.0 / 0.75)

    def test_closing_freezes_peak_at_demand(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(1.0, 300.0)
        model.record_sample(2.0, 200.0)
        model.set_circuit_closed(False)

        model.set_circuit_closed(True)
        assert model.peak_consumption == pytest.approx(175.0 / 0.75)

    def test_samples_while_open_leave_budget_alone(self, model):
        model.record_sample(0.0, 600.0)
        model.set_circuit_closed(False)

        model.record_sample(1.0, 50.0)
        assert math.isnan(model.peak_consumption)
        assert model.budget_watts == 600.0

    def test_no_change_is_reported(self, model):
        assert model.set_circuit_closed(True) is False

    def test_unknown_budget_is_zero(self):
        model = ConsumptionModel(BalancerConfig(), circuit_closed=False)
        assert model.budget_watts == 0.0


class TestThresholdCrossing:
    """Tests for last_threshold_crossing."""

    def test_crossings(self, model):
        model.record_sample(0.0, 100.0)
        assert model.last_threshold_crossing == 0.0

        model.record_sample(1.0, 150.0)
        assert model.last_threshold_crossing == 0.0

        model.record_sample(2.0, 250.0)
        assert model.last_threshold_crossing == 2.0

        model.record_sample(3.0, 300.0)
        assert model.last_threshold_crossing == 2.0

        model.record_sample(4.0, 100.0)
        assert model.last_threshold_crossing == 4.0

    def test_exactly_threshold_is_not_significant(self, model):
        model.record_sample(0.0, 100.0)
        model.record_sample(1.0, 200.0)
        assert model.last_threshold_crossing == 0.0
