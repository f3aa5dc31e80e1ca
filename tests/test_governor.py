"""Tests for the spend ceiling."""

from concurrent.futures import ThreadPoolExecutor

import pytest

from scanpipeline.errors import BudgetExceeded
from scanpipeline.governor import CostGovernor


class TestCostGovernor:
    """Tests for CostGovernor."""

    def test_allows_until_ceiling(self):
        """Charges are accepted while the total stays within the ceiling."""
        governor = CostGovernor(ceiling_usd=1.0)
        assert governor.charge(0.5).allowed
        assert governor.charge(0.5).allowed
        assert governor.spent == pytest.approx(1.0)
        assert governor.remaining == 0.0

    def test_rejects_charge_over_ceiling(self):
        governor = CostGovernor(ceiling_usd=1.0)
        governor.charge(0.75)
        charge = governor.charge(0.5)
        assert charge.allowed is False
        assert charge.spent == pytest.approx(0.75)
        assert governor.exhausted

    def test_rejection_latches(self):
        """After one rejection even small charges are refused."""
        governor = CostGovernor(ceiling_usd=1.0)
        governor.charge(0.75)
        governor.charge(0.5)
        assert governor.charge(0.125).allowed is False
        assert governor.spent == pytest.approx(0.75)

    def test_zero_ceiling_rejects_paid_calls(self):
        governor = CostGovernor(ceiling_usd=0.0)
        assert governor.charge(0.001).allowed is False

    def test_negative_values(self):
        """Negative ceilings and amounts are programming errors."""
        with pytest.raises(ValueError):
            CostGovernor(ceiling_usd=-1)
        with pytest.raises(ValueError):
            CostGovernor(ceiling_usd=1).charge(-0.5)

    def test_require_raises(self):
        governor = CostGovernor(ceiling_usd=0.25)
        governor.require(0.25)
        with pytest.raises(BudgetExceeded) as exc_info:
            governor.require(0.125)
        assert exc_info.value.ceiling == 0.25

    def test_settle_replaces_estimate_with_actual(self):
        """Spend follows the real cost once a call is settled."""
        governor = CostGovernor(ceiling_usd=1.0)
        governor.charge(0.125)
        governor.settle(0.125, 0.5)
        assert governor.spent == pytest.approx(0.5)
        assert governor.actual_spent == pytest.approx(0.5)

        governor.charge(0.125)
        governor.settle(0.125, 0.0)
        assert governor.spent == pytest.approx(0.5)

    def test_real_cost_above_estimate_stops_charges(self):
        """Calls costing more than estimated reach the ceiling sooner."""
        governor = CostGovernor(ceiling_usd=0.5)
        allowed = 0
        while governor.charge(0.0625).allowed:
            governor.settle(0.0625, 0.25)
            allowed += 1
        assert allowed == 2
        assert governor.actual_spent == pytest.approx(0.5)

    def test_starts_from_earlier_spend(self):
        """A governor for a resumed job counts what was already spent."""
        governor = CostGovernor(ceiling_usd=1.0, spent_usd=0.875)
        assert governor.remaining == pytest.approx(0.125)
        assert governor.charge(0.25).allowed is False
        with pytest.raises(ValueError):
            CostGovernor(ceiling_usd=1.0, spent_usd=-0.5)

    def test_concurrent_charges_never_overspend(self):
        """Exactly ceiling / amount charges succeed across threads."""
        governor = CostGovernor(ceiling_usd=5.0)
        with ThreadPoolExecutor(max_workers=16) as executor:
            results = list(executor.map(lambda _: governor.charge(0.125).allowed, range(100)))
        assert sum(results) == 40
        assert governor.spent == pytest.approx(5.0)
