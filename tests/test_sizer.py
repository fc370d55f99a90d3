"""Tests for fleet sizing."""

from __future__ import annotations

from infractl.models import ResourceKind
from infractl.sizer import compute_fleet_delta, plan_fleet, select_victims
from infractl.state import ObservedState


def make_fleet(count: int) -> list[ObservedState]:
    return [
        ObservedState(ResourceKind.INSTANCE, "web", f"i-{n}", lifecycle_state="running")
        for n in range(1, count + 1)
    ]


class TestComputeFleetDelta:
    """Tests for compute_fleet_delta."""

    def test_signs(self) -> None:
        assert compute_fleet_delta(2, 5) == 3
        assert compute_fleet_delta(5, 2) == -3
        assert compute_fleet_delta(3, 3) == 0


class TestSelectVictims:
    """Tests for select_victims."""

    def test_first_seen_order(self) -> None:
        assert select_victims(make_fleet(5), 3) == ("i-1", "i-2", "i-3")

    def test_clipped_to_observed(self) -> None:
        """Test asking for more victims than observed returns every instance."""
        assert select_victims(make_fleet(2), 5) == ("i-1", "i-2")

    def test_nothing_requested(self) -> None:
        assert select_victims(make_fleet(2), 0) == ()


class TestPlanFleet:
    """Tests for plan_fleet."""

    def test_converged(self) -> None:
        plan = plan_fleet(make_fleet(3), 3)

        assert plan.is_converged
        assert plan.to_create == 0
        assert plan.victims == ()

    def test_scale_up(self) -> None:
        plan = plan_fleet(make_fleet(2), 5)

        assert plan.delta == 3
        assert plan.to_create == 3
        assert plan.victims == ()

    def test_scale_down(self) -> None:
        plan = plan_fleet(make_fleet(5), 2)

        assert plan.delta == -3
        assert plan.to_create == 0
        assert plan.victims == ("i-1", "i-2", "i-3")

    def test_same_snapshot_same_victims(self) -> None:
        fleet = make_fleet(4)
        assert plan_fleet(fleet, 1).victims == plan_fleet(fleet, 1).victims
