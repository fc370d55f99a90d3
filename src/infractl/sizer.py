"""Count-based sizing for instance fleets.

A fleet is reconciled by count, not by field diff. Victims for scale-down
are taken in first-seen order of the observed snapshot, so the same
snapshot always yields the same victims.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .state import ObservedState


@dataclass(frozen=True)
class FleetPlan:
    """Sizing decision for one fleet snapshot.

    Attributes:
        observed_count: Live instances in a countable lifecycle state.
        desired_count: Declared replica count.
        delta: desired_count - observed_count.
        victims: Instance ids to terminate when delta is negative.
    """

    observed_count: int
    desired_count: int
    delta: int
    victims: tuple[str, ...] = ()

    @property
    def to_create(self) -> int:
        return max(self.delta, 0)

    @property
    def is_converged(self) -> bool:
        return self.delta == 0


def compute_fleet_delta(observed_count: int, desired_count: int) -> int:
    """Signed delta: positive creates, negative terminates, zero is no-op."""
    return desired_count - observed_count


def select_victims(observed: Sequence[ObservedState], count: int) -> tuple[str, ...]:
    """Pick ``count`` instances to terminate in first-seen order.

    Requests for more instances than are observed are clipped.
    """
    if count <= 0:
        return ()
    return tuple(instance.resource_id for instance in observed[:count])


def plan_fleet(observed: Sequence[ObservedState], desired_count: int) -> FleetPlan:
    """Build the sizing plan for a fleet snapshot."""
    delta = compute_fleet_delta(len(observed), desired_count)
    victims = select_victims(observed, -delta) if delta < 0 else ()
    return FleetPlan(
        observed_count=len(observed),
        desired_count=desired_count,
        delta=delta,
        victims=victims,
    )
