"""Builds observed state for a desired spec from the provider.

"Not found" is a normal result here and is returned as ``None`` (or an
empty fleet), never raised to the reconciler.
"""

from __future__ import annotations

import logging

from .config import RetryPolicy
from .gateway import ProviderGateway, ResourceNotFoundError
from .models import BaseResourceSpec, InstanceSpec
from .retry import call_with_retry
from .state import ObservedState

logger = logging.getLogger(__name__)

# Lifecycle states counted as part of a fleet; terminated and
# shutting-down instances are excluded
FLEET_LIFECYCLE_STATES: frozenset[str] = frozenset({"running", "pending", "stopping", "stopped"})

# Fields used to tell apart instances that share a Name tag
DISAMBIGUATION_FIELDS: tuple[str, ...] = ("instance_type", "image_id", "key_name", "subnet_id")


class StateFetcher:
    """Queries the provider gateway for the live state of a spec."""

    def __init__(self, gateway: ProviderGateway, retry_policy: RetryPolicy) -> None:
        self._gateway = gateway
        self._retry_policy = retry_policy

    async def _describe(self, spec: BaseResourceSpec) -> list[ObservedState]:
        try:
            return await call_with_retry(
                lambda: self._gateway.describe(spec),
                policy=self._retry_policy,
                description=f"describe {spec.kind.value}/{spec.name}",
            )
        except ResourceNotFoundError:
            return []

    async def fetch(self, spec: BaseResourceSpec) -> ObservedState | None:
        """Fetch the live resource for a single-instance spec.

        Returns:
            The first matching live resource, or None when none exists.
        """
        candidates = await self._describe(spec)
        if not candidates:
            logger.info(
                "Resource not found",
                extra={"kind": spec.kind.value, "resource_name": spec.name},
            )
            return None

        observed = self._pick(spec, candidates)
        logger.info(
            "Resource found",
            extra={
                "kind": spec.kind.value,
                "resource_name": spec.name,
                "resource_id": observed.resource_id,
                "candidates": len(candidates),
            },
        )
        return observed

    async def fetch_fleet(self, spec: InstanceSpec) -> list[ObservedState]:
        """Fetch every live instance of a fleet in provider order."""
        candidates = await self._describe(spec)
        fleet = [c for c in candidates if c.lifecycle_state in FLEET_LIFECYCLE_STATES]
        logger.info(
            "Fleet observed",
            extra={
                "kind": spec.kind.value,
                "resource_name": spec.name,
                "observed_count": len(fleet),
                "desired_count": spec.desired_count,
            },
        )
        return fleet

    def _pick(self, spec: BaseResourceSpec, candidates: list[ObservedState]) -> ObservedState:
        """Narrow candidates sharing a name by matching identifying fields."""
        if len(candidates) == 1 or not isinstance(spec, InstanceSpec):
            return candidates[0]

        desired = spec.desired_fields()

        def score(candidate: ObservedState) -> int:
            return sum(
                1
                for name in DISAMBIGUATION_FIELDS
                if desired.get(name) is not None and candidate.fields.get(name) == desired[name]
            )

        # max() keeps the first candidate among equal scores
        return max(candidates, key=score)
