"""Per-kind reconciliation pass.

One Reconciler drives every resource kind; kind-specific behavior lives in
the gateway (provider mapping) and in the differ's field rules.

SINGLE-INSTANCE RESOURCES:
    Fetching -> NotFound -> Creating -> Created
    Fetching -> Found -> Diffing -> empty -> Converged
    Fetching -> Found -> Diffing -> non-empty -> Approving
        -> accepted -> Updating -> Updated
        -> rejected -> ApprovalRejected

INSTANCE FLEETS (desired_count set):
    Fetching(all) -> Sizing -> positive -> Creating x n -> Scaled
                            -> negative -> Terminating -> Scaled
                            -> zero -> Converged

Every mutating call is preceded by a fetch in the same pass and goes
through the retry wrapper. Every pass ends in exactly one outcome; any
exception becomes a Failed outcome.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, TypeVar

from .approval import ApprovalGate
from .config import RetryPolicy
from .differ import compute_change_set
from .fetcher import StateFetcher
from .gateway import ProviderGateway, ensure_creatable, ensure_updatable
from .models import BaseResourceSpec, InstanceSpec
from .retry import call_with_retry
from .sizer import plan_fleet
from .state import OutcomeStatus, ReconcilePhase, ReconciliationOutcome

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _PassTrace:
    """Records the phases of one pass and builds its outcome."""

    def __init__(self, spec: BaseResourceSpec) -> None:
        self._spec = spec
        self._phases: list[ReconcilePhase] = []

    def enter(self, phase: ReconcilePhase) -> None:
        if phase in self._phases:
            raise RuntimeError(f"Phase {phase.value} revisited within one pass")
        self._phases.append(phase)
        logger.debug(
            "Entering phase",
            extra={
                "kind": self._spec.kind.value,
                "resource_name": self._spec.name,
                "phase": phase.value,
            },
        )

    def outcome(self, status: OutcomeStatus, **details: Any) -> ReconciliationOutcome:
        return ReconciliationOutcome(
            kind=self._spec.kind,
            name=self._spec.name,
            status=status,
            phases=tuple(self._phases),
            **details,
        )


class Reconciler:
    """Converges one declared resource toward its desired spec."""

    def __init__(
        self,
        gateway: ProviderGateway,
        approval_gate: ApprovalGate,
        retry_policy: RetryPolicy,
    ) -> None:
        """Initialize reconciler.

        Args:
            gateway: Provider gateway for all provider calls.
            approval_gate: Gate consulted before in-place updates.
            retry_policy: Retry policy applied to every provider call.
        """
        self._gateway = gateway
        self._approval_gate = approval_gate
        self._retry_policy = retry_policy
        self._fetcher = StateFetcher(gateway, retry_policy)

    async def reconcile(self, spec: BaseResourceSpec) -> ReconciliationOutcome:
        """Run one reconciliation pass for a declared spec.

        Returns:
            The pass outcome. Errors are reported as Failed, never raised.
        """
        trace = _PassTrace(spec)
        try:
            if isinstance(spec, InstanceSpec) and spec.is_fleet:
                return await self._reconcile_fleet(spec, trace)
            return await self._reconcile_single(spec, trace)
        except Exception as e:
            logger.error(
                "Reconciliation failed",
                extra={
                    "kind": spec.kind.value,
                    "resource_name": spec.name,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )
            return trace.outcome(OutcomeStatus.FAILED, error=e)

    async def _call(self, operation: Callable[[], T], description: str) -> T:
        return await call_with_retry(
            operation,
            policy=self._retry_policy,
            description=description,
        )

    async def _reconcile_single(
        self, spec: BaseResourceSpec, trace: _PassTrace
    ) -> ReconciliationOutcome:
        label = f"{spec.kind.value}/{spec.name}"

        trace.enter(ReconcilePhase.FETCHING)
        observed = await self._fetcher.fetch(spec)

        if observed is None:
            trace.enter(ReconcilePhase.CREATING)
            ensure_creatable(spec)
            resource_id = await self._call(
                lambda: self._gateway.create(spec), description=f"create {label}"
            )
            logger.info(
                "Resource created",
                extra={
                    "kind": spec.kind.value,
                    "resource_name": spec.name,
                    "resource_id": resource_id,
                },
            )
            return trace.outcome(OutcomeStatus.CREATED, resource_id=resource_id)

        trace.enter(ReconcilePhase.DIFFING)
        change_set = compute_change_set(
            spec.kind, spec.desired_fields(), observed.fields, resource=label
        )
        if change_set.is_empty:
            return trace.outcome(OutcomeStatus.CONVERGED, resource_id=observed.resource_id)

        # Fail before prompting when the provider cannot apply the change
        ensure_updatable(spec, change_set)

        trace.enter(ReconcilePhase.APPROVING)
        approved = await self._approval_gate.request(spec.kind, spec.name, change_set)
        if not approved:
            return trace.outcome(
                OutcomeStatus.APPROVAL_REJECTED,
                resource_id=observed.resource_id,
                change_set=change_set,
            )

        trace.enter(ReconcilePhase.UPDATING)
        await self._call(
            lambda: self._gateway.update(spec, observed, change_set),
            description=f"update {label}",
        )
        logger.info(
            "Resource updated",
            extra={
                "kind": spec.kind.value,
                "resource_name": spec.name,
                "resource_id": observed.resource_id,
                "change_count": len(change_set),
            },
        )
        return trace.outcome(
            OutcomeStatus.UPDATED,
            resource_id=observed.resource_id,
            change_set=change_set,
        )

    async def _reconcile_fleet(
        self, spec: InstanceSpec, trace: _PassTrace
    ) -> ReconciliationOutcome:
        # SAFETY: only called when spec.is_fleet, so desired_count is set
        assert spec.desired_count is not None
        label = f"{spec.kind.value}/{spec.name}"

        trace.enter(ReconcilePhase.FETCHING)
        fleet = await self._fetcher.fetch_fleet(spec)

        trace.enter(ReconcilePhase.SIZING)
        plan = plan_fleet(fleet, spec.desired_count)
        if plan.is_converged:
            logger.info(
                "Fleet at desired size",
                extra={
                    "kind": spec.kind.value,
                    "resource_name": spec.name,
                    "count": plan.observed_count,
                },
            )
            return trace.outcome(OutcomeStatus.CONVERGED)

        if plan.delta > 0:
            trace.enter(ReconcilePhase.CREATING)
            ensure_creatable(spec)
            created: list[str] = []
            for index in range(plan.to_create):
                logger.info(
                    "Creating fleet instance",
                    extra={
                        "kind": spec.kind.value,
                        "resource_name": spec.name,
                        "instance_number": index + 1,
                        "instances_to_create": plan.to_create,
                    },
                )
                try:
                    instance_id = await self._call(
                        lambda: self._gateway.create(spec), description=f"create {label}"
                    )
                except Exception as e:
                    # Instances created earlier in this pass stay in place
                    logger.error(
                        "Fleet scale-up stopped",
                        extra={
                            "kind": spec.kind.value,
                            "resource_name": spec.name,
                            "created_count": len(created),
                            "instances_to_create": plan.to_create,
                            "error": str(e),
                        },
                    )
                    return trace.outcome(
                        OutcomeStatus.FAILED,
                        error=e,
                        delta=plan.delta,
                        created_ids=tuple(created),
                    )
                created.append(instance_id)
            return trace.outcome(OutcomeStatus.SCALED, delta=plan.delta, created_ids=tuple(created))

        trace.enter(ReconcilePhase.TERMINATING)
        await self._call(
            lambda: self._gateway.terminate(spec.kind, plan.victims),
            description=f"terminate {label}",
        )
        logger.info(
            "Fleet instances terminated",
            extra={
                "kind": spec.kind.value,
                "resource_name": spec.name,
                "terminated_ids": list(plan.victims),
            },
        )
        return trace.outcome(OutcomeStatus.SCALED, delta=plan.delta, terminated_ids=plan.victims)
