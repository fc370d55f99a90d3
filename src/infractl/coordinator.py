"""Runs one reconciliation per declared resource kind concurrently.

Tasks are independent: a failing kind never cancels or blocks its
siblings. Each task contributes exactly one outcome, collected from the
event-loop thread only and reported in kind order once all tasks finish.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from .models import BaseResourceSpec, InfraSpec, ResourceKind
from .reconciler import Reconciler
from .state import OutcomeStatus, ReconciliationOutcome

logger = logging.getLogger(__name__)

_KIND_ORDER: dict[ResourceKind, int] = {kind: index for index, kind in enumerate(ResourceKind)}


@dataclass
class RunReport:
    """Aggregated outcomes of one run."""

    outcomes: list[ReconciliationOutcome] = field(default_factory=list)
    duration_seconds: float = 0.0

    @property
    def failed(self) -> list[ReconciliationOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.success]

    @property
    def success(self) -> bool:
        return not self.failed

    @property
    def exit_code(self) -> int:
        """0 when no kind failed, 1 otherwise."""
        return 0 if self.success else 1

    def status_lines(self) -> list[str]:
        return [outcome.status_line() for outcome in self.outcomes]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "outcomes": [outcome.to_dict() for outcome in self.outcomes],
            "failed_count": len(self.failed),
            "duration_seconds": round(self.duration_seconds, 3),
        }


class Coordinator:
    """Fans out reconciliations over the declared kinds."""

    def __init__(self, reconciler: Reconciler) -> None:
        self._reconciler = reconciler

    async def run(self, infra: InfraSpec) -> RunReport:
        """Reconcile every declared kind and wait for all of them.

        Returns:
            One outcome per declared kind, in kind order.
        """
        specs = infra.declared_resources()
        start_time = time.monotonic()

        if not specs:
            logger.warning("No resources declared", extra={"region": infra.region})
            return RunReport()

        logger.info(
            "Starting reconciliation run",
            extra={"region": infra.region, "kinds": [spec.kind.value for spec in specs]},
        )

        collected: list[ReconciliationOutcome] = []

        async def reconcile_kind(spec: BaseResourceSpec) -> None:
            try:
                outcome = await self._reconciler.reconcile(spec)
            except Exception as e:
                outcome = ReconciliationOutcome(
                    kind=spec.kind, name=spec.name, status=OutcomeStatus.FAILED, error=e
                )
            collected.append(outcome)
            _log_outcome(outcome)

        await asyncio.gather(*(reconcile_kind(spec) for spec in specs))

        report = RunReport(
            outcomes=sorted(collected, key=lambda outcome: _KIND_ORDER[outcome.kind]),
            duration_seconds=time.monotonic() - start_time,
        )
        log = logger.info if report.success else logger.error
        log("Reconciliation run finished", extra=report.to_dict())
        return report


def _log_outcome(outcome: ReconciliationOutcome) -> None:
    """Log a single outcome at a level matching its status."""
    match outcome.status:
        case OutcomeStatus.FAILED:
            logger.error(outcome.status_line(), extra=outcome.to_dict())
        case OutcomeStatus.APPROVAL_REJECTED:
            logger.warning(outcome.status_line(), extra=outcome.to_dict())
        case _:
            logger.info(outcome.status_line(), extra=outcome.to_dict())
