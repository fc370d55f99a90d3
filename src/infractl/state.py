"""Per-pass state: observed snapshots, change sets and outcomes.

Everything here is created fresh for one reconciliation pass and discarded
once the pass has produced its outcome.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import ResourceKind


@dataclass(frozen=True)
class ObservedState:
    """Live snapshot of one provider resource.

    Attributes:
        kind: Resource kind.
        name: Identity name (Name tag, bucket name, role name, ...).
        resource_id: Provider-assigned identity (instance id, ARN, ...).
        fields: Live values keyed like the desired comparable view.
        lifecycle_state: Provider lifecycle state where the kind has one.
    """

    kind: ResourceKind
    name: str
    resource_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    lifecycle_state: str | None = None


@dataclass(frozen=True)
class FieldChange:
    """One field-level delta between observed and desired state."""

    field: str
    observed: Any
    desired: Any

    @property
    def top_level_field(self) -> str:
        """Field name without the member/key suffix (``tags.Env`` -> ``tags``)."""
        return self.field.split("[", 1)[0].split(".", 1)[0]

    def render(self) -> str:
        return f"{self.field}: {_render_value(self.observed)} -> {_render_value(self.desired)}"


def _render_value(value: Any) -> str:
    if value is None:
        return "<absent>"
    return str(value)


@dataclass(frozen=True)
class ChangeSet:
    """Ordered field-level diff for one resource. Empty means converged."""

    changes: tuple[FieldChange, ...] = ()
    resource: str = ""

    def __len__(self) -> int:
        return len(self.changes)

    def __iter__(self) -> Iterator[FieldChange]:
        return iter(self.changes)

    def __bool__(self) -> bool:
        return bool(self.changes)

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def touched_fields(self) -> list[str]:
        """Top-level fields with at least one change, in change order."""
        seen: list[str] = []
        for change in self.changes:
            if change.top_level_field not in seen:
                seen.append(change.top_level_field)
        return seen

    def render_lines(self) -> list[str]:
        """Human-readable lines of the form ``field: observed -> desired``."""
        return [change.render() for change in self.changes]


class OutcomeStatus(str, Enum):
    """Terminal status of a reconciliation pass."""

    CONVERGED = "converged"
    CREATED = "created"
    UPDATED = "updated"
    SCALED = "scaled"
    APPROVAL_REJECTED = "approval_rejected"
    FAILED = "failed"


class ReconcilePhase(str, Enum):
    """States a reconciliation pass moves through."""

    FETCHING = "fetching"
    CREATING = "creating"
    DIFFING = "diffing"
    APPROVING = "approving"
    UPDATING = "updating"
    SIZING = "sizing"
    TERMINATING = "terminating"


@dataclass
class ReconciliationOutcome:
    """Exactly one outcome per reconciled resource kind."""

    kind: ResourceKind
    name: str
    status: OutcomeStatus
    resource_id: str | None = None
    change_set: ChangeSet = field(default_factory=ChangeSet)
    delta: int = 0
    created_ids: tuple[str, ...] = ()
    terminated_ids: tuple[str, ...] = ()
    error: Exception | None = None
    phases: tuple[ReconcilePhase, ...] = ()

    @property
    def success(self) -> bool:
        """Check if the pass ended without error."""
        return self.status != OutcomeStatus.FAILED

    def summary(self) -> str:
        """Short status, e.g. ``Created(i-0abc)`` or ``Scaled(+3)``."""
        match self.status:
            case OutcomeStatus.CONVERGED:
                return "Converged"
            case OutcomeStatus.CREATED:
                return f"Created({self.resource_id})"
            case OutcomeStatus.UPDATED:
                return f"Updated({len(self.change_set)} changes)"
            case OutcomeStatus.SCALED:
                return f"Scaled({self.delta:+d})"
            case OutcomeStatus.APPROVAL_REJECTED:
                return "ApprovalRejected"
            case OutcomeStatus.FAILED:
                return f"Failed({self.error})"
        return self.status.value

    def status_line(self) -> str:
        return f"{self.kind.value}/{self.name}: {self.summary()}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "resource_name": self.name,
            "status": self.status.value,
            "phases": [phase.value for phase in self.phases],
        }
        if self.resource_id is not None:
            data["resource_id"] = self.resource_id
        if self.change_set:
            data["changes"] = self.change_set.render_lines()
        if self.delta:
            data["delta"] = self.delta
        if self.created_ids:
            data["created_ids"] = list(self.created_ids)
        if self.terminated_ids:
            data["terminated_ids"] = list(self.terminated_ids)
        if self.error is not None:
            data["error"] = str(self.error)
            data["error_type"] = type(self.error).__name__
        return data
