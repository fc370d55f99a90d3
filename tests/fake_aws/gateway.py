"""Fake provider gateway with call recording and error injection.

Resources are kept in insertion order, which is the order describe
returns them in. Calls arrive from executor threads, so all state is
guarded by a lock.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from infractl.gateway import ProviderGateway, ResourceNotFoundError
from infractl.models import BaseResourceSpec, ResourceKind
from infractl.state import ChangeSet, ObservedState

ID_PREFIXES: dict[ResourceKind, str] = {
    ResourceKind.INSTANCE: "i",
    ResourceKind.OBJECT_STORE: "bucket",
    ResourceKind.MANAGED_DATABASE: "db",
    ResourceKind.LOAD_BALANCER: "alb",
    ResourceKind.SCALING_GROUP: "asg",
    ResourceKind.IDENTITY_ROLE: "role",
}

MAPPING_FIELDS = frozenset({"tags", "inline_policies"})


@dataclass
class FakeResource:
    """One resource in fake provider state."""

    kind: ResourceKind
    name: str
    resource_id: str
    fields: dict[str, Any] = field(default_factory=dict)
    lifecycle_state: str = "running"

    def observe(self) -> ObservedState:
        return ObservedState(
            kind=self.kind,
            name=self.name,
            resource_id=self.resource_id,
            fields=copy.deepcopy(self.fields),
            lifecycle_state=self.lifecycle_state,
        )


@dataclass(frozen=True)
class GatewayCall:
    """Recorded gateway call."""

    verb: str
    kind: ResourceKind
    target: str


class FakeGateway(ProviderGateway):
    """In-memory stand-in for the AWS gateway."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._resources: list[FakeResource] = []
        self._counter = itertools.count(1)
        self._queued: dict[tuple[str, ResourceKind], list[Exception]] = {}
        self._fail_after: dict[tuple[str, ResourceKind], tuple[int, Exception]] = {}
        self._successes: dict[tuple[str, ResourceKind], int] = {}
        self.calls: list[GatewayCall] = []

    # =========================================================================
    # Test setup
    # =========================================================================

    def seed(
        self,
        kind: ResourceKind,
        name: str,
        fields: dict[str, Any] | None = None,
        *,
        lifecycle_state: str = "running",
        resource_id: str | None = None,
    ) -> str:
        """Add an existing resource and return its id."""
        with self._lock:
            resource_id = resource_id or self._next_id(kind)
            self._resources.append(
                FakeResource(kind, name, resource_id, dict(fields or {}), lifecycle_state)
            )
            return resource_id

    def inject(self, verb: str, kind: ResourceKind, *errors: Exception) -> None:
        """Raise the given errors, in order, on the next calls of a verb."""
        with self._lock:
            self._queued.setdefault((verb, kind), []).extend(errors)

    def fail_after(self, verb: str, kind: ResourceKind, successes: int, error: Exception) -> None:
        """Let ``successes`` calls of a verb succeed, then fail every call."""
        with self._lock:
            self._fail_after[(verb, kind)] = (successes, error)

    # =========================================================================
    # Inspection
    # =========================================================================

    def call_count(self, verb: str, kind: ResourceKind | None = None) -> int:
        return sum(
            1 for call in self.calls if call.verb == verb and (kind is None or call.kind == kind)
        )

    def live(self, kind: ResourceKind, name: str) -> list[FakeResource]:
        """Resources of a kind and name that have not been terminated."""
        with self._lock:
            return [
                r
                for r in self._resources
                if r.kind == kind and r.name == name and r.lifecycle_state != "terminated"
            ]

    def terminated_ids(self) -> list[str]:
        with self._lock:
            return [r.resource_id for r in self._resources if r.lifecycle_state == "terminated"]

    # =========================================================================
    # Gateway verbs
    # =========================================================================

    def describe(self, spec: BaseResourceSpec) -> list[ObservedState]:
        with self._lock:
            self._record("describe", spec.kind, spec.name)
            matches = [
                r.observe()
                for r in self._resources
                if r.kind == spec.kind and r.name == spec.name and r.lifecycle_state != "terminated"
            ]
        if not matches and spec.kind != ResourceKind.INSTANCE:
            raise ResourceNotFoundError(spec.kind, spec.name)
        return matches

    def create(self, spec: BaseResourceSpec) -> str:
        with self._lock:
            self._record("create", spec.kind, spec.name)
            fields = {k: v for k, v in spec.desired_fields().items() if v is not None}
            resource_id = self._next_id(spec.kind)
            self._resources.append(FakeResource(spec.kind, spec.name, resource_id, fields))
            return resource_id

    def update(
        self, spec: BaseResourceSpec, observed: ObservedState, change_set: ChangeSet
    ) -> None:
        with self._lock:
            self._record("update", spec.kind, observed.resource_id)
            resource = self._find(observed.resource_id)
            desired = spec.desired_fields()
            for name in change_set.touched_fields():
                if name in MAPPING_FIELDS:
                    merged = dict(resource.fields.get(name) or {})
                    merged.update(desired[name])
                    resource.fields[name] = merged
                else:
                    resource.fields[name] = copy.deepcopy(desired[name])

    def terminate(self, kind: ResourceKind, resource_ids: Sequence[str]) -> None:
        with self._lock:
            self._record("terminate", kind, ",".join(resource_ids))
            for resource_id in resource_ids:
                self._find(resource_id).lifecycle_state = "terminated"

    # =========================================================================
    # Internals (caller holds the lock)
    # =========================================================================

    def _next_id(self, kind: ResourceKind) -> str:
        return f"{ID_PREFIXES[kind]}-{next(self._counter):04d}"

    def _find(self, resource_id: str) -> FakeResource:
        for resource in self._resources:
            if resource.resource_id == resource_id:
                return resource
        raise KeyError(resource_id)

    def _record(self, verb: str, kind: ResourceKind, target: str) -> None:
        self.calls.append(GatewayCall(verb, kind, target))
        key = (verb, kind)

        queued = self._queued.get(key)
        if queued:
            raise queued.pop(0)

        if key in self._fail_after:
            allowed, error = self._fail_after[key]
            if self._successes.get(key, 0) >= allowed:
                raise error
        self._successes[key] = self._successes.get(key, 0) + 1
