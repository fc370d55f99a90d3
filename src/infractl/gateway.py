"""Provider gateway contract and its typed errors.

The gateway is the only boundary to the cloud control plane. Each verb is
a synchronous round trip; the reconciler runs it in an executor behind the
retry wrapper.

ERROR TAXONOMY:
- ResourceNotFoundError: expected, selects the create path. Never retried.
- DesiredStateError: desired state cannot be applied as declared (missing
  required fields, immutable field changes). Raised before any provider
  call is issued. Never retried.
- ProviderError: everything else the provider reports. Retried.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from .models import (
    BaseResourceSpec,
    DatabaseSpec,
    IdentityRoleSpec,
    InstanceSpec,
    LoadBalancerSpec,
    ResourceKind,
    ScalingGroupSpec,
)
from .state import ChangeSet, ObservedState


class ResourceNotFoundError(Exception):
    """Raised when the provider reports no matching resource."""

    def __init__(self, kind: ResourceKind, name: str) -> None:
        super().__init__(f"{kind.value} '{name}' not found")
        self.kind = kind
        self.name = name


class DesiredStateError(Exception):
    """Raised when desired state fails validation before a provider call."""

    pass


class ProviderError(Exception):
    """Raised when a provider call fails.

    Attributes:
        operation: Provider operation name (e.g. RunInstances).
        code: Provider error code, if the provider returned one.
    """

    def __init__(self, operation: str, message: str, code: str | None = None) -> None:
        super().__init__(f"{operation} failed: {message}")
        self.operation = operation
        self.code = code


# Fields the provider cannot change on an existing resource
IMMUTABLE_FIELDS: dict[ResourceKind, frozenset[str]] = {
    ResourceKind.INSTANCE: frozenset({"image_id", "key_name", "subnet_id"}),
    ResourceKind.OBJECT_STORE: frozenset(),
    ResourceKind.MANAGED_DATABASE: frozenset({"engine", "username"}),
    ResourceKind.LOAD_BALANCER: frozenset({"scheme"}),
    ResourceKind.SCALING_GROUP: frozenset(),
    ResourceKind.IDENTITY_ROLE: frozenset(),
}


def ensure_creatable(spec: BaseResourceSpec) -> None:
    """Check that a spec carries everything its create call needs.

    Raises:
        DesiredStateError: If a required field is missing.
    """
    missing: list[str] = []

    match spec:
        case InstanceSpec():
            if not spec.subnet_id:
                missing.append("subnet_id")
            if not spec.security_group_ids:
                missing.append("security_group_ids")
            if not spec.image_id:
                missing.append("image_id")
            if not spec.instance_type:
                missing.append("instance_type")
        case DatabaseSpec():
            for name in ("engine", "instance_class", "allocated_storage", "username"):
                if getattr(spec, name) is None:
                    missing.append(name)
            if spec.password is None:
                missing.append("password")
        case LoadBalancerSpec():
            if not spec.subnets:
                missing.append("subnets")
            if spec.target_groups and not spec.vpc_id:
                missing.append("vpc_id")
        case ScalingGroupSpec():
            for name in ("min_size", "max_size", "launch_template"):
                if getattr(spec, name) is None:
                    missing.append(name)
            if not spec.zone_identifiers:
                missing.append("zone_identifiers")
        case IdentityRoleSpec():
            if not spec.trust_policy:
                missing.append("trust_policy")

    if missing:
        raise DesiredStateError(
            f"{spec.kind.value} '{spec.name}' is missing required fields: {', '.join(missing)}"
        )


def ensure_updatable(spec: BaseResourceSpec, change_set: ChangeSet) -> None:
    """Check that every changed field can be updated in place.

    Raises:
        DesiredStateError: If the change set touches an immutable field.
    """
    immutable = IMMUTABLE_FIELDS[spec.kind]
    blocked = [name for name in change_set.touched_fields() if name in immutable]
    if blocked:
        raise DesiredStateError(
            f"{spec.kind.value} '{spec.name}' cannot change {', '.join(blocked)} in place; "
            f"replace the resource instead"
        )


class ProviderGateway(ABC):
    """Typed request/response boundary to the cloud control plane."""

    @abstractmethod
    def describe(self, spec: BaseResourceSpec) -> list[ObservedState]:
        """Return live candidates matching the spec's identity.

        Fleet-style instances return every instance whose lifecycle state
        is running, pending, stopping or stopped, in provider order.

        Raises:
            ResourceNotFoundError: If the provider reports no such resource.
            ProviderError: On any other provider failure.
        """

    @abstractmethod
    def create(self, spec: BaseResourceSpec) -> str:
        """Create one resource and return its provider identity."""

    @abstractmethod
    def update(
        self,
        spec: BaseResourceSpec,
        observed: ObservedState,
        change_set: ChangeSet,
    ) -> None:
        """Apply a change set to an existing resource."""

    @abstractmethod
    def terminate(self, kind: ResourceKind, resource_ids: Sequence[str]) -> None:
        """Terminate resources by provider identity, in one request where possible."""
