"""Pydantic models for desired-state declarations with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A comparable view of each resource for the differ

Models are frozen: a desired spec is built once per run and never mutated.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)


class ResourceKind(str, Enum):
    """Catalog of reconcilable resource kinds, in reporting order."""

    INSTANCE = "instance"
    OBJECT_STORE = "object_store"
    MANAGED_DATABASE = "managed_database"
    LOAD_BALANCER = "load_balancer"
    SCALING_GROUP = "scaling_group"
    IDENTITY_ROLE = "identity_role"


# Canned S3 ACLs accepted for object stores
VALID_BUCKET_ACLS: frozenset[str] = frozenset(
    {"private", "public-read", "public-read-write", "authenticated-read"}
)

VALID_LB_SCHEMES: frozenset[str] = frozenset({"internet-facing", "internal"})

# Listener default actions the gateway can create
VALID_LISTENER_ACTIONS: frozenset[str] = frozenset({"forward"})


# =============================================================================
# Base Model
# =============================================================================


class BaseResourceSpec(BaseModel):
    """Base desired spec with the fields every kind carries.

    A spec whose name is empty is undeclared and is skipped entirely.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    kind: ClassVar[ResourceKind]

    name: str = ""
    tags: dict[str, str] = Field(default_factory=dict)

    @property
    def declared(self) -> bool:
        """True when the kind is declared for this run."""
        return bool(self.name)

    def desired_fields(self) -> dict[str, Any]:
        """Comparable view of the spec, keyed in field declaration order."""
        raise NotImplementedError("Subclasses must implement desired_fields")


# =============================================================================
# Compute
# =============================================================================


class InstanceSpec(BaseResourceSpec):
    """EC2 instance, or an instance fleet when desired_count is set."""

    kind: ClassVar[ResourceKind] = ResourceKind.INSTANCE

    instance_type: str | None = None
    image_id: str | None = Field(None, validation_alias=AliasChoices("ami", "image_id"))
    os: str | None = None
    key_name: str | None = None
    subnet_id: str | None = None
    security_group_ids: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices(
            "vpc_security_group_ids", "security_groups", "security_group_ids"
        ),
    )
    monitoring: bool = False
    desired_count: int | None = Field(None, ge=1)

    @property
    def is_fleet(self) -> bool:
        """Fleets are reconciled by count instead of by field diff."""
        return self.desired_count is not None

    def desired_fields(self) -> dict[str, Any]:
        return {
            "instance_type": self.instance_type,
            "image_id": self.image_id,
            "key_name": self.key_name,
            "subnet_id": self.subnet_id,
            "security_group_ids": list(self.security_group_ids),
            "monitoring": self.monitoring,
            "tags": dict(self.tags),
        }


# =============================================================================
# Storage
# =============================================================================


class ObjectStoreSpec(BaseResourceSpec):
    """S3 bucket."""

    kind: ClassVar[ResourceKind] = ResourceKind.OBJECT_STORE

    acl: str | None = None

    @field_validator("acl")
    @classmethod
    def validate_acl(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_BUCKET_ACLS:
            raise ValueError(f"acl must be one of {sorted(VALID_BUCKET_ACLS)}")
        return v

    def desired_fields(self) -> dict[str, Any]:
        return {"acl": self.acl, "tags": dict(self.tags)}


class DatabaseSpec(BaseResourceSpec):
    """RDS database instance."""

    kind: ClassVar[ResourceKind] = ResourceKind.MANAGED_DATABASE

    engine: str | None = None
    engine_version: str | None = None
    instance_class: str | None = None
    allocated_storage: int | None = Field(None, ge=1)
    username: str | None = None
    password: SecretStr | None = None

    def desired_fields(self) -> dict[str, Any]:
        # The master password is write-only on the provider side
        return {
            "engine": self.engine,
            "engine_version": self.engine_version,
            "instance_class": self.instance_class,
            "allocated_storage": self.allocated_storage,
            "username": self.username,
            "tags": dict(self.tags),
        }


# =============================================================================
# Load Balancing
# =============================================================================


class ListenerAction(BaseModel):
    """Default action of a listener: forward to a declared target group."""

    model_config = {"extra": "ignore", "frozen": True}

    type: str = "forward"
    target_group: Annotated[str, Field(min_length=1)]

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        if v not in VALID_LISTENER_ACTIONS:
            raise ValueError(f"action type must be one of {sorted(VALID_LISTENER_ACTIONS)}")
        return v


class ListenerSpec(BaseModel):
    """Load balancer listener."""

    model_config = {"extra": "ignore", "frozen": True}

    protocol: str = "HTTP"
    port: Annotated[int, Field(ge=1, le=65535)]
    default_action: ListenerAction

    def to_comparable(self) -> dict[str, Any]:
        return {
            "protocol": self.protocol,
            "port": self.port,
            "action_type": self.default_action.type,
            "target_group": self.default_action.target_group,
        }


class TargetGroupSpec(BaseModel):
    """Target group with its health-check policy."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=32)]
    protocol: str = "HTTP"
    port: Annotated[int, Field(ge=1, le=65535)]
    health_check_path: str = "/"
    health_check_port: int | None = None
    health_check_interval: Annotated[int, Field(ge=5, le=300)] = 30
    health_check_timeout: Annotated[int, Field(ge=2, le=120)] = 5
    healthy_threshold: Annotated[int, Field(ge=2, le=10)] = 5
    unhealthy_threshold: Annotated[int, Field(ge=2, le=10)] = 2

    def health_check(self) -> dict[str, Any]:
        return {
            "path": self.health_check_path,
            # None means the traffic port
            "port": str(self.health_check_port) if self.health_check_port else "traffic-port",
            "interval": self.health_check_interval,
            "timeout": self.health_check_timeout,
            "healthy_threshold": self.healthy_threshold,
            "unhealthy_threshold": self.unhealthy_threshold,
        }

    def to_comparable(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "protocol": self.protocol,
            "port": self.port,
            "health_check": self.health_check(),
        }


class LoadBalancerSpec(BaseResourceSpec):
    """Application load balancer with listeners and target groups."""

    kind: ClassVar[ResourceKind] = ResourceKind.LOAD_BALANCER

    scheme: str | None = None
    vpc_id: str | None = None
    subnets: list[str] = Field(default_factory=list)
    security_groups: list[str] = Field(default_factory=list)
    listeners: list[ListenerSpec] = Field(default_factory=list)
    target_groups: list[TargetGroupSpec] = Field(default_factory=list)

    @field_validator("scheme")
    @classmethod
    def validate_scheme(cls, v: str | None) -> str | None:
        if v is not None and v not in VALID_LB_SCHEMES:
            raise ValueError(f"scheme must be one of {sorted(VALID_LB_SCHEMES)}")
        return v

    @model_validator(mode="after")
    def validate_listener_targets(self) -> LoadBalancerSpec:
        known = {tg.name for tg in self.target_groups}
        for listener in self.listeners:
            target = listener.default_action.target_group
            if target not in known:
                raise ValueError(
                    f"listener on port {listener.port} forwards to unknown "
                    f"target group '{target}'"
                )
        return self

    def desired_fields(self) -> dict[str, Any]:
        # Listeners by port and target groups by name, as the provider lists them
        listeners = sorted(self.listeners, key=lambda listener: listener.port)
        target_groups = sorted(self.target_groups, key=lambda tg: tg.name)
        return {
            "scheme": self.scheme,
            "subnets": list(self.subnets),
            "security_groups": list(self.security_groups),
            "listeners": [listener.to_comparable() for listener in listeners],
            "target_groups": [tg.to_comparable() for tg in target_groups],
            "tags": dict(self.tags),
        }


# =============================================================================
# Scaling
# =============================================================================


class LaunchTemplateRef(BaseModel):
    """Reference to a launch template by name."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=3, max_length=128)]
    version: str = "$Default"


class ScalingGroupSpec(BaseResourceSpec):
    """Auto Scaling group."""

    kind: ClassVar[ResourceKind] = ResourceKind.SCALING_GROUP

    min_size: int | None = Field(None, ge=0)
    max_size: int | None = Field(None, ge=0)
    desired_capacity: int | None = Field(None, ge=0)
    launch_template: LaunchTemplateRef | None = None
    zone_identifiers: list[str] = Field(default_factory=list)
    target_group_arns: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_capacity(self) -> ScalingGroupSpec:
        if self.min_size is not None and self.max_size is not None:
            if self.min_size > self.max_size:
                raise ValueError("min_size cannot exceed max_size")
            if self.desired_capacity is not None and not (
                self.min_size <= self.desired_capacity <= self.max_size
            ):
                raise ValueError("desired_capacity must be between min_size and max_size")
        return self

    def desired_fields(self) -> dict[str, Any]:
        template = None
        if self.launch_template is not None:
            template = {
                "name": self.launch_template.name,
                "version": self.launch_template.version,
            }
        return {
            "min_size": self.min_size,
            "max_size": self.max_size,
            "desired_capacity": self.desired_capacity,
            "launch_template": template,
            "zone_identifiers": list(self.zone_identifiers),
            "target_group_arns": list(self.target_group_arns),
            "tags": dict(self.tags),
        }


# =============================================================================
# Identity
# =============================================================================


class InlinePolicy(BaseModel):
    """Inline policy attached to a role."""

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1, max_length=128)]
    document: dict[str, Any]


class IdentityRoleSpec(BaseResourceSpec):
    """IAM role with a trust policy and inline policies."""

    kind: ClassVar[ResourceKind] = ResourceKind.IDENTITY_ROLE

    trust_policy: dict[str, Any] | None = None
    inline_policies: list[InlinePolicy] = Field(default_factory=list)

    @field_validator("inline_policies")
    @classmethod
    def validate_unique_names(cls, v: list[InlinePolicy]) -> list[InlinePolicy]:
        names = [policy.name for policy in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"duplicate inline policy names: {duplicates}")
        return v

    def desired_fields(self) -> dict[str, Any]:
        return {
            "trust_policy": self.trust_policy,
            "inline_policies": {policy.name: policy.document for policy in self.inline_policies},
            "tags": dict(self.tags),
        }


# =============================================================================
# Top-level declaration
# =============================================================================

# YAML section name -> kind
RESOURCE_SECTIONS: dict[str, ResourceKind] = {
    "ec2_instance": ResourceKind.INSTANCE,
    "s3_bucket": ResourceKind.OBJECT_STORE,
    "rds_instance": ResourceKind.MANAGED_DATABASE,
    "alb": ResourceKind.LOAD_BALANCER,
    "auto_scaling_group": ResourceKind.SCALING_GROUP,
    "iam_role": ResourceKind.IDENTITY_ROLE,
}


class InfraResources(BaseModel):
    """One optional desired spec per resource kind."""

    model_config = {"extra": "forbid", "frozen": True}

    ec2_instance: InstanceSpec | None = None
    s3_bucket: ObjectStoreSpec | None = None
    rds_instance: DatabaseSpec | None = None
    alb: LoadBalancerSpec | None = None
    auto_scaling_group: ScalingGroupSpec | None = None
    iam_role: IdentityRoleSpec | None = None


class InfraSpec(BaseModel):
    """Complete desired state for one run."""

    model_config = {"extra": "ignore", "frozen": True}

    provider: str
    region: Annotated[str, Field(min_length=1)]
    resources: InfraResources = Field(default_factory=InfraResources)

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v != "aws":
            raise ValueError(f"unsupported provider: {v}")
        return v

    def declared_resources(self) -> list[BaseResourceSpec]:
        """Declared specs in kind order; undeclared kinds are left out."""
        specs: list[BaseResourceSpec] = []
        for section in RESOURCE_SECTIONS:
            spec = getattr(self.resources, section)
            if spec is not None and spec.declared:
                specs.append(spec)
        return specs
