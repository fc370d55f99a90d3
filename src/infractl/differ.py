"""Field-level diff between observed and desired state.

Each resource kind declares its comparable fields in order, with a
comparison type per field:

- SCALAR: exact equality; one entry for the whole field.
- SET: order-independent membership; one entry per member present on only
  one side, written ``field[member]`` with ``None`` on the absent side.
- MAPPING: one entry per declared key whose value differs, written
  ``field.key``. Keys present only on the provider side are not reported,
  since providers attach their own tags and policies.
- SEQUENCE: ordered exact equality; one entry for the whole field.

A desired value of ``None`` or an empty collection is undeclared and is
never compared. Change order follows field declaration order, so a diff is
reproducible for the same inputs.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .models import ResourceKind
from .state import ChangeSet, FieldChange

logger = logging.getLogger(__name__)


class ComparisonType(str, Enum):
    """How a field pair is compared."""

    SCALAR = "scalar"
    SET = "set"
    MAPPING = "mapping"
    SEQUENCE = "sequence"


FIELD_RULES: dict[ResourceKind, tuple[tuple[str, ComparisonType], ...]] = {
    ResourceKind.INSTANCE: (
        ("instance_type", ComparisonType.SCALAR),
        ("image_id", ComparisonType.SCALAR),
        ("key_name", ComparisonType.SCALAR),
        ("subnet_id", ComparisonType.SCALAR),
        ("security_group_ids", ComparisonType.SET),
        ("monitoring", ComparisonType.SCALAR),
        ("tags", ComparisonType.MAPPING),
    ),
    ResourceKind.OBJECT_STORE: (
        ("acl", ComparisonType.SCALAR),
        ("tags", ComparisonType.MAPPING),
    ),
    ResourceKind.MANAGED_DATABASE: (
        ("engine", ComparisonType.SCALAR),
        ("engine_version", ComparisonType.SCALAR),
        ("instance_class", ComparisonType.SCALAR),
        ("allocated_storage", ComparisonType.SCALAR),
        ("username", ComparisonType.SCALAR),
        ("tags", ComparisonType.MAPPING),
    ),
    ResourceKind.LOAD_BALANCER: (
        ("scheme", ComparisonType.SCALAR),
        ("subnets", ComparisonType.SET),
        ("security_groups", ComparisonType.SET),
        ("listeners", ComparisonType.SEQUENCE),
        ("target_groups", ComparisonType.SEQUENCE),
        ("tags", ComparisonType.MAPPING),
    ),
    ResourceKind.SCALING_GROUP: (
        ("min_size", ComparisonType.SCALAR),
        ("max_size", ComparisonType.SCALAR),
        ("desired_capacity", ComparisonType.SCALAR),
        ("launch_template", ComparisonType.SCALAR),
        ("zone_identifiers", ComparisonType.SET),
        ("target_group_arns", ComparisonType.SET),
        ("tags", ComparisonType.MAPPING),
    ),
    ResourceKind.IDENTITY_ROLE: (
        ("trust_policy", ComparisonType.SCALAR),
        ("inline_policies", ComparisonType.MAPPING),
        ("tags", ComparisonType.MAPPING),
    ),
}


def _is_undeclared(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (list, tuple, set, frozenset, dict)) and not value:
        return True
    return False


def _diff_set(name: str, observed: Any, desired: list[Any]) -> list[FieldChange]:
    observed_members = list(observed or [])
    changes: list[FieldChange] = []
    for member in desired:
        if member not in observed_members:
            changes.append(FieldChange(f"{name}[{member}]", None, member))
    for member in observed_members:
        if member not in desired:
            changes.append(FieldChange(f"{name}[{member}]", member, None))
    return changes


def _diff_mapping(name: str, observed: Any, desired: Mapping[str, Any]) -> list[FieldChange]:
    observed_map: Mapping[str, Any] = observed or {}
    changes: list[FieldChange] = []
    for key, value in desired.items():
        current = observed_map.get(key)
        if current != value:
            changes.append(FieldChange(f"{name}.{key}", current, value))
    return changes


def compute_change_set(
    kind: ResourceKind,
    desired: Mapping[str, Any],
    observed: Mapping[str, Any],
    *,
    resource: str = "",
) -> ChangeSet:
    """Compare observed against desired fields for one resource.

    Args:
        kind: Resource kind, selects the field rules.
        desired: Comparable view of the desired spec.
        observed: Live values keyed like ``desired``.
        resource: Label such as ``instance/web`` carried for display.

    Returns:
        Ordered change set; empty when the resource has converged.
    """
    changes: list[FieldChange] = []

    for name, comparison in FIELD_RULES[kind]:
        wanted = desired.get(name)
        if _is_undeclared(wanted):
            continue
        current = observed.get(name)

        match comparison:
            case ComparisonType.SCALAR | ComparisonType.SEQUENCE:
                if current != wanted:
                    changes.append(FieldChange(name, current, wanted))
            case ComparisonType.SET:
                changes.extend(_diff_set(name, current, list(wanted)))
            case ComparisonType.MAPPING:
                changes.extend(_diff_mapping(name, current, wanted))

    change_set = ChangeSet(tuple(changes), resource=resource)
    logger.debug(
        "Computed change set",
        extra={"kind": kind.value, "resource": resource, "change_count": len(change_set)},
    )
    return change_set
