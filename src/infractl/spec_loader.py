"""Desired-state loading with validation.

Loading happens in four steps, all before any provider call:
1. Read infra.yaml and the optional variables.yaml (size-limited)
2. Merge variables into values the main file leaves unset
3. Resolve the instance image from the region/os table
4. Validate the result into an InfraSpec

SECURITY: All file operations enforce size limits to prevent DoS attacks
via large files. Input validation is performed at the boundary.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from .config import MAX_SPEC_FILE_SIZE_BYTES
from .models import RESOURCE_SECTIONS, InfraSpec

logger = logging.getLogger(__name__)


class SpecLoadError(Exception):
    """Raised when spec loading or validation fails."""

    pass


# Machine images per region and operating system label
AMI_MAP: dict[str, dict[str, str]] = {
    "us-east-1": {
        "amazonLinux2": "ami-045602374a1982480",
    },
}

INSTANCE_SECTION = "ec2_instance"


def _read_yaml(path: Path, description: str) -> dict[str, Any]:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise SpecLoadError(f"Failed to stat {description} file {path}: {e}") from e

    if file_size > MAX_SPEC_FILE_SIZE_BYTES:
        raise SpecLoadError(
            f"{description.capitalize()} file exceeds maximum size of "
            f"{MAX_SPEC_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise SpecLoadError(f"Failed to read {description} file {path}: {e}") from e

    try:
        raw_data = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise SpecLoadError(f"Invalid YAML in {path}: {e}") from e

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise SpecLoadError(f"{description.capitalize()} file must contain a YAML mapping: {path}")
    return raw_data


def _is_unset(value: Any) -> bool:
    return value is None or value is False or value == "" or value == [] or value == {}


def merge_variables(raw: dict[str, Any], variables: dict[str, Any]) -> dict[str, Any]:
    """Fill values the main document leaves unset from the variables document.

    Only sections the main document declares are filled; variables never
    declare a resource on their own.

    Returns:
        A new merged document; the inputs are left untouched.
    """
    merged = dict(raw)

    if _is_unset(merged.get("region")) and not _is_unset(variables.get("region")):
        merged["region"] = variables["region"]

    resources = dict(merged.get("resources") or {})
    for section in RESOURCE_SECTIONS:
        declared = resources.get(section)
        overrides = variables.get(section)
        if not isinstance(declared, dict) or not isinstance(overrides, dict):
            continue
        filled = dict(declared)
        for key, value in overrides.items():
            if _is_unset(filled.get(key)) and not _is_unset(value):
                filled[key] = value
        resources[section] = filled

    # The top-level subnet is the default for the instance
    instance = resources.get(INSTANCE_SECTION)
    if isinstance(instance, dict) and _is_unset(instance.get("subnet_id")):
        subnet_id = merged.get("subnet_id")
        if _is_unset(subnet_id) and isinstance(variables.get(INSTANCE_SECTION), dict):
            subnet_id = variables[INSTANCE_SECTION].get("subnet_id")
        if not _is_unset(subnet_id):
            resources[INSTANCE_SECTION] = {**instance, "subnet_id": subnet_id}

    if resources:
        merged["resources"] = resources
    return merged


def resolve_image(raw: dict[str, Any]) -> dict[str, Any]:
    """Set the instance image from AMI_MAP when only an os label is given.

    Raises:
        SpecLoadError: If the region/os pair has no image.
    """
    resources = raw.get("resources") or {}
    instance = resources.get(INSTANCE_SECTION)
    if not isinstance(instance, dict):
        return raw
    if instance.get("ami") or instance.get("image_id") or not instance.get("os"):
        return raw

    region = raw.get("region")
    os_label = instance["os"]
    image_id = AMI_MAP.get(region or "", {}).get(os_label)
    if image_id is None:
        raise SpecLoadError(f"No AMI found for region {region} and OS {os_label}")

    logger.info(
        "Resolved instance image",
        extra={"region": region, "os": os_label, "image_id": image_id},
    )
    return {
        **raw,
        "resources": {**resources, INSTANCE_SECTION: {**instance, "image_id": image_id}},
    }


def load_infra(spec_path: Path, variables_path: Path | None = None) -> InfraSpec:
    """Load, merge and validate the desired state.

    Args:
        spec_path: Path to infra.yaml.
        variables_path: Optional variables file; a missing file is ignored.

    Returns:
        Validated desired state.

    Raises:
        SpecLoadError: If a file cannot be loaded or validation fails.
    """
    if not spec_path.exists():
        raise SpecLoadError(f"Spec file not found: {spec_path}")

    raw_data = _read_yaml(spec_path, "spec")

    if variables_path is not None and variables_path.exists():
        variables = _read_yaml(variables_path, "variables")
        raw_data = merge_variables(raw_data, variables)
        logger.info("Merged variables from %s", variables_path)

    raw_data = resolve_image(raw_data)

    try:
        infra = InfraSpec.model_validate(raw_data)
    except ValidationError as e:
        # Format Pydantic validation errors for readability
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            errors.append(f"  - {loc}: {msg}")

        error_list = "\n".join(errors)
        raise SpecLoadError(f"Validation failed for {spec_path}:\n{error_list}") from e

    logger.info(
        "Loaded desired state from %s",
        spec_path,
        extra={
            "region": infra.region,
            "kinds": [spec.kind.value for spec in infra.declared_resources()],
        },
    )
    return infra
