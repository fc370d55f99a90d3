"""Tests for desired-state loading, variable merging and image resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from infractl.config import MAX_SPEC_FILE_SIZE_BYTES
from infractl.models import InstanceSpec, ResourceKind
from infractl.spec_loader import SpecLoadError, load_infra, merge_variables, resolve_image


def write_yaml(path: Path, data: dict) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


class TestLoadInfra:
    """Tests for load_infra."""

    def test_full_document(self, tmp_path: Path) -> None:
        spec_path = write_yaml(
            tmp_path / "infra.yaml",
            {
                "provider": "aws",
                "region": "us-east-1",
                "subnet_id": "subnet-1",
                "resources": {
                    "ec2_instance": {
                        "name": "web",
                        "instance_type": "t2.micro",
                        "os": "amazonLinux2",
                        "vpc_security_group_ids": ["sg-1"],
                        "desired_count": 2,
                    },
                    "s3_bucket": {"name": "logs", "acl": "private"},
                },
            },
        )

        infra = load_infra(spec_path, tmp_path / "missing-variables.yaml")
        instance = infra.resources.ec2_instance

        assert isinstance(instance, InstanceSpec)
        assert instance.image_id == "ami-045602374a1982480"
        assert instance.subnet_id == "subnet-1"
        assert instance.desired_count == 2
        assert [s.kind for s in infra.declared_resources()] == [
            ResourceKind.INSTANCE,
            ResourceKind.OBJECT_STORE,
        ]

    def test_variables_fill_unset_values(self, tmp_path: Path) -> None:
        spec_path = write_yaml(
            tmp_path / "infra.yaml",
            {
                "provider": "aws",
                "region": "",
                "resources": {"ec2_instance": {"name": "web", "ami": "ami-1", "key_name": "ops"}},
            },
        )
        variables_path = write_yaml(
            tmp_path / "variables.yaml",
            {
                "region": "eu-west-1",
                "ec2_instance": {
                    "key_name": "ignored",
                    "subnet_id": "subnet-9",
                    "vpc_security_group_ids": ["sg-9"],
                    "monitoring": True,
                },
            },
        )

        infra = load_infra(spec_path, variables_path)
        instance = infra.resources.ec2_instance

        assert infra.region == "eu-west-1"
        assert instance.key_name == "ops"
        assert instance.subnet_id == "subnet-9"
        assert instance.security_group_ids == ["sg-9"]
        assert instance.monitoring is True

    def test_missing_spec_file(self, tmp_path: Path) -> None:
        with pytest.raises(SpecLoadError, match="Spec file not found"):
            load_infra(tmp_path / "infra.yaml")

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        spec_path = tmp_path / "infra.yaml"
        spec_path.write_text("provider: [aws", encoding="utf-8")

        with pytest.raises(SpecLoadError, match="Invalid YAML"):
            load_infra(spec_path)

    def test_oversized_file(self, tmp_path: Path) -> None:
        spec_path = tmp_path / "infra.yaml"
        spec_path.write_text("#" * (MAX_SPEC_FILE_SIZE_BYTES + 1), encoding="utf-8")

        with pytest.raises(SpecLoadError, match="exceeds maximum size"):
            load_infra(spec_path)

    def test_validation_errors_listed_by_location(self, tmp_path: Path) -> None:
        spec_path = write_yaml(
            tmp_path / "infra.yaml",
            {
                "provider": "aws",
                "region": "us-east-1",
                "resources": {"ec2_instance": {"name": "web", "ami": "ami-1", "desired_count": 0}},
            },
        )

        with pytest.raises(SpecLoadError) as exc_info:
            load_infra(spec_path)

        assert "resources.ec2_instance.desired_count" in str(exc_info.value)


class TestMergeVariables:
    """Tests for merge_variables."""

    def test_undeclared_sections_not_added(self) -> None:
        raw = {"provider": "aws", "region": "us-east-1", "resources": {}}
        merged = merge_variables(raw, {"s3_bucket": {"name": "logs"}})

        assert "s3_bucket" not in merged["resources"]

    def test_inputs_untouched(self) -> None:
        raw = {"region": "", "resources": {"s3_bucket": {"name": "logs"}}}
        merge_variables(raw, {"region": "us-east-1", "s3_bucket": {"acl": "private"}})

        assert raw == {"region": "", "resources": {"s3_bucket": {"name": "logs"}}}


class TestResolveImage:
    """Tests for resolve_image."""

    def test_explicit_image_wins(self) -> None:
        raw = {
            "region": "us-east-1",
            "resources": {"ec2_instance": {"ami": "ami-custom", "os": "amazonLinux2"}},
        }
        assert resolve_image(raw) == raw

    def test_unknown_region_os_pair(self) -> None:
        raw = {"region": "ap-south-1", "resources": {"ec2_instance": {"os": "amazonLinux2"}}}

        with pytest.raises(SpecLoadError, match="No AMI found for region ap-south-1"):
            resolve_image(raw)
