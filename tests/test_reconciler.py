"""Tests for the per-kind reconciliation pass."""

from __future__ import annotations

import pytest
from conftest import RecordingApproval
from fake_aws import FakeGateway

from infractl.approval import ApprovalGate
from infractl.config import RetryPolicy
from infractl.gateway import DesiredStateError, ProviderError
from infractl.models import InstanceSpec, ObjectStoreSpec, ResourceKind
from infractl.reconciler import Reconciler
from infractl.state import OutcomeStatus, ReconcilePhase


def make_instance(**overrides) -> InstanceSpec:
    values = {
        "name": "web",
        "instance_type": "t3.micro",
        "image_id": "ami-045602374a1982480",
        "subnet_id": "subnet-1",
        "security_group_ids": ["sg-1"],
        "tags": {"Env": "prod"},
    }
    values.update(overrides)
    return InstanceSpec(**values)


def make_reconciler(
    gateway: FakeGateway, approval: RecordingApproval, policy: RetryPolicy
) -> Reconciler:
    return Reconciler(gateway=gateway, approval_gate=ApprovalGate(approval), retry_policy=policy)


class TestSingleResource:
    """Tests for single-instance resources."""

    @pytest.mark.asyncio
    async def test_missing_resource_is_created_without_approval(
        self, gateway: FakeGateway, reject_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        """Test first-time creation never consults the approval gate."""
        reconciler = make_reconciler(gateway, reject_all, fast_retry)

        outcome = await reconciler.reconcile(ObjectStoreSpec(name="logs", acl="private"))

        assert outcome.status == OutcomeStatus.CREATED
        assert outcome.resource_id is not None
        assert outcome.phases == (ReconcilePhase.FETCHING, ReconcilePhase.CREATING)
        assert gateway.call_count("create") == 1
        assert reject_all.requests == []

    @pytest.mark.asyncio
    async def test_identical_resource_converges(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        spec = make_instance()
        gateway.seed(ResourceKind.INSTANCE, "web", spec.desired_fields())
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(spec)

        assert outcome.status == OutcomeStatus.CONVERGED
        assert outcome.summary() == "Converged"
        assert gateway.call_count("create") == 0
        assert gateway.call_count("update") == 0
        assert approve_all.requests == []

    @pytest.mark.asyncio
    async def test_drift_approved_is_updated(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        spec = make_instance(instance_type="t3.small")
        gateway.seed(ResourceKind.INSTANCE, "web", make_instance().desired_fields())
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(spec)

        assert outcome.status == OutcomeStatus.UPDATED
        assert outcome.summary() == "Updated(1 changes)"
        assert len(approve_all.requests) == 1
        assert approve_all.requests[0].render_lines() == ["instance_type: t3.micro -> t3.small"]
        assert gateway.call_count("update") == 1
        assert gateway.live(ResourceKind.INSTANCE, "web")[0].fields["instance_type"] == "t3.small"

    @pytest.mark.asyncio
    async def test_drift_rejected_is_left_alone(
        self, gateway: FakeGateway, reject_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        spec = make_instance(tags={"Env": "staging"})
        gateway.seed(ResourceKind.INSTANCE, "web", make_instance().desired_fields())
        reconciler = make_reconciler(gateway, reject_all, fast_retry)

        outcome = await reconciler.reconcile(spec)

        assert outcome.status == OutcomeStatus.APPROVAL_REJECTED
        assert outcome.success
        assert len(outcome.change_set) == 1
        assert gateway.call_count("update") == 0
        assert gateway.live(ResourceKind.INSTANCE, "web")[0].fields["tags"] == {"Env": "prod"}

    @pytest.mark.asyncio
    async def test_immutable_change_fails_before_prompt(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        spec = make_instance(image_id="ami-new")
        gateway.seed(ResourceKind.INSTANCE, "web", make_instance().desired_fields())
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(spec)

        assert outcome.status == OutcomeStatus.FAILED
        assert isinstance(outcome.error, DesiredStateError)
        assert approve_all.requests == []
        assert gateway.call_count("update") == 0

    @pytest.mark.asyncio
    async def test_incomplete_spec_fails_without_create(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(subnet_id=None))

        assert outcome.status == OutcomeStatus.FAILED
        assert isinstance(outcome.error, DesiredStateError)
        assert "subnet_id" in str(outcome.error)
        assert gateway.call_count("create") == 0

    @pytest.mark.asyncio
    async def test_transient_describe_error_is_retried(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        gateway.inject(
            "describe", ResourceKind.OBJECT_STORE, ProviderError("HeadBucket", "throttled")
        )
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(ObjectStoreSpec(name="logs"))

        assert outcome.status == OutcomeStatus.CREATED
        assert gateway.call_count("describe") == 2

    @pytest.mark.asyncio
    async def test_exhausted_create_fails(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        gateway.fail_after(
            "create", ResourceKind.OBJECT_STORE, 0, ProviderError("CreateBucket", "denied")
        )
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(ObjectStoreSpec(name="logs"))

        assert outcome.status == OutcomeStatus.FAILED
        assert outcome.summary() == "Failed(CreateBucket failed: denied)"
        assert gateway.call_count("create") == 3


class TestFleet:
    """Tests for count-based instance fleets."""

    def seed_fleet(self, gateway: FakeGateway, count: int) -> list[str]:
        fields = make_instance().desired_fields()
        return [gateway.seed(ResourceKind.INSTANCE, "web", fields) for _ in range(count)]

    @pytest.mark.asyncio
    async def test_at_desired_count_makes_no_calls(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        self.seed_fleet(gateway, 3)
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(desired_count=3))

        assert outcome.status == OutcomeStatus.CONVERGED
        assert gateway.call_count("create") == 0
        assert gateway.call_count("terminate") == 0

    @pytest.mark.asyncio
    async def test_scale_up_is_not_gated(
        self, gateway: FakeGateway, reject_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        self.seed_fleet(gateway, 2)
        reconciler = make_reconciler(gateway, reject_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(desired_count=5))

        assert outcome.status == OutcomeStatus.SCALED
        assert outcome.summary() == "Scaled(+3)"
        assert len(outcome.created_ids) == 3
        assert len(gateway.live(ResourceKind.INSTANCE, "web")) == 5
        assert reject_all.requests == []

    @pytest.mark.asyncio
    async def test_partial_scale_up_keeps_created_instances(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        """Test a failed second create stops the pass and keeps the first."""
        self.seed_fleet(gateway, 2)
        gateway.fail_after(
            "create",
            ResourceKind.INSTANCE,
            1,
            ProviderError("RunInstances", "capacity", code="InsufficientInstanceCapacity"),
        )
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(desired_count=5))

        assert outcome.status == OutcomeStatus.FAILED
        assert len(outcome.created_ids) == 1
        assert len(gateway.live(ResourceKind.INSTANCE, "web")) == 3
        # One successful create, then three attempts for the second instance
        assert gateway.call_count("create") == 4
        assert gateway.call_count("terminate") == 0

    @pytest.mark.asyncio
    async def test_scale_down_terminates_earliest_in_one_call(
        self, gateway: FakeGateway, reject_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        ids = self.seed_fleet(gateway, 5)
        reconciler = make_reconciler(gateway, reject_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(desired_count=2))

        assert outcome.status == OutcomeStatus.SCALED
        assert outcome.summary() == "Scaled(-3)"
        assert outcome.terminated_ids == tuple(ids[:3])
        assert gateway.call_count("terminate") == 1
        assert gateway.terminated_ids() == ids[:3]
        assert reject_all.requests == []

    @pytest.mark.asyncio
    async def test_stopped_instances_count_toward_fleet(
        self, gateway: FakeGateway, approve_all: RecordingApproval, fast_retry: RetryPolicy
    ) -> None:
        fields = make_instance().desired_fields()
        gateway.seed(ResourceKind.INSTANCE, "web", fields)
        gateway.seed(ResourceKind.INSTANCE, "web", fields, lifecycle_state="stopped")
        gateway.seed(ResourceKind.INSTANCE, "web", fields, lifecycle_state="shutting-down")
        reconciler = make_reconciler(gateway, approve_all, fast_retry)

        outcome = await reconciler.reconcile(make_instance(desired_count=2))

        assert outcome.status == OutcomeStatus.CONVERGED
