"""In-memory AWS provider fake for reconciliation tests.

Usage:
    from fake_aws import FakeGateway

    gateway = FakeGateway()
    gateway.seed(ResourceKind.INSTANCE, "web", {"instance_type": "t3.micro"})
    gateway.inject("create", ResourceKind.INSTANCE, ProviderError("RunInstances", "throttled"))

    outcome = await Reconciler(gateway, ApprovalGate(auto_approve), policy).reconcile(spec)

    assert gateway.call_count("create") == 1
"""

from .gateway import FakeGateway, FakeResource, GatewayCall

__all__ = [
    "FakeGateway",
    "FakeResource",
    "GatewayCall",
]
