"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for fake_aws imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from fake_aws import FakeGateway  # noqa: E402
from infractl.config import RetryPolicy  # noqa: E402


class RecordingApproval:
    """Approval callback that records each change set and answers a fixed decision."""

    def __init__(self, decision: bool) -> None:
        self.decision = decision
        self.requests = []

    def __call__(self, change_set) -> bool:
        self.requests.append(change_set)
        return self.decision


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    """Default attempt budget without the delay."""
    return RetryPolicy(attempts=3, delay_seconds=0.0)


@pytest.fixture
def approve_all() -> RecordingApproval:
    return RecordingApproval(True)


@pytest.fixture
def reject_all() -> RecordingApproval:
    return RecordingApproval(False)
