"""Operator approval gate for in-place updates.

The gate blocks the owning reconciliation until an operator decides on a
non-empty change set. The decision comes from an injected synchronous
callback ``(ChangeSet) -> bool``:

- TerminalApproval: line-oriented yes/no prompt; only the exact answer
  "yes" approves.
- auto_approve / auto_reject: fixed policies for automation and tests.

SCOPE:
The gate applies to updates of single-instance resources only. First-time
creates and fleet scale actions are never gated.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from enum import Enum

import click

from .models import ResourceKind
from .state import ChangeSet

logger = logging.getLogger(__name__)

ApprovalCallback = Callable[[ChangeSet], bool]

APPROVAL_PROMPT = "Do you want to apply these changes? (yes/no)"

# Exact, case-sensitive answer that approves a change set
AFFIRMATIVE_ANSWER = "yes"


class ApprovalStatus(str, Enum):
    """Decision on a change set."""

    APPROVED = "approved"
    REJECTED = "rejected"


class ApprovalGateError(Exception):
    """Raised when the gate is asked to approve an empty change set."""

    pass


def is_affirmative(answer: str) -> bool:
    """Only the exact string "yes" counts as approval."""
    return answer == AFFIRMATIVE_ANSWER


def auto_approve(change_set: ChangeSet) -> bool:
    """Approve every change set."""
    return True


def auto_reject(change_set: ChangeSet) -> bool:
    """Reject every change set."""
    return False


def _click_prompt(text: str) -> str:
    return click.prompt(text, default="", show_default=False)


class TerminalApproval:
    """Interactive yes/no prompt on the controlling terminal.

    Prompts from concurrent reconciliations are serialized so change sets
    and answers do not interleave on the console.
    """

    _lock = threading.Lock()

    def __init__(
        self,
        prompt: Callable[[str], str] | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        """Initialize the prompt.

        Args:
            prompt: Reads one answer line. Defaults to click.prompt.
            echo: Writes one output line. Defaults to click.echo.
        """
        self._prompt = prompt or _click_prompt
        self._echo = echo or click.echo

    def __call__(self, change_set: ChangeSet) -> bool:
        with self._lock:
            self._echo("")
            self._echo(f"Changes to be applied to {change_set.resource or 'resource'}:")
            for line in change_set.render_lines():
                self._echo(f"  {line}")
            answer = self._prompt(APPROVAL_PROMPT)
        return is_affirmative(answer)


class ApprovalGate:
    """Presents change sets and waits for an operator decision."""

    def __init__(self, callback: ApprovalCallback) -> None:
        """Initialize approval gate.

        Args:
            callback: Synchronous decision function for a change set.
        """
        self._callback = callback

    async def request(self, kind: ResourceKind, name: str, change_set: ChangeSet) -> bool:
        """Block the calling reconciliation until a decision is made.

        The callback runs in the executor so only the owning task waits.

        Returns:
            True if the change set was approved.

        Raises:
            ApprovalGateError: If the change set is empty.
        """
        if change_set.is_empty:
            raise ApprovalGateError(f"Nothing to approve for {kind.value} '{name}'")

        logger.warning(
            "Approval required for update",
            extra={
                "kind": kind.value,
                "resource_name": name,
                "changes": change_set.render_lines(),
            },
        )

        loop = asyncio.get_running_loop()
        approved = await loop.run_in_executor(None, self._callback, change_set)
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.REJECTED

        log = logger.info if approved else logger.warning
        log(
            f"Update {status.value}",
            extra={
                "kind": kind.value,
                "resource_name": name,
                "approval_status": status.value,
                "change_count": len(change_set),
            },
        )
        return bool(approved)
