"""Gate hooks consulted before the release is published."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal, Protocol

if TYPE_CHECKING:
    from collections.abc import Callable

    from stagehand.models.pipeline import PipelineRun


class GateHook(Protocol):
    """Protocol for gate hooks that approve/reject publishing a release."""

    async def before_publish(self, run: PipelineRun) -> Literal["approve", "reject"]:
        """Called once every stage instance succeeded, before publishing.

        Args:
            run: The run about to be published.

        Returns:
            "approve" to publish or "reject" to leave the release in draft.
        """
        ...


class AutoApproveGate:
    """Gate that automatically approves publishing.

    This is the default gate for unattended runs.
    """

    async def before_publish(self, _run: PipelineRun) -> Literal["approve", "reject"]:
        """Always returns "approve"."""
        return "approve"


class ConfirmGate:
    """Gate that asks a callback for confirmation.

    The CLI wires this to an interactive prompt for ``run --confirm-publish``.
    """

    def __init__(self, confirm: Callable[[PipelineRun], bool]) -> None:
        self._confirm = confirm

    async def before_publish(self, run: PipelineRun) -> Literal["approve", "reject"]:
        """Approve only if the callback returns True."""
        return "approve" if self._confirm(run) else "reject"
