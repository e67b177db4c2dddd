"""Run correlation for log events.

Every event logged while a run is in flight carries that run's ``run_id``,
including events from concurrently executing stage instances, since asyncio
tasks inherit the context they were created in.

Usage:
    from stagehand.observability.tracing import bind_run_context, generate_run_id

    run_id = generate_run_id()
    with bind_run_context(run_id, pipeline="nightly"):
        await scheduler.run(context, run)
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import Iterator

_pipeline_run_id: ContextVar[str | None] = ContextVar("pipeline_run_id", default=None)


def generate_run_id() -> str:
    """Generate a unique, time-sortable run ID.

    Returns:
        ID such as ``20261018T101500-1a2b3c4d``.
    """
    stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


def set_pipeline_run_id(run_id: str | None) -> None:
    """Set the current pipeline run ID for this context."""
    _pipeline_run_id.set(run_id)


def get_pipeline_run_id() -> str | None:
    """Get the current pipeline run ID, or None outside a run."""
    return _pipeline_run_id.get()


@contextmanager
def bind_run_context(run_id: str, **extra: Any) -> Iterator[str]:
    """Bind ``run_id`` (and any extra keys) into the logging context.

    Restores the previous binding on exit, so nested runs (e.g. a publish
    re-invocation inside a test) do not leak IDs into each other.
    """
    token = _pipeline_run_id.set(run_id)
    bound = structlog.contextvars.bind_contextvars(run_id=run_id, **extra)
    try:
        yield run_id
    finally:
        structlog.contextvars.reset_contextvars(**bound)
        _pipeline_run_id.reset(token)
