from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterable

    from stagehand.models.pipeline import PipelineRun, StageResult


def build_run_summary(run: PipelineRun, publish_stage: str | None = None) -> list[str]:
    """Build a concise, human-readable run summary.

    Args:
        run: A finished (or loaded) pipeline run.
        publish_stage: Name of the publish step, to report whether the
            release went out.

    Returns:
        List of summary lines suitable for CLI display.
    """
    lines: list[str] = []
    if run.context is not None:
        lines.append(f"Version: {run.context.version}")
        lines.append(f"Release: {run.context.release_id}")

    counts = Counter(run.statuses.values())
    if counts:
        lines.append(f"Stages: {len(run.statuses)} ({_format_counts(counts)})")

    failed = [_instance_label(r) for r in run.failed_instances()]
    if failed:
        lines.append(f"Failed: {_format_truncated(failed)}")

    skipped = run.skipped_stages()
    if skipped:
        lines.append(f"Skipped: {_format_truncated(skipped)}")

    if publish_stage is not None and publish_stage in run.statuses:
        published = run.statuses[publish_stage] == "succeeded"
        already = any(
            r.outputs.get("already_published") == "true" for r in run.results_for(publish_stage)
        )
        if already:
            lines.append("Published: yes (already published)")
        else:
            lines.append(f"Published: {'yes' if published else 'no'}")

    return lines


def format_duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    if minutes < 60:
        return f"{minutes}m{secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h{minutes:02d}m"


def _instance_label(result: StageResult) -> str:
    code = f" (exit {result.exit_code})" if result.exit_code is not None else ""
    return f"{result.stage}@{result.target}{code}"


def _format_truncated(items: Iterable[str], limit: int = 3) -> str:
    items_list = list(items)
    if len(items_list) <= limit:
        return ", ".join(items_list)
    return ", ".join(items_list[:limit]) + f"... (+{len(items_list) - limit})"


def _format_counts(counter: Counter[str]) -> str:
    return ", ".join(f"{count} {label}" for label, count in counter.most_common())
