"""Persistence of run reports and of the publish ledger.

Layout under the state directory::

    runs/<run_id>/report.json    PipelineRun as JSON
    runs/<run_id>/logs/          per-instance output
    runs/<run_id>/artifacts/     archived stage artifacts
    published.json               release id -> publish record
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any

from pydantic import ValidationError

from stagehand.models.pipeline import PipelineRun


class RunStoreError(Exception):
    """Raised when a run report can't be read or written."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Run store error at {path}: {reason}")


def _write_atomic(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    os.replace(tmp, path)


class RunStore:
    """Read and write run reports."""

    def __init__(self, state_dir: Path) -> None:
        """Initialize store with the state directory.

        Args:
            state_dir: Root of stagehand's state (``.stagehand`` by default).
        """
        self.state_dir = state_dir
        self.runs_path = state_dir / "runs"

    def run_dir(self, run_id: str) -> Path:
        return self.runs_path / run_id

    def report_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "report.json"

    def save(self, run: PipelineRun) -> Path:
        """Write the report of ``run``.

        Raises:
            RunStoreError: If the report can't be written.
        """
        path = self.report_path(run.run_id)
        try:
            _write_atomic(path, run.model_dump_json(indent=2))
        except OSError as e:
            raise RunStoreError(path, str(e)) from e
        return path

    def load(self, run_id: str) -> PipelineRun:
        """Load a stored run report.

        Raises:
            RunStoreError: If the report is missing or unreadable.
        """
        path = self.report_path(run_id)
        if not path.exists():
            raise RunStoreError(path, "File not found")
        try:
            return PipelineRun.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            raise RunStoreError(path, str(e)) from e

    def list_runs(self) -> list[str]:
        """Stored run IDs, oldest first (IDs sort by start time)."""
        if not self.runs_path.exists():
            return []
        return sorted(
            p.name for p in self.runs_path.iterdir() if (p / "report.json").exists()
        )

    def latest(self) -> PipelineRun | None:
        runs = self.list_runs()
        if not runs:
            return None
        return self.load(runs[-1])


class PublishLedger:
    """Record of releases that were published.

    Makes publishing idempotent: a release id present in the ledger is never
    published again.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RunStoreError(self.path, str(e)) from e
        if not isinstance(data, dict):
            raise RunStoreError(self.path, "Ledger must be a JSON object")
        return data

    def is_published(self, release_id: str) -> bool:
        return release_id in self._read()

    def get(self, release_id: str) -> dict[str, Any] | None:
        return self._read().get(release_id)

    def mark_published(self, release_id: str, version: str, run_id: str | None = None) -> None:
        """Add ``release_id`` to the ledger; an existing entry is kept."""
        entries = self._read()
        if release_id in entries:
            return
        entries[release_id] = {
            "version": version,
            "run_id": run_id,
            "published_at": datetime.now(UTC).isoformat(),
        }
        try:
            _write_atomic(self.path, json.dumps(entries, indent=2, sort_keys=True))
        except OSError as e:
            raise RunStoreError(self.path, str(e)) from e
