"""Run-scoped models shared by the resolver, scheduler and publisher.

``ReleaseContext`` and ``StageResult`` are frozen once created. ``PipelineRun``
is mutated while the run is in flight and sealed when it finishes.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from stagehand.errors import PipelineError, StageFailure

VERSION_KEY = "ENSO_VERSION"
RELEASE_ID_KEY = "ENSO_RELEASE_ID"

Outcome = Literal["success", "failure", "skipped"]
StageStatus = Literal["pending", "running", "succeeded", "failed", "skipped"]
RunStatus = Literal["running", "succeeded", "failed"]


def _now() -> datetime:
    return datetime.now(UTC)


class ReleaseContext(BaseModel):
    """Identifiers resolved once per run and handed to every stage instance."""

    model_config = ConfigDict(frozen=True)

    version: str = Field(min_length=1)
    release_id: str = Field(min_length=1)
    outputs: dict[str, str] = Field(default_factory=dict)

    def env(self) -> dict[str, str]:
        """Environment variables carrying this context.

        A new dict is built on every call, so a stage instance can never
        affect what another instance sees.
        """
        env = dict(self.outputs)
        env[VERSION_KEY] = self.version
        env[RELEASE_ID_KEY] = self.release_id
        return env


class StageResult(BaseModel):
    """Outcome of one stage instance (one stage on one target)."""

    model_config = ConfigDict(frozen=True)

    stage: str = Field(min_length=1)
    target: str
    outcome: Outcome
    exit_code: int | None = None
    outputs: dict[str, str] = Field(default_factory=dict)
    error: str | None = None
    started_at: datetime = Field(default_factory=_now)
    finished_at: datetime = Field(default_factory=_now)
    duration_seconds: float = 0.0
    log_path: str | None = None
    artifacts: list[str] = Field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    @classmethod
    def skipped(cls, stage: str, target: str, reason: str) -> StageResult:
        """Build the record of an instance that never started."""
        return cls(stage=stage, target=target, outcome="skipped", error=reason)


class PipelineRun(BaseModel):
    """One execution of the pipeline.

    Mutated only through its methods while the run is in flight. After
    ``finish()`` the run is sealed: those methods and attribute assignment
    raise ``PipelineError``. The containers in ``statuses``, ``results`` and
    ``errors`` are not frozen themselves; in-place edits bypass the seal.
    """

    run_id: str
    pipeline: str
    context: ReleaseContext | None = None
    statuses: dict[str, StageStatus] = Field(default_factory=dict)
    results: list[StageResult] = Field(default_factory=list)
    status: RunStatus = "running"
    errors: list[str] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_now)
    completed_at: datetime | None = None

    _sealed: bool = PrivateAttr(default=False)

    @property
    def sealed(self) -> bool:
        return self._sealed

    def __setattr__(self, name: str, value: object) -> None:
        if getattr(self, "_sealed", False) and not name.startswith("_"):
            raise PipelineError(self.pipeline, f"run {self.run_id} is already finished")
        super().__setattr__(name, value)

    def _check_open(self) -> None:
        if self._sealed:
            raise PipelineError(self.pipeline, f"run {self.run_id} is already finished")

    def attach_context(self, context: ReleaseContext) -> None:
        self._check_open()
        if self.context is not None:
            raise PipelineError(self.pipeline, "release context is already resolved")
        self.context = context

    def set_status(self, stage: str, status: StageStatus) -> None:
        self._check_open()
        self.statuses[stage] = status

    def record(self, result: StageResult) -> None:
        """Append an instance result to the audit trail."""
        self._check_open()
        self.results.append(result)

    def add_error(self, message: str) -> None:
        self._check_open()
        self.errors.append(message)

    def finish(self, status: RunStatus) -> None:
        """Set the final status and seal the run against further changes."""
        self._check_open()
        self.status = status
        self.completed_at = _now()
        self._sealed = True

    def results_for(self, stage: str) -> list[StageResult]:
        return [r for r in self.results if r.stage == stage]

    def failed_instances(self) -> list[StageResult]:
        return [r for r in self.results if r.outcome == "failure"]

    def skipped_stages(self) -> list[str]:
        return [name for name, status in self.statuses.items() if status == "skipped"]

    def raise_for_status(self) -> None:
        """Raise ``StageFailure`` if any stage instance failed."""
        failed = self.failed_instances()
        if failed:
            raise StageFailure(
                [(r.stage, r.target, r.exit_code) for r in failed],
                self.skipped_stages(),
            )
