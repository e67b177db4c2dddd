"""Error taxonomy for pipeline runs.

Every failure a run can hit maps onto one of these types. None of them is
retried automatically: a failed run is re-invoked explicitly by the caller.
"""

from __future__ import annotations

from pathlib import Path  # noqa: TC003 - used at runtime


class PipelineError(Exception):
    """Raised when pipeline execution fails."""

    def __init__(self, stage: str, message: str) -> None:
        self.stage = stage
        super().__init__(f"Pipeline error in stage '{stage}': {message}")


class PipelineConfigError(Exception):
    """Raised when pipeline configuration cannot be loaded."""

    def __init__(self, path: Path | None, reason: str) -> None:
        self.path = path
        self.reason = reason
        where = f" at {path}" if path is not None else ""
        super().__init__(f"Failed to load pipeline config{where}: {reason}")


class GraphValidationError(Exception):
    """Raised when the stage graph is malformed.

    Attributes:
        problems: Every problem found, so they can all be fixed in one pass.
    """

    def __init__(self, problems: list[str]) -> None:
        self.problems = list(problems)
        detail = "; ".join(self.problems)
        super().__init__(f"Invalid stage graph ({len(self.problems)} problem(s)): {detail}")


class ResolverFailure(PipelineError):
    """Raised when the version/release resolver fails.

    Fatal: the run aborts and no stage starts.
    """

    def __init__(self, stage: str, message: str, exit_code: int | None = None) -> None:
        self.exit_code = exit_code
        super().__init__(stage, message)


class StageFailure(PipelineError):
    """Raised for a run whose stage instances failed.

    Attributes:
        failed: ``(stage, target, exit_code)`` for every failed instance.
        skipped: Names of stages that never started.
    """

    def __init__(
        self,
        failed: list[tuple[str, str, int | None]],
        skipped: list[str] | None = None,
    ) -> None:
        self.failed = list(failed)
        self.skipped = list(skipped or [])
        first = self.failed[0][0] if self.failed else "unknown"
        instances = ", ".join(
            f"{stage}@{target} (exit {code if code is not None else '-'})"
            for stage, target, code in self.failed
        )
        super().__init__(first, f"failed instances: {instances or 'none'}")


class PublishFailure(PipelineError):
    """Raised when publishing the release fails.

    Fatal and terminal: the release is left in draft for manual resolution.
    """

    def __init__(
        self,
        stage: str,
        release_id: str,
        message: str,
        exit_code: int | None = None,
    ) -> None:
        self.release_id = release_id
        self.exit_code = exit_code
        super().__init__(stage, f"release {release_id} left in draft: {message}")
