"""Data models for pipeline runs."""

from stagehand.models.pipeline import (
    RELEASE_ID_KEY,
    VERSION_KEY,
    Outcome,
    PipelineRun,
    ReleaseContext,
    RunStatus,
    StageResult,
    StageStatus,
)

__all__ = [
    "RELEASE_ID_KEY",
    "VERSION_KEY",
    "Outcome",
    "PipelineRun",
    "ReleaseContext",
    "RunStatus",
    "StageResult",
    "StageStatus",
]
