"""Pipeline coordination: resolver, stage graph, runner and publisher."""

from stagehand.errors import (
    GraphValidationError,
    PipelineConfigError,
    PipelineError,
    PublishFailure,
    ResolverFailure,
    StageFailure,
)
from stagehand.pipeline.config import (
    PipelineConfig,
    StageSpec,
    TargetConfig,
    create_default_config,
    load_pipeline_config,
)
from stagehand.pipeline.gates import AutoApproveGate, ConfirmGate, GateHook
from stagehand.pipeline.graph import StageGraph
from stagehand.pipeline.orchestrator import PipelineOrchestrator
from stagehand.pipeline.publisher import Publisher
from stagehand.pipeline.resolver import ReleaseResolver
from stagehand.pipeline.runner import InstanceRunner, StageRunner
from stagehand.pipeline.scheduler import DependencyScheduler, ScheduleOutcome

__all__ = [
    "AutoApproveGate",
    "ConfirmGate",
    "DependencyScheduler",
    "GateHook",
    "GraphValidationError",
    "InstanceRunner",
    "PipelineConfig",
    "PipelineConfigError",
    "PipelineError",
    "PipelineOrchestrator",
    "Publisher",
    "PublishFailure",
    "ReleaseResolver",
    "ResolverFailure",
    "ScheduleOutcome",
    "StageFailure",
    "StageGraph",
    "StageRunner",
    "StageSpec",
    "TargetConfig",
    "create_default_config",
    "load_pipeline_config",
]
