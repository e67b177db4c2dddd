"""Dependency-aware scheduling of stage instances.

Wraps one asyncio.Semaphore per target pool to bound concurrency. A stage is
launched once every dependency has succeeded; it spawns one instance per
declared target and succeeds only if all of them do.

Failure handling (no automatic retries):
- fail_fast=True (default): the first failed instance stops all new launches
  (including instances still waiting for a pool slot).
  Instances already running finish and are recorded; everything that never
  started is marked skipped.
- fail_fast=False: only the transitive dependents of a failed stage are
  skipped; independent branches keep running.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stagehand.models.pipeline import StageResult
from stagehand.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Mapping

    from stagehand.models.pipeline import PipelineRun, ReleaseContext, StageStatus
    from stagehand.pipeline.config import StageSpec, TargetConfig
    from stagehand.pipeline.graph import StageGraph
    from stagehand.pipeline.runner import InstanceRunner

log = get_logger(__name__)


@dataclass
class ScheduleOutcome:
    """What the scheduler did with the graph."""

    statuses: dict[str, StageStatus] = field(default_factory=dict)
    failed: list[StageResult] = field(default_factory=list)
    halted: bool = False

    @property
    def succeeded(self) -> bool:
        return all(s == "succeeded" for s in self.statuses.values())


class DependencyScheduler:
    """Execute a validated ``StageGraph``.

    Attributes:
        graph: The stage DAG.
        fail_fast: Stop launching new work on the first failure.
    """

    def __init__(
        self,
        graph: StageGraph,
        runner: InstanceRunner,
        targets: Mapping[str, TargetConfig] | None = None,
        *,
        fail_fast: bool = True,
    ) -> None:
        self.graph = graph
        self.fail_fast = fail_fast
        self._runner = runner
        self._limits = {name: t.max_parallel for name, t in (targets or {}).items()}

    def _semaphores(self) -> dict[str, asyncio.Semaphore]:
        names = {t for stage in self.graph for t in stage.targets}
        return {name: asyncio.Semaphore(max(1, self._limits.get(name, 1))) for name in names}

    async def run(
        self,
        context: ReleaseContext | None,
        run: PipelineRun | None = None,
    ) -> ScheduleOutcome:
        """Run every stage of the graph.

        Args:
            context: Resolved release context, passed by value to each instance.
            run: Optional run record; statuses and results are written to it
                as they happen.

        Returns:
            ScheduleOutcome with the final status of every stage.
        """
        semaphores = self._semaphores()
        outcome = ScheduleOutcome(statuses=dict.fromkeys(self.graph.names, "pending"))
        halted = False

        def set_status(name: str, status: StageStatus) -> None:
            outcome.statuses[name] = status
            if run is not None:
                run.set_status(name, status)

        def record(result: StageResult) -> None:
            if result.outcome == "failure":
                outcome.failed.append(result)
            if run is not None:
                run.record(result)

        for name in self.graph.names:
            set_status(name, "pending")

        async def run_instance(stage: StageSpec, target: str) -> StageResult:
            nonlocal halted
            # Only an instance that had to wait for a pool slot can be held back
            queued = semaphores[target].locked()
            async with semaphores[target]:
                if queued and halted:
                    return StageResult.skipped(stage.name, target, "run halted after a failure")
                try:
                    result = await self._runner.run(stage, target, context)
                except Exception as e:
                    log.error(
                        "instance_crashed",
                        stage=stage.name,
                        target=target,
                        error=str(e),
                        exc_info=True,
                    )
                    result = StageResult(
                        stage=stage.name,
                        target=target,
                        outcome="failure",
                        error=f"runner error: {e}",
                    )
                # Halt before the pool slot is released to a queued instance
                if result.outcome == "failure" and self.fail_fast and not halted:
                    halted = True
                    log.warning(
                        "run_halted",
                        stage=result.stage,
                        target=result.target,
                        exit_code=result.exit_code,
                    )
                return result

        tasks: dict[asyncio.Task[StageResult], str] = {}
        remaining: dict[str, int] = {}
        stage_outcomes: dict[str, list[str]] = {}

        def launchable() -> list[str]:
            ready = []
            for name in self.graph.names:
                if outcome.statuses[name] != "pending":
                    continue
                deps = self.graph.dependencies(name)
                if all(outcome.statuses[dep] == "succeeded" for dep in deps):
                    ready.append(name)
            return ready

        def skip_blocked() -> None:
            """Skip pending stages whose dependencies can no longer succeed."""
            changed = True
            while changed:
                changed = False
                for name in self.graph.names:
                    if outcome.statuses[name] != "pending":
                        continue
                    deps = self.graph.dependencies(name)
                    if any(outcome.statuses[dep] in ("failed", "skipped") for dep in deps):
                        skip_stage(name, "a dependency did not succeed")
                        changed = True

        def skip_stage(name: str, reason: str) -> None:
            set_status(name, "skipped")
            for target in self.graph[name].targets:
                record(StageResult.skipped(name, target, reason))
            log.info("stage_skipped", stage=name, reason=reason)

        while True:
            skip_blocked()
            if not halted:
                for name in launchable():
                    stage = self.graph[name]
                    set_status(name, "running")
                    remaining[name] = len(stage.targets)
                    stage_outcomes[name] = []
                    log.info("stage_start", stage=name, targets=list(stage.targets))
                    for target in stage.targets:
                        task = asyncio.create_task(run_instance(stage, target))
                        tasks[task] = name

            if not tasks:
                break

            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = tasks.pop(task)
                result = task.result()
                record(result)
                remaining[name] -= 1
                stage_outcomes[name].append(result.outcome)
                if remaining[name] == 0:
                    status = _stage_status(stage_outcomes[name])
                    set_status(name, status)
                    log.info("stage_complete", stage=name, status=status)

        # Anything not launched by now was held back by the halt
        for name in self.graph.names:
            if outcome.statuses[name] == "pending":
                skip_stage(name, "run halted after a failure")

        outcome.halted = halted
        log.debug(
            "schedule_complete",
            stages=len(self.graph),
            failed_instances=len(outcome.failed),
            halted=halted,
        )
        return outcome


def _stage_status(outcomes: list[str]) -> StageStatus:
    """Fold instance outcomes into a stage status."""
    if "failure" in outcomes:
        return "failed"
    if "skipped" in outcomes:
        return "skipped"
    return "succeeded"
