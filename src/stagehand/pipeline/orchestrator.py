"""Pipeline orchestrator: resolver, stage graph, gate and publisher."""

from __future__ import annotations

import os
from pathlib import Path
from typing import TYPE_CHECKING

from stagehand.errors import PublishFailure, ResolverFailure, StageFailure
from stagehand.models.pipeline import PipelineRun, StageResult
from stagehand.observability.logging import get_logger, register_secrets
from stagehand.observability.tracing import bind_run_context, generate_run_id
from stagehand.pipeline.gates import AutoApproveGate, GateHook
from stagehand.pipeline.graph import StageGraph
from stagehand.pipeline.publisher import Publisher
from stagehand.pipeline.resolver import ReleaseResolver
from stagehand.pipeline.runner import StageRunner
from stagehand.pipeline.scheduler import DependencyScheduler
from stagehand.pipeline.store import PublishLedger, RunStore

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from stagehand.models.pipeline import ReleaseContext
    from stagehand.pipeline.config import PipelineConfig
    from stagehand.pipeline.runner import InstanceRunner

    RunnerFactory = Callable[[PipelineConfig, Path], InstanceRunner]

log = get_logger(__name__)


class PipelineOrchestrator:
    """Orchestrate one release pipeline.

    The orchestrator manages:
    - Validating the stage graph before anything runs
    - Resolving the version and draft release
    - Scheduling the stage graph
    - Gating and publishing the release
    - Persisting the run report

    Attributes:
        config: Pipeline configuration.
        graph: Validated stage graph.
        store: Run report storage.
    """

    def __init__(
        self,
        config: PipelineConfig,
        gate: GateHook | None = None,
        *,
        fail_fast: bool | None = None,
        workdir: Path | None = None,
        environ: Mapping[str, str] | None = None,
        runner_factory: RunnerFactory | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Pipeline configuration.
            gate: Optional gate consulted before publishing.
                Defaults to AutoApproveGate.
            fail_fast: Override ``config.fail_fast``.
            workdir: Working directory for stage commands.
            environ: Coordinator environment (secrets are read from it).
                Defaults to ``os.environ``.
            runner_factory: Builds the instance runner for a run directory.
                Defaults to StageRunner.

        Raises:
            GraphValidationError: If the stage graph is malformed.
        """
        self.config = config
        self.graph = StageGraph.from_config(config)
        self.store = RunStore(config.state_dir)
        self.ledger = PublishLedger(config.state_dir / "published.json")
        self._gate = gate or AutoApproveGate()
        self._fail_fast = config.fail_fast if fail_fast is None else fail_fast
        self._workdir = workdir
        self._environ = dict(os.environ if environ is None else environ)
        self._runner_factory = runner_factory

    def _make_runner(self, run_dir: Path) -> InstanceRunner:
        if self._runner_factory is not None:
            return self._runner_factory(self.config, run_dir)
        return StageRunner(self.config, run_dir, workdir=self._workdir, environ=self._environ)

    def _register_secrets(self) -> None:
        register_secrets(self._environ.get(name, "") for name in self.config.secret_sources())

    def _new_run(self) -> PipelineRun:
        run = PipelineRun(run_id=generate_run_id(), pipeline=self.config.name)
        run.set_status(self.config.resolver.name, "pending")
        for name in self.graph.names:
            run.set_status(name, "pending")
        run.set_status(self.config.publish.name, "pending")
        return run

    def _skip_publish(self, run: PipelineRun, reason: str) -> None:
        spec = self.config.publish
        run.set_status(spec.name, "skipped")
        run.record(StageResult.skipped(spec.name, spec.targets[0], reason))

    def _finish(self, run: PipelineRun, succeeded: bool) -> PipelineRun:
        run.finish("succeeded" if succeeded else "failed")
        path = self.store.save(run)
        log.info("run_complete", status=run.status, report=str(path))
        return run

    async def run(self) -> PipelineRun:
        """Execute a full run.

        Returns:
            The sealed PipelineRun. Its status is "succeeded" only if every
            stage instance succeeded and the release was published.
        """
        run = self._new_run()
        self._register_secrets()
        with bind_run_context(run.run_id, pipeline=self.config.name):
            log.info("run_start", stages=len(self.graph), instances=self.graph.instance_count())
            runner = self._make_runner(self.store.run_dir(run.run_id))

            # Resolver: fatal on failure, nothing else starts
            resolver = ReleaseResolver(self.config.resolver, runner)
            run.set_status(self.config.resolver.name, "running")
            try:
                context = await resolver.resolve()
            except ResolverFailure as e:
                log.error("resolver_failed", stage=e.stage, error=str(e))
                resolver_spec = self.config.resolver
                run.record(
                    resolver.result
                    or StageResult(
                        stage=resolver_spec.name,
                        target=resolver_spec.targets[0],
                        outcome="failure",
                        exit_code=e.exit_code,
                        error=str(e),
                    )
                )
                run.set_status(resolver_spec.name, "failed")
                for spec in self.graph:
                    run.set_status(spec.name, "skipped")
                    for target in spec.targets:
                        run.record(StageResult.skipped(spec.name, target, "resolver failed"))
                self._skip_publish(run, "resolver failed")
                run.add_error(str(e))
                return self._finish(run, succeeded=False)

            assert resolver.result is not None
            run.record(resolver.result)
            run.set_status(self.config.resolver.name, "succeeded")
            run.attach_context(context)

            scheduler = DependencyScheduler(
                self.graph,
                runner,
                self.config.targets,
                fail_fast=self._fail_fast,
            )
            outcome = await scheduler.run(context, run)

            # Final barrier: publish only if every stage instance succeeded
            if not outcome.succeeded:
                try:
                    run.raise_for_status()
                except StageFailure as e:
                    run.add_error(str(e))
                self._skip_publish(run, "not every stage succeeded")
                return self._finish(run, succeeded=False)

            if await self._gate.before_publish(run) == "reject":
                log.info("gate_rejected", stage=self.config.publish.name)
                self._skip_publish(run, "rejected by gate")
                run.add_error(f"publish rejected; release {context.release_id} left in draft")
                return self._finish(run, succeeded=False)

            published = await self._publish(run, context, runner)
            return self._finish(run, succeeded=published)

    async def _publish(
        self,
        run: PipelineRun,
        context: ReleaseContext,
        runner: InstanceRunner,
    ) -> bool:
        spec = self.config.publish
        publisher = Publisher(spec, runner, self.ledger, self._environ)
        run.set_status(spec.name, "running")
        try:
            result = await publisher.publish(context, run.run_id)
        except PublishFailure as e:
            log.error("publish_failure", stage=spec.name, error=str(e))
            run.record(
                StageResult(
                    stage=spec.name,
                    target=spec.targets[0],
                    outcome="failure",
                    exit_code=e.exit_code,
                    error=str(e),
                )
            )
            run.set_status(spec.name, "failed")
            run.add_error(str(e))
            return False
        run.record(result)
        run.set_status(spec.name, "succeeded")
        return True

    async def publish(self, context: ReleaseContext) -> PipelineRun:
        """Re-invoke only the publisher for an existing release.

        Used for manual resolution after a failed publish. Safe to repeat:
        an already-published release id is not published twice.

        Returns:
            A sealed PipelineRun containing just the publish step.
        """
        run = PipelineRun(run_id=generate_run_id(), pipeline=self.config.name)
        self._register_secrets()
        with bind_run_context(run.run_id, pipeline=self.config.name):
            run.attach_context(context)
            runner = self._make_runner(self.store.run_dir(run.run_id))
            published = await self._publish(run, context, runner)
            return self._finish(run, succeeded=published)

    def get_run(self, run_id: str | None = None) -> PipelineRun | None:
        """Load a stored run report (the latest when ``run_id`` is None).

        Raises:
            RunStoreError: If the requested report can't be read.
        """
        if run_id is None:
            return self.store.latest()
        return self.store.load(run_id)
