"""Tests for the pipeline orchestrator."""

from __future__ import annotations

from dataclasses import replace
from typing import TYPE_CHECKING

import pytest

from stagehand.errors import GraphValidationError
from stagehand.models.pipeline import ReleaseContext, StageResult
from stagehand.observability.logging import redact_secrets
from stagehand.pipeline.config import PipelineConfig, StageSpec, TargetConfig
from stagehand.pipeline.gates import ConfirmGate
from stagehand.pipeline.orchestrator import PipelineOrchestrator

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

CREDENTIALS = {"TEST_S3_KEY_ID": "super-secret-value"}


class ScriptedRunner:
    """Runner that answers from a script instead of spawning processes."""

    def __init__(
        self,
        fail: set[str] | None = None,
        resolver_outputs: dict[str, str] | None = None,
        crash: set[str] | None = None,
    ) -> None:
        self.fail = fail or set()
        self.crash = crash or set()
        self.resolver_outputs = (
            {"ENSO_VERSION": "2026.10.18", "ENSO_RELEASE_ID": "rel-42"}
            if resolver_outputs is None
            else resolver_outputs
        )
        self.calls: list[tuple[str, str]] = []
        self.contexts: list[ReleaseContext | None] = []

    async def run(
        self, stage: StageSpec, target: str, context: ReleaseContext | None
    ) -> StageResult:
        self.calls.append((stage.name, target))
        self.contexts.append(context)
        if stage.name in self.crash:
            raise ValueError("Separator is found, but chunk is longer than limit")
        if stage.name in self.fail:
            return StageResult(
                stage=stage.name,
                target=target,
                outcome="failure",
                exit_code=1,
                error=f"command 'tool' exited with status 1 ({stage.name})",
            )
        outputs = self.resolver_outputs if stage.name == "prepare" else {}
        return StageResult(
            stage=stage.name, target=target, outcome="success", exit_code=0, outputs=outputs
        )

    def count(self, name: str) -> int:
        return sum(1 for stage, _ in self.calls if stage == name)


def scripted(runner: ScriptedRunner) -> Callable[[PipelineConfig, Path], ScriptedRunner]:
    return lambda _config, _run_dir: runner


def scenario_config(tmp_path: Path) -> PipelineConfig:
    """resolver -> {A, B} -> C -> publish."""

    def stage(name: str, *needs: str) -> StageSpec:
        return StageSpec(name=name, targets=("linux",), commands=(("tool", name),), needs=needs)

    return PipelineConfig(
        name="scenario",
        state_dir=tmp_path / "state",
        targets={"linux": TargetConfig(name="linux", max_parallel=2)},
        resolver=StageSpec(
            name="prepare",
            targets=("linux",),
            commands=(("tool", "release", "create-draft"),),
            outputs=("ENSO_VERSION", "ENSO_RELEASE_ID"),
        ),
        stages=[stage("A"), stage("B"), stage("C", "A", "B")],
        publish=StageSpec(
            name="publish",
            targets=("linux",),
            commands=(("tool", "release", "publish"),),
            secrets={"AWS_ACCESS_KEY_ID": "TEST_S3_KEY_ID"},
        ),
    )


class TestScenarios:
    """Run-level behaviour with a scripted runner."""

    @pytest.mark.asyncio
    async def test_all_succeed_publishes_once(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "succeeded"
        assert run.sealed
        assert run.statuses == {
            "prepare": "succeeded",
            "A": "succeeded",
            "B": "succeeded",
            "C": "succeeded",
            "publish": "succeeded",
        }
        assert runner.count("publish") == 1
        assert run.context is not None
        assert run.context.release_id == "rel-42"
        assert orchestrator.ledger.is_published("rel-42")

    @pytest.mark.asyncio
    async def test_failure_skips_dependents_and_publisher(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(fail={"A"})
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.statuses["A"] == "failed"
        assert run.statuses["B"] in ("succeeded", "failed")
        assert run.statuses["C"] == "skipped"
        assert run.statuses["publish"] == "skipped"
        assert runner.count("publish") == 0
        assert runner.count("C") == 0
        assert any("A@linux (exit 1)" in error for error in run.errors)
        assert not orchestrator.ledger.is_published("rel-42")

    @pytest.mark.asyncio
    async def test_resolver_failure_starts_nothing(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(fail={"prepare"})
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert runner.calls == [("prepare", "linux")]
        assert run.context is None
        assert run.statuses == {
            "prepare": "failed",
            "A": "skipped",
            "B": "skipped",
            "C": "skipped",
            "publish": "skipped",
        }
        assert "prepare" in run.errors[0]

    @pytest.mark.asyncio
    async def test_missing_resolver_output_is_fatal(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(resolver_outputs={"ENSO_VERSION": "2026.10.18"})
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert "ENSO_RELEASE_ID" in run.errors[0]
        assert runner.calls == [("prepare", "linux")]

    @pytest.mark.asyncio
    async def test_every_instance_sees_the_same_context(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        stage_contexts = runner.contexts[1:]
        assert len(stage_contexts) == 4
        assert all(context == run.context for context in stage_contexts)

    @pytest.mark.asyncio
    async def test_gate_rejection_leaves_release_in_draft(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path),
            ConfirmGate(lambda _run: False),
            environ=CREDENTIALS,
            runner_factory=scripted(runner),
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.statuses["publish"] == "skipped"
        assert runner.count("publish") == 0
        assert "rel-42 left in draft" in run.errors[0]

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_the_run(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ={}, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.statuses["publish"] == "failed"
        assert runner.count("publish") == 0
        assert "missing credentials: TEST_S3_KEY_ID" in run.errors[0]

    @pytest.mark.asyncio
    async def test_publish_failure(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(fail={"publish"})
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.statuses["publish"] == "failed"
        assert runner.count("publish") == 1
        assert run.results_for("publish")[0].outcome == "failure"
        assert run.results_for("publish")[0].exit_code == 1

    @pytest.mark.asyncio
    async def test_republish_is_noop(self, tmp_path: Path) -> None:
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )
        first = await orchestrator.run()
        assert first.context is not None

        again = await orchestrator.publish(first.context)

        assert again.status == "succeeded"
        assert again.statuses == {"publish": "succeeded"}
        assert again.results[0].outputs == {"already_published": "true"}
        assert runner.count("publish") == 1

    @pytest.mark.asyncio
    async def test_no_fail_fast_override(self, tmp_path: Path) -> None:
        config = scenario_config(tmp_path)
        config.stages.append(
            StageSpec(name="D", targets=("linux",), commands=(("tool", "D"),), needs=("B",))
        )
        runner = ScriptedRunner(fail={"A"})
        orchestrator = PipelineOrchestrator(
            config, environ=CREDENTIALS, fail_fast=False, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.statuses["D"] == "succeeded"
        assert run.statuses["C"] == "skipped"
        assert run.status == "failed"

    @pytest.mark.asyncio
    async def test_resolver_crash_still_seals_and_saves(self, tmp_path: Path) -> None:
        runner = ScriptedRunner(crash={"prepare"})
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path), environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.sealed
        assert run.statuses["prepare"] == "failed"
        assert run.statuses["C"] == "skipped"
        assert run.results_for("prepare")[0].outcome == "failure"
        assert "runner error" in run.errors[0]
        assert orchestrator.store.report_path(run.run_id).exists()

    @pytest.mark.asyncio
    async def test_corrupt_ledger_fails_publish_cleanly(self, tmp_path: Path) -> None:
        config = scenario_config(tmp_path)
        config.state_dir.mkdir(parents=True)
        (config.state_dir / "published.json").write_text("[not a ledger", encoding="utf-8")
        runner = ScriptedRunner()
        orchestrator = PipelineOrchestrator(
            config, environ=CREDENTIALS, runner_factory=scripted(runner)
        )

        run = await orchestrator.run()

        assert run.status == "failed"
        assert run.sealed
        assert run.statuses["publish"] == "failed"
        assert runner.count("publish") == 0
        assert "left in draft" in run.errors[0]
        assert orchestrator.store.report_path(run.run_id).exists()


class TestPersistence:
    """Run reports and secrets."""

    @pytest.mark.asyncio
    async def test_report_is_saved(self, tmp_path: Path) -> None:
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path),
            environ=CREDENTIALS,
            runner_factory=scripted(ScriptedRunner()),
        )

        run = await orchestrator.run()

        assert orchestrator.store.report_path(run.run_id).exists()
        latest = orchestrator.get_run()
        assert latest is not None
        assert latest.run_id == run.run_id
        assert orchestrator.get_run(run.run_id).status == "succeeded"  # type: ignore[union-attr]

    @pytest.mark.asyncio
    async def test_secret_values_are_redacted(self, tmp_path: Path) -> None:
        orchestrator = PipelineOrchestrator(
            scenario_config(tmp_path),
            environ=CREDENTIALS,
            runner_factory=scripted(ScriptedRunner()),
        )

        await orchestrator.run()

        event = redact_secrets(None, "info", {"event": "x", "argv": ["--key=super-secret-value"]})
        assert event["argv"] == ["--key=***"]

    def test_invalid_graph_rejected_before_running(self, tmp_path: Path) -> None:
        config = scenario_config(tmp_path)
        config.stages[2] = replace(config.stages[2], needs=("A", "ghost"))

        with pytest.raises(GraphValidationError, match="ghost"):
            PipelineOrchestrator(config)


@pytest.mark.asyncio
async def test_end_to_end_with_subprocesses(local_config: PipelineConfig, tmp_path: Path) -> None:
    """A full run with real child processes."""
    orchestrator = PipelineOrchestrator(
        local_config, workdir=tmp_path, environ={"TEST_S3_KEY_ID": "abc"}
    )

    run = await orchestrator.run()

    assert run.status == "succeeded", run.errors
    assert run.context is not None
    assert run.context.version == "2026.10.18-nightly"
    assert len(run.results_for("engine")) == 2
    assert len(run.results_for("ide")) == 2
    assert orchestrator.ledger.is_published("rel-42")
