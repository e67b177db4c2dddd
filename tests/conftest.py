"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from stagehand.observability.logging import clear_secrets
from stagehand.pipeline.config import (
    CONFIG_ENV_VAR,
    STATE_DIR_ENV_VAR,
    PipelineConfig,
    StageSpec,
    TargetConfig,
)

PYTHON = sys.executable


def _py(code: str) -> tuple[str, ...]:
    """argv running ``code`` with the current interpreter."""
    return (PYTHON, "-c", code)


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep developer settings and registered secrets out of tests."""
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    monkeypatch.delenv(STATE_DIR_ENV_VAR, raising=False)
    clear_secrets()


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def local_config(tmp_path: Path) -> PipelineConfig:
    """Release-shaped config whose commands are small Python scripts.

    resolver -> {engine, wasm} -> ide -> publish, on two local targets.
    """
    emit = (
        "print('::set-output name=ENSO_VERSION::2026.10.18-nightly');"
        "print('::set-output name=ENSO_RELEASE_ID::rel-42')"
    )
    return PipelineConfig(
        name="test",
        env={"ENSO_BUILD_KIND": "nightly"},
        state_dir=tmp_path / "state",
        targets={
            "linux": TargetConfig(name="linux", max_parallel=2),
            "macos": TargetConfig(name="macos", max_parallel=1),
        },
        resolver=StageSpec(
            name="prepare",
            targets=("linux",),
            commands=(_py(emit),),
            outputs=("ENSO_VERSION", "ENSO_RELEASE_ID"),
        ),
        stages=[
            StageSpec(name="engine", targets=("linux", "macos"), commands=(_py("pass"),)),
            StageSpec(name="wasm", targets=("linux",), commands=(_py("pass"),)),
            StageSpec(
                name="ide",
                needs=("engine", "wasm"),
                targets=("linux", "macos"),
                commands=(_py("import sys; sys.exit(0)"),),
            ),
        ],
        publish=StageSpec(
            name="publish",
            targets=("linux",),
            commands=(_py("pass"),),
            env={"AWS_REGION": "us-west-1"},
            secrets={"AWS_ACCESS_KEY_ID": "TEST_S3_KEY_ID"},
        ),
    )
