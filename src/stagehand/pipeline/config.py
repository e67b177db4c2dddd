"""Pipeline configuration loading."""

from __future__ import annotations

import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML

from stagehand.errors import PipelineConfigError
from stagehand.models.pipeline import RELEASE_ID_KEY, VERSION_KEY
from stagehand.pipeline.artifacts import ArchiveFormat

CONFIG_FILENAME = "pipeline.yaml"
CONFIG_ENV_VAR = "STAGEHAND_CONFIG"
STATE_DIR_ENV_VAR = "STAGEHAND_STATE_DIR"

# Default configuration values
DEFAULT_STATE_DIR = ".stagehand"
DEFAULT_TOOL = "enso-build-cli"
DEFAULT_TARGETS = ["linux", "windows", "macos"]
DEFAULT_ENV = {
    "ENSO_BUILD_KIND": "nightly",
    "ENSO_BUILD_REPO_PATH": "enso",
    "ENSO_BUILD_REPO_REMOTE": "enso-org/ci-build",
    "RUST_BACKTRACE": "full",
}
DEFAULT_PUBLISH_SECRETS = {
    "AWS_ACCESS_KEY_ID": "ARTEFACT_S3_ACCESS_KEY_ID",
    "AWS_SECRET_ACCESS_KEY": "ARTEFACT_S3_SECRET_ACCESS_KEY",
}


def _parse_commands(value: Any, where: str) -> tuple[tuple[str, ...], ...]:
    """Parse a ``run`` entry into argv tuples.

    Accepts a single command string or a list of command strings.
    """
    if value is None:
        return ()
    items = [value] if isinstance(value, str) else list(value)
    commands: list[tuple[str, ...]] = []
    for item in items:
        if not isinstance(item, str):
            raise ValueError(f"{where}: run entries must be strings, got {item!r}")
        argv = tuple(shlex.split(item))
        if not argv:
            raise ValueError(f"{where}: empty command")
        commands.append(argv)
    return tuple(commands)


def _str_map(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(value).__name__}")
    return {str(k): str(v) for k, v in value.items()}


def _str_tuple(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


@dataclass(frozen=True)
class TargetConfig:
    """A named execution environment with its own concurrency pool.

    Attributes:
        name: Target name referenced by stages.
        max_parallel: Maximum concurrently running instances on this target.
        wrapper: argv prefix used to reach the target (e.g. ``["ssh", "mac-mini"]``).
            Empty means the command runs on the coordinator host.
        env: Extra environment for every instance on this target.
    """

    name: str
    max_parallel: int = 1
    wrapper: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: dict[str, Any] | None) -> TargetConfig:
        data = dict(data or {})
        max_parallel = int(data.get("max_parallel", 1))
        if max_parallel < 1:
            raise ValueError(f"target '{name}': max_parallel must be at least 1")
        wrapper = data.get("wrapper") or ()
        if isinstance(wrapper, str):
            wrapper = shlex.split(wrapper)
        return cls(
            name=name,
            max_parallel=max_parallel,
            wrapper=tuple(str(w) for w in wrapper),
            env=_str_map(data.get("env"), f"target '{name}'"),
        )


@dataclass(frozen=True)
class StageSpec:
    """Static definition of one pipeline stage.

    The resolver and the publisher are described with the same type; they
    are kept out of the stage graph and sequenced by the orchestrator.

    Attributes:
        name: Unique stage name.
        needs: Names of previously defined stages this stage depends on.
        targets: Targets the stage runs on, one instance per target.
        commands: argv lists run in order; ``${NAME}`` placeholders are
            expanded from the run context.
        env: Extra environment for the stage.
        secrets: Environment name -> name of the coordinator environment
            variable holding the value.
        outputs: Output keys read back from the instance.
        timeout: Per-instance timeout in seconds, None for no limit.
        artifacts: Glob patterns of files to archive after success.
        archive: Archive filename; its suffix selects the format.
    """

    name: str
    targets: tuple[str, ...]
    commands: tuple[tuple[str, ...], ...]
    needs: tuple[str, ...] = ()
    env: dict[str, str] = field(default_factory=dict)
    secrets: dict[str, str] = field(default_factory=dict)
    outputs: tuple[str, ...] = ()
    timeout: float | None = None
    artifacts: tuple[str, ...] = ()
    archive: str | None = None

    @property
    def archive_name(self) -> str:
        return self.archive or f"{self.name}.tar.gz"

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_name: str | None = None) -> StageSpec:
        """Create a stage from a config mapping.

        Args:
            data: Mapping with ``name``, ``run`` and optional ``needs``,
                ``targets`` (or ``target``), ``env``, ``secrets``,
                ``outputs``, ``timeout``, ``artifacts``, ``archive``.
            default_name: Name used when the mapping has none.

        Raises:
            ValueError: If a field has the wrong shape.
        """
        data = dict(data)
        name = str(data.get("name") or default_name or "")
        if not name:
            raise ValueError("stage without a name")
        where = f"stage '{name}'"

        targets = _str_tuple(data.get("targets", data.get("target")))
        timeout = data.get("timeout")
        archive = data.get("archive")
        if archive is not None:
            ArchiveFormat.from_filename(str(archive))

        return cls(
            name=name,
            targets=targets,
            commands=_parse_commands(data.get("run"), where),
            needs=_str_tuple(data.get("needs")),
            env=_str_map(data.get("env"), where),
            secrets=_str_map(data.get("secrets"), where),
            outputs=_str_tuple(data.get("outputs")),
            timeout=float(timeout) if timeout is not None else None,
            artifacts=_str_tuple(data.get("artifacts")),
            archive=str(archive) if archive is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize back to the config file shape."""
        data: dict[str, Any] = {"name": self.name}
        if self.needs:
            data["needs"] = list(self.needs)
        data["targets"] = list(self.targets)
        runs = [shlex.join(argv) for argv in self.commands]
        data["run"] = runs[0] if len(runs) == 1 else runs
        for key in ("env", "secrets"):
            value = getattr(self, key)
            if value:
                data[key] = dict(value)
        for key in ("outputs", "artifacts"):
            value = getattr(self, key)
            if value:
                data[key] = list(value)
        if self.timeout is not None:
            data["timeout"] = self.timeout
        if self.archive is not None:
            data["archive"] = self.archive
        return data


def _default_resolver() -> StageSpec:
    return StageSpec(
        name="prepare",
        targets=("linux",),
        commands=((DEFAULT_TOOL, "release", "create-draft"),),
        outputs=(VERSION_KEY, RELEASE_ID_KEY),
    )


def _default_publish() -> StageSpec:
    return StageSpec(
        name="publish",
        targets=("linux",),
        commands=((DEFAULT_TOOL, "release", "publish"),),
        env={"AWS_REGION": "us-west-1"},
        secrets=dict(DEFAULT_PUBLISH_SECRETS),
    )


def _default_stages() -> list[StageSpec]:
    return [
        StageSpec(
            name="build-engine",
            targets=tuple(DEFAULT_TARGETS),
            commands=(("enso-build-engine", "upload"),),
        ),
        StageSpec(
            name="build-wasm",
            targets=("linux",),
            commands=((DEFAULT_TOOL, "wasm", "build"),),
        ),
        StageSpec(
            name="build-ide",
            needs=("build-engine", "build-wasm"),
            targets=tuple(DEFAULT_TARGETS),
            commands=(
                (
                    DEFAULT_TOOL,
                    "ide",
                    "upload",
                    "--wasm-source",
                    "current-ci-run",
                    "--backend-source",
                    "release",
                    "--backend-release",
                    f"${{{RELEASE_ID_KEY}}}",
                ),
            ),
        ),
    ]


@dataclass
class PipelineConfig:
    """Configuration for a release pipeline."""

    name: str
    env: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENV))
    state_dir: Path = field(default_factory=lambda: Path(DEFAULT_STATE_DIR))
    fail_fast: bool = True
    targets: dict[str, TargetConfig] = field(
        default_factory=lambda: {name: TargetConfig(name=name) for name in DEFAULT_TARGETS}
    )
    resolver: StageSpec = field(default_factory=_default_resolver)
    stages: list[StageSpec] = field(default_factory=_default_stages)
    publish: StageSpec = field(default_factory=_default_publish)

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    def secret_destinations(self) -> set[str]:
        """Every environment name that carries a secret somewhere in the pipeline."""
        names: set[str] = set()
        for spec in (self.resolver, *self.stages, self.publish):
            names.update(spec.secrets)
        return names

    def secret_sources(self) -> set[str]:
        """Every coordinator environment variable read as a secret."""
        names: set[str] = set()
        for spec in (self.resolver, *self.stages, self.publish):
            names.update(spec.secrets.values())
        return names

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Path | None = None) -> PipelineConfig:
        """Create config from dictionary.

        Args:
            data: Dictionary containing config fields.
            base_dir: Directory a relative ``state_dir`` is resolved against.

        Returns:
            PipelineConfig instance.

        Raises:
            ValueError: If a section has the wrong shape.
        """
        targets_data = data.get("targets")
        if targets_data is None:
            targets = {name: TargetConfig(name=name) for name in DEFAULT_TARGETS}
        else:
            targets = {
                str(name): TargetConfig.from_dict(str(name), value)
                for name, value in dict(targets_data).items()
            }

        resolver_data = data.get("resolver")
        resolver = (
            StageSpec.from_dict(resolver_data, default_name="prepare")
            if resolver_data is not None
            else _default_resolver()
        )
        # The resolver always exposes the version and release id
        resolver = replace(
            resolver,
            outputs=tuple(dict.fromkeys((*resolver.outputs, VERSION_KEY, RELEASE_ID_KEY))),
        )

        stages_data = data.get("stages")
        stages = (
            [StageSpec.from_dict(item) for item in stages_data]
            if stages_data is not None
            else _default_stages()
        )

        publish_data = data.get("publish")
        publish = (
            StageSpec.from_dict(publish_data, default_name="publish")
            if publish_data is not None
            else _default_publish()
        )

        env = dict(DEFAULT_ENV) if "env" not in data else _str_map(data.get("env"), "env")

        state_dir = Path(
            os.environ.get(STATE_DIR_ENV_VAR) or data.get("state_dir") or DEFAULT_STATE_DIR
        )
        if not state_dir.is_absolute() and base_dir is not None:
            state_dir = base_dir / state_dir

        return cls(
            name=str(data.get("name", "unnamed")),
            env=env,
            state_dir=state_dir,
            fail_fast=bool(data.get("fail_fast", True)),
            targets=targets,
            resolver=resolver,
            stages=stages,
            publish=publish,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the config file shape."""
        return {
            "name": self.name,
            "env": dict(self.env),
            "state_dir": str(self.state_dir),
            "fail_fast": self.fail_fast,
            "targets": {
                name: {
                    "max_parallel": target.max_parallel,
                    **({"wrapper": list(target.wrapper)} if target.wrapper else {}),
                    **({"env": dict(target.env)} if target.env else {}),
                }
                for name, target in self.targets.items()
            },
            "resolver": self.resolver.to_dict(),
            "stages": [stage.to_dict() for stage in self.stages],
            "publish": self.publish.to_dict(),
        }


def resolve_config_path(path: Path | None = None) -> Path:
    """Find the pipeline config file.

    Resolution order:
    1. Explicit path (a directory means ``<dir>/pipeline.yaml``)
    2. STAGEHAND_CONFIG environment variable
    3. ./pipeline.yaml
    """
    env_path = os.environ.get(CONFIG_ENV_VAR)
    candidate = path or (Path(env_path) if env_path else None)
    if candidate is None:
        return Path(CONFIG_FILENAME)
    if candidate.is_dir():
        return candidate / CONFIG_FILENAME
    return candidate


def load_pipeline_config(path: Path | None = None) -> PipelineConfig:
    """Load pipeline configuration from a YAML file.

    Args:
        path: Config file or directory containing pipeline.yaml.

    Returns:
        PipelineConfig instance.

    Raises:
        PipelineConfigError: If config cannot be loaded.
    """
    config_path = resolve_config_path(path)

    if not config_path.exists():
        raise PipelineConfigError(config_path, "File not found")

    yaml = YAML(typ="safe")
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise PipelineConfigError(config_path, "Empty file")
        if not isinstance(data, dict):
            raise PipelineConfigError(config_path, "Top level must be a mapping")

        return PipelineConfig.from_dict(dict(data), base_dir=config_path.parent)
    except Exception as e:
        if isinstance(e, PipelineConfigError):
            raise
        raise PipelineConfigError(config_path, str(e)) from e


def create_default_config(name: str) -> PipelineConfig:
    """Create the default release pipeline configuration.

    Args:
        name: Pipeline name.

    Returns:
        PipelineConfig with the engine/wasm/ide release shape.
    """
    return PipelineConfig(name=name)


def write_pipeline_config(config: PipelineConfig, path: Path) -> Path:
    """Write a config to ``path`` (a directory gets ``pipeline.yaml``)."""
    if path.is_dir():
        path = path / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    yaml_writer = YAML()
    yaml_writer.default_flow_style = False
    yaml_writer.indent(mapping=2, sequence=4, offset=2)
    with path.open("w", encoding="utf-8") as f:
        yaml_writer.dump(config.to_dict(), f)
    return path
