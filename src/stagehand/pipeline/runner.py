"""Execution of a single stage instance as a child process."""

from __future__ import annotations

import asyncio
import os
import re
import tempfile
import time
from collections import deque
from datetime import UTC, datetime
from pathlib import Path
from string import Template
from typing import TYPE_CHECKING, Protocol

from stagehand.models.pipeline import StageResult
from stagehand.observability.logging import get_logger
from stagehand.pipeline.artifacts import pack_artifacts

if TYPE_CHECKING:
    from collections.abc import Mapping

    from stagehand.models.pipeline import ReleaseContext
    from stagehand.pipeline.config import PipelineConfig, StageSpec, TargetConfig

log = get_logger(__name__)

OUTPUT_FILE_ENV = "STAGEHAND_OUTPUT"

# ::set-output name=KEY::VALUE
_SET_OUTPUT_RE = re.compile(r"^::set-output name=(?P<key>[^:]+)::(?P<value>.*)$")

_TAIL_LINES = 20
_READ_CHUNK = 64 * 1024


class InstanceRunner(Protocol):
    """Anything able to execute one (stage, target) pair."""

    async def run(
        self,
        stage: StageSpec,
        target: str,
        context: ReleaseContext | None,
    ) -> StageResult: ...


class MissingSecretError(Exception):
    """Raised when a secret a stage declares is absent from the environment."""

    def __init__(self, stage: str, missing: list[str]) -> None:
        self.stage = stage
        self.missing = missing
        super().__init__(
            f"Stage '{stage}' needs secret(s) not set in the environment: {', '.join(missing)}"
        )


def parse_outputs(
    text: str,
    declared: tuple[str, ...] | list[str],
    *,
    allow_plain: bool = True,
) -> dict[str, str]:
    """Read declared outputs from ``text``.

    ``::set-output name=KEY::VALUE`` lines are always recognized; plain
    ``KEY=VALUE`` lines only with ``allow_plain`` (the output file format).
    Undeclared keys are ignored. The last value written for a key wins.
    """
    wanted = set(declared)
    outputs: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        match = _SET_OUTPUT_RE.match(line)
        if match:
            key, value = match.group("key").strip(), match.group("value")
        elif allow_plain and "=" in line and not line.startswith("#"):
            key, value = line.split("=", 1)
            key = key.strip()
        else:
            continue
        if key in wanted:
            outputs[key] = value.strip()
    return outputs


def expand_placeholders(argv: tuple[str, ...], values: Mapping[str, str]) -> list[str]:
    """Expand ``${NAME}`` placeholders; unknown names are left as they are."""
    return [Template(arg).safe_substitute(values) for arg in argv]


def resolve_secrets(
    stage: StageSpec,
    environ: Mapping[str, str] | None = None,
) -> dict[str, str]:
    """Resolve a stage's secrets from the coordinator environment.

    Raises:
        MissingSecretError: If any source variable is unset or empty.
    """
    environ = os.environ if environ is None else environ
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for destination, source in stage.secrets.items():
        value = environ.get(source, "")
        if not value:
            missing.append(source)
        else:
            resolved[destination] = value
    if missing:
        raise MissingSecretError(stage.name, missing)
    return resolved


class StageRunner:
    """Run stage instances as subprocesses.

    Each instance gets its own process and its own environment, built in
    this order (later wins): the coordinator environment with every secret
    name scrubbed (both the variables secrets are read from and the ones
    they are injected as), the pipeline ``env``, the target ``env``, the
    stage ``env``, the stage's own secrets and finally the run context.
    The context always wins so no stage can alter the resolved identifiers.

    Attributes:
        run_dir: Directory receiving per-instance logs and artifact archives.
    """

    def __init__(
        self,
        config: PipelineConfig,
        run_dir: Path,
        *,
        workdir: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """Initialize the runner.

        Args:
            config: Pipeline configuration (targets, env, secret names).
            run_dir: Directory of the current run.
            workdir: Working directory of child processes. Defaults to the
                current directory.
            environ: Coordinator environment. Defaults to ``os.environ``.
        """
        self.config = config
        self.run_dir = run_dir
        self.workdir = workdir or Path.cwd()
        self._environ = dict(os.environ if environ is None else environ)
        self._scrubbed = config.secret_destinations() | config.secret_sources()

    def _target(self, name: str) -> TargetConfig:
        from stagehand.pipeline.config import TargetConfig

        return self.config.targets.get(name) or TargetConfig(name=name)

    def build_env(
        self,
        stage: StageSpec,
        target: str,
        context: ReleaseContext | None,
    ) -> dict[str, str]:
        """Build the environment of one instance.

        Raises:
            MissingSecretError: If a declared secret is not available.
        """
        env = {k: v for k, v in self._environ.items() if k not in self._scrubbed}
        env.update(self.config.env)
        env.update(self._target(target).env)
        env.update(stage.env)
        env.update(resolve_secrets(stage, self._environ))
        if context is not None:
            env.update(context.env())
        return env

    def _log_path(self, stage: StageSpec, target: str) -> Path:
        return self.run_dir / "logs" / f"{stage.name}-{target}.log"

    async def _run_command(
        self,
        argv: list[str],
        env: dict[str, str],
        log_file: Path,
        timeout: float | None,
        tail: deque[str],
        stdout_lines: list[str],
    ) -> int:
        """Run one command, streaming its output to ``log_file``.

        Returns:
            The process exit code.

        Raises:
            TimeoutError: If the command exceeds ``timeout``. The process is
                killed on this and on any other error.
        """
        process = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(self.workdir),
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )

        async def _pump() -> None:
            assert process.stdout is not None
            pending = bytearray()
            with log_file.open("a", encoding="utf-8") as f:

                def emit(raw: bytes) -> None:
                    line = raw.decode("utf-8", errors="replace").rstrip("\r")
                    f.write(line + "\n")
                    tail.append(line)
                    stdout_lines.append(line)

                # Chunked reads: a single line may exceed any StreamReader limit
                while chunk := await process.stdout.read(_READ_CHUNK):
                    pending.extend(chunk)
                    start = 0
                    while (end := pending.find(b"\n", start)) != -1:
                        emit(bytes(pending[start:end]))
                        start = end + 1
                    del pending[:start]
                if pending:
                    emit(bytes(pending))

        async def _drain() -> int:
            await _pump()
            return await process.wait()

        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        finally:
            if process.returncode is None:
                process.kill()
                await process.wait()

    async def run(
        self,
        stage: StageSpec,
        target: str,
        context: ReleaseContext | None,
    ) -> StageResult:
        """Execute every command of ``stage`` on ``target``.

        Never raises for a failing command: a non-zero exit, a missing
        executable, a missing secret or a timeout all produce a failure
        outcome. ``stage.timeout`` bounds the whole instance, not each
        command.

        Returns:
            StageResult for the instance.
        """
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        log_file = self._log_path(stage, target)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        tail: deque[str] = deque(maxlen=_TAIL_LINES)
        stdout_lines: list[str] = []
        exit_code: int | None = None
        error: str | None = None
        outputs: dict[str, str] = {}
        archives: list[str] = []

        log.info("instance_start", stage=stage.name, target=target)

        with tempfile.TemporaryDirectory(prefix="stagehand-") as tmp:
            output_file = Path(tmp) / "outputs"
            output_file.touch()
            try:
                env = self.build_env(stage, target, context)
                env[OUTPUT_FILE_ENV] = str(output_file)
                values = context.env() if context is not None else {}
                wrapper = list(self._target(target).wrapper)
                deadline = start + stage.timeout if stage.timeout is not None else None

                for command in stage.commands:
                    remaining: float | None = None
                    if deadline is not None:
                        remaining = deadline - time.perf_counter()
                        if remaining <= 0:
                            raise TimeoutError
                    argv = wrapper + expand_placeholders(command, values)
                    log.debug("instance_command", stage=stage.name, target=target, argv=argv)
                    exit_code = await self._run_command(
                        argv, env, log_file, remaining, tail, stdout_lines
                    )
                    if exit_code != 0:
                        error = f"command {argv[0]!r} exited with status {exit_code}"
                        break
            except MissingSecretError as e:
                error = str(e)
            except FileNotFoundError as e:
                error = f"executable not found: {e.filename or e}"
            except PermissionError as e:
                error = f"executable not runnable: {e.filename or e}"
            except TimeoutError:
                error = f"timed out after {stage.timeout:g}s"
            except OSError as e:
                error = f"could not run command: {e}"

            if error is None and stage.outputs:
                outputs = parse_outputs(
                    "\n".join(stdout_lines), stage.outputs, allow_plain=False
                )
                outputs.update(
                    parse_outputs(output_file.read_text(encoding="utf-8"), stage.outputs)
                )

        if error is None and stage.artifacts:
            destination = self.run_dir / "artifacts" / target / stage.archive_name
            try:
                archive = pack_artifacts(self.workdir, stage.artifacts, destination)
            except OSError as e:
                error = f"artifact archiving failed: {e}"
            else:
                if archive is not None:
                    archives.append(str(archive))

        duration = time.perf_counter() - start
        if error is not None and tail:
            error = error + "\n" + "\n".join(tail)

        result = StageResult(
            stage=stage.name,
            target=target,
            outcome="success" if error is None else "failure",
            exit_code=exit_code,
            outputs=outputs,
            error=error,
            started_at=started_at,
            finished_at=datetime.now(UTC),
            duration_seconds=duration,
            log_path=str(log_file),
            artifacts=archives,
        )

        if result.succeeded:
            log.info(
                "instance_complete",
                stage=stage.name,
                target=target,
                duration=f"{duration:.2f}s",
            )
        else:
            log.warning(
                "instance_failed",
                stage=stage.name,
                target=target,
                exit_code=exit_code,
                error=error.splitlines()[0] if error else None,
                duration=f"{duration:.2f}s",
            )
        return result
