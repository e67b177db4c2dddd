"""Version/release resolution: the root of every run."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import ValidationError

from stagehand.errors import ResolverFailure
from stagehand.models.pipeline import RELEASE_ID_KEY, VERSION_KEY, ReleaseContext
from stagehand.observability.logging import get_logger

if TYPE_CHECKING:
    from stagehand.models.pipeline import StageResult
    from stagehand.pipeline.config import StageSpec
    from stagehand.pipeline.runner import InstanceRunner

log = get_logger(__name__)

REQUIRED_OUTPUTS = (VERSION_KEY, RELEASE_ID_KEY)


class ReleaseResolver:
    """Obtain the build version and create the draft release.

    Runs the resolver stage once. Any failure is fatal for the run and is
    not retried.
    """

    def __init__(self, spec: StageSpec, runner: InstanceRunner) -> None:
        self.spec = spec
        self._runner = runner
        self.result: StageResult | None = None

    async def resolve(self) -> ReleaseContext:
        """Run the resolver stage and build the run's release context.

        Returns:
            Immutable ReleaseContext carrying every declared output.

        Raises:
            ResolverFailure: If a command fails, the runner raises or a required
                output is missing.
        """
        target = self.spec.targets[0]
        log.info("resolver_start", stage=self.spec.name, target=target)

        try:
            result = await self._runner.run(self.spec, target, None)
        except Exception as e:
            log.error("resolver_crashed", stage=self.spec.name, error=str(e), exc_info=True)
            raise ResolverFailure(self.spec.name, f"runner error: {e}") from e
        self.result = result
        if not result.succeeded:
            raise ResolverFailure(
                self.spec.name,
                result.error or "resolver command failed",
                exit_code=result.exit_code,
            )

        missing = [key for key in REQUIRED_OUTPUTS if not result.outputs.get(key)]
        if missing:
            raise ResolverFailure(
                self.spec.name,
                f"missing required output(s): {', '.join(missing)}",
                exit_code=result.exit_code,
            )

        try:
            context = ReleaseContext(
                version=result.outputs[VERSION_KEY],
                release_id=result.outputs[RELEASE_ID_KEY],
                outputs=dict(result.outputs),
            )
        except ValidationError as e:
            raise ResolverFailure(self.spec.name, f"invalid outputs: {e}") from e

        log.info(
            "resolver_complete",
            stage=self.spec.name,
            version=context.version,
            release_id=context.release_id,
        )
        return context
