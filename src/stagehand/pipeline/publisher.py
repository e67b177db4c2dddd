"""Publishing of the draft release: the final join of a run."""

from __future__ import annotations

from typing import TYPE_CHECKING

from stagehand.errors import PublishFailure
from stagehand.models.pipeline import StageResult
from stagehand.observability.logging import get_logger
from stagehand.pipeline.runner import MissingSecretError, resolve_secrets
from stagehand.pipeline.store import RunStoreError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from stagehand.models.pipeline import ReleaseContext
    from stagehand.pipeline.config import StageSpec
    from stagehand.pipeline.runner import InstanceRunner
    from stagehand.pipeline.store import PublishLedger

log = get_logger(__name__)


class Publisher:
    """Mark a draft release as published.

    Publishing is idempotent per release id: once the ledger records a
    release, later calls succeed without invoking the publish command again.
    Failures are fatal and never retried; the release stays in draft.
    """

    def __init__(
        self,
        spec: StageSpec,
        runner: InstanceRunner,
        ledger: PublishLedger,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self.spec = spec
        self._runner = runner
        self._ledger = ledger
        self._environ = environ

    def check_credentials(self) -> list[str]:
        """Names of credential variables missing from the environment."""
        try:
            resolve_secrets(self.spec, self._environ)
        except MissingSecretError as e:
            return e.missing
        return []

    async def publish(self, context: ReleaseContext, run_id: str | None = None) -> StageResult:
        """Publish the release of ``context``.

        Args:
            context: The run's release context.
            run_id: Run recorded in the ledger alongside the release.

        Returns:
            StageResult of the publish step; ``outputs`` carries
            ``already_published=true`` when nothing had to be done.

        Raises:
            PublishFailure: On missing credentials, a failed publish command,
                a runner error or an unreadable ledger.
        """
        target = self.spec.targets[0]

        try:
            already = self._ledger.is_published(context.release_id)
        except RunStoreError as e:
            raise PublishFailure(self.spec.name, context.release_id, str(e)) from e
        if already:
            log.info(
                "release_already_published",
                stage=self.spec.name,
                release_id=context.release_id,
            )
            return StageResult(
                stage=self.spec.name,
                target=target,
                outcome="success",
                outputs={"already_published": "true"},
            )

        missing = self.check_credentials()
        if missing:
            raise PublishFailure(
                self.spec.name,
                context.release_id,
                f"missing credentials: {', '.join(missing)}",
            )

        log.info("publish_start", stage=self.spec.name, release_id=context.release_id)
        try:
            result = await self._runner.run(self.spec, target, context)
        except Exception as e:
            log.error("publish_crashed", stage=self.spec.name, error=str(e), exc_info=True)
            raise PublishFailure(
                self.spec.name, context.release_id, f"runner error: {e}"
            ) from e
        if not result.succeeded:
            log.error(
                "publish_failed",
                stage=self.spec.name,
                release_id=context.release_id,
                exit_code=result.exit_code,
            )
            raise PublishFailure(
                self.spec.name,
                context.release_id,
                (result.error or "publish command failed").splitlines()[0],
                exit_code=result.exit_code,
            )

        try:
            self._ledger.mark_published(context.release_id, context.version, run_id)
        except RunStoreError as e:
            raise PublishFailure(
                self.spec.name,
                context.release_id,
                f"publish command succeeded but the ledger was not updated: {e}",
                exit_code=result.exit_code,
            ) from e
        log.info(
            "publish_complete",
            stage=self.spec.name,
            release_id=context.release_id,
            version=context.version,
        )
        return result
