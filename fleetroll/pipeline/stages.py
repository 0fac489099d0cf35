"""Source and build stage implementations."""

from typing import Callable, List, Optional, Protocol

from ..core.errors import BuildFailure, ProcessError, SourceError
from ..core.log import get_logger
from ..templates.artifacts import Artifact, ArtifactRegistry
from .process import ProcessExecutor

logger = get_logger(__name__)


class SourceStage(Protocol):
    """Resolves a source reference to an immutable commit reference."""

    def fetch(self, source_ref: str) -> str:
        """Return the commit ref for ``source_ref``.

        Raises:
            SourceError: The reference cannot be resolved
        """


class BuildStage(Protocol):
    """Turns a commit into a Ready artifact."""

    def build(self, commit_ref: str) -> Artifact:
        """Build ``commit_ref``.

        Raises:
            BuildFailure: No Ready artifact was produced
        """


class StaticSource:
    """Source stage that treats the source ref as the commit ref."""

    def fetch(self, source_ref: str) -> str:
        source_ref = source_ref.strip()
        if not source_ref:
            raise SourceError("Empty source reference")
        return source_ref


class CallableBuildStage:
    """Build stage backed by a function returning an image id.

    The function raising or returning an empty image id fails the build.
    """

    def __init__(self, artifacts: ArtifactRegistry, builder: Callable[[str], str]) -> None:
        self._artifacts = artifacts
        self._builder = builder

    def build(self, commit_ref: str) -> Artifact:
        artifact = self._artifacts.begin(commit_ref)
        try:
            image_id = self._builder(commit_ref)
        except Exception as e:
            self._artifacts.mark_failed(artifact.id, str(e))
            raise BuildFailure(
                f"Build of {commit_ref} failed: {e}",
                commit_ref=commit_ref,
                details={"artifact_id": artifact.id},
            ) from e
        if not image_id:
            self._artifacts.mark_failed(artifact.id, "builder returned no image id")
            raise BuildFailure(
                f"Build of {commit_ref} produced no image",
                commit_ref=commit_ref,
                details={"artifact_id": artifact.id},
            )
        return self._artifacts.mark_ready(artifact.id, image_id)


class CommandBuildStage:
    """Build stage that runs an image build command.

    ``{commit}`` in any argument is replaced with the commit ref. The image id
    is the last non-empty line the command writes to stdout.
    """

    def __init__(
        self,
        artifacts: ArtifactRegistry,
        command: List[str],
        timeout: float,
        executor: Optional[ProcessExecutor] = None,
    ) -> None:
        self._artifacts = artifacts
        self._command = list(command)
        self._timeout = timeout
        self._executor = executor or ProcessExecutor()

    def command_for(self, commit_ref: str) -> List[str]:
        return [arg.replace("{commit}", commit_ref) for arg in self._command]

    def build(self, commit_ref: str) -> Artifact:
        artifact = self._artifacts.begin(commit_ref)
        try:
            result = self._executor.run(self.command_for(commit_ref), timeout=self._timeout)
        except ProcessError as e:
            self._fail(artifact, commit_ref, str(e))
            raise BuildFailure(
                f"Build of {commit_ref} failed: {e}",
                commit_ref=commit_ref,
                details={"artifact_id": artifact.id},
            ) from e

        if not result.ok:
            reason = f"exit code {result.returncode}: {result.stderr.strip()[-500:]}"
            self._fail(artifact, commit_ref, reason)
            raise BuildFailure(
                f"Build of {commit_ref} failed with {reason}",
                commit_ref=commit_ref,
                details={"artifact_id": artifact.id, "returncode": result.returncode},
            )

        lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
        if not lines:
            self._fail(artifact, commit_ref, "no image id on stdout")
            raise BuildFailure(
                f"Build of {commit_ref} printed no image id",
                commit_ref=commit_ref,
                details={"artifact_id": artifact.id},
            )
        return self._artifacts.mark_ready(artifact.id, lines[-1])

    def _fail(self, artifact: Artifact, commit_ref: str, reason: str) -> None:
        logger.error("Build of %s failed: %s", commit_ref, reason)
        self._artifacts.mark_failed(artifact.id, reason)
