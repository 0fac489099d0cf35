"""Template version manager: immutable, versioned launch configurations."""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, List, Mapping, Optional

from ..core.errors import ArtifactNotReadyError, VersionNotFoundError
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from .artifacts import Artifact

logger = get_logger(__name__)


@dataclass(frozen=True)
class TemplateVersion:
    """Launch configuration bound to exactly one Ready artifact."""

    id: int
    artifact_ref: str
    created_at: float
    image_id: Optional[str] = None
    settings: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


class TemplateVersionManager:
    """Allocates monotonic template versions.

    There is no update or delete: changing a launch configuration means
    creating a new version. Ids start at 1 and are never reused.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._versions: List[TemplateVersion] = []
        self._lock = threading.Lock()

    def create_version(
        self, artifact: Artifact, settings: Optional[Mapping[str, Any]] = None
    ) -> TemplateVersion:
        """Create the next version bound to ``artifact``.

        Raises:
            ArtifactNotReadyError: If the artifact is not Ready
        """
        if not artifact.is_ready:
            raise ArtifactNotReadyError(
                f"Artifact {artifact.id} is {artifact.status.value}, not ready",
                details={"artifact_id": artifact.id},
            )
        with self._lock:
            version = TemplateVersion(
                id=len(self._versions) + 1,
                artifact_ref=artifact.id,
                created_at=self._clock.wall_time(),
                image_id=artifact.image_id,
                settings=MappingProxyType(dict(settings or {})),
            )
            self._versions.append(version)
        logger.info(
            "Template version %d created for artifact %s", version.id, artifact.id
        )
        return version

    def latest(self) -> Optional[TemplateVersion]:
        with self._lock:
            return self._versions[-1] if self._versions else None

    def history(self) -> List[TemplateVersion]:
        """All versions, most recent first."""
        with self._lock:
            return list(reversed(self._versions))

    def get(self, version_id: int) -> TemplateVersion:
        with self._lock:
            if 1 <= version_id <= len(self._versions):
                return self._versions[version_id - 1]
        raise VersionNotFoundError(f"Template version {version_id} does not exist")

    def previous(self, version_id: int) -> Optional[TemplateVersion]:
        """The version created immediately before ``version_id``, if any."""
        self.get(version_id)
        if version_id <= 1:
            return None
        return self.get(version_id - 1)

    def find_by_artifact(self, artifact_id: str) -> List[TemplateVersion]:
        """Versions bound to ``artifact_id``, most recent first."""
        return [v for v in self.history() if v.artifact_ref == artifact_id]
