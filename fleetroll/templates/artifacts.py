"""Append-only registry of build artifacts."""

import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from ..core.enums import ArtifactStatus
from ..core.errors import (
    ArtifactNotFoundError,
    ArtifactTransitionError,
)
from ..core.log import get_logger
from ..core.time import Clock, SystemClock
from ..utils.crypto import prefixed_id

logger = get_logger(__name__)


@dataclass(frozen=True)
class Artifact:
    """A built machine image.

    ``image_id`` is the provider's reference to the image and is only set
    once the build is Ready.
    """

    id: str
    source_commit: str
    build_timestamp: float
    status: ArtifactStatus
    image_id: Optional[str] = None
    failure_reason: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status is ArtifactStatus.READY


class ArtifactRegistry:
    """Thread-safe, append-only artifact history.

    The only permitted transitions are Building -> Ready and
    Building -> Failed; Ready and Failed artifacts never change again.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or SystemClock()
        self._artifacts: Dict[str, Artifact] = {}
        self._order: List[str] = []
        self._lock = threading.Lock()

    def begin(self, source_commit: str) -> Artifact:
        """Register a new artifact in the Building state."""
        artifact = Artifact(
            id=prefixed_id("art"),
            source_commit=source_commit,
            build_timestamp=self._clock.wall_time(),
            status=ArtifactStatus.BUILDING,
        )
        with self._lock:
            self._artifacts[artifact.id] = artifact
            self._order.append(artifact.id)
        logger.debug("Artifact %s building from %s", artifact.id, source_commit)
        return artifact

    def mark_ready(self, artifact_id: str, image_id: str) -> Artifact:
        return self._transition(
            artifact_id, ArtifactStatus.READY, image_id=image_id
        )

    def mark_failed(self, artifact_id: str, reason: str) -> Artifact:
        return self._transition(
            artifact_id, ArtifactStatus.FAILED, failure_reason=reason
        )

    def _transition(self, artifact_id: str, status: ArtifactStatus, **changes) -> Artifact:
        with self._lock:
            current = self._require(artifact_id)
            if current.status is not ArtifactStatus.BUILDING:
                raise ArtifactTransitionError(
                    f"Artifact {artifact_id} is {current.status.value}; "
                    f"cannot become {status.value}"
                )
            updated = replace(
                current,
                status=status,
                build_timestamp=self._clock.wall_time(),
                **changes,
            )
            self._artifacts[artifact_id] = updated
        logger.info("Artifact %s is %s", artifact_id, status.value)
        return updated

    def get(self, artifact_id: str) -> Artifact:
        with self._lock:
            return self._require(artifact_id)

    def history(self) -> List[Artifact]:
        """All artifacts, most recent first."""
        with self._lock:
            return [self._artifacts[a] for a in reversed(self._order)]

    def _require(self, artifact_id: str) -> Artifact:
        try:
            return self._artifacts[artifact_id]
        except KeyError:
            raise ArtifactNotFoundError(f"Unknown artifact {artifact_id}") from None
