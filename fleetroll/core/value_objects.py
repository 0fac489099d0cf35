"""Domain primitives for fleet identification."""

import re
from dataclasses import dataclass

_FLEET_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


@dataclass(frozen=True)
class FleetId:
    """Name of a managed fleet: letters, digits, ``-`` and ``_``."""

    value: str

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError("FleetId cannot be empty")
        if not _FLEET_ID_PATTERN.fullmatch(self.value):
            raise ValueError(f"FleetId must be alphanumeric with _ or -: {self.value}")

    def __str__(self) -> str:
        return self.value
