"""Artifacts and template versions."""

from .artifacts import Artifact, ArtifactRegistry
from .versions import TemplateVersion, TemplateVersionManager

__all__ = ["Artifact", "ArtifactRegistry", "TemplateVersion", "TemplateVersionManager"]
