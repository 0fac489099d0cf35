"""Core framework components."""

from .value_objects import FleetId

__all__ = ["FleetId"]
