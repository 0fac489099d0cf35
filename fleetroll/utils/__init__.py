"""Utility modules for fleetroll."""

from .crypto import random_id, prefixed_id

__all__ = ["random_id", "prefixed_id"]
