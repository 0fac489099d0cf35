"""Random identifiers for plans, pipeline runs and artifacts."""

import secrets
import string

_ID_ALPHABET = string.ascii_lowercase + string.digits


def random_id(length: int = 16) -> str:
    """Lowercase alphanumeric id from a cryptographically secure source."""
    if length <= 0:
        raise ValueError("Length must be positive")
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


def prefixed_id(prefix: str, length: int = 12) -> str:
    """Id such as ``plan-3k9x0a7qz1mb``."""
    return f"{prefix}-{random_id(length)}"
