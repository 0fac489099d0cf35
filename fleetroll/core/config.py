"""Layered configuration: defaults, YAML file, environment, explicit overrides.

Environment variables use the ``FLEETROLL_`` prefix. A double underscore
selects a section, so ``FLEETROLL_REFRESH__INSTANCE_WARMUP=120`` sets
``refresh.instance_warmup``.
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigurationError
from .types import FleetrollConfig

ENV_PREFIX = "FLEETROLL_"
SECTION_SEPARATOR = "__"
YAML_SUFFIXES = (".yml", ".yaml")

_TRUE = frozenset({"true", "yes", "on"})
_FALSE = frozenset({"false", "no", "off"})


def _convert_env_value(value: str) -> Any:
    """Interpret an environment string as int, float, bool, list or string."""
    if not value:
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    lowered = value.lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    if "," in value:
        return [item.strip() for item in value.split(",")]
    return value


def load_env_overrides(
    prefix: str = ENV_PREFIX, environ: Optional[Mapping[str, str]] = None
) -> Dict[str, Any]:
    """Collect ``prefix``-ed variables into a (one level nested) settings dict.

    Variables nested deeper than one section are ignored.
    """
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}
    for key, raw in environ.items():
        if not key.startswith(prefix):
            continue
        path = key[len(prefix):].lower().split(SECTION_SEPARATOR)
        value = _convert_env_value(raw)
        if len(path) == 1:
            overrides[path[0]] = value
        elif len(path) == 2:
            overrides.setdefault(path[0], {})[path[1]] = value
    return overrides


def _merge(base: Dict[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``updates`` into ``base``, combining section dicts key by key."""
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = {**current, **value}
        else:
            merged[key] = value
    return merged


def read_config_file(config_file: Path) -> Dict[str, Any]:
    """Parse a YAML config file into a settings dict.

    Raises:
        ConfigurationError: Unsupported suffix, unreadable or malformed file
    """
    if config_file.suffix.lower() not in YAML_SUFFIXES:
        raise ConfigurationError(
            f"Unsupported config file format: {config_file.suffix}",
            details={"path": str(config_file)},
        )
    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to load config file {config_file}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {config_file} must contain a mapping")
    return data


class ConfigManager:
    """Loads and caches the active ``FleetrollConfig``."""

    def __init__(self) -> None:
        self._config: Optional[FleetrollConfig] = None

    def load_config(
        self, config_file: Optional[Path] = None, **overrides: Any
    ) -> FleetrollConfig:
        """Build a configuration. Later layers win: file, environment, ``overrides``.

        A ``config_file`` that does not exist is skipped.
        """
        layers = []
        if config_file is not None and Path(config_file).exists():
            layers.append(read_config_file(Path(config_file)))
        layers.append(load_env_overrides())
        layers.append(overrides)

        settings: Dict[str, Any] = {}
        for layer in layers:
            settings = _merge(settings, layer)
        self._config = FleetrollConfig(**settings)
        return self._config

    def get_config(self) -> FleetrollConfig:
        if self._config is None:
            return self.load_config()
        return self._config


# Global config manager instance
_config_manager = ConfigManager()


def load_config(**kwargs: Any) -> FleetrollConfig:
    """Load global configuration."""
    return _config_manager.load_config(**kwargs)


def get_config() -> FleetrollConfig:
    """Get current global configuration."""
    return _config_manager.get_config()
