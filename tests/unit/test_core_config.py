"""Tests for configuration loading and validation."""

import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from fleetroll.core.config import ConfigManager, _convert_env_value, load_env_overrides
from fleetroll.core.errors import ConfigurationError
from fleetroll.core.types import FleetrollConfig, RefreshPreferences


class TestEnvOverrides:
    """FLEETROLL_ environment variables."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("42", 42),
            ("2.5", 2.5),
            ("true", True),
            ("off", False),
            ("50,100", ["50", "100"]),
            ("web", "web"),
            ("", None),
        ],
    )
    def test_value_conversion(self, raw, expected):
        assert _convert_env_value(raw) == expected

    def test_nested_sections(self):
        env = {
            "FLEETROLL_FLEET__DESIRED_COUNT": "6",
            "FLEETROLL_REFRESH__INSTANCE_WARMUP": "120",
            "FLEETROLL_DEPLOY_ENABLED": "false",
        }
        with patch.dict(os.environ, env):
            overrides = load_env_overrides()

        assert overrides == {
            "fleet": {"desired_count": 6},
            "refresh": {"instance_warmup": 120},
            "deploy_enabled": False,
        }


class TestConfigManager:
    """Layered configuration loading."""

    def setup_method(self) -> None:
        self.manager = ConfigManager()

    def test_defaults(self):
        config = self.manager.load_config()

        assert config.fleet.desired_count == 2
        assert config.refresh.min_healthy_percentage == 90.0
        assert config.refresh.checkpoint_percentages == (100.0,)
        assert config.deploy_enabled is True

    def test_yaml_file(self, tmp_path):
        config_file = tmp_path / "fleetroll.yml"
        config_file.write_text(
            "fleet:\n"
            "  fleet_id: api\n"
            "  desired_count: 10\n"
            "refresh:\n"
            "  checkpoint_percentages: [50, 100]\n"
            "  checkpoint_delay: 600\n"
        )

        config = self.manager.load_config(config_file=config_file)

        assert config.fleet.fleet_id == "api"
        assert config.fleet.desired_count == 10
        assert config.refresh.checkpoint_percentages == (50.0, 100.0)
        assert config.refresh.instance_warmup == 300.0

    def test_precedence(self, tmp_path):
        config_file = tmp_path / "fleetroll.yaml"
        config_file.write_text("fleet:\n  desired_count: 10\n  fleet_id: file\n")

        with patch.dict(os.environ, {"FLEETROLL_FLEET__DESIRED_COUNT": "4"}):
            config = self.manager.load_config(
                config_file=config_file, log_level="DEBUG"
            )

        assert config.fleet.desired_count == 4
        assert config.fleet.fleet_id == "file"
        assert config.log_level == "DEBUG"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = self.manager.load_config(config_file=tmp_path / "absent.yml")

        assert config.fleet.fleet_id == "default"

    def test_unsupported_suffix(self, tmp_path):
        config_file = tmp_path / "fleetroll.toml"
        config_file.write_text("[fleet]\n")

        with pytest.raises(ConfigurationError):
            self.manager.load_config(config_file=config_file)

    def test_non_mapping_file(self, tmp_path):
        config_file = tmp_path / "fleetroll.yml"
        config_file.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            self.manager.load_config(config_file=config_file)

    def test_invalid_yaml(self, tmp_path):
        config_file = tmp_path / "fleetroll.yml"
        config_file.write_text("fleet: [unclosed\n")

        with pytest.raises(ConfigurationError):
            self.manager.load_config(config_file=config_file)

    def test_get_config_loads_lazily(self):
        assert self.manager.get_config() is self.manager.get_config()


class TestRefreshPreferences:
    """Plan parameter validation."""

    def test_min_healthy_count_rounds_up(self):
        prefs = RefreshPreferences(min_healthy_percentage=90)

        assert prefs.min_healthy_count(10) == 9
        assert prefs.min_healthy_count(3) == 3
        assert RefreshPreferences(min_healthy_percentage=0).min_healthy_count(5) == 0

    def test_preferences_are_frozen(self):
        prefs = RefreshPreferences()

        with pytest.raises(ValidationError):
            prefs.instance_warmup = 1

    @pytest.mark.parametrize(
        "overrides",
        [
            {"min_healthy_percentage": 101},
            {"min_healthy_percentage": -1},
            {"checkpoint_percentages": ()},
            {"checkpoint_percentages": (50, 90)},
            {"checkpoint_percentages": (60, 40, 100)},
            {"checkpoint_percentages": (0, 100)},
            {"instance_warmup": -1},
            {"health_poll_interval": 0},
            {"max_launch_retries": -1},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            RefreshPreferences(**overrides).validate_for(4)

    def test_desired_count_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            RefreshPreferences().validate_for(0)

    def test_repeated_checkpoints_allowed(self):
        RefreshPreferences(checkpoint_percentages=(50, 50, 100)).validate_for(4)


class TestFleetrollConfig:
    """Cross-field validation of the main configuration."""

    def test_invalid_refresh_rejected(self):
        with pytest.raises(ConfigurationError):
            FleetrollConfig(refresh={"checkpoint_percentages": [50]})

    def test_build_timeout_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            FleetrollConfig(timeouts={"build_command": 0})

    def test_zero_desired_count_rejected(self):
        with pytest.raises(ConfigurationError):
            FleetrollConfig(fleet={"desired_count": 0})
