"""
Tests for controller configuration loading
"""

import os

import pytest

from common.config import (
    ConflictPolicy,
    ControllerSettings,
    load_controller_settings,
    load_controller_settings_file,
)
from common.exceptions import ConfigurationError

EXAMPLE_CONFIG = os.path.join(os.path.dirname(__file__), "..", "controller", "config.example.yaml")


def test_defaults_from_empty_config():
    settings = load_controller_settings(None)
    assert isinstance(settings, ControllerSettings)
    assert settings.control.safety_grace_s == 300.0
    assert settings.control.activation_grace_s == 600.0
    assert settings.control.conflict_policy == ConflictPolicy.EXCLUSIVE
    assert settings.actuation.max_attempts == 3
    assert settings.baseline.min_comparable_days == 3


def test_example_config_loads():
    settings = load_controller_settings_file(EXAMPLE_CONFIG)
    assert settings.facility_ids == ["greenhouse-north"]
    assert settings.verification.emissions_factor("CAISO") == 0.22
    assert settings.verification.emissions_factor("ERCOT") == 0.4


def test_stack_policy_parsed():
    settings = load_controller_settings({"control": {"conflict_policy": "stack"}})
    assert settings.control.conflict_policy == ConflictPolicy.STACK


@pytest.mark.parametrize("data", [
    {"control": {"conflict_policy": "first_come"}},
    {"control": {"poll_interval": 30}},
    {"control": {"poll_interval_s": 0}},
    {"baseline": "weekly"},
    {"actuation": {"max_attempts": 0}},
])
def test_invalid_config_rejected(data):
    with pytest.raises(ConfigurationError):
        load_controller_settings(data)


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc:
        load_controller_settings_file(tmp_path / "missing.yaml")
    assert exc.value.message.startswith("Configuration Error:")


def test_yaml_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("facility_ids: [a, b]\nretry:\n  max_attempts: 5\n")
    settings = load_controller_settings_file(path)
    assert settings.facility_ids == ["a", "b"]
    assert settings.retry.max_attempts == 5
