"""
Tests for linkd/config - Engine configuration loading and validation

Tests cover:
- Defaults and derived paths
- YAML and JSON loading
- Environment overrides
- Validation failures
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from linkd.config import ConfigFormat, EngineConfig, ProfileRules, load_config, save_config
from linkd.exceptions import ConfigError


class TestDefaults:
    """Tests for default configuration values."""

    @pytest.mark.unit
    def test_defaults_validate(self):
        config = EngineConfig().validate()
        assert config.high_risk_threshold == 0.7
        assert config.min_confidence == 0.5
        assert config.max_reconnect_retries == 3
        assert config.model_kind == 'logistic'
        assert config.auto_connect is True

    @pytest.mark.unit
    def test_derived_paths(self, temp_dir):
        config = EngineConfig(state_dir=str(temp_dir), log_dir=str(temp_dir / "logs"))
        assert config.trust_file == temp_dir / "trust.json"
        assert config.trust_key_file == temp_dir / "trust.key"
        assert config.device_state_file == temp_dir / "devices.json"
        assert config.event_log_file == temp_dir / "logs" / "engine_events.log"

    @pytest.mark.unit
    def test_to_dict_round_trip(self):
        config = EngineConfig(high_risk_threshold=0.8,
                              profiles=ProfileRules(home_networks=["Home"]))
        restored = EngineConfig.from_dict(config.to_dict())
        assert restored == config


class TestLoading:
    """Tests for loading configuration files."""

    @pytest.mark.unit
    def test_load_yaml(self, temp_dir):
        path = temp_dir / "linkd.yaml"
        path.write_text(yaml.safe_dump({
            'high_risk_threshold': 0.65,
            'max_reconnect_retries': 5,
            'profiles': {
                'home_networks': ['Home-WiFi'],
                'office_networks': ['Office-Net'],
                'office_hours': [8, 17],
            },
        }))
        config = load_config(path, apply_env=False)
        assert config.high_risk_threshold == 0.65
        assert config.max_reconnect_retries == 5
        assert config.profiles.office_networks == ['Office-Net']
        assert config.profiles.office_hours == (8, 17)

    @pytest.mark.unit
    def test_load_json(self, temp_dir):
        path = temp_dir / "linkd.json"
        path.write_text(json.dumps({'model_kind': 'trend', 'window_min_samples': 4}))
        config = load_config(path, apply_env=False)
        assert config.model_kind == 'trend'
        assert config.window_min_samples == 4

    @pytest.mark.unit
    def test_no_path_uses_defaults(self):
        config = load_config(None, apply_env=False)
        assert config == EngineConfig()

    @pytest.mark.unit
    def test_missing_file(self, temp_dir):
        with pytest.raises(ConfigError):
            load_config(temp_dir / "absent.yaml")

    @pytest.mark.unit
    def test_unsupported_extension(self, temp_dir):
        path = temp_dir / "linkd.ini"
        path.write_text("[engine]\n")
        with pytest.raises(ConfigError):
            load_config(path)

    @pytest.mark.unit
    def test_unparsable_yaml(self, temp_dir):
        path = temp_dir / "linkd.yaml"
        path.write_text("high_risk_threshold: [0.7\n")
        with pytest.raises(ConfigError):
            load_config(path)

    @pytest.mark.unit
    def test_root_must_be_mapping(self, temp_dir):
        path = temp_dir / "linkd.yaml"
        path.write_text("- one\n- two\n")
        with pytest.raises(ConfigError):
            load_config(path)

    @pytest.mark.unit
    def test_unknown_keys_ignored(self, temp_dir):
        path = temp_dir / "linkd.json"
        path.write_text(json.dumps({'not_an_option': 1, 'min_confidence': 0.4}))
        config = load_config(path, apply_env=False)
        assert config.min_confidence == 0.4
        assert not hasattr(config, 'not_an_option')

    @pytest.mark.unit
    def test_save_and_reload(self, temp_dir):
        config = EngineConfig(preemptive_cooldown=12.0,
                              profiles=ProfileRules(office_networks=["Office-Net"]))
        for name in ("saved.yaml", "saved.json"):
            save_config(config, temp_dir / name)
            assert load_config(temp_dir / name, apply_env=False) == config


class TestEnvironmentOverrides:
    """Tests for LINKD_* overrides."""

    @pytest.mark.unit
    def test_numeric_override(self):
        with patch.dict(os.environ, {'LINKD_HIGH_RISK_THRESHOLD': '0.9',
                                     'LINKD_MAX_RECONNECT_RETRIES': '7'}):
            config = load_config(None)
        assert config.high_risk_threshold == 0.9
        assert config.max_reconnect_retries == 7

    @pytest.mark.unit
    def test_invalid_override_keeps_default(self):
        with patch.dict(os.environ, {'LINKD_BACKOFF_BASE': 'fast'}):
            config = load_config(None)
        assert config.backoff_base == EngineConfig().backoff_base

    @pytest.mark.unit
    def test_negative_override_keeps_default(self):
        with patch.dict(os.environ, {'LINKD_PAIRING_TIMEOUT': '-5'}):
            config = load_config(None)
        assert config.pairing_timeout == EngineConfig().pairing_timeout


class TestValidation:
    """Tests for configuration validation."""

    @pytest.mark.unit
    @pytest.mark.parametrize("overrides", [
        {'high_risk_threshold': 1.5},
        {'min_confidence': -0.1},
        {'window_min_samples': 1},
        {'window_min_samples': 40, 'window_capacity': 32},
        {'backoff_base': 10.0, 'backoff_cap': 1.0},
        {'model_kind': 'neural'},
        {'prediction_timeout': 0},
        {'auto_connect': 'yes'},
        {'default_capabilities': []},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig(**overrides).validate()
        assert exc_info.value.reason == "invalid_config"

    @pytest.mark.unit
    def test_overlapping_networks_rejected(self):
        rules = ProfileRules(home_networks=["Shared"], office_networks=["Shared"])
        with pytest.raises(ConfigError):
            EngineConfig(profiles=rules).validate()

    @pytest.mark.unit
    def test_bad_office_hours_rejected(self):
        with pytest.raises(ConfigError):
            EngineConfig(profiles=ProfileRules(office_hours=(9, 25))).validate()

    @pytest.mark.unit
    def test_all_problems_reported(self):
        with pytest.raises(ConfigError) as exc_info:
            EngineConfig(high_risk_threshold=2.0, model_kind='neural').validate()
        message = str(exc_info.value)
        assert 'high_risk_threshold' in message
        assert 'model_kind' in message
