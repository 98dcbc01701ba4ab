"""Unit tests for self-healing configuration loading."""

from unittest.mock import patch

import pytest
import yaml

from src.api_healer.core.config_loader import (
    ConfigurationError,
    SelfHealingConfigLoader,
    get_healing_config,
)
from src.api_healer.core.models import ChangeSeverity, HealingConfiguration


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "config" / "self_healing.yaml"


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")


class TestSelfHealingConfigLoader:
    """Test cases for SelfHealingConfigLoader."""

    def test_defaults_without_file(self, config_path):
        config = SelfHealingConfigLoader(str(config_path)).load_config()

        assert config == HealingConfiguration()

    def test_nested_sections_parsed(self, config_path):
        _write(config_path, {"self_healing": {
            "enabled": False,
            "retry": {"max_retries": 5},
            "budget": {"max_tokens": 5000},
            "cache": {"ttl": 60, "path": "data/cache.json"},
            "concurrency": {"max_concurrent_healings": 8},
        }})

        config = SelfHealingConfigLoader(str(config_path)).load_config()

        assert config.enabled is False
        assert config.max_retries == 5
        assert config.initial_delay_ms == 1000
        assert config.max_tokens == 5000
        assert config.cache_ttl == 60
        assert config.cache_path == "data/cache.json"
        assert config.max_concurrent_healings == 8

    @pytest.mark.parametrize("section,message", [
        ({"retry": {"max_retries": 20}}, "max_retries must be between 0 and 10"),
        ({"retry": {"initial_delay_ms": 5000, "max_delay_ms": 100}}, "max_delay_ms"),
        ({"retry": {"jitter_factor": 1.5}}, "jitter_factor"),
        ({"budget": {"max_cost_per_run": -1}}, "max_cost_per_run"),
        ({"concurrency": {"healing_timeout": 1}}, "healing_timeout"),
    ])
    def test_invalid_values(self, config_path, section, message):
        _write(config_path, {"self_healing": section})

        with pytest.raises(ConfigurationError, match=message):
            SelfHealingConfigLoader(str(config_path)).load_config()

    def test_invalid_yaml(self, config_path):
        config_path.parent.mkdir(parents=True)
        config_path.write_text("self_healing: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigurationError):
            SelfHealingConfigLoader(str(config_path)).load_config()

    def test_cached_until_file_changes(self, config_path):
        _write(config_path, {"self_healing": {"retry": {"max_retries": 2}}})
        loader = SelfHealingConfigLoader(str(config_path))

        first = loader.load_config()

        assert loader.load_config() is first
        assert loader.load_config(force_reload=True) is not first

    def test_save_keeps_spec_diff_section(self, config_path):
        _write(config_path, {"spec_diff": {"rename_similarity_threshold": 0.9}})
        loader = SelfHealingConfigLoader(str(config_path))

        loader.save_config(HealingConfiguration(max_retries=6))

        assert SelfHealingConfigLoader(str(config_path)).load_config().max_retries == 6
        assert loader.load_comparison_options().rename_similarity_threshold == 0.9

    def test_save_rejects_invalid_config(self, config_path):
        with pytest.raises(ConfigurationError):
            SelfHealingConfigLoader(str(config_path)).save_config(HealingConfiguration(max_retries=-1))
        assert not config_path.exists()


class TestComparisonOptions:
    """Test cases for the spec_diff section."""

    def test_defaults(self, config_path):
        options = SelfHealingConfigLoader(str(config_path)).load_comparison_options()

        assert options.track_field_renames is True
        assert options.severity_policy.type_change("integer", "number") == ChangeSeverity.MAJOR
        assert options.severity_policy.type_change("string", "integer") == ChangeSeverity.BREAKING

    def test_transition_overrides(self, config_path):
        _write(config_path, {"spec_diff": {
            "ignore_description_changes": True,
            "type_transitions": [{"from": "number", "to": "string", "severity": "major"}],
            "format_transitions": [{"from": "date-time", "to": "date", "severity": "breaking"}],
        }})

        options = SelfHealingConfigLoader(str(config_path)).load_comparison_options()

        assert options.ignore_description_changes is True
        policy = options.severity_policy
        assert policy.type_change("number", "string") == ChangeSeverity.MAJOR
        assert policy.type_change("integer", "number") == ChangeSeverity.MAJOR
        assert policy.format_change("date-time", "date") == ChangeSeverity.BREAKING

    @pytest.mark.parametrize("section", [
        {"rename_similarity_threshold": 1.5},
        {"type_transitions": [{"from": "number", "to": "string", "severity": "catastrophic"}]},
        {"format_transitions": [{"from": "int32"}]},
    ])
    def test_invalid_section(self, config_path, section):
        _write(config_path, {"spec_diff": section})

        with pytest.raises(ConfigurationError):
            SelfHealingConfigLoader(str(config_path)).load_comparison_options()


class TestGlobalSwitch:

    def test_global_disable_wins(self, config_path):
        loader = SelfHealingConfigLoader(str(config_path))
        with patch("src.api_healer.core.config_loader.config_loader", loader), \
                patch("src.api_healer.core.config_loader.settings") as mock_settings:
            mock_settings.SELF_HEALING_ENABLED = False

            assert get_healing_config(force_reload=True).enabled is False
