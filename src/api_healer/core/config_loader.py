"""Configuration loading and validation utilities for self-healing."""

import copy
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
import logging

from .models.healing_models import HealingConfiguration
from .config import settings
from ..services.severity_policy import SeverityPolicy
from ..services.spec_diff_analyzer import ComparisonOptions

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""
    pass


class SelfHealingConfigLoader:
    """Loads and validates self-healing configuration."""

    DEFAULT_CONFIG = {
        "self_healing": {
            "enabled": True,
            "retry": {
                "max_retries": 3,
                "initial_delay_ms": 1000,
                "max_delay_ms": 30000,
                "backoff_multiplier": 2.0,
                "jitter_factor": 0.25
            },
            "budget": {
                "max_tokens": 100000,
                "max_cost_per_run": 5.0
            },
            "pricing": {
                "prompt_price_per_1k": 0.03,
                "completion_price_per_1k": 0.06,
                "estimated_completion_tokens": 1500
            },
            "cache": {
                "ttl": 3600,
                "max_size": 1000,
                "path": None
            },
            "concurrency": {
                "max_concurrent_healings": 3,
                "healing_timeout": 300
            },
            "history": {
                "path": None,
                "write_patched_tests": False,
                "backup_dir": None
            }
        },
        "spec_diff": {
            "ignore_description_changes": False,
            "track_field_renames": True,
            "rename_similarity_threshold": 0.8,
            "type_transitions": [],
            "format_transitions": []
        }
    }

    def __init__(self, config_path: Optional[str] = None):
        """Initialize config loader with optional custom path."""
        self.config_path = Path(
            config_path or settings.SELF_HEALING_CONFIG_PATH)
        self._config_cache: Optional[HealingConfiguration] = None
        self._config_file_mtime: Optional[float] = None

    def load_config(self, force_reload: bool = False) -> HealingConfiguration:
        """Load and validate self-healing configuration.

        Args:
            force_reload: Force reload even if cached config exists

        Returns:
            HealingConfiguration: Validated configuration object

        Raises:
            ConfigurationError: If configuration is invalid
        """
        # Check if we need to reload
        if not force_reload and self._config_cache and self._is_config_current():
            return self._config_cache

        try:
            config_data = self._load_config_file()
            healing_config = self._parse_healing_config(config_data)
            self._validate_config(healing_config)

            # Cache the config and file modification time
            self._config_cache = healing_config
            if self.config_path.exists():
                self._config_file_mtime = self.config_path.stat().st_mtime

            logger.info(
                f"Loaded self-healing configuration from {self.config_path}")
            return healing_config

        except Exception as e:
            logger.error(f"Failed to load self-healing configuration: {e}")
            raise ConfigurationError(
                f"Configuration loading failed: {e}") from e

    def load_comparison_options(self) -> ComparisonOptions:
        """Load spec diff options, including the severity policy table.

        Raises:
            ConfigurationError: If the section is invalid
        """
        try:
            section = self._load_config_file().get("spec_diff", {})
            threshold = float(section.get("rename_similarity_threshold", 0.8))
            if threshold <= 0.0 or threshold > 1.0:
                raise ConfigurationError(
                    "rename_similarity_threshold must be in (0.0, 1.0]")
            return ComparisonOptions(
                ignore_description_changes=bool(
                    section.get("ignore_description_changes", False)),
                track_field_renames=bool(
                    section.get("track_field_renames", True)),
                rename_similarity_threshold=threshold,
                severity_policy=SeverityPolicy.from_config(section)
            )
        except ConfigurationError:
            raise
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid spec_diff configuration: {e}") from e

    def save_config(self, config: HealingConfiguration) -> None:
        """Save configuration to file.

        Args:
            config: Configuration to save

        Raises:
            ConfigurationError: If saving fails
        """
        try:
            self._validate_config(config)

            # Ensure directory exists
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

            # Keep any spec_diff section already on disk
            config_data = self._load_config_file()
            config_data["self_healing"] = self._config_to_dict(config)

            with open(self.config_path, 'w', encoding='utf-8') as f:
                yaml.dump(config_data, f, default_flow_style=False, indent=2)

            # Update cache
            self._config_cache = config
            self._config_file_mtime = self.config_path.stat().st_mtime

            logger.info(
                f"Saved self-healing configuration to {self.config_path}")

        except Exception as e:
            logger.error(f"Failed to save self-healing configuration: {e}")
            raise ConfigurationError(
                f"Configuration saving failed: {e}") from e

    def _load_config_file(self) -> Dict[str, Any]:
        """Load configuration from file or return defaults."""
        if not self.config_path.exists():
            logger.info(
                f"Config file {self.config_path} not found, using defaults")
            return copy.deepcopy(self.DEFAULT_CONFIG)

        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                config_data = yaml.safe_load(f) or {}

            # Merge with defaults to ensure all keys exist
            return self._deep_merge(copy.deepcopy(self.DEFAULT_CONFIG), config_data)

        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read config file: {e}")

    def _parse_healing_config(self, config_data: Dict[str, Any]) -> HealingConfiguration:
        """Parse configuration data into HealingConfiguration object."""
        healing_section = config_data.get("self_healing", {})

        # Extract nested sections
        retry = healing_section.get("retry", {})
        budget = healing_section.get("budget", {})
        pricing = healing_section.get("pricing", {})
        cache = healing_section.get("cache", {})
        concurrency = healing_section.get("concurrency", {})
        history = healing_section.get("history", {})

        return HealingConfiguration(
            enabled=healing_section.get("enabled", True),
            max_retries=retry.get("max_retries", 3),
            initial_delay_ms=retry.get("initial_delay_ms", 1000),
            max_delay_ms=retry.get("max_delay_ms", 30000),
            backoff_multiplier=retry.get("backoff_multiplier", 2.0),
            jitter_factor=retry.get("jitter_factor", 0.25),
            max_tokens=budget.get("max_tokens", 100000),
            max_cost_per_run=budget.get("max_cost_per_run", 5.0),
            prompt_price_per_1k=pricing.get("prompt_price_per_1k", 0.03),
            completion_price_per_1k=pricing.get(
                "completion_price_per_1k", 0.06),
            estimated_completion_tokens=pricing.get(
                "estimated_completion_tokens", 1500),
            cache_ttl=cache.get("ttl", 3600),
            cache_max_size=cache.get("max_size", 1000),
            cache_path=cache.get("path"),
            max_concurrent_healings=concurrency.get(
                "max_concurrent_healings", 3),
            healing_timeout=concurrency.get("healing_timeout", 300),
            history_path=history.get("path"),
            write_patched_tests=history.get("write_patched_tests", False),
            backup_dir=history.get("backup_dir")
        )

    def _config_to_dict(self, config: HealingConfiguration) -> Dict[str, Any]:
        """Convert HealingConfiguration to nested dictionary structure."""
        return {
            "enabled": config.enabled,
            "retry": {
                "max_retries": config.max_retries,
                "initial_delay_ms": config.initial_delay_ms,
                "max_delay_ms": config.max_delay_ms,
                "backoff_multiplier": config.backoff_multiplier,
                "jitter_factor": config.jitter_factor
            },
            "budget": {
                "max_tokens": config.max_tokens,
                "max_cost_per_run": config.max_cost_per_run
            },
            "pricing": {
                "prompt_price_per_1k": config.prompt_price_per_1k,
                "completion_price_per_1k": config.completion_price_per_1k,
                "estimated_completion_tokens": config.estimated_completion_tokens
            },
            "cache": {
                "ttl": config.cache_ttl,
                "max_size": config.cache_max_size,
                "path": config.cache_path
            },
            "concurrency": {
                "max_concurrent_healings": config.max_concurrent_healings,
                "healing_timeout": config.healing_timeout
            },
            "history": {
                "path": config.history_path,
                "write_patched_tests": config.write_patched_tests,
                "backup_dir": config.backup_dir
            }
        }

    def _validate_config(self, config: HealingConfiguration) -> None:
        """Validate configuration values.

        Args:
            config: Configuration to validate

        Raises:
            ConfigurationError: If validation fails
        """
        errors = []

        # Retry and backoff
        if config.max_retries < 0 or config.max_retries > 10:
            errors.append("max_retries must be between 0 and 10")

        if config.initial_delay_ms < 0 or config.initial_delay_ms > 60000:
            errors.append("initial_delay_ms must be between 0 and 60000")

        if config.max_delay_ms < config.initial_delay_ms:
            errors.append("max_delay_ms must not be lower than initial_delay_ms")

        if config.backoff_multiplier < 1.0 or config.backoff_multiplier > 10.0:
            errors.append("backoff_multiplier must be between 1.0 and 10.0")

        if config.jitter_factor < 0.0 or config.jitter_factor > 1.0:
            errors.append("jitter_factor must be between 0.0 and 1.0")

        # Budget
        if config.max_tokens < 0:
            errors.append("max_tokens must not be negative")

        if config.max_cost_per_run < 0:
            errors.append("max_cost_per_run must not be negative")

        if config.prompt_price_per_1k < 0 or config.completion_price_per_1k < 0:
            errors.append("token prices must not be negative")

        if config.estimated_completion_tokens < 1:
            errors.append("estimated_completion_tokens must be at least 1")

        # Cache
        if config.cache_ttl < 0 or config.cache_ttl > 604800:
            errors.append("cache ttl must be between 0 and 604800 seconds")

        if config.cache_max_size < 1 or config.cache_max_size > 100000:
            errors.append("cache max_size must be between 1 and 100000")

        # Concurrency
        if config.max_concurrent_healings < 1 or config.max_concurrent_healings > 50:
            errors.append("max_concurrent_healings must be between 1 and 50")

        if config.healing_timeout < 10 or config.healing_timeout > 3600:
            errors.append(
                "healing_timeout must be between 10 and 3600 seconds")

        if errors:
            raise ConfigurationError(
                "Configuration validation failed: " + "; ".join(errors))

    def _is_config_current(self) -> bool:
        """Check if cached config is still current."""
        if not self.config_path.exists():
            return self._config_file_mtime is None

        current_mtime = self.config_path.stat().st_mtime
        return self._config_file_mtime == current_mtime

    def _deep_merge(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge two dictionaries."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result


# Global config loader instance
config_loader = SelfHealingConfigLoader()


def get_healing_config(force_reload: bool = False) -> HealingConfiguration:
    """Get the current self-healing configuration.

    Args:
        force_reload: Force reload from file

    Returns:
        HealingConfiguration: Current configuration
    """
    config = config_loader.load_config(force_reload)

    # Global enable/disable setting wins over the file
    if not settings.SELF_HEALING_ENABLED:
        config.enabled = False

    return config


def save_healing_config(config: HealingConfiguration) -> None:
    """Save self-healing configuration.

    Args:
        config: Configuration to save
    """
    config_loader.save_config(config)


def get_comparison_options() -> ComparisonOptions:
    """Get spec diff options from the configuration file."""
    return config_loader.load_comparison_options()


def create_default_config_file() -> None:
    """Create a default configuration file if it doesn't exist."""
    if not config_loader.config_path.exists():
        default_config = HealingConfiguration()
        config_loader.save_config(default_config)
        logger.info(
            f"Created default self-healing config at {config_loader.config_path}")
