"""
Core module for the API test self-healing engine.

This module contains:
- config.py: Application settings from the environment
- config_loader.py: Self-healing YAML configuration
- logging_config.py: Logging configuration
- errors.py: Engine exception hierarchy
- metrics.py: Metrics and monitoring
- healing_history.py: Append-only healing attempt log
"""

__all__ = ["config", "config_loader", "logging_config", "errors", "metrics", "healing_history"]
