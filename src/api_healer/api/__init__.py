"""
API module for the API test self-healing engine.

This module contains:
- healing_endpoints.py: REST endpoints for spec diffing, failure analysis and healing
"""

__all__ = ["healing_endpoints"]
