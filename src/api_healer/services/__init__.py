"""
Services module for the self-healing engine.
The orchestrator lives in healing_orchestrator and is imported from there.
"""

from .spec_diff_analyzer import SpecDiffAnalyzer, compare_spec_files
from .failure_analyzer import FailureAnalyzer

__all__ = [
    "SpecDiffAnalyzer",
    "compare_spec_files",
    "FailureAnalyzer"
]
