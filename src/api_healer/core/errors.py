"""Exception hierarchy for the self-healing engine.

Spec loading failures are fatal and propagate to the caller. Everything that
happens during healing degrades into a result state instead, so the only
healing-time exception is InvalidInputError.
"""

from typing import Optional


class HealingEngineError(Exception):
    """Base class for all engine errors."""
    pass


class SpecLoadError(HealingEngineError):
    """Raised when a specification document cannot be loaded."""

    def __init__(self, message: str, filepath: Optional[str] = None):
        self.filepath = filepath
        if filepath:
            message = f"{message} ({filepath})"
        super().__init__(message)


class SpecParseError(SpecLoadError):
    """Malformed JSON/YAML or unreadable file."""
    pass


class SpecValidationError(SpecLoadError):
    """Structurally invalid or unsupported OpenAPI document."""

    def __init__(self, message: str, filepath: Optional[str] = None, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message, filepath)


class FileFormatError(SpecLoadError):
    """Unrecognized spec file extension."""
    pass


class InvalidInputError(HealingEngineError):
    """Caller contract violation, e.g. analyzing a test that did not fail."""
    pass
