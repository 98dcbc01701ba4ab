"""Core data models for the API test self-healing system."""

from .spec_diff_models import (
    Change,
    ChangeType,
    ChangeSeverity,
    EndpointChange,
    ParameterChange,
    SchemaChange,
    AuthChange,
    EndpointChanges,
    ParameterChanges,
    SchemaChanges,
    AuthChanges,
    DiffSummary,
    SpecDiff,
    DiffReport,
    SpecLoadMetadata
)
from .failure_models import (
    FailureType,
    AssertionKind,
    NetworkErrorKind,
    TimeoutOperation,
    AuthErrorKind,
    SelectorReason,
    SelectorType,
    NavigationReason,
    ValidationKind,
    FixKind,
    FixLevel,
    AssertionFailure,
    NetworkFailure,
    TimeoutFailure,
    AuthFailure,
    SelectorFailure,
    NavigationFailure,
    ValidationFailure,
    UnknownFailure,
    SpecificError,
    Attachment,
    ErrorLocation,
    TestError,
    TestResult,
    ParsedError,
    Fix,
    FailureContext,
    FailureAnalysis
)
from .healing_models import (
    HealingStrategy,
    HealingStatus,
    HealingConfiguration,
    HealingDecision,
    HealingCacheEntry,
    HealingAttempt,
    HealingRequest,
    PatchedTest,
    HealingOutcome
)

# Note: Service classes are imported separately from their respective modules

__all__ = [
    "Change",
    "ChangeType",
    "ChangeSeverity",
    "EndpointChange",
    "ParameterChange",
    "SchemaChange",
    "AuthChange",
    "EndpointChanges",
    "ParameterChanges",
    "SchemaChanges",
    "AuthChanges",
    "DiffSummary",
    "SpecDiff",
    "DiffReport",
    "SpecLoadMetadata",
    "FailureType",
    "AssertionKind",
    "NetworkErrorKind",
    "TimeoutOperation",
    "AuthErrorKind",
    "SelectorReason",
    "SelectorType",
    "NavigationReason",
    "ValidationKind",
    "FixKind",
    "FixLevel",
    "AssertionFailure",
    "NetworkFailure",
    "TimeoutFailure",
    "AuthFailure",
    "SelectorFailure",
    "NavigationFailure",
    "ValidationFailure",
    "UnknownFailure",
    "SpecificError",
    "Attachment",
    "ErrorLocation",
    "TestError",
    "TestResult",
    "ParsedError",
    "Fix",
    "FailureContext",
    "FailureAnalysis",
    "HealingStrategy",
    "HealingStatus",
    "HealingConfiguration",
    "HealingDecision",
    "HealingCacheEntry",
    "HealingAttempt",
    "HealingRequest",
    "PatchedTest",
    "HealingOutcome"
]
