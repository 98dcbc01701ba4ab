"""Data models for test failure classification."""

from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Union


class FailureType(Enum):
    """Failure taxonomy produced by the failure analyzer."""
    ASSERTION = "assertion"
    NETWORK = "network"
    TIMEOUT = "timeout"
    AUTH = "auth"
    SELECTOR = "selector"
    NAVIGATION = "navigation"
    VALIDATION = "validation"
    UNKNOWN = "unknown"


class AssertionKind(Enum):
    VISIBILITY = "visibility"
    TEXT_CONTENT = "text_content"
    ATTRIBUTE = "attribute"
    COUNT = "count"
    VALUE = "value"
    EQUALITY = "equality"


class NetworkErrorKind(Enum):
    CONNECTION_REFUSED = "connection_refused"
    DNS_FAILURE = "dns_failure"
    SSL_ERROR = "ssl_error"
    HTTP_ERROR = "http_error"


class TimeoutOperation(Enum):
    SELECTOR = "selector"
    NAVIGATION = "navigation"
    ACTION = "action"


class AuthErrorKind(Enum):
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    TOKEN_EXPIRED = "token_expired"
    INVALID_CREDENTIALS = "invalid_credentials"


class SelectorReason(Enum):
    NOT_FOUND = "not_found"
    HIDDEN = "hidden"
    MULTIPLE_FOUND = "multiple_found"
    DETACHED = "detached"


class SelectorType(Enum):
    CSS = "css"
    XPATH = "xpath"


class NavigationReason(Enum):
    TIMEOUT = "timeout"
    NETWORK = "network"
    SSL = "ssl"


class ValidationKind(Enum):
    REQUIRED = "required"
    FORMAT = "format"
    TYPE = "type"
    RANGE = "range"
    PATTERN = "pattern"


class FixKind(Enum):
    CODE = "code"
    CONFIG = "config"
    INFRASTRUCTURE = "infrastructure"
    DATA = "data"


class FixLevel(Enum):
    """Priority and effort scale for suggested fixes."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


def _value(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, list):
        return [_value(v) for v in obj]
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return obj


class _VariantMixin:
    """Shared serialization for failure variant payloads."""

    failure_type: ClassVar[FailureType]

    def to_dict(self) -> Dict[str, Any]:
        data = {"failure_type": self.failure_type.value}
        for f in fields(self):
            data[f.name] = _value(getattr(self, f.name))
        return data


@dataclass(frozen=True)
class AssertionFailure(_VariantMixin):
    kind: AssertionKind
    expected: Optional[str] = None
    actual: Optional[str] = None
    selector: Optional[str] = None
    message: str = ""

    failure_type: ClassVar[FailureType] = FailureType.ASSERTION


@dataclass(frozen=True)
class NetworkFailure(_VariantMixin):
    kind: NetworkErrorKind
    status_code: Optional[int] = None
    url: Optional[str] = None
    method: Optional[str] = None
    suggestion: str = ""

    failure_type: ClassVar[FailureType] = FailureType.NETWORK


@dataclass(frozen=True)
class TimeoutFailure(_VariantMixin):
    operation: TimeoutOperation
    timeout_ms: int
    selector: Optional[str] = None
    url: Optional[str] = None

    failure_type: ClassVar[FailureType] = FailureType.TIMEOUT


@dataclass(frozen=True)
class AuthFailure(_VariantMixin):
    kind: AuthErrorKind
    status_code: Optional[int] = None
    auth_method: Optional[str] = None
    endpoint: Optional[str] = None
    suggestion: str = ""

    failure_type: ClassVar[FailureType] = FailureType.AUTH


@dataclass(frozen=True)
class SelectorFailure(_VariantMixin):
    reason: SelectorReason
    selector: str
    selector_type: SelectorType = SelectorType.CSS

    failure_type: ClassVar[FailureType] = FailureType.SELECTOR


@dataclass(frozen=True)
class NavigationFailure(_VariantMixin):
    reason: NavigationReason
    url: Optional[str] = None
    status_code: Optional[int] = None

    failure_type: ClassVar[FailureType] = FailureType.NAVIGATION


@dataclass(frozen=True)
class ValidationFailure(_VariantMixin):
    field_name: Optional[str]
    kind: ValidationKind
    expected: Optional[str] = None
    actual: Optional[str] = None

    failure_type: ClassVar[FailureType] = FailureType.VALIDATION


@dataclass(frozen=True)
class UnknownFailure(_VariantMixin):
    message: str

    failure_type: ClassVar[FailureType] = FailureType.UNKNOWN


SpecificError = Union[
    AssertionFailure,
    NetworkFailure,
    TimeoutFailure,
    AuthFailure,
    SelectorFailure,
    NavigationFailure,
    ValidationFailure,
    UnknownFailure,
]


@dataclass
class Attachment:
    """File attached to a test result by the executor."""
    name: str
    content_type: str
    path: Optional[str] = None


@dataclass
class ErrorLocation:
    file: str
    line: int
    column: int = 0


@dataclass
class TestError:
    __test__ = False

    message: str
    stack: Optional[str] = None
    location: Optional[ErrorLocation] = None


@dataclass
class TestResult:
    """Executor output for a single test case."""
    __test__ = False

    test_path: str
    test_name: str
    status: str
    duration: float = 0.0
    retry: int = 0
    error: Optional[TestError] = None
    attachments: List[Attachment] = field(default_factory=list)

    @property
    def test_id(self) -> str:
        return f"{self.test_path}::{self.test_name}"

    def to_dict(self) -> Dict[str, Any]:
        error = None
        if self.error:
            error = {"message": self.error.message, "stack": self.error.stack}
            if self.error.location:
                error["location"] = {
                    "file": self.error.location.file,
                    "line": self.error.location.line,
                    "column": self.error.location.column,
                }
        return {
            "test_path": self.test_path,
            "test_name": self.test_name,
            "status": self.status,
            "duration": self.duration,
            "retry": self.retry,
            "error": error,
            "attachments": [
                {"name": a.name, "content_type": a.content_type, "path": a.path}
                for a in self.attachments
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TestResult':
        """Create a test result from executor JSON."""
        error = None
        error_data = data.get("error")
        if error_data:
            location = None
            if error_data.get("location"):
                loc = error_data["location"]
                location = ErrorLocation(
                    file=loc.get("file", ""),
                    line=int(loc.get("line", 0)),
                    column=int(loc.get("column", 0)),
                )
            error = TestError(
                message=error_data.get("message", ""),
                stack=error_data.get("stack"),
                location=location,
            )
        return cls(
            test_path=data.get("test_path", ""),
            test_name=data.get("test_name", ""),
            status=data.get("status", "failed"),
            duration=float(data.get("duration", 0.0)),
            retry=int(data.get("retry", 0)),
            error=error,
            attachments=[
                Attachment(
                    name=a.get("name", ""),
                    content_type=a.get("content_type", ""),
                    path=a.get("path"),
                )
                for a in data.get("attachments") or []
            ],
        )


@dataclass
class ParsedError:
    """Structured fields extracted from a raw failure message."""
    failure_type: FailureType
    raw_message: str
    clean_message: str
    matcher: str = "none"
    status_code: Optional[int] = None
    timeout_ms: Optional[int] = None
    selector: Optional[str] = None
    selector_type: Optional[SelectorType] = None
    url: Optional[str] = None
    http_method: Optional[str] = None
    field_name: Optional[str] = None
    expected: Optional[str] = None
    actual: Optional[str] = None

    STRUCTURED_FIELDS: ClassVar[tuple] = (
        "status_code", "timeout_ms", "selector", "url",
        "http_method", "field_name", "expected", "actual",
    )

    def extracted_field_count(self) -> int:
        return sum(1 for name in self.STRUCTURED_FIELDS if getattr(self, name) is not None)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _value(getattr(self, f.name)) for f in fields(self)}


@dataclass
class Fix:
    """A suggested remediation for a failure."""
    kind: FixKind
    description: str
    priority: FixLevel = FixLevel.MEDIUM
    effort: FixLevel = FixLevel.MEDIUM
    automated: bool = False
    code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _value(getattr(self, f.name)) for f in fields(self)}


@dataclass
class FailureContext:
    """Where the failure happened and what evidence was captured."""
    test_file: str
    test_name: str
    line_number: Optional[int] = None
    code_snippet: Optional[str] = None
    screenshots: List[str] = field(default_factory=list)
    traces: List[str] = field(default_factory=list)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _value(getattr(self, f.name)) for f in fields(self)}


@dataclass
class FailureAnalysis:
    """Classification of one failed test."""
    failure_type: FailureType
    specific_error: SpecificError
    context: FailureContext
    confidence: float
    potential_fixes: List[Fix] = field(default_factory=list)
    parsed_error: Optional[ParsedError] = None

    @property
    def is_auto_fixable(self) -> bool:
        return any(fix.automated for fix in self.potential_fixes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_type": self.failure_type.value,
            "specific_error": self.specific_error.to_dict(),
            "context": self.context.to_dict(),
            "confidence": self.confidence,
            "potential_fixes": [fix.to_dict() for fix in self.potential_fixes],
            "parsed_error": self.parsed_error.to_dict() if self.parsed_error else None,
        }
