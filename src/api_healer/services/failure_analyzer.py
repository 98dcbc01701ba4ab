"""
Failure Analyzer for the API test self-healing engine.

This service classifies failed test results into a failure taxonomy by running
an ordered list of regex matchers over the cleaned error message, then refines
the classification per failure type and suggests fixes.
"""

import re
from collections import Counter
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Pattern

from ..core.errors import InvalidInputError
from ..core.logging_config import get_healing_logger
from ..core.models import (
    AssertionFailure,
    AssertionKind,
    AuthErrorKind,
    AuthFailure,
    FailureAnalysis,
    FailureContext,
    FailureType,
    Fix,
    FixKind,
    FixLevel,
    NavigationFailure,
    NavigationReason,
    NetworkErrorKind,
    NetworkFailure,
    ParsedError,
    SelectorFailure,
    SelectorReason,
    SelectorType,
    SpecificError,
    TestResult,
    TimeoutFailure,
    TimeoutOperation,
    UnknownFailure,
    ValidationFailure,
    ValidationKind,
)

ANSI_ESCAPE = re.compile(r'\x1b\[[0-9;]*m')
CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]')

URL_PATTERN = re.compile(r'https?://[^\s\'"<>)]+')
HTTP_METHOD_PATTERN = re.compile(r'\b(GET|POST|PUT|PATCH|DELETE|HEAD|OPTIONS)\b')
SELECTOR_PATTERN = re.compile(r'(?:selector|locator)\s*\(?\s*[\'"](.+?)[\'"]\)?', re.IGNORECASE)
STACK_FRAME_PATTERN = re.compile(r'\(?([^\s()]+\.(?:[cm]?[jt]sx?|py)):(\d+):(\d+)\)?')
CODE_FRAME_PATTERN = re.compile(r'^\s*>?\s*\d+\s*\|')
STATUS_CODE_VALUE = re.compile(r'^[1-5]\d{2}$')

HTTP_REASON_PHRASES = (
    "Bad Request", "Unauthorized", "Payment Required", "Forbidden", "Not Found",
    "Method Not Allowed", "Not Acceptable", "Request Timeout", "Conflict", "Gone",
    "Unsupported Media Type", "Unprocessable Entity", "Too Many Requests",
    "Internal Server Error", "Not Implemented", "Bad Gateway", "Service Unavailable",
    "Gateway Timeout",
)

# Base confidence per failure type before extracted-field bonuses
BASE_CONFIDENCE = {
    FailureType.ASSERTION: 0.6,
    FailureType.NETWORK: 0.55,
    FailureType.AUTH: 0.6,
    FailureType.TIMEOUT: 0.55,
    FailureType.SELECTOR: 0.5,
    FailureType.NAVIGATION: 0.5,
    FailureType.VALIDATION: 0.6,
    FailureType.UNKNOWN: 0.2,
}
FIELD_CONFIDENCE_BONUS = 0.1

HTTP_STATUS_SUGGESTIONS = {
    400: "Check the request payload against the current schema",
    404: "Verify endpoint exists and the request path is correct",
    405: "Verify the HTTP method allowed for this endpoint",
    409: "Reset test data to avoid resource conflicts",
    410: "The resource was removed - migrate the test to its replacement",
    415: "Check the Content-Type header of the request",
    422: "Check request fields against the current schema",
    429: "Reduce the request rate or retry with backoff",
}

NETWORK_SUGGESTIONS = {
    NetworkErrorKind.CONNECTION_REFUSED: "Check that the API server is running and reachable",
    NetworkErrorKind.DNS_FAILURE: "Verify the host name in the base URL",
    NetworkErrorKind.SSL_ERROR: "Check the TLS certificate of the target server",
}

AUTH_SUGGESTIONS = {
    AuthErrorKind.UNAUTHORIZED: "Provide valid authentication credentials",
    AuthErrorKind.FORBIDDEN: "Check that the test user has permission for this resource",
    AuthErrorKind.TOKEN_EXPIRED: "Refresh the access token before the request",
    AuthErrorKind.INVALID_CREDENTIALS: "Update the test credentials",
}


def clean_error_message(raw: str) -> str:
    """Strip ANSI color codes and control characters."""
    return CONTROL_CHARS.sub('', ANSI_ESCAPE.sub('', raw or '')).strip()


def _first_url(message: str) -> Optional[str]:
    match = URL_PATTERN.search(message)
    return match.group(0).rstrip('.,;:') if match else None


def _first_method(message: str) -> Optional[str]:
    match = HTTP_METHOD_PATTERN.search(message)
    return match.group(1) if match else None


def _selector(message: str) -> Dict[str, Any]:
    match = SELECTOR_PATTERN.search(message)
    if not match:
        return {}
    selector = match.group(1)
    is_xpath = selector.startswith(("//", "(//", "xpath="))
    return {
        "selector": selector,
        "selector_type": SelectorType.XPATH if is_xpath else SelectorType.CSS,
    }


def _strip_quotes(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'`":
        return value[1:-1]
    return value


def _extract_http_status(match, message: str) -> Dict[str, Any]:
    status = int(match.group("code") or match.group("code2"))
    return {
        "failure_type": FailureType.AUTH if status in (401, 403) else FailureType.NETWORK,
        "status_code": status,
        "url": _first_url(message),
        "http_method": _first_method(message),
    }


def _extract_connection(match, message: str) -> Dict[str, Any]:
    return {"url": _first_url(message), "http_method": _first_method(message)}


def _extract_timeout(match, message: str) -> Dict[str, Any]:
    data = {"timeout_ms": int(match.group("ms")), "url": _first_url(message)}
    data.update(_selector(message))
    return data


def _extract_selector(match, message: str) -> Dict[str, Any]:
    return _selector(message)


def _extract_navigation(match, message: str) -> Dict[str, Any]:
    return {"url": match.group("url").rstrip('.,;:')}


def _extract_validation(match, message: str) -> Dict[str, Any]:
    data = {"field_name": match.group("field")}
    expected = re.search(r'expected\s+(.+?)(?:,\s*(?:got|received|but got)\b|$)', message, re.IGNORECASE | re.MULTILINE)
    actual = re.search(r'(?:got|received|but got)\s+(.+?)$', message, re.IGNORECASE | re.MULTILINE)
    if expected:
        data["expected"] = _strip_quotes(expected.group(1))
    if actual:
        data["actual"] = _strip_quotes(actual.group(1))
    return data


def _extract_assertion(match, message: str) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    expected = re.search(r'Expected(?: value| string| pattern)?:\s*(.+)', message)
    actual = re.search(r'Received(?: value| string)?:\s*(.+)', message)
    if expected and actual:
        data["expected"] = _strip_quotes(expected.group(1))
        data["actual"] = _strip_quotes(actual.group(1))
    else:
        # chai style: "expected 404 to equal 200"
        chai = re.search(r'expected\s+(.+?)\s+to\s+(?:deeply\s+)?(?:equal|be|eql)\s+(.+)', message, re.IGNORECASE)
        if chai:
            data["actual"] = _strip_quotes(chai.group(1))
            data["expected"] = _strip_quotes(chai.group(2))
    data.update(_selector(message))
    return data


class FailureMatcher(NamedTuple):
    """One entry of the ordered matcher table."""
    name: str
    pattern: Pattern
    extract: Callable[[Any, str], Dict[str, Any]]
    failure_type: FailureType


# Order matters: the first matching entry classifies the message
FAILURE_MATCHERS = [
    FailureMatcher(
        "http_status",
        re.compile(
            r'\bHTTP(?:/[\d.]+)?\s+(?P<code>[1-5]\d{2})\b'
            r'|\b(?P<code2>[1-5]\d{2})\s+(?:' + '|'.join(HTTP_REASON_PHRASES) + r')\b',
            re.IGNORECASE),
        _extract_http_status,
        FailureType.NETWORK,
    ),
    FailureMatcher(
        "connection",
        re.compile(r'ECONNREFUSED|connection refused|ENOTFOUND|getaddrinfo|EAI_AGAIN', re.IGNORECASE),
        _extract_connection,
        FailureType.NETWORK,
    ),
    FailureMatcher(
        "timeout",
        re.compile(r'(?:Timeout\s+(?:of\s+)?|timed out after\s+)(?P<ms>\d+)\s*ms', re.IGNORECASE),
        _extract_timeout,
        FailureType.TIMEOUT,
    ),
    FailureMatcher(
        "selector",
        re.compile(
            r'strict mode violation|resolved to \d+ elements'
            r'|(?:selector|locator)\s*\(?\s*[\'"].+?[\'"]\)?.*?'
            r'(?:not found|could not be found|did not match any elements|not visible|hidden|detached)',
            re.IGNORECASE | re.DOTALL),
        _extract_selector,
        FailureType.SELECTOR,
    ),
    FailureMatcher(
        "navigation",
        re.compile(r'navigat\w*[^\n]*?["\']?(?P<url>https?://[^\s"\']+)', re.IGNORECASE),
        _extract_navigation,
        FailureType.NAVIGATION,
    ),
    # After navigation so that a page load rejected over TLS stays a navigation failure
    FailureMatcher(
        "tls",
        re.compile(r'\bSSL\b|certificate', re.IGNORECASE),
        _extract_connection,
        FailureType.NETWORK,
    ),
    FailureMatcher(
        "validation",
        re.compile(r'Validation (?:failed|error)[^\n]*?(?:field|property)\s+[\'"](?P<field>[^\'"]+)[\'"]',
                   re.IGNORECASE),
        _extract_validation,
        FailureType.VALIDATION,
    ),
    FailureMatcher(
        "assertion",
        re.compile(r'expect\(|Expected:|Received:|AssertionError|expected\s+.+\s+to\s+(?:deeply\s+)?(?:equal|be|eql)\b'),
        _extract_assertion,
        FailureType.ASSERTION,
    ),
]


class FailureAnalyzer:
    """Service for classifying failed test results and suggesting fixes."""

    def __init__(self):
        self.logger = get_healing_logger("failure_analysis")

    def parse_error_message(self, raw: str) -> ParsedError:
        """
        Clean a raw error message and extract structured fields.

        Args:
            raw: Error message as reported by the test executor

        Returns:
            ParsedError; failure_type is UNKNOWN when no matcher applies
        """
        message = clean_error_message(raw)
        for matcher in FAILURE_MATCHERS:
            match = matcher.pattern.search(message)
            if not match:
                continue
            data = matcher.extract(match, message)
            failure_type = data.pop("failure_type", matcher.failure_type)
            self.logger.debug(f"Matched failure pattern '{matcher.name}' -> {failure_type.value}")
            return ParsedError(
                failure_type=failure_type,
                raw_message=raw,
                clean_message=message,
                matcher=matcher.name,
                **{k: v for k, v in data.items() if v is not None},
            )

        return ParsedError(failure_type=FailureType.UNKNOWN, raw_message=raw, clean_message=message)

    def analyze_failure(self, test_result: TestResult) -> FailureAnalysis:
        """
        Classify a failed test result.

        Args:
            test_result: Executor output; must carry an error

        Returns:
            FailureAnalysis with specific error, context, fixes and confidence

        Raises:
            InvalidInputError: If the test did not fail or has no error
        """
        if test_result.error is None or test_result.status in ("passed", "skipped"):
            raise InvalidInputError(
                f"Test {test_result.test_id} has no failure to analyze (status={test_result.status})")

        parsed = self.parse_error_message(test_result.error.message)
        specific_error = self._classify(parsed)
        confidence = self._calculate_confidence(parsed)
        analysis = FailureAnalysis(
            failure_type=parsed.failure_type,
            specific_error=specific_error,
            context=self._extract_context(test_result),
            confidence=confidence,
            potential_fixes=self._suggest_fixes(specific_error, parsed),
            parsed_error=parsed,
        )

        self.logger.info(
            f"🔍 FAILURE ANALYSIS: {test_result.test_id} classified as {parsed.failure_type.value} "
            f"(confidence {confidence:.2f}, matcher '{parsed.matcher}')",
            extra={'test_case': test_result.test_id},
        )
        return analysis

    def get_failure_statistics(self, analyses: List[FailureAnalysis]) -> Dict[str, Any]:
        """Counts by failure type and average confidence over a batch of analyses."""
        by_type = Counter(a.failure_type.value for a in analyses)
        total = len(analyses)
        return {
            "total": total,
            "by_type": dict(by_type),
            "average_confidence": round(sum(a.confidence for a in analyses) / total, 3) if total else 0.0,
            "auto_fixable": sum(1 for a in analyses if a.is_auto_fixable),
        }

    def _calculate_confidence(self, parsed: ParsedError) -> float:
        score = BASE_CONFIDENCE[parsed.failure_type] + FIELD_CONFIDENCE_BONUS * parsed.extracted_field_count()
        return round(min(score, 1.0), 2)

    def _classify(self, parsed: ParsedError) -> SpecificError:
        classifiers = {
            FailureType.ASSERTION: self._classify_assertion,
            FailureType.NETWORK: self._classify_network,
            FailureType.TIMEOUT: self._classify_timeout,
            FailureType.AUTH: self._classify_auth,
            FailureType.SELECTOR: self._classify_selector,
            FailureType.NAVIGATION: self._classify_navigation,
            FailureType.VALIDATION: self._classify_validation,
        }
        classifier = classifiers.get(parsed.failure_type)
        if classifier is None:
            return UnknownFailure(message=parsed.clean_message)
        return classifier(parsed)

    def _classify_assertion(self, parsed: ParsedError) -> AssertionFailure:
        message = parsed.clean_message
        if "toBeVisible" in message:
            kind = AssertionKind.VISIBILITY
        elif "toHaveText" in message or "toContainText" in message:
            kind = AssertionKind.TEXT_CONTENT
        elif "toHaveAttribute" in message:
            kind = AssertionKind.ATTRIBUTE
        elif "toHaveCount" in message:
            kind = AssertionKind.COUNT
        elif "toHaveValue" in message:
            kind = AssertionKind.VALUE
        else:
            kind = AssertionKind.EQUALITY

        return AssertionFailure(
            kind=kind,
            expected=parsed.expected,
            actual=parsed.actual,
            selector=parsed.selector,
            message=message.splitlines()[0] if message else "",
        )

    def _classify_network(self, parsed: ParsedError) -> NetworkFailure:
        message = parsed.clean_message
        lower = message.lower()
        if parsed.status_code is not None:
            kind = NetworkErrorKind.HTTP_ERROR
        elif "econnrefused" in lower or "connection refused" in lower:
            kind = NetworkErrorKind.CONNECTION_REFUSED
        elif "enotfound" in lower or "getaddrinfo" in lower or "eai_again" in lower:
            kind = NetworkErrorKind.DNS_FAILURE
        elif "ssl" in lower or "certificate" in lower:
            kind = NetworkErrorKind.SSL_ERROR
        else:
            kind = NetworkErrorKind.HTTP_ERROR

        if kind == NetworkErrorKind.HTTP_ERROR:
            suggestion = self._http_suggestion(parsed.status_code)
        else:
            suggestion = NETWORK_SUGGESTIONS[kind]

        return NetworkFailure(
            kind=kind,
            status_code=parsed.status_code,
            url=parsed.url,
            method=parsed.http_method,
            suggestion=suggestion,
        )

    @staticmethod
    def _http_suggestion(status_code: Optional[int]) -> str:
        if status_code is None:
            return "Inspect the failing request and response"
        if status_code in HTTP_STATUS_SUGGESTIONS:
            return HTTP_STATUS_SUGGESTIONS[status_code]
        if status_code >= 500:
            return "Server error - check the API logs"
        return f"Unexpected HTTP {status_code} - compare the request with the current API spec"

    def _classify_timeout(self, parsed: ParsedError) -> TimeoutFailure:
        lower = parsed.clean_message.lower()
        if "navigat" in lower or "goto" in lower:
            operation = TimeoutOperation.NAVIGATION
        elif parsed.selector or "locator" in lower or "selector" in lower:
            operation = TimeoutOperation.SELECTOR
        else:
            operation = TimeoutOperation.ACTION

        return TimeoutFailure(
            operation=operation,
            timeout_ms=parsed.timeout_ms or 0,
            selector=parsed.selector,
            url=parsed.url,
        )

    def _classify_auth(self, parsed: ParsedError) -> AuthFailure:
        message = parsed.clean_message
        lower = message.lower()
        if parsed.status_code == 403 or "forbidden" in lower:
            kind = AuthErrorKind.FORBIDDEN
        elif "token" in lower and "expired" in lower:
            kind = AuthErrorKind.TOKEN_EXPIRED
        elif "invalid" in lower and ("credentials" in lower or "password" in lower):
            kind = AuthErrorKind.INVALID_CREDENTIALS
        else:
            kind = AuthErrorKind.UNAUTHORIZED

        if "bearer" in lower:
            auth_method = "bearer"
        elif "basic" in lower:
            auth_method = "basic"
        elif "api key" in lower or "apikey" in lower or "api_key" in lower or "x-api-key" in lower:
            auth_method = "api_key"
        elif "oauth" in lower:
            auth_method = "oauth2"
        else:
            auth_method = None

        endpoint = parsed.url
        if endpoint and parsed.http_method:
            endpoint = f"{parsed.http_method} {endpoint}"

        return AuthFailure(
            kind=kind,
            status_code=parsed.status_code,
            auth_method=auth_method,
            endpoint=endpoint,
            suggestion=AUTH_SUGGESTIONS[kind],
        )

    def _classify_selector(self, parsed: ParsedError) -> SelectorFailure:
        lower = parsed.clean_message.lower()
        if "strict mode" in lower or "multiple" in lower or re.search(r'resolved to \d+ elements', lower):
            reason = SelectorReason.MULTIPLE_FOUND
        elif "hidden" in lower or "not visible" in lower:
            reason = SelectorReason.HIDDEN
        elif "detached" in lower:
            reason = SelectorReason.DETACHED
        else:
            reason = SelectorReason.NOT_FOUND

        return SelectorFailure(
            reason=reason,
            selector=parsed.selector or "",
            selector_type=parsed.selector_type or SelectorType.CSS,
        )

    def _classify_navigation(self, parsed: ParsedError) -> NavigationFailure:
        lower = parsed.clean_message.lower()
        if "timeout" in lower or "timed out" in lower:
            reason = NavigationReason.TIMEOUT
        elif "ssl" in lower or "certificate" in lower:
            reason = NavigationReason.SSL
        else:
            reason = NavigationReason.NETWORK

        return NavigationFailure(reason=reason, url=parsed.url, status_code=parsed.status_code)

    def _classify_validation(self, parsed: ParsedError) -> ValidationFailure:
        lower = parsed.clean_message.lower()
        if "required" in lower or "missing" in lower:
            kind = ValidationKind.REQUIRED
        elif "format" in lower:
            kind = ValidationKind.FORMAT
        elif "pattern" in lower:
            kind = ValidationKind.PATTERN
        elif re.search(r'range|minimum|maximum|too (?:long|short|large|small)', lower):
            kind = ValidationKind.RANGE
        else:
            kind = ValidationKind.TYPE

        return ValidationFailure(
            field_name=parsed.field_name,
            kind=kind,
            expected=parsed.expected,
            actual=parsed.actual,
        )

    def _suggest_fixes(self, error: SpecificError, parsed: ParsedError) -> List[Fix]:
        fixes: List[Fix] = []

        if isinstance(error, AssertionFailure):
            if (error.expected and error.actual
                    and STATUS_CODE_VALUE.match(error.expected) and STATUS_CODE_VALUE.match(error.actual)):
                fixes.append(Fix(
                    kind=FixKind.CODE,
                    description=f"Update expected status code from {error.expected} to {error.actual}",
                    priority=FixLevel.HIGH,
                    effort=FixLevel.LOW,
                    automated=True,
                    code=f"expect(response.status()).toBe({error.actual})",
                ))
            elif error.kind == AssertionKind.VISIBILITY:
                fixes.append(Fix(FixKind.CODE, "Wait for the element to become visible before asserting",
                                 FixLevel.MEDIUM, FixLevel.LOW))
            else:
                fixes.append(Fix(FixKind.CODE, "Update the assertion to match the current API response",
                                 FixLevel.MEDIUM, FixLevel.LOW))

        elif isinstance(error, NetworkFailure):
            kind = FixKind.CODE if error.kind == NetworkErrorKind.HTTP_ERROR else FixKind.INFRASTRUCTURE
            fixes.append(Fix(kind, error.suggestion, FixLevel.HIGH, FixLevel.MEDIUM))

        elif isinstance(error, TimeoutFailure):
            doubled = error.timeout_ms * 2
            fixes.append(Fix(
                kind=FixKind.CONFIG,
                description=f"Increase timeout from {error.timeout_ms}ms to {doubled}ms",
                priority=FixLevel.MEDIUM,
                effort=FixLevel.LOW,
                automated=True,
                code=f"timeout: {doubled}",
            ))
            fixes.append(Fix(FixKind.CODE, "Wait for the awaited condition explicitly",
                             FixLevel.LOW, FixLevel.MEDIUM))

        elif isinstance(error, AuthFailure):
            fixes.append(Fix(FixKind.CONFIG, error.suggestion, FixLevel.HIGH, FixLevel.MEDIUM))

        elif isinstance(error, SelectorFailure):
            fixes.append(Fix(FixKind.CODE, f"Update selector '{error.selector}' to match the current page",
                             FixLevel.HIGH, FixLevel.MEDIUM))

        elif isinstance(error, NavigationFailure):
            fixes.append(Fix(FixKind.INFRASTRUCTURE, f"Check that {error.url or 'the target URL'} is reachable",
                             FixLevel.HIGH, FixLevel.MEDIUM))

        elif isinstance(error, ValidationFailure):
            target = f"'{error.field_name}'" if error.field_name else "the rejected field"
            fixes.append(Fix(FixKind.DATA, f"Provide a valid {error.kind.value} value for {target}",
                             FixLevel.MEDIUM, FixLevel.LOW))

        else:
            fixes.append(Fix(FixKind.CODE, "Inspect the failure manually", FixLevel.LOW, FixLevel.HIGH))

        return fixes

    def _extract_context(self, test_result: TestResult) -> FailureContext:
        """Best-effort context; missing pieces stay empty."""
        error = test_result.error
        test_file = test_result.test_path
        line_number = None

        if error and error.location:
            test_file = error.location.file or test_file
            line_number = error.location.line
        elif error and error.stack:
            frame = STACK_FRAME_PATTERN.search(error.stack)
            if frame:
                test_file = frame.group(1)
                line_number = int(frame.group(2))

        code_snippet = None
        if error and error.stack:
            frame_lines = [line for line in error.stack.splitlines() if CODE_FRAME_PATTERN.match(line)]
            if frame_lines:
                code_snippet = "\n".join(frame_lines)

        return FailureContext(
            test_file=test_file,
            test_name=test_result.test_name,
            line_number=line_number,
            code_snippet=code_snippet,
            screenshots=[a.path for a in test_result.attachments if a.path and "image" in a.content_type],
            traces=[a.path for a in test_result.attachments if a.path and "trace" in a.name.lower()],
        )
