"""
Transformation rules shared by the spec diff analyzer and the rule-based healer.

Covers field rename detection (case conversions, abbreviations and string
similarity), the catalog of common status code changes, and matching of
templated endpoint paths against concrete request paths.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern


class RenamePattern(Enum):
    """How an old field name maps to a new one."""
    CASE_CONVERSION = "case_conversion"
    ABBREVIATION = "abbreviation"
    SIMILARITY = "similarity"


# Confidence per pattern; case conversions are near-certain renames
RENAME_CONFIDENCE = {
    RenamePattern.CASE_CONVERSION: 0.95,
    RenamePattern.ABBREVIATION: 0.85,
    RenamePattern.SIMILARITY: 0.7,
}

ABBREVIATIONS = {
    "addr": "address",
    "amt": "amount",
    "auth": "authentication",
    "cat": "category",
    "config": "configuration",
    "desc": "description",
    "id": "identifier",
    "img": "image",
    "info": "information",
    "msg": "message",
    "num": "number",
    "org": "organization",
    "pwd": "password",
    "qty": "quantity",
    "ref": "reference",
    "ts": "timestamp",
    "usr": "user",
}

STATUS_CODE_CHANGES = {
    (200, 201): "created_instead_of_ok",
    (200, 202): "accepted_instead_of_ok",
    (200, 204): "no_content_instead_of_ok",
    (201, 200): "ok_instead_of_created",
    (204, 200): "ok_instead_of_no_content",
    (400, 422): "unprocessable_instead_of_bad_request",
    (422, 400): "bad_request_instead_of_unprocessable",
    (401, 403): "forbidden_instead_of_unauthorized",
    (403, 401): "unauthorized_instead_of_forbidden",
    (404, 410): "gone_instead_of_not_found",
}

_CAMEL_BOUNDARY = re.compile(r'(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])')


def tokenize_name(name: str) -> List[str]:
    """Split snake, kebab, camel or Pascal case names into lowercase tokens."""
    tokens = []
    for part in re.split(r'[_\-\s.]+', name):
        if part:
            tokens.extend(t.lower() for t in _CAMEL_BOUNDARY.split(part) if t)
    return tokens


def name_style(name: str) -> str:
    """Classify the naming convention of an identifier."""
    if "_" in name:
        return "snake"
    if "-" in name:
        return "kebab"
    if name[:1].isupper():
        return "pascal"
    if any(c.isupper() for c in name):
        return "camel"
    return "flat"


def to_style(tokens: List[str], style: str) -> str:
    """Render tokens in the given naming convention."""
    if not tokens:
        return ""
    if style == "snake":
        return "_".join(tokens)
    if style == "kebab":
        return "-".join(tokens)
    if style == "pascal":
        return "".join(t.capitalize() for t in tokens)
    if style == "camel":
        return tokens[0] + "".join(t.capitalize() for t in tokens[1:])
    return "".join(tokens)


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance between two strings."""
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        current = [i]
        for j, cb in enumerate(b, 1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    """Normalized similarity in [0, 1], case-insensitive."""
    a, b = a.lower(), b.lower()
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a, b) / longest


@dataclass(frozen=True)
class RenameMatch:
    old_name: str
    new_name: str
    pattern: RenamePattern
    confidence: float
    detail: str = ""


class FieldRenameDetector:
    """Detects whether a removed field and an added field are the same field renamed."""

    def __init__(self, similarity_threshold: float = 0.8):
        self.similarity_threshold = similarity_threshold

    def detect(self, old_name: str, new_name: str) -> Optional[RenameMatch]:
        """Match two names against the rename patterns, strongest first."""
        if old_name == new_name:
            return None

        old_tokens = tokenize_name(old_name)
        new_tokens = tokenize_name(new_name)

        if old_tokens == new_tokens:
            detail = f"{name_style(old_name)}_to_{name_style(new_name)}"
            return self._match(old_name, new_name, RenamePattern.CASE_CONVERSION, detail)

        if self._expand(old_tokens) == self._expand(new_tokens):
            return self._match(old_name, new_name, RenamePattern.ABBREVIATION, "abbreviation")

        score = similarity(old_name, new_name)
        if score >= self.similarity_threshold:
            return self._match(old_name, new_name, RenamePattern.SIMILARITY, f"similarity={score:.2f}")

        return None

    def find_renames(self, removed: Dict[str, Any], added: Dict[str, Any],
                     compatible: Optional[Callable[[Any, Any], bool]] = None) -> List[RenameMatch]:
        """Pair removed names with added names, each added name used once.

        Args:
            removed: name -> definition only present in the old version
            added: name -> definition only present in the new version
            compatible: Optional predicate on (old_def, new_def), e.g. same type

        Returns:
            List of RenameMatch, highest confidence pairing per removed name
        """
        matches = []
        used = set()
        for old_name, old_def in removed.items():
            best: Optional[RenameMatch] = None
            for new_name, new_def in added.items():
                if new_name in used:
                    continue
                if compatible and not compatible(old_def, new_def):
                    continue
                match = self.detect(old_name, new_name)
                if match and (best is None or match.confidence > best.confidence):
                    best = match
            if best:
                used.add(best.new_name)
                matches.append(best)
        return matches

    def _match(self, old_name: str, new_name: str, pattern: RenamePattern, detail: str) -> RenameMatch:
        return RenameMatch(old_name, new_name, pattern, RENAME_CONFIDENCE[pattern], detail)

    @staticmethod
    def _expand(tokens: List[str]) -> List[str]:
        return [ABBREVIATIONS.get(t, t) for t in tokens]


def describe_status_change(old_status: int, new_status: int) -> str:
    """Catalog name for a status code change, or a generic description."""
    return STATUS_CODE_CHANGES.get((old_status, new_status), f"status_{old_status}_to_{new_status}")


def is_success_status(code: Any) -> bool:
    try:
        return 200 <= int(code) < 300
    except (TypeError, ValueError):
        return False


def endpoint_pattern(path_template: str) -> Pattern:
    """Compile a templated path such as /products/{id} into a matching regex."""
    parts = re.split(r'(\{[^}]+\})', path_template)
    regex = "".join("[^/]+" if p.startswith("{") else re.escape(p) for p in parts)
    return re.compile(f"^{regex}/?$")


def endpoint_matches(path_template: str, concrete_path: str) -> bool:
    """True when a concrete request path (query string ignored) fits the template."""
    concrete_path = concrete_path.split("?", 1)[0]
    return bool(endpoint_pattern(path_template).match(concrete_path))
