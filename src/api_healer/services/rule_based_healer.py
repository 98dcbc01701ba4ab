"""
Rule-based healer for API tests.

Derives deterministic transformation rules from spec diff changes that touch
the endpoint a test calls (field renames, path and method changes, success
status changes) and applies them to the test source as text patches. The same
machinery provides the no-AI fallback patches: a timeout bump and an expected
status adjustment.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from ..core.models import (
    AssertionFailure,
    ChangeType,
    FailureAnalysis,
    SpecDiff,
    TimeoutFailure,
)
from .test_code_validator import TestCodeValidator
from .transformation_rules import (
    STATUS_CODE_CHANGES,
    FieldRenameDetector,
    describe_status_change,
    endpoint_matches,
    is_success_status,
    similarity,
)

logger = logging.getLogger(__name__)

REQUEST_CALL_PATTERN = re.compile(
    r'\.(?P<method>get|post|put|patch|delete|head)\(\s*(?P<quote>[\'"`])'
    r'(?P<url>(?:/|https?://|\$\{)[^\'"`]*)(?P=quote)'
)
RESPONSE_PATH_PATTERN = re.compile(r'^paths\.(?P<path>.+)\.(?P<method>[a-z]+)\.responses\.(?P<code>[^.]+)$')
STATUS_VALUE = re.compile(r'^[1-5]\d{2}$')


class RuleType(Enum):
    FIELD_RENAME = "field_rename"
    PATH_CHANGE = "path_change"
    METHOD_CHANGE = "method_change"
    STATUS_CODE_CHANGE = "status_code_change"
    TIMEOUT_INCREASE = "timeout_increase"


@dataclass(frozen=True)
class TransformationRule:
    """A deterministic text patch: replace `old` by `new` in a rule-specific way."""
    type: RuleType
    old: str
    new: str
    confidence: float
    description: str
    endpoint_path: Optional[str] = None

    @property
    def name(self) -> str:
        return f"{self.type.value}:{self.old}->{self.new}"


@dataclass
class RuleHealingResult:
    success: bool
    patched_code: Optional[str] = None
    rules_applied: List[TransformationRule] = field(default_factory=list)
    confidence: float = 0.0
    errors: List[str] = field(default_factory=list)


def _url_path(url: str) -> str:
    """Request path of a URL literal, without base-URL interpolation or query."""
    path = re.sub(r'^\$\{[^}]*\}', '', url)
    path = re.sub(r'^https?://[^/]+', '', path)
    return path.split("?", 1)[0] or "/"


def infer_endpoint(test_code: str) -> Optional[Tuple[str, str]]:
    """First (METHOD, path) request made by the test, if recognizable."""
    match = REQUEST_CALL_PATTERN.search(test_code or "")
    if not match:
        return None
    return match.group("method").upper(), _url_path(match.group("url"))


def fill_template(new_template: str, old_template: str, concrete_path: str) -> str:
    """Map a concrete path of old_template onto new_template, keeping parameter values."""
    old_segments = old_template.strip("/").split("/")
    concrete_segments = concrete_path.strip("/").split("/")
    values: Dict[str, str] = {}
    for template_segment, value in zip(old_segments, concrete_segments):
        if template_segment.startswith("{") and template_segment.endswith("}"):
            values[template_segment[1:-1]] = value

    ordered = list(values.values())
    position = 0
    segments = []
    for segment in new_template.strip("/").split("/"):
        if segment.startswith("{") and segment.endswith("}"):
            name = segment[1:-1]
            if name in values:
                segments.append(values[name])
            elif position < len(ordered):
                segments.append(ordered[position])
            else:
                segments.append(segment)
            position += 1
        else:
            segments.append(segment)
    return "/" + "/".join(segments)


def _template_params(template: str) -> int:
    return len(re.findall(r'\{[^}]+\}', template))


class RuleBasedHealer:
    """Applies deterministic transformation rules to failing test code."""

    def __init__(self, similarity_threshold: float = 0.8, validator: Optional[TestCodeValidator] = None):
        self.rename_detector = FieldRenameDetector(similarity_threshold)
        self.similarity_threshold = similarity_threshold
        self.validator = validator or TestCodeValidator()

    def detect_rules(self, spec_diff: SpecDiff, method: str, path: str) -> List[TransformationRule]:
        """
        Rules implied by diff changes relevant to one concrete request.

        Args:
            spec_diff: Diff between the spec the test was written for and the current one
            method: HTTP method the test uses
            path: Concrete request path the test uses

        Returns:
            Transformation rules, most specific first
        """
        method = method.upper()
        template = self._matching_template(spec_diff, method, path)
        if template is None:
            return []

        rules: List[TransformationRule] = []
        removed = any(e.method.upper() == method and e.path == template for e in spec_diff.endpoints.removed)
        if removed:
            rules.extend(self._endpoint_move_rules(spec_diff, method, template))

        seen_renames = set()
        for change in self._relevant_changes(spec_diff, method, path):
            if change.type == ChangeType.FIELD_RENAMED and isinstance(change.old_value, str) \
                    and isinstance(change.new_value, str):
                key = (change.old_value, change.new_value)
                if key in seen_renames:
                    continue
                seen_renames.add(key)
                match = self.rename_detector.detect(change.old_value, change.new_value)
                confidence = match.confidence if match else 0.7
                rules.append(TransformationRule(
                    type=RuleType.FIELD_RENAME,
                    old=change.old_value,
                    new=change.new_value,
                    confidence=confidence,
                    description=f"Rename field '{change.old_value}' to '{change.new_value}'",
                ))

        status_rule = self._status_rule(spec_diff, method, template)
        if status_rule:
            rules.append(status_rule)

        logger.debug(f"Detected {len(rules)} rule(s) for {method} {path}")
        return rules

    def fallback_rules(self, analysis: FailureAnalysis) -> List[TransformationRule]:
        """Rules that need no spec diff: timeout bump and expected status adjustment."""
        error = analysis.specific_error
        rules = []
        if isinstance(error, TimeoutFailure) and error.timeout_ms > 0:
            rules.append(TransformationRule(
                type=RuleType.TIMEOUT_INCREASE,
                old=str(error.timeout_ms),
                new=str(error.timeout_ms * 2),
                confidence=0.6,
                description=f"Increase timeout from {error.timeout_ms}ms to {error.timeout_ms * 2}ms",
            ))
        elif isinstance(error, AssertionFailure) and error.expected and error.actual \
                and STATUS_VALUE.match(error.expected) and STATUS_VALUE.match(error.actual):
            old_status, new_status = int(error.expected), int(error.actual)
            known = (old_status, new_status) in STATUS_CODE_CHANGES
            if known or (is_success_status(old_status) and is_success_status(new_status)):
                rules.append(TransformationRule(
                    type=RuleType.STATUS_CODE_CHANGE,
                    old=error.expected,
                    new=error.actual,
                    confidence=0.75 if known else 0.6,
                    description=f"Expect status {new_status} instead of {old_status} "
                                f"({describe_status_change(old_status, new_status)})",
                ))
        return rules

    def apply_rules(self, test_code: str, rules: List[TransformationRule]) -> RuleHealingResult:
        """Apply rules in order; only rules that changed the code count as applied."""
        result = RuleHealingResult(success=False)
        if not rules:
            result.errors.append("No applicable transformation rules")
            return result

        patched = test_code
        for rule in rules:
            before = patched
            patched = self.apply_rule(rule, patched)
            if patched != before:
                result.rules_applied.append(rule)
                logger.info(f"🔧 Applied rule {rule.name}")

        if not result.rules_applied:
            result.errors.append("No rule matched the test code")
            return result

        check = self.validator.validate(test_code, patched)
        if not check.valid:
            result.errors.extend(check.errors)
            return result

        result.success = True
        result.patched_code = patched
        result.confidence = round(
            sum(r.confidence for r in result.rules_applied) / len(result.rules_applied), 3)
        return result

    def apply_rule(self, rule: TransformationRule, code: str) -> str:
        if rule.type == RuleType.FIELD_RENAME:
            return self._apply_field_rename(rule, code)
        if rule.type == RuleType.PATH_CHANGE:
            return self._apply_path_change(rule, code)
        if rule.type == RuleType.METHOD_CHANGE:
            return self._apply_method_change(rule, code)
        if rule.type == RuleType.STATUS_CODE_CHANGE:
            return self._apply_status_change(rule, code)
        if rule.type == RuleType.TIMEOUT_INCREASE:
            return self._apply_timeout_increase(rule, code)
        return code

    # -- rule detection ------------------------------------------------------

    @staticmethod
    def _endpoint_templates(spec_diff: SpecDiff) -> List[Tuple[str, str]]:
        endpoints = set()
        for change in spec_diff.all_changes():
            for endpoint in change.affected_endpoints:
                method, _, template = endpoint.partition(" ")
                endpoints.add((method.upper(), template))
        return sorted(endpoints)

    def _matching_template(self, spec_diff: SpecDiff, method: str, path: str) -> Optional[str]:
        candidates = [t for m, t in self._endpoint_templates(spec_diff)
                      if m == method and endpoint_matches(t, path)]
        if not candidates:
            return None
        # Prefer the most literal template: /products/search over /products/{id}
        return min(candidates, key=_template_params)

    def _relevant_changes(self, spec_diff: SpecDiff, method: str, path: str):
        for change in spec_diff.all_changes():
            for endpoint in change.affected_endpoints:
                change_method, _, template = endpoint.partition(" ")
                if change_method.upper() == method and endpoint_matches(template, path):
                    yield change
                    break

    def _endpoint_move_rules(self, spec_diff: SpecDiff, method: str,
                             template: str) -> List[TransformationRule]:
        added = [(e.method.upper(), e.path) for e in spec_diff.endpoints.added]

        same_path = sorted(m for m, p in added if p == template and m != method)
        if same_path:
            new_method = same_path[0]
            return [TransformationRule(
                type=RuleType.METHOD_CHANGE,
                old=method,
                new=new_method,
                confidence=0.8,
                description=f"Call {new_method} {template} instead of {method}",
                endpoint_path=template,
            )]

        best: Optional[Tuple[float, str]] = None
        for added_method, added_path in added:
            if added_method != method or _template_params(added_path) != _template_params(template):
                continue
            score = similarity(template, added_path)
            if added_path.endswith(template) or template.endswith(added_path):
                score = max(score, 0.9)
            if score >= self.similarity_threshold and (best is None or score > best[0]):
                best = (score, added_path)
        if best:
            return [TransformationRule(
                type=RuleType.PATH_CHANGE,
                old=template,
                new=best[1],
                confidence=round(min(best[0], 0.9), 2),
                description=f"Move {method} {template} to {best[1]}",
                endpoint_path=template,
            )]
        return []

    def _status_rule(self, spec_diff: SpecDiff, method: str, template: str) -> Optional[TransformationRule]:
        removed_codes, added_codes = [], []
        for entry in spec_diff.endpoints.modified:
            if entry.method.upper() != method or entry.path != template:
                continue
            for change in entry.changes:
                match = RESPONSE_PATH_PATTERN.match(change.path)
                if not match or not is_success_status(match.group("code")):
                    continue
                if change.type == ChangeType.FIELD_REMOVED:
                    removed_codes.append(match.group("code"))
                elif change.type == ChangeType.FIELD_ADDED:
                    added_codes.append(match.group("code"))

        if len(removed_codes) == 1 and len(added_codes) == 1:
            old_status, new_status = removed_codes[0], added_codes[0]
            return TransformationRule(
                type=RuleType.STATUS_CODE_CHANGE,
                old=old_status,
                new=new_status,
                confidence=0.85,
                description=f"Expect status {new_status} instead of {old_status} "
                            f"({describe_status_change(int(old_status), int(new_status))})",
                endpoint_path=template,
            )
        return None

    # -- rule application ----------------------------------------------------

    @staticmethod
    def _apply_field_rename(rule: TransformationRule, code: str) -> str:
        old, new = re.escape(rule.old), rule.new
        code = re.sub(rf'\.{old}\b', f'.{new}', code)
        code = re.sub(rf'\[([\'"]){old}\1\]', lambda m: f'[{m.group(1)}{new}{m.group(1)}]', code)
        code = re.sub(rf'([\'"]){old}\1(\s*:)', lambda m: f'{m.group(1)}{new}{m.group(1)}{m.group(2)}', code)
        code = re.sub(rf'(?<![\w.\'"$]){old}(\s*:)(?!:)', lambda m: f'{new}{m.group(1)}', code)
        return code

    @staticmethod
    def _apply_path_change(rule: TransformationRule, code: str) -> str:
        def rewrite(match):
            url = match.group("url")
            path = _url_path(url)
            if not endpoint_matches(rule.old, path):
                return match.group(0)
            new_url = url.replace(path, fill_template(rule.new, rule.old, path), 1)
            return match.group(0).replace(url, new_url, 1)

        return REQUEST_CALL_PATTERN.sub(rewrite, code)

    @staticmethod
    def _apply_method_change(rule: TransformationRule, code: str) -> str:
        old_method, new_method = rule.old.lower(), rule.new.lower()

        def rewrite(match):
            if match.group("method") != old_method:
                return match.group(0)
            if rule.endpoint_path and not endpoint_matches(rule.endpoint_path, _url_path(match.group("url"))):
                return match.group(0)
            return f".{new_method}(" + match.group(0)[len(old_method) + 2:]

        code = REQUEST_CALL_PATTERN.sub(rewrite, code)
        return re.sub(rf'(method\s*:\s*[\'"]){rule.old.upper()}([\'"])',
                      lambda m: f'{m.group(1)}{rule.new.upper()}{m.group(2)}', code)

    @staticmethod
    def _apply_status_change(rule: TransformationRule, code: str) -> str:
        old, new = rule.old, rule.new
        patterns = [
            rf'(expect\(\s*[\w.$\[\]\'"]*status(?:Code)?(?:\(\))?\s*\)\s*\.(?:toBe|toEqual|toStrictEqual)\(\s*){old}(?=\s*\))',
            rf'(\bstatus(?:Code)?(?:\(\))?\s*(?:===?|!==?)\s*){old}\b',
            rf'(\.expect\(\s*){old}(?=\s*[,)])',
        ]
        for pattern in patterns:
            code = re.sub(pattern, lambda m: f'{m.group(1)}{new}', code)
        return code

    @staticmethod
    def _apply_timeout_increase(rule: TransformationRule, code: str) -> str:
        return re.sub(rf'(\btimeout\s*[:=]\s*|\bsetTimeout\(\s*){rule.old}\b',
                      lambda m: f'{m.group(1)}{rule.new}', code, flags=re.IGNORECASE)
