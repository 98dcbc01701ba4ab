"""
Severity policy for type and format transitions.

Which transitions count as a widening (Major) and which as a narrowing
(Breaking) is a product decision, so the rules live in a table that can be
overridden from the ``spec_diff`` section of the self-healing configuration.
"""

import logging
from typing import Any, Dict, Iterable, Optional, Tuple

from ..core.models import ChangeSeverity

logger = logging.getLogger(__name__)

Transition = Tuple[Optional[str], Optional[str]]

DEFAULT_TYPE_TRANSITIONS: Dict[Transition, ChangeSeverity] = {
    ("integer", "number"): ChangeSeverity.MAJOR,
}

DEFAULT_FORMAT_TRANSITIONS: Dict[Transition, ChangeSeverity] = {
    ("int32", "int64"): ChangeSeverity.MAJOR,
    ("float", "double"): ChangeSeverity.MAJOR,
    ("date", "date-time"): ChangeSeverity.MAJOR,
}


class SeverityPolicy:
    """Lookup table mapping (old, new) transitions to a severity."""

    def __init__(self,
                 type_transitions: Optional[Dict[Transition, ChangeSeverity]] = None,
                 format_transitions: Optional[Dict[Transition, ChangeSeverity]] = None,
                 default_type_change: ChangeSeverity = ChangeSeverity.BREAKING,
                 default_format_change: ChangeSeverity = ChangeSeverity.MAJOR):
        self.type_transitions = dict(DEFAULT_TYPE_TRANSITIONS if type_transitions is None else type_transitions)
        self.format_transitions = dict(DEFAULT_FORMAT_TRANSITIONS if format_transitions is None else format_transitions)
        self.default_type_change = default_type_change
        self.default_format_change = default_format_change

    def type_change(self, old_type: Optional[str], new_type: Optional[str]) -> ChangeSeverity:
        """Severity of a schema or parameter type change."""
        return self.type_transitions.get((old_type, new_type), self.default_type_change)

    def format_change(self, old_format: Optional[str], new_format: Optional[str]) -> ChangeSeverity:
        """Severity of a format change (int32 -> int64 etc.)."""
        return self.format_transitions.get((old_format, new_format), self.default_format_change)

    def is_widening(self, old_type: Optional[str], new_type: Optional[str]) -> bool:
        return self.type_change(old_type, new_type) != ChangeSeverity.BREAKING

    @classmethod
    def from_config(cls, data: Optional[Dict[str, Any]]) -> 'SeverityPolicy':
        """Build a policy from the ``spec_diff`` configuration section.

        Configured transitions are merged over the defaults, e.g.::

            type_transitions:
              - {from: integer, to: number, severity: major}
              - {from: number, to: string, severity: breaking}

        Args:
            data: The ``spec_diff`` section (may be None)

        Returns:
            SeverityPolicy instance

        Raises:
            ValueError: If a transition entry or severity name is invalid
        """
        data = data or {}
        type_transitions = dict(DEFAULT_TYPE_TRANSITIONS)
        type_transitions.update(_parse_transitions(data.get("type_transitions") or []))
        format_transitions = dict(DEFAULT_FORMAT_TRANSITIONS)
        format_transitions.update(_parse_transitions(data.get("format_transitions") or []))

        return cls(
            type_transitions=type_transitions,
            format_transitions=format_transitions,
            default_type_change=ChangeSeverity(data.get("default_type_change", "breaking")),
            default_format_change=ChangeSeverity(data.get("default_format_change", "major")),
        )

    def to_config(self) -> Dict[str, Any]:
        return {
            "type_transitions": _dump_transitions(self.type_transitions),
            "format_transitions": _dump_transitions(self.format_transitions),
            "default_type_change": self.default_type_change.value,
            "default_format_change": self.default_format_change.value,
        }


def _parse_transitions(entries: Iterable[Dict[str, Any]]) -> Dict[Transition, ChangeSeverity]:
    transitions = {}
    for entry in entries:
        if not isinstance(entry, dict) or "from" not in entry or "to" not in entry:
            raise ValueError(f"Invalid transition entry: {entry!r}")
        severity = ChangeSeverity(str(entry.get("severity", "breaking")).lower())
        transitions[(entry["from"], entry["to"])] = severity
        logger.debug(f"Severity policy: {entry['from']} -> {entry['to']} = {severity.value}")
    return transitions


def _dump_transitions(transitions: Dict[Transition, ChangeSeverity]):
    return [
        {"from": old, "to": new, "severity": severity.value}
        for (old, new), severity in transitions.items()
    ]
