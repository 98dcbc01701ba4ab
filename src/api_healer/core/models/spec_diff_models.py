"""Data models for severity-classified OpenAPI diffs."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class ChangeType(Enum):
    """Kinds of field-level differences between two spec versions."""
    FIELD_RENAMED = "field_renamed"
    TYPE_CHANGED = "type_changed"
    FIELD_ADDED = "field_added"
    FIELD_REMOVED = "field_removed"
    VALUE_CHANGED = "value_changed"
    REQUIRED_CHANGED = "required_changed"
    DEPRECATED_CHANGED = "deprecated_changed"
    ENUM_CHANGED = "enum_changed"


class ChangeSeverity(Enum):
    """Client impact of a change, most severe first."""
    BREAKING = "breaking"
    MAJOR = "major"
    MINOR = "minor"
    PATCH = "patch"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def most_severe(cls, severities) -> 'ChangeSeverity':
        """Return the most severe of the given severities (PATCH when empty)."""
        ordered = sorted(severities, key=lambda s: s.rank)
        return ordered[0] if ordered else cls.PATCH


_SEVERITY_RANK = {
    ChangeSeverity.BREAKING: 0,
    ChangeSeverity.MAJOR: 1,
    ChangeSeverity.MINOR: 2,
    ChangeSeverity.PATCH: 3,
}


@dataclass(frozen=True)
class Change:
    """A single classified difference. Immutable once produced."""
    type: ChangeType
    path: str
    severity: ChangeSeverity
    description: str
    old_value: Any = None
    new_value: Any = None
    affected_endpoints: Tuple[str, ...] = ()
    suggested_fix: Optional[str] = None

    @property
    def key(self) -> Tuple[ChangeType, str]:
        """Deduplication key."""
        return (self.type, self.path)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type.value,
            "path": self.path,
            "severity": self.severity.value,
            "description": self.description,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "affected_endpoints": list(self.affected_endpoints),
            "suggested_fix": self.suggested_fix,
        }


def _changes_to_dict(changes: Tuple[Change, ...]) -> List[Dict[str, Any]]:
    return [c.to_dict() for c in changes]


@dataclass(frozen=True)
class EndpointChange:
    """Added, removed or modified operation."""
    method: str
    path: str
    severity: ChangeSeverity
    changes: Tuple[Change, ...] = ()
    operation_id: Optional[str] = None

    @property
    def endpoint(self) -> str:
        return f"{self.method.upper()} {self.path}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "method": self.method,
            "path": self.path,
            "operation_id": self.operation_id,
            "severity": self.severity.value,
            "changes": _changes_to_dict(self.changes),
        }


@dataclass(frozen=True)
class ParameterChange:
    """Change to one operation parameter, keyed by (name, in)."""
    method: str
    path: str
    name: str
    location: str
    severity: ChangeSeverity
    changes: Tuple[Change, ...] = ()

    @property
    def endpoint(self) -> str:
        return f"{self.method.upper()} {self.path}"

    def has_change_type(self, change_type: ChangeType) -> bool:
        return any(c.type == change_type for c in self.changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "name": self.name,
            "in": self.location,
            "severity": self.severity.value,
            "changes": _changes_to_dict(self.changes),
        }


@dataclass(frozen=True)
class SchemaChange:
    """Change to a named component schema."""
    schema_name: str
    severity: ChangeSeverity
    changes: Tuple[Change, ...] = ()
    affected_endpoints: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema_name": self.schema_name,
            "severity": self.severity.value,
            "changes": _changes_to_dict(self.changes),
            "affected_endpoints": list(self.affected_endpoints),
        }


@dataclass(frozen=True)
class AuthChange:
    """Change to a security scheme or security requirement."""
    scheme_name: str
    severity: ChangeSeverity
    changes: Tuple[Change, ...] = ()
    affected_endpoints: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme_name": self.scheme_name,
            "severity": self.severity.value,
            "changes": _changes_to_dict(self.changes),
            "affected_endpoints": list(self.affected_endpoints),
        }


def _bucket_change_count(*groups) -> int:
    return sum(len(entry.changes) for group in groups for entry in group)


@dataclass(frozen=True)
class EndpointChanges:
    added: Tuple[EndpointChange, ...] = ()
    removed: Tuple[EndpointChange, ...] = ()
    modified: Tuple[EndpointChange, ...] = ()

    @property
    def change_count(self) -> int:
        return _bucket_change_count(self.added, self.removed, self.modified)


@dataclass(frozen=True)
class ParameterChanges:
    added: Tuple[ParameterChange, ...] = ()
    removed: Tuple[ParameterChange, ...] = ()
    modified: Tuple[ParameterChange, ...] = ()

    @property
    def required_changed(self) -> Tuple[ParameterChange, ...]:
        return tuple(p for p in self.modified if p.has_change_type(ChangeType.REQUIRED_CHANGED))

    @property
    def type_changed(self) -> Tuple[ParameterChange, ...]:
        return tuple(p for p in self.modified if p.has_change_type(ChangeType.TYPE_CHANGED))

    @property
    def change_count(self) -> int:
        return _bucket_change_count(self.added, self.removed, self.modified)


@dataclass(frozen=True)
class SchemaChanges:
    added: Tuple[SchemaChange, ...] = ()
    removed: Tuple[SchemaChange, ...] = ()
    modified: Tuple[SchemaChange, ...] = ()

    @property
    def change_count(self) -> int:
        return _bucket_change_count(self.added, self.removed, self.modified)


@dataclass(frozen=True)
class AuthChanges:
    added: Tuple[AuthChange, ...] = ()
    removed: Tuple[AuthChange, ...] = ()
    modified: Tuple[AuthChange, ...] = ()

    @property
    def change_count(self) -> int:
        return _bucket_change_count(self.added, self.removed, self.modified)


@dataclass(frozen=True)
class DiffSummary:
    """Counts over a diff. Backward compatibility is derived, never stored."""
    breaking_changes: int = 0
    major_changes: int = 0
    minor_changes: int = 0
    patch_changes: int = 0
    endpoints_added: int = 0
    endpoints_removed: int = 0
    endpoints_modified: int = 0
    schemas_added: int = 0
    schemas_removed: int = 0
    schemas_modified: int = 0

    @property
    def total_changes(self) -> int:
        return self.breaking_changes + self.major_changes + self.minor_changes + self.patch_changes

    @property
    def is_backward_compatible(self) -> bool:
        return self.breaking_changes == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_changes": self.total_changes,
            "breaking_changes": self.breaking_changes,
            "major_changes": self.major_changes,
            "minor_changes": self.minor_changes,
            "patch_changes": self.patch_changes,
            "endpoints_added": self.endpoints_added,
            "endpoints_removed": self.endpoints_removed,
            "endpoints_modified": self.endpoints_modified,
            "schemas_added": self.schemas_added,
            "schemas_removed": self.schemas_removed,
            "schemas_modified": self.schemas_modified,
            "is_backward_compatible": self.is_backward_compatible,
        }


@dataclass(frozen=True)
class SpecDiff:
    """Result of comparing two specification versions."""
    old_version: str
    new_version: str
    endpoints: EndpointChanges
    parameters: ParameterChanges
    schemas: SchemaChanges
    auth: AuthChanges
    metadata: Tuple[Change, ...]
    summary: DiffSummary
    compared_at: datetime = field(default_factory=datetime.now)

    def all_changes(self) -> List[Change]:
        """Every change in bucket order."""
        changes: List[Change] = []
        for group in (self.endpoints, self.parameters, self.schemas, self.auth):
            for entries in (group.added, group.removed, group.modified):
                for entry in entries:
                    changes.extend(entry.changes)
        changes.extend(self.metadata)
        return changes

    def changes_for_endpoint(self, method: str, path: str) -> List[Change]:
        """Changes whose affected endpoints include the given operation."""
        endpoint = f"{method.upper()} {path}"
        return [c for c in self.all_changes() if endpoint in c.affected_endpoints]

    def to_dict(self) -> Dict[str, Any]:
        def group_dict(group) -> Dict[str, Any]:
            return {
                "added": [e.to_dict() for e in group.added],
                "removed": [e.to_dict() for e in group.removed],
                "modified": [e.to_dict() for e in group.modified],
            }

        return {
            "old_version": self.old_version,
            "new_version": self.new_version,
            "compared_at": self.compared_at.isoformat(),
            "endpoints": group_dict(self.endpoints),
            "parameters": group_dict(self.parameters),
            "schemas": group_dict(self.schemas),
            "auth": group_dict(self.auth),
            "metadata": _changes_to_dict(self.metadata),
            "summary": self.summary.to_dict(),
        }


@dataclass
class DiffReport:
    """Human-oriented projection of a SpecDiff."""
    summary: str
    breaking_changes: List[str] = field(default_factory=list)
    major_changes: List[str] = field(default_factory=list)
    minor_changes: List[str] = field(default_factory=list)
    patch_changes: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    migration_notes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary,
            "breaking_changes": self.breaking_changes,
            "major_changes": self.major_changes,
            "minor_changes": self.minor_changes,
            "patch_changes": self.patch_changes,
            "recommendations": self.recommendations,
            "migration_notes": self.migration_notes,
        }

    def to_text(self) -> str:
        """Render the report as plain text for terminals."""
        lines = [self.summary, ""]
        sections = [
            ("Breaking changes", self.breaking_changes),
            ("Major changes", self.major_changes),
            ("Minor changes", self.minor_changes),
            ("Patch changes", self.patch_changes),
            ("Recommendations", self.recommendations),
            ("Migration notes", self.migration_notes),
        ]
        for title, items in sections:
            if not items:
                continue
            lines.append(f"{title}:")
            lines.extend(f"  - {item}" for item in items)
            lines.append("")
        return "\n".join(lines).rstrip() + "\n"


@dataclass
class SpecLoadMetadata:
    """Details about a loaded spec file."""
    filepath: str
    format: str
    size: int
    parse_time_ms: float
    version: str
    loaded_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filepath": self.filepath,
            "format": self.format,
            "size": self.size,
            "parse_time_ms": self.parse_time_ms,
            "version": self.version,
            "loaded_at": self.loaded_at.isoformat(),
        }
