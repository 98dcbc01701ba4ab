"""
Spec Diff Analyzer for the API test self-healing engine.

This service loads two versions of an OpenAPI (3.0/3.1) or Swagger 2.0
document and computes a severity-classified structural diff: endpoints,
parameters, schemas, security schemes and metadata. Every difference becomes
an immutable Change; changes are deduplicated by (type, path) and grouped
into the buckets of a SpecDiff.
"""

import json
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

import yaml

from ..core.errors import FileFormatError, SpecParseError, SpecValidationError
from ..core.logging_config import get_healing_logger
from ..core.models import (
    AuthChange,
    AuthChanges,
    Change,
    ChangeSeverity,
    ChangeType,
    DiffReport,
    DiffSummary,
    EndpointChange,
    EndpointChanges,
    ParameterChange,
    ParameterChanges,
    SchemaChange,
    SchemaChanges,
    SpecDiff,
    SpecLoadMetadata,
)
from .severity_policy import SeverityPolicy
from .transformation_rules import FieldRenameDetector

Spec = Dict[str, Any]

HTTP_METHODS = ("get", "put", "post", "delete", "options", "head", "patch", "trace")

COMPOSITION_KEYWORDS = ("allOf", "oneOf", "anyOf")

METADATA_INFO_FIELDS = ("title", "description", "version", "termsOfService", "contact", "license")

_REF_PATTERN = re.compile(r'#/(?:components/schemas|definitions)/([^"/]+)')
_OPENAPI_VERSION = re.compile(r'^3\.[01]\.\d+')


@dataclass
class ComparisonOptions:
    """Knobs for compare_specs."""
    ignore_description_changes: bool = False
    track_field_renames: bool = True
    rename_similarity_threshold: float = 0.8
    severity_policy: SeverityPolicy = field(default_factory=SeverityPolicy)


class SpecDiffAnalyzer:
    """Service for loading specs and computing classified diffs between them."""

    SUPPORTED_EXTENSIONS = {
        ".json": "json",
        ".yaml": "yaml",
        ".yml": "yaml",
    }

    def __init__(self, options: Optional[ComparisonOptions] = None):
        self.options = options or ComparisonOptions()
        self.rename_detector = FieldRenameDetector(self.options.rename_similarity_threshold)
        self.logger = get_healing_logger("spec_diff")

    def load_and_parse_spec(self, filepath: str) -> Tuple[Spec, SpecLoadMetadata]:
        """Load a spec file and validate its top-level structure.

        Args:
            filepath: Path to a .json, .yaml or .yml document

        Returns:
            Tuple of (spec dict, SpecLoadMetadata)

        Raises:
            FileFormatError: If the extension is not recognized
            SpecParseError: If the file is missing or not valid JSON/YAML
            SpecValidationError: If the document is not a supported OpenAPI spec
        """
        path = Path(filepath)
        file_format = self.SUPPORTED_EXTENSIONS.get(path.suffix.lower())
        if file_format is None:
            raise FileFormatError(
                f"Unsupported spec file extension '{path.suffix}'; expected .json, .yaml or .yml",
                str(path))

        if not path.exists():
            raise SpecParseError("Spec file not found", str(path))

        started = time.perf_counter()
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            raise SpecParseError(f"Failed to read spec file: {e}", str(path)) from e

        try:
            if file_format == "json":
                spec = json.loads(content)
            else:
                spec = yaml.safe_load(content)
        except json.JSONDecodeError as e:
            raise SpecParseError(f"Invalid JSON at line {e.lineno}, column {e.colno}: {e.msg}", str(path)) from e
        except yaml.YAMLError as e:
            raise SpecParseError(f"Invalid YAML: {e}", str(path)) from e

        version = self.validate_spec(spec, str(path))
        parse_time_ms = (time.perf_counter() - started) * 1000

        metadata = SpecLoadMetadata(
            filepath=str(path),
            format=file_format,
            size=len(content.encode("utf-8")),
            parse_time_ms=round(parse_time_ms, 3),
            version=version,
        )
        self.logger.info(f"📄 Loaded {file_format.upper()} spec {path.name} (OpenAPI {version}, {metadata.size} bytes)")
        return spec, metadata

    def validate_spec(self, spec: Any, filepath: Optional[str] = None) -> str:
        """Check required top-level fields and the spec version.

        Returns:
            The spec version string

        Raises:
            SpecValidationError: If the document is invalid or unsupported
        """
        if not isinstance(spec, dict):
            raise SpecValidationError("Spec document must be a mapping", filepath)

        errors = []
        version = spec.get("openapi", spec.get("swagger"))
        if version is None:
            errors.append("missing 'openapi' or 'swagger' field")
        if not isinstance(spec.get("info"), dict):
            errors.append("missing 'info' object")
        if not isinstance(spec.get("paths"), dict):
            errors.append("missing 'paths' object")

        if errors:
            raise SpecValidationError("Invalid OpenAPI spec: " + "; ".join(errors), filepath, errors)

        version = str(version)
        if "openapi" in spec:
            if not _OPENAPI_VERSION.match(version):
                raise SpecValidationError(f"Unsupported OpenAPI version {version}", filepath)
        elif version != "2.0":
            raise SpecValidationError(f"Unsupported Swagger version {version}", filepath)
        return version

    def compare_specs(self, old_spec: Spec, new_spec: Spec) -> SpecDiff:
        """Compute the classified diff between two validated specs.

        Comparison is total over the object model and never raises for
        documents that passed validation.
        """
        started = time.perf_counter()
        self.logger.log_operation_start("spec_comparison")

        diff = _SpecComparison(old_spec, new_spec, self.options, self.rename_detector).run()

        self.logger.log_operation_success(
            "spec_comparison",
            time.perf_counter() - started,
            total_changes=diff.summary.total_changes,
            breaking_changes=diff.summary.breaking_changes,
        )
        if not diff.summary.is_backward_compatible:
            self.logger.warning(
                f"⚠️ {diff.summary.breaking_changes} breaking change(s) between "
                f"{diff.old_version} and {diff.new_version}")
        return diff

    def compare_spec_files(self, old_path: str, new_path: str) -> SpecDiff:
        """Load two spec files and compare them."""
        old_spec, _ = self.load_and_parse_spec(old_path)
        new_spec, _ = self.load_and_parse_spec(new_path)
        return self.compare_specs(old_spec, new_spec)

    def generate_diff_report(self, diff: SpecDiff) -> DiffReport:
        """Project a diff into a human-readable report."""
        summary = diff.summary
        if summary.total_changes == 0:
            text = f"No changes detected between versions {diff.old_version} and {diff.new_version}."
        else:
            text = (
                f"{summary.total_changes} change(s) detected between versions {diff.old_version} "
                f"and {diff.new_version}: {summary.breaking_changes} breaking, {summary.major_changes} major, "
                f"{summary.minor_changes} minor, {summary.patch_changes} patch. "
                f"The new version is {'' if summary.is_backward_compatible else 'not '}backward compatible."
            )

        report = DiffReport(summary=text)
        buckets = {
            ChangeSeverity.BREAKING: report.breaking_changes,
            ChangeSeverity.MAJOR: report.major_changes,
            ChangeSeverity.MINOR: report.minor_changes,
            ChangeSeverity.PATCH: report.patch_changes,
        }
        all_changes = diff.all_changes()
        for change in all_changes:
            buckets[change.severity].append(f"{change.description} [{change.path}]")

        report.recommendations = self._recommendations(diff, all_changes)
        report.migration_notes = self._migration_notes(diff, all_changes)
        return report

    def _recommendations(self, diff: SpecDiff, changes: List[Change]) -> List[str]:
        summary = diff.summary
        recommendations = []
        if summary.breaking_changes > 0:
            recommendations.append("Breaking changes detected - consider a major version bump")
        elif summary.major_changes > 0:
            recommendations.append("Major changes detected - consider a minor version bump and notify API consumers")
        elif summary.minor_changes > 0:
            recommendations.append("Only backward-compatible additions - a minor version bump is sufficient")

        if summary.endpoints_removed:
            recommendations.append(
                f"{summary.endpoints_removed} endpoint(s) removed - update or delete the tests that call them")
        if summary.schemas_modified:
            recommendations.append(
                f"{summary.schemas_modified} schema(s) modified - review request and response payloads in tests")
        if any(c.type == ChangeType.FIELD_RENAMED for c in changes):
            recommendations.append("Field renames detected - rule-based healing can update affected tests")
        if any(c.type == ChangeType.DEPRECATED_CHANGED and c.new_value for c in changes):
            recommendations.append("Endpoints were deprecated - plan migration of the tests that use them")
        return recommendations

    def _migration_notes(self, diff: SpecDiff, changes: List[Change]) -> List[str]:
        notes = []
        for removed in diff.endpoints.removed:
            notes.append(f"{removed.endpoint} was removed")
        for param in diff.parameters.required_changed:
            for change in param.changes:
                if change.type == ChangeType.REQUIRED_CHANGED:
                    state = "required" if change.new_value else "optional"
                    notes.append(f"Parameter '{param.name}' on {param.endpoint} is now {state}")
        for group in (diff.auth.added, diff.auth.removed, diff.auth.modified):
            for auth in group:
                for change in auth.changes:
                    notes.append(f"Authentication modified: {change.description}")
        for change in changes:
            if change.type == ChangeType.FIELD_RENAMED:
                notes.append(f"Rename '{change.old_value}' to '{change.new_value}' ({change.path})")
        return notes


def compare_spec_files(old_path: str, new_path: str,
                       options: Optional[ComparisonOptions] = None) -> Tuple[SpecDiff, DiffReport]:
    """Convenience wrapper: load, compare and report in one call."""
    analyzer = SpecDiffAnalyzer(options)
    diff = analyzer.compare_spec_files(old_path, new_path)
    return diff, analyzer.generate_diff_report(diff)


def _endpoint(method: str, path: str) -> str:
    return f"{method.upper()} {path}"


def _ref_name(schema: Any) -> Optional[str]:
    if isinstance(schema, dict) and isinstance(schema.get("$ref"), str):
        return schema["$ref"].rsplit("/", 1)[-1]
    return None


def _normalize_type(schema: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    """Fold 3.0 ``nullable`` and 3.1 ``type: [x, "null"]`` into (type, nullable)."""
    schema_type = schema.get("type")
    nullable = bool(schema.get("nullable") or schema.get("x-nullable"))
    if isinstance(schema_type, list):
        nullable = nullable or "null" in schema_type
        non_null = sorted(str(t) for t in schema_type if t != "null")
        schema_type = "|".join(non_null) if non_null else None
    return schema_type, nullable


def _param_schema(param: Dict[str, Any]) -> Dict[str, Any]:
    """Parameter schema; Swagger 2.0 keeps type info inline on the parameter."""
    if isinstance(param.get("schema"), dict):
        return param["schema"]
    return {k: param[k] for k in ("type", "format", "enum", "items", "nullable") if k in param}


def _security_names(requirements: Any) -> Set[str]:
    names = set()
    for requirement in requirements or []:
        if isinstance(requirement, dict):
            names.update(requirement.keys())
    return names


def _normalize_security_scheme(scheme: Dict[str, Any]) -> Dict[str, Any]:
    """Map Swagger 2.0 ``basic`` onto the 3.x ``http``/``basic`` form."""
    if scheme.get("type") == "basic":
        return {**scheme, "type": "http", "scheme": "basic"}
    return scheme


class _SpecComparison:
    """State for one comparison run; keeps SpecDiffAnalyzer itself stateless."""

    def __init__(self, old: Spec, new: Spec, options: ComparisonOptions,
                 rename_detector: FieldRenameDetector):
        self.old = old
        self.new = new
        self.options = options
        self.policy = options.severity_policy
        self.rename_detector = rename_detector
        self._seen: Set[Tuple[ChangeType, str]] = set()

        self.endpoints_added: List[EndpointChange] = []
        self.endpoints_removed: List[EndpointChange] = []
        self.endpoints_modified: List[EndpointChange] = []
        self.params_added: List[ParameterChange] = []
        self.params_removed: List[ParameterChange] = []
        self.params_modified: List[ParameterChange] = []
        self.schemas_added: List[SchemaChange] = []
        self.schemas_removed: List[SchemaChange] = []
        self.schemas_modified: List[SchemaChange] = []
        self.auth_added: List[AuthChange] = []
        self.auth_removed: List[AuthChange] = []
        self.auth_modified: List[AuthChange] = []
        self.metadata: List[Change] = []

        self._schema_usage = self._build_schema_usage()

    def run(self) -> SpecDiff:
        self._compare_endpoints()
        self._compare_component_schemas()
        self._compare_security_schemes()
        self._compare_global_security()
        self._compare_metadata()
        return self._build()

    # -- bookkeeping ---------------------------------------------------------

    def _accept(self, changes: Iterable[Change]) -> Tuple[Change, ...]:
        """Drop changes whose (type, path) was already recorded."""
        accepted = []
        for change in changes:
            if change.key in self._seen:
                continue
            self._seen.add(change.key)
            accepted.append(change)
        return tuple(accepted)

    def _build(self) -> SpecDiff:
        endpoints = EndpointChanges(tuple(self.endpoints_added), tuple(self.endpoints_removed),
                                    tuple(self.endpoints_modified))
        parameters = ParameterChanges(tuple(self.params_added), tuple(self.params_removed),
                                      tuple(self.params_modified))
        schemas = SchemaChanges(tuple(self.schemas_added), tuple(self.schemas_removed),
                                tuple(self.schemas_modified))
        auth = AuthChanges(tuple(self.auth_added), tuple(self.auth_removed), tuple(self.auth_modified))
        metadata = tuple(self.metadata)

        counts = {severity: 0 for severity in ChangeSeverity}
        for group in (endpoints, parameters, schemas, auth):
            for entries in (group.added, group.removed, group.modified):
                for entry in entries:
                    for change in entry.changes:
                        counts[change.severity] += 1
        for change in metadata:
            counts[change.severity] += 1

        summary = DiffSummary(
            breaking_changes=counts[ChangeSeverity.BREAKING],
            major_changes=counts[ChangeSeverity.MAJOR],
            minor_changes=counts[ChangeSeverity.MINOR],
            patch_changes=counts[ChangeSeverity.PATCH],
            endpoints_added=len(endpoints.added),
            endpoints_removed=len(endpoints.removed),
            endpoints_modified=len(endpoints.modified),
            schemas_added=len(schemas.added),
            schemas_removed=len(schemas.removed),
            schemas_modified=len(schemas.modified),
        )
        return SpecDiff(
            old_version=str((self.old.get("info") or {}).get("version", "unknown")),
            new_version=str((self.new.get("info") or {}).get("version", "unknown")),
            endpoints=endpoints,
            parameters=parameters,
            schemas=schemas,
            auth=auth,
            metadata=metadata,
            summary=summary,
        )

    # -- spec helpers --------------------------------------------------------

    @staticmethod
    def _operations(spec: Spec) -> Dict[Tuple[str, str], Tuple[Dict[str, Any], List[Any]]]:
        operations = {}
        for path, item in (spec.get("paths") or {}).items():
            if not isinstance(item, dict):
                continue
            shared_params = item.get("parameters") or []
            for method in HTTP_METHODS:
                operation = item.get(method)
                if isinstance(operation, dict):
                    operations[(method, str(path))] = (operation, shared_params)
        return operations

    @staticmethod
    def _component_schemas(spec: Spec) -> Dict[str, Any]:
        components = spec.get("components") or {}
        return components.get("schemas") or spec.get("definitions") or {}

    @staticmethod
    def _security_schemes(spec: Spec) -> Dict[str, Any]:
        components = spec.get("components") or {}
        return components.get("securitySchemes") or spec.get("securityDefinitions") or {}

    @staticmethod
    def _resolve(spec: Spec, node: Any) -> Any:
        """Resolve a local $ref (parameters only; schemas are compared by name)."""
        if not isinstance(node, dict) or "$ref" not in node:
            return node
        ref = node["$ref"]
        if not isinstance(ref, str) or not ref.startswith("#/"):
            return node
        target: Any = spec
        for part in ref[2:].split("/"):
            part = part.replace("~1", "/").replace("~0", "~")
            if not isinstance(target, dict) or part not in target:
                return node
            target = target[part]
        return target

    def _effective_parameters(self, spec: Spec, operation: Dict[str, Any],
                              shared: List[Any]) -> Dict[Tuple[str, str], Dict[str, Any]]:
        params: Dict[Tuple[str, str], Dict[str, Any]] = {}
        for raw in list(shared) + list(operation.get("parameters") or []):
            param = self._resolve(spec, raw)
            if isinstance(param, dict) and "name" in param:
                params[(str(param["name"]), str(param.get("in", "query")))] = param
        return params

    def _build_schema_usage(self) -> Dict[str, Set[str]]:
        """Map component schema name -> endpoints that reference it, transitively."""
        usage: Dict[str, Set[str]] = {}
        for spec in (self.old, self.new):
            schemas = self._component_schemas(spec)
            direct = {
                name: set(_REF_PATTERN.findall(json.dumps(definition, default=str)))
                for name, definition in schemas.items()
            }
            for (method, path), (operation, shared) in self._operations(spec).items():
                payload = json.dumps([operation, shared], default=str)
                pending = list(_REF_PATTERN.findall(payload))
                reached: Set[str] = set()
                while pending:
                    name = pending.pop()
                    if name in reached:
                        continue
                    reached.add(name)
                    pending.extend(direct.get(name, ()))
                for name in reached:
                    usage.setdefault(name, set()).add(_endpoint(method, path))
        return usage

    def _endpoints_using_scheme(self, spec: Spec, scheme: str) -> Tuple[str, ...]:
        global_names = _security_names(spec.get("security"))
        endpoints = []
        for (method, path), (operation, _) in self._operations(spec).items():
            names = _security_names(operation["security"]) if "security" in operation else global_names
            if scheme in names:
                endpoints.append(_endpoint(method, path))
        return tuple(sorted(endpoints))

    # -- endpoints -----------------------------------------------------------

    def _compare_endpoints(self):
        old_ops = self._operations(self.old)
        new_ops = self._operations(self.new)

        for key in sorted(old_ops.keys() - new_ops.keys(), key=lambda k: (k[1], k[0])):
            method, path = key
            operation = old_ops[key][0]
            endpoint = _endpoint(method, path)
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"paths.{path}.{method}",
                severity=ChangeSeverity.BREAKING,
                description=f"Endpoint removed: {endpoint}",
                old_value=operation.get("operationId"),
                affected_endpoints=(endpoint,),
                suggested_fix=f"Remove or migrate tests that call {endpoint}",
            )])
            self.endpoints_removed.append(EndpointChange(
                method, path, ChangeSeverity.BREAKING, changes, operation.get("operationId")))

        for key in sorted(new_ops.keys() - old_ops.keys(), key=lambda k: (k[1], k[0])):
            method, path = key
            operation = new_ops[key][0]
            endpoint = _endpoint(method, path)
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"paths.{path}.{method}",
                severity=ChangeSeverity.MINOR,
                description=f"Endpoint added: {endpoint}",
                new_value=operation.get("operationId"),
                affected_endpoints=(endpoint,),
                suggested_fix=f"Generate tests for {endpoint}",
            )])
            self.endpoints_added.append(EndpointChange(
                method, path, ChangeSeverity.MINOR, changes, operation.get("operationId")))

        for key in sorted(old_ops.keys() & new_ops.keys(), key=lambda k: (k[1], k[0])):
            method, path = key
            old_op, old_shared = old_ops[key]
            new_op, new_shared = new_ops[key]
            self._compare_parameters(method, path, old_op, old_shared, new_op, new_shared)
            self._compare_operation_security(method, path, old_op, new_op)

            changes = self._accept(self._operation_changes(method, path, old_op, new_op))
            if changes:
                severity = ChangeSeverity.most_severe(c.severity for c in changes)
                self.endpoints_modified.append(EndpointChange(
                    method, path, severity, changes, new_op.get("operationId")))

    def _operation_changes(self, method: str, path: str,
                           old_op: Dict[str, Any], new_op: Dict[str, Any]) -> List[Change]:
        base = f"paths.{path}.{method}"
        endpoint = _endpoint(method, path)
        affected = (endpoint,)
        changes: List[Change] = []

        old_deprecated = bool(old_op.get("deprecated", False))
        new_deprecated = bool(new_op.get("deprecated", False))
        if old_deprecated != new_deprecated:
            changes.append(Change(
                type=ChangeType.DEPRECATED_CHANGED,
                path=f"{base}.deprecated",
                severity=ChangeSeverity.MAJOR if new_deprecated else ChangeSeverity.MINOR,
                description=f"{endpoint} {'deprecated' if new_deprecated else 'no longer deprecated'}",
                old_value=old_deprecated,
                new_value=new_deprecated,
                affected_endpoints=affected,
            ))

        if old_op.get("operationId") != new_op.get("operationId"):
            changes.append(Change(
                type=ChangeType.VALUE_CHANGED,
                path=f"{base}.operationId",
                severity=ChangeSeverity.MINOR,
                description=f"operationId of {endpoint} changed",
                old_value=old_op.get("operationId"),
                new_value=new_op.get("operationId"),
                affected_endpoints=affected,
            ))

        if not self.options.ignore_description_changes:
            for text_field in ("summary", "description"):
                if old_op.get(text_field) != new_op.get(text_field):
                    changes.append(Change(
                        type=ChangeType.VALUE_CHANGED,
                        path=f"{base}.{text_field}",
                        severity=ChangeSeverity.PATCH,
                        description=f"{text_field.capitalize()} of {endpoint} changed",
                        old_value=old_op.get(text_field),
                        new_value=new_op.get(text_field),
                        affected_endpoints=affected,
                    ))

        changes.extend(self._request_body_changes(base, affected, old_op.get("requestBody"),
                                                  new_op.get("requestBody")))
        changes.extend(self._response_changes(base, affected, old_op.get("responses") or {},
                                              new_op.get("responses") or {}))
        return changes

    def _request_body_changes(self, base: str, affected: Tuple[str, ...],
                              old_body: Any, new_body: Any) -> List[Change]:
        old_body = self._resolve(self.old, old_body)
        new_body = self._resolve(self.new, new_body)
        path = f"{base}.requestBody"
        if not old_body and not new_body:
            return []
        if not old_body:
            required = bool(new_body.get("required"))
            return [Change(
                type=ChangeType.FIELD_ADDED,
                path=path,
                severity=ChangeSeverity.BREAKING if required else ChangeSeverity.MINOR,
                description=f"{'Required' if required else 'Optional'} request body added to {affected[0]}",
                affected_endpoints=affected,
            )]
        if not new_body:
            return [Change(
                type=ChangeType.FIELD_REMOVED,
                path=path,
                severity=ChangeSeverity.BREAKING,
                description=f"Request body removed from {affected[0]}",
                affected_endpoints=affected,
            )]

        changes = []
        old_required = bool(old_body.get("required"))
        new_required = bool(new_body.get("required"))
        if old_required != new_required:
            changes.append(Change(
                type=ChangeType.REQUIRED_CHANGED,
                path=f"{path}.required",
                severity=ChangeSeverity.BREAKING if new_required else ChangeSeverity.MINOR,
                description=f"Request body of {affected[0]} is now {'required' if new_required else 'optional'}",
                old_value=old_required,
                new_value=new_required,
                affected_endpoints=affected,
            ))
        changes.extend(self._content_changes(f"{path}.content", affected,
                                             old_body.get("content") or {}, new_body.get("content") or {}))
        return changes

    def _response_changes(self, base: str, affected: Tuple[str, ...],
                          old_responses: Dict[Any, Any], new_responses: Dict[Any, Any]) -> List[Change]:
        old_responses = {str(code): self._resolve(self.old, r) for code, r in old_responses.items()}
        new_responses = {str(code): self._resolve(self.new, r) for code, r in new_responses.items()}
        changes = []

        for code in sorted(old_responses.keys() - new_responses.keys()):
            changes.append(Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{base}.responses.{code}",
                severity=ChangeSeverity.BREAKING,
                description=f"Response {code} removed from {affected[0]}",
                old_value=code,
                affected_endpoints=affected,
            ))
        for code in sorted(new_responses.keys() - old_responses.keys()):
            changes.append(Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{base}.responses.{code}",
                severity=ChangeSeverity.MINOR,
                description=f"Response {code} added to {affected[0]}",
                new_value=code,
                affected_endpoints=affected,
            ))
        for code in sorted(old_responses.keys() & new_responses.keys()):
            old_response = old_responses[code] if isinstance(old_responses[code], dict) else {}
            new_response = new_responses[code] if isinstance(new_responses[code], dict) else {}
            response_path = f"{base}.responses.{code}"
            if "content" in old_response or "content" in new_response:
                changes.extend(self._content_changes(f"{response_path}.content", affected,
                                                     old_response.get("content") or {},
                                                     new_response.get("content") or {}))
            elif "schema" in old_response or "schema" in new_response:
                changes.extend(self._compare_schema(old_response.get("schema"), new_response.get("schema"),
                                                    f"{response_path}.schema", affected))
        return changes

    def _content_changes(self, base: str, affected: Tuple[str, ...],
                         old_content: Dict[str, Any], new_content: Dict[str, Any]) -> List[Change]:
        changes = []
        for media_type in sorted(old_content.keys() - new_content.keys()):
            changes.append(Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{base}.{media_type}",
                severity=ChangeSeverity.BREAKING,
                description=f"Media type {media_type} removed from {affected[0]}",
                affected_endpoints=affected,
            ))
        for media_type in sorted(new_content.keys() - old_content.keys()):
            changes.append(Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{base}.{media_type}",
                severity=ChangeSeverity.MINOR,
                description=f"Media type {media_type} added to {affected[0]}",
                affected_endpoints=affected,
            ))
        for media_type in sorted(old_content.keys() & new_content.keys()):
            old_schema = (old_content[media_type] or {}).get("schema")
            new_schema = (new_content[media_type] or {}).get("schema")
            changes.extend(self._compare_schema(old_schema, new_schema, f"{base}.{media_type}.schema", affected))
        return changes

    # -- parameters ----------------------------------------------------------

    def _compare_parameters(self, method: str, path: str,
                            old_op: Dict[str, Any], old_shared: List[Any],
                            new_op: Dict[str, Any], new_shared: List[Any]):
        base = f"paths.{path}.{method}.parameters"
        affected = (_endpoint(method, path),)
        old_params = self._effective_parameters(self.old, old_op, old_shared)
        new_params = self._effective_parameters(self.new, new_op, new_shared)

        old_only = {k: v for k, v in old_params.items() if k not in new_params}
        new_only = {k: v for k, v in new_params.items() if k not in old_params}

        # Same name, different location
        for (name, old_in) in list(old_only):
            moved = [key for key in new_only if key[0] == name]
            if not moved:
                continue
            new_key = moved[0]
            changes = self._accept([Change(
                type=ChangeType.VALUE_CHANGED,
                path=f"{base}.{name}.in",
                severity=ChangeSeverity.BREAKING,
                description=f"Parameter '{name}' moved from {old_in} to {new_key[1]} on {affected[0]}",
                old_value=old_in,
                new_value=new_key[1],
                affected_endpoints=affected,
                suggested_fix=f"Send '{name}' as a {new_key[1]} parameter",
            )])
            if changes:
                self.params_modified.append(ParameterChange(
                    method, path, name, new_key[1], ChangeSeverity.BREAKING, changes))
            del old_only[(name, old_in)]
            del new_only[new_key]

        if self.options.track_field_renames:
            for location in sorted({key[1] for key in old_only}):
                removed = {k[0]: v for k, v in old_only.items() if k[1] == location}
                added = {k[0]: v for k, v in new_only.items() if k[1] == location}
                renames = self.rename_detector.find_renames(
                    removed, added,
                    compatible=lambda a, b: _normalize_type(_param_schema(a))[0] == _normalize_type(_param_schema(b))[0])
                for match in renames:
                    changes = self._accept([Change(
                        type=ChangeType.FIELD_RENAMED,
                        path=f"{base}.{location}.{match.old_name}",
                        severity=ChangeSeverity.BREAKING,
                        description=f"Parameter '{match.old_name}' renamed to '{match.new_name}' on {affected[0]}",
                        old_value=match.old_name,
                        new_value=match.new_name,
                        affected_endpoints=affected,
                        suggested_fix=f"Rename parameter '{match.old_name}' to '{match.new_name}'",
                    )])
                    if changes:
                        self.params_modified.append(ParameterChange(
                            method, path, match.old_name, location, ChangeSeverity.BREAKING, changes))
                    del old_only[(match.old_name, location)]
                    del new_only[(match.new_name, location)]

        for (name, location), param in sorted(old_only.items()):
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{base}.{location}.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"Parameter '{name}' ({location}) removed from {affected[0]}",
                old_value=name,
                affected_endpoints=affected,
                suggested_fix=f"Stop sending '{name}' in tests for {affected[0]}",
            )])
            if changes:
                self.params_removed.append(ParameterChange(
                    method, path, name, location, ChangeSeverity.BREAKING, changes))

        for (name, location), param in sorted(new_only.items()):
            required = bool(param.get("required")) or location == "path"
            severity = ChangeSeverity.BREAKING if required else ChangeSeverity.MINOR
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{base}.{location}.{name}",
                severity=severity,
                description=f"{'Required' if required else 'Optional'} parameter '{name}' ({location}) added to {affected[0]}",
                new_value=name,
                affected_endpoints=affected,
                suggested_fix=f"Provide '{name}' in tests for {affected[0]}" if required else None,
            )])
            if changes:
                self.params_added.append(ParameterChange(method, path, name, location, severity, changes))

        for key in sorted(old_params.keys() & new_params.keys()):
            name, location = key
            old_param, new_param = old_params[key], new_params[key]
            param_path = f"{base}.{location}.{name}"
            raw: List[Change] = []

            old_required = bool(old_param.get("required")) or location == "path"
            new_required = bool(new_param.get("required")) or location == "path"
            if old_required != new_required:
                raw.append(Change(
                    type=ChangeType.REQUIRED_CHANGED,
                    path=f"{param_path}.required",
                    severity=ChangeSeverity.BREAKING if new_required else ChangeSeverity.MINOR,
                    description=f"Parameter '{name}' on {affected[0]} is now {'required' if new_required else 'optional'}",
                    old_value=old_required,
                    new_value=new_required,
                    affected_endpoints=affected,
                ))

            old_deprecated = bool(old_param.get("deprecated", False))
            new_deprecated = bool(new_param.get("deprecated", False))
            if old_deprecated != new_deprecated:
                raw.append(Change(
                    type=ChangeType.DEPRECATED_CHANGED,
                    path=f"{param_path}.deprecated",
                    severity=ChangeSeverity.MAJOR if new_deprecated else ChangeSeverity.MINOR,
                    description=f"Parameter '{name}' on {affected[0]} {'deprecated' if new_deprecated else 'no longer deprecated'}",
                    old_value=old_deprecated,
                    new_value=new_deprecated,
                    affected_endpoints=affected,
                ))

            raw.extend(self._compare_schema(_param_schema(old_param), _param_schema(new_param),
                                            f"{param_path}.schema", affected))
            changes = self._accept(raw)
            if changes:
                severity = ChangeSeverity.most_severe(c.severity for c in changes)
                self.params_modified.append(ParameterChange(method, path, name, location, severity, changes))

    # -- schemas -------------------------------------------------------------

    def _compare_component_schemas(self):
        old_schemas = self._component_schemas(self.old)
        new_schemas = self._component_schemas(self.new)
        prefix = "components.schemas"

        for name in sorted(old_schemas.keys() - new_schemas.keys()):
            affected = tuple(sorted(self._schema_usage.get(name, ())))
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{prefix}.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"Schema '{name}' removed",
                affected_endpoints=affected,
            )])
            if changes:
                self.schemas_removed.append(SchemaChange(name, ChangeSeverity.BREAKING, changes, affected))

        for name in sorted(new_schemas.keys() - old_schemas.keys()):
            affected = tuple(sorted(self._schema_usage.get(name, ())))
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{prefix}.{name}",
                severity=ChangeSeverity.MINOR,
                description=f"Schema '{name}' added",
                affected_endpoints=affected,
            )])
            if changes:
                self.schemas_added.append(SchemaChange(name, ChangeSeverity.MINOR, changes, affected))

        for name in sorted(old_schemas.keys() & new_schemas.keys()):
            affected = tuple(sorted(self._schema_usage.get(name, ())))
            changes = self._accept(self._compare_schema(
                old_schemas[name], new_schemas[name], f"{prefix}.{name}", affected))
            if changes:
                severity = ChangeSeverity.most_severe(c.severity for c in changes)
                self.schemas_modified.append(SchemaChange(name, severity, changes, affected))

    def _compare_schema(self, old: Any, new: Any, path: str,
                        affected: Tuple[str, ...]) -> List[Change]:
        """Recursively compare two schema nodes; returns undeduplicated changes."""
        old = old if isinstance(old, dict) else {}
        new = new if isinstance(new, dict) else {}
        changes: List[Change] = []

        old_ref, new_ref = _ref_name(old), _ref_name(new)
        if old_ref or new_ref:
            if old_ref != new_ref:
                changes.append(Change(
                    type=ChangeType.TYPE_CHANGED,
                    path=f"{path}.$ref",
                    severity=ChangeSeverity.BREAKING,
                    description=f"Schema reference at {path} changed from {old_ref or 'inline'} to {new_ref or 'inline'}",
                    old_value=old_ref,
                    new_value=new_ref,
                    affected_endpoints=affected,
                ))
            # Same reference: the component comparison covers it
            return changes

        old_type, old_nullable = _normalize_type(old)
        new_type, new_nullable = _normalize_type(new)
        if old_type and new_type and old_type != new_type:
            severity = self.policy.type_change(old_type, new_type)
            changes.append(Change(
                type=ChangeType.TYPE_CHANGED,
                path=f"{path}.type",
                severity=severity,
                description=f"Type at {path} changed from {old_type} to {new_type}",
                old_value=old_type,
                new_value=new_type,
                affected_endpoints=affected,
                suggested_fix=f"Send and expect {new_type} values at {path}",
            ))
            return changes

        if old_nullable != new_nullable:
            changes.append(Change(
                type=ChangeType.VALUE_CHANGED,
                path=f"{path}.nullable",
                severity=ChangeSeverity.MINOR if new_nullable else ChangeSeverity.BREAKING,
                description=f"{path} is {'now' if new_nullable else 'no longer'} nullable",
                old_value=old_nullable,
                new_value=new_nullable,
                affected_endpoints=affected,
            ))

        if old.get("format") != new.get("format"):
            changes.append(Change(
                type=ChangeType.VALUE_CHANGED,
                path=f"{path}.format",
                severity=self.policy.format_change(old.get("format"), new.get("format")),
                description=f"Format at {path} changed from {old.get('format')} to {new.get('format')}",
                old_value=old.get("format"),
                new_value=new.get("format"),
                affected_endpoints=affected,
            ))

        changes.extend(self._enum_changes(old.get("enum"), new.get("enum"), path, affected))
        changes.extend(self._property_changes(old, new, path, affected))

        if "items" in old or "items" in new:
            changes.extend(self._compare_schema(old.get("items"), new.get("items"), f"{path}.items", affected))

        for keyword in COMPOSITION_KEYWORDS:
            changes.extend(self._composition_changes(keyword, old.get(keyword) or [],
                                                     new.get(keyword) or [], path, affected))
        return changes

    def _enum_changes(self, old_enum: Any, new_enum: Any, path: str,
                      affected: Tuple[str, ...]) -> List[Change]:
        if old_enum == new_enum:
            return []
        enum_path = f"{path}.enum"
        if old_enum is None:
            return [Change(
                type=ChangeType.ENUM_CHANGED,
                path=enum_path,
                severity=ChangeSeverity.BREAKING,
                description=f"Enum constraint added at {path}",
                new_value=new_enum,
                affected_endpoints=affected,
            )]
        if new_enum is None:
            return [Change(
                type=ChangeType.ENUM_CHANGED,
                path=enum_path,
                severity=ChangeSeverity.MINOR,
                description=f"Enum constraint removed at {path}",
                old_value=old_enum,
                affected_endpoints=affected,
            )]

        removed = [v for v in old_enum if v not in new_enum]
        added = [v for v in new_enum if v not in old_enum]
        if not removed and not added:
            return []
        parts = []
        if removed:
            parts.append(f"removed {removed}")
        if added:
            parts.append(f"added {added}")
        return [Change(
            type=ChangeType.ENUM_CHANGED,
            path=enum_path,
            severity=ChangeSeverity.BREAKING if removed else ChangeSeverity.MINOR,
            description=f"Enum values at {path} changed: {', '.join(parts)}",
            old_value=old_enum,
            new_value=new_enum,
            affected_endpoints=affected,
            suggested_fix=f"Stop using {removed} at {path}" if removed else None,
        )]

    def _property_changes(self, old: Dict[str, Any], new: Dict[str, Any], path: str,
                          affected: Tuple[str, ...]) -> List[Change]:
        old_props = old.get("properties") or {}
        new_props = new.get("properties") or {}
        if not old_props and not new_props:
            return []

        old_required = set(old.get("required") or [])
        new_required = set(new.get("required") or [])
        removed = {n: old_props[n] for n in old_props if n not in new_props}
        added = {n: new_props[n] for n in new_props if n not in old_props}
        changes: List[Change] = []

        if self.options.track_field_renames and removed and added:
            renames = self.rename_detector.find_renames(
                removed, added, compatible=self._same_property_kind)
            for match in renames:
                changes.append(Change(
                    type=ChangeType.FIELD_RENAMED,
                    path=f"{path}.properties.{match.old_name}",
                    severity=ChangeSeverity.BREAKING,
                    description=f"Property '{match.old_name}' renamed to '{match.new_name}' at {path}",
                    old_value=match.old_name,
                    new_value=match.new_name,
                    affected_endpoints=affected,
                    suggested_fix=f"Rename '{match.old_name}' to '{match.new_name}' in payloads and assertions",
                ))
                del removed[match.old_name]
                del added[match.new_name]

        for name in sorted(removed):
            changes.append(Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{path}.properties.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"Property '{name}' removed from {path}",
                old_value=name,
                affected_endpoints=affected,
                suggested_fix=f"Remove assertions and payload fields using '{name}'",
            ))

        for name in sorted(added):
            required = name in new_required
            changes.append(Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{path}.properties.{name}",
                severity=ChangeSeverity.BREAKING if required else ChangeSeverity.MINOR,
                description=f"{'Required' if required else 'Optional'} property '{name}' added to {path}",
                new_value=name,
                affected_endpoints=affected,
                suggested_fix=f"Include '{name}' in request payloads" if required else None,
            ))

        for name in sorted(old_props.keys() & new_props.keys()):
            prop_path = f"{path}.properties.{name}"
            was_required, is_required = name in old_required, name in new_required
            if was_required != is_required:
                changes.append(Change(
                    type=ChangeType.REQUIRED_CHANGED,
                    path=f"{prop_path}.required",
                    severity=ChangeSeverity.BREAKING if is_required else ChangeSeverity.MINOR,
                    description=f"Property '{name}' at {path} is now {'required' if is_required else 'optional'}",
                    old_value=was_required,
                    new_value=is_required,
                    affected_endpoints=affected,
                ))
            changes.extend(self._compare_schema(old_props[name], new_props[name], prop_path, affected))
        return changes

    @staticmethod
    def _same_property_kind(old_def: Any, new_def: Any) -> bool:
        old_def = old_def if isinstance(old_def, dict) else {}
        new_def = new_def if isinstance(new_def, dict) else {}
        if _ref_name(old_def) or _ref_name(new_def):
            return _ref_name(old_def) == _ref_name(new_def)
        return _normalize_type(old_def)[0] == _normalize_type(new_def)[0]

    def _composition_changes(self, keyword: str, old_members: List[Any], new_members: List[Any],
                             path: str, affected: Tuple[str, ...]) -> List[Change]:
        # More allOf members narrow what is accepted; more oneOf/anyOf members widen it
        narrowing_on_add = keyword == "allOf"
        changes: List[Change] = []
        for index in range(max(len(old_members), len(new_members))):
            member_path = f"{path}.{keyword}[{index}]"
            if index >= len(old_members):
                changes.append(Change(
                    type=ChangeType.FIELD_ADDED,
                    path=member_path,
                    severity=ChangeSeverity.BREAKING if narrowing_on_add else ChangeSeverity.MINOR,
                    description=f"{keyword} member added at {path}",
                    new_value=_ref_name(new_members[index]),
                    affected_endpoints=affected,
                ))
            elif index >= len(new_members):
                changes.append(Change(
                    type=ChangeType.FIELD_REMOVED,
                    path=member_path,
                    severity=ChangeSeverity.MINOR if narrowing_on_add else ChangeSeverity.BREAKING,
                    description=f"{keyword} member removed at {path}",
                    old_value=_ref_name(old_members[index]),
                    affected_endpoints=affected,
                ))
            else:
                changes.extend(self._compare_schema(old_members[index], new_members[index], member_path, affected))
        return changes

    # -- auth ----------------------------------------------------------------

    def _compare_security_schemes(self):
        old_schemes = self._security_schemes(self.old)
        new_schemes = self._security_schemes(self.new)
        prefix = "security_schemes"

        for name in sorted(old_schemes.keys() - new_schemes.keys()):
            affected = self._endpoints_using_scheme(self.old, name)
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{prefix}.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"Security scheme '{name}' removed",
                affected_endpoints=affected,
                suggested_fix="Update test authentication setup",
            )])
            if changes:
                self.auth_removed.append(AuthChange(name, ChangeSeverity.BREAKING, changes, affected))

        for name in sorted(new_schemes.keys() - old_schemes.keys()):
            affected = self._endpoints_using_scheme(self.new, name)
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{prefix}.{name}",
                severity=ChangeSeverity.MINOR,
                description=f"Security scheme '{name}' added",
                affected_endpoints=affected,
            )])
            if changes:
                self.auth_added.append(AuthChange(name, ChangeSeverity.MINOR, changes, affected))

        for name in sorted(old_schemes.keys() & new_schemes.keys()):
            old_scheme = _normalize_security_scheme(old_schemes[name] or {})
            new_scheme = _normalize_security_scheme(new_schemes[name] or {})
            affected = self._endpoints_using_scheme(self.new, name)
            raw = []
            if old_scheme.get("type") != new_scheme.get("type"):
                raw.append(Change(
                    type=ChangeType.TYPE_CHANGED,
                    path=f"{prefix}.{name}.type",
                    severity=ChangeSeverity.BREAKING,
                    description=f"Security scheme '{name}' type changed from {old_scheme.get('type')} to {new_scheme.get('type')}",
                    old_value=old_scheme.get("type"),
                    new_value=new_scheme.get("type"),
                    affected_endpoints=affected,
                    suggested_fix="Update test authentication setup",
                ))
            else:
                for attribute in ("scheme", "in", "name", "bearerFormat"):
                    if old_scheme.get(attribute) != new_scheme.get(attribute):
                        raw.append(Change(
                            type=ChangeType.VALUE_CHANGED,
                            path=f"{prefix}.{name}.{attribute}",
                            severity=ChangeSeverity.PATCH if attribute == "bearerFormat" else ChangeSeverity.BREAKING,
                            description=f"Security scheme '{name}' {attribute} changed",
                            old_value=old_scheme.get(attribute),
                            new_value=new_scheme.get(attribute),
                            affected_endpoints=affected,
                        ))
                if old_scheme.get("flows") != new_scheme.get("flows"):
                    raw.append(Change(
                        type=ChangeType.VALUE_CHANGED,
                        path=f"{prefix}.{name}.flows",
                        severity=ChangeSeverity.MAJOR,
                        description=f"OAuth flows of security scheme '{name}' changed",
                        affected_endpoints=affected,
                    ))
            changes = self._accept(raw)
            if changes:
                severity = ChangeSeverity.most_severe(c.severity for c in changes)
                self.auth_modified.append(AuthChange(name, severity, changes, affected))

    def _compare_global_security(self):
        old_names = _security_names(self.old.get("security"))
        new_names = _security_names(self.new.get("security"))

        for name in sorted(new_names - old_names):
            affected = self._endpoints_using_scheme(self.new, name)
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"security.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"Authentication with '{name}' is now required globally",
                new_value=name,
                affected_endpoints=affected,
                suggested_fix=f"Authenticate test requests with '{name}'",
            )])
            if changes:
                self.auth_modified.append(AuthChange(name, ChangeSeverity.BREAKING, changes, affected))

        for name in sorted(old_names - new_names):
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"security.{name}",
                severity=ChangeSeverity.MINOR,
                description=f"Authentication with '{name}' is no longer required globally",
                old_value=name,
            )])
            if changes:
                self.auth_modified.append(AuthChange(name, ChangeSeverity.MINOR, changes))

    def _compare_operation_security(self, method: str, path: str,
                                    old_op: Dict[str, Any], new_op: Dict[str, Any]):
        if "security" not in old_op and "security" not in new_op:
            return
        old_names = _security_names(old_op["security"]) if "security" in old_op else _security_names(self.old.get("security"))
        new_names = _security_names(new_op["security"]) if "security" in new_op else _security_names(self.new.get("security"))
        endpoint = _endpoint(method, path)
        base = f"paths.{path}.{method}.security"

        for name in sorted(new_names - old_names):
            changes = self._accept([Change(
                type=ChangeType.FIELD_ADDED,
                path=f"{base}.{name}",
                severity=ChangeSeverity.BREAKING,
                description=f"{endpoint} now requires '{name}' authentication",
                new_value=name,
                affected_endpoints=(endpoint,),
                suggested_fix=f"Authenticate requests to {endpoint} with '{name}'",
            )])
            if changes:
                self.auth_modified.append(AuthChange(name, ChangeSeverity.BREAKING, changes, (endpoint,)))

        for name in sorted(old_names - new_names):
            changes = self._accept([Change(
                type=ChangeType.FIELD_REMOVED,
                path=f"{base}.{name}",
                severity=ChangeSeverity.MINOR,
                description=f"{endpoint} no longer requires '{name}' authentication",
                old_value=name,
                affected_endpoints=(endpoint,),
            )])
            if changes:
                self.auth_modified.append(AuthChange(name, ChangeSeverity.MINOR, changes, (endpoint,)))

    # -- metadata ------------------------------------------------------------

    def _compare_metadata(self):
        old_info = self.old.get("info") or {}
        new_info = self.new.get("info") or {}
        raw = []

        for info_field in METADATA_INFO_FIELDS:
            if info_field == "description" and self.options.ignore_description_changes:
                continue
            raw.extend(self._metadata_change(f"info.{info_field}", old_info.get(info_field),
                                             new_info.get(info_field)))

        old_version = self.old.get("openapi", self.old.get("swagger"))
        new_version = self.new.get("openapi", self.new.get("swagger"))
        raw.extend(self._metadata_change("openapi", str(old_version), str(new_version)))

        old_servers = [s.get("url") for s in self.old.get("servers") or [] if isinstance(s, dict)]
        new_servers = [s.get("url") for s in self.new.get("servers") or [] if isinstance(s, dict)]
        raw.extend(self._metadata_change("servers", old_servers or None, new_servers or None))

        self.metadata.extend(self._accept(raw))

    @staticmethod
    def _metadata_change(path: str, old_value: Any, new_value: Any) -> List[Change]:
        if old_value == new_value:
            return []
        if old_value is None:
            change_type, verb = ChangeType.FIELD_ADDED, "added"
        elif new_value is None:
            change_type, verb = ChangeType.FIELD_REMOVED, "removed"
        else:
            change_type, verb = ChangeType.VALUE_CHANGED, "changed"
        return [Change(
            type=change_type,
            path=path,
            severity=ChangeSeverity.PATCH,
            description=f"Metadata {path} {verb}",
            old_value=old_value,
            new_value=new_value,
        )]
