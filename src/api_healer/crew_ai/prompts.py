"""Repair prompt construction for AI-powered healing."""

from typing import List, Optional, Tuple

from ..core.models import Change, ChangeSeverity, FailureAnalysis, SpecDiff
from ..services.transformation_rules import endpoint_matches

# Upper bound on listed API changes; the most severe are kept
MAX_LISTED_CHANGES = 20

FEW_SHOT_EXAMPLE = {
    "description": "Field rename in the response body",
    "original_test": """import { test, expect } from '@playwright/test';

test('should get product by id', async ({ request }) => {
  const response = await request.get('/products/42');
  expect(response.status()).toBe(200);

  const product = await response.json();
  expect(product.productName).toBe('Desk');
});""",
    "failure": """Error: expect(received).toBe(expected)
Expected: "Desk"
Received: undefined""",
    "api_changes": "- [BREAKING] Property 'productName' renamed to 'name' at components.schemas.Product",
    "repaired_test": """import { test, expect } from '@playwright/test';

test('should get product by id', async ({ request }) => {
  const response = await request.get('/products/42');
  expect(response.status()).toBe(200);

  const product = await response.json();
  expect(product.name).toBe('Desk');
});""",
}


def relevant_changes(spec_diff: Optional[SpecDiff], endpoint: Optional[Tuple[str, str]]) -> List[Change]:
    """Changes touching the test's endpoint, or all non-patch changes when unknown."""
    if spec_diff is None:
        return []

    changes = spec_diff.all_changes()
    if endpoint:
        method, path = endpoint
        selected = []
        for change in changes:
            for affected in change.affected_endpoints:
                affected_method, _, template = affected.partition(" ")
                if affected_method.upper() == method.upper() and endpoint_matches(template, path):
                    selected.append(change)
                    break
        endpoint_removed = any(
            e.method.upper() == method.upper() and endpoint_matches(e.path, path)
            for e in spec_diff.endpoints.removed)
        if endpoint_removed:
            # The replacement endpoint, if any, is among the additions
            for entry in spec_diff.endpoints.added:
                selected.extend(entry.changes)
        changes = selected
    else:
        changes = [c for c in changes if c.severity != ChangeSeverity.PATCH]

    changes.sort(key=lambda c: c.severity.rank)
    return changes[:MAX_LISTED_CHANGES]


def format_changes(changes: List[Change]) -> str:
    if not changes:
        return "No API specification changes are known for this endpoint."
    lines = []
    for change in changes:
        line = f"- [{change.severity.name}] {change.description}"
        if change.suggested_fix:
            line += f" (suggested fix: {change.suggested_fix})"
        lines.append(line)
    return "\n".join(lines)


def format_failure(analysis: FailureAnalysis) -> str:
    parsed = analysis.parsed_error
    lines = [
        f"- Failure Type: {analysis.failure_type.value}",
        f"- Confidence: {analysis.confidence:.2f}",
        f"- Test File: {analysis.context.test_file}",
        f"- Test Name: {analysis.context.test_name}",
    ]
    if analysis.context.line_number:
        lines.append(f"- Line: {analysis.context.line_number}")
    if parsed:
        lines.append(f"- Error Message: {parsed.clean_message[:1500]}")
    details = analysis.specific_error.to_dict()
    details.pop("failure_type", None)
    for key, value in details.items():
        if value not in (None, ""):
            lines.append(f"- {key.replace('_', ' ').title()}: {value}")
    if analysis.potential_fixes:
        lines.append("- Suggested Fixes: " + "; ".join(fix.description for fix in analysis.potential_fixes))
    return "\n".join(lines)


def build_repair_prompt(test_code: str, analysis: FailureAnalysis,
                        spec_diff: Optional[SpecDiff] = None,
                        endpoint: Optional[Tuple[str, str]] = None,
                        include_example: bool = True) -> str:
    """
    Build the prompt asking the model to repair one failing test.

    Args:
        test_code: Source of the failing test
        analysis: Failure classification of the test result
        spec_diff: Optional diff between the spec versions involved
        endpoint: Optional (METHOD, path) the test calls, narrows the listed changes
        include_example: Whether to include the few-shot example

    Returns:
        Prompt text
    """
    api_changes = format_changes(relevant_changes(spec_diff, endpoint))

    example = ""
    if include_example:
        example = f"""
--- EXAMPLE: {FEW_SHOT_EXAMPLE['description']} ---

Original Test:
{FEW_SHOT_EXAMPLE['original_test']}

Failure:
{FEW_SHOT_EXAMPLE['failure']}

API Changes:
{FEW_SHOT_EXAMPLE['api_changes']}

Repaired Test:
{FEW_SHOT_EXAMPLE['repaired_test']}
"""

    return f"""You are an expert test engineer specializing in API testing with Playwright.

Your task is to repair a failing API test so that it passes against the current API.

--- ORIGINAL TEST CODE ---

{test_code}

--- TEST FAILURE ---

{format_failure(analysis)}

--- API CHANGES ---

{api_changes}

--- REQUIREMENTS ---

1. **Preserve Test Intent**: The repaired test must verify the same behavior as the original
2. **Update API Calls**: Adapt endpoints, methods, parameters and payloads to the API changes
3. **Keep Test Structure**: Keep the same test() blocks, names and assertions unless a change requires otherwise
4. **Minimal Changes**: Change only what the failure and the API changes require
{example}
--- OUTPUT FORMAT ---

Return ONLY the complete repaired test code in TypeScript.
Do NOT include explanations or comments about what changed.
"""
