"""Tests for repair prompt construction and LLM output cleaning."""

import pytest

from src.api_healer.core.models import ChangeSeverity
from src.api_healer.crew_ai.llm_output_cleaner import LLMOutputCleaner
from src.api_healer.crew_ai.prompts import (
    build_repair_prompt,
    format_changes,
    relevant_changes,
)
from src.api_healer.services.failure_analyzer import FailureAnalyzer
from src.api_healer.services.spec_diff_analyzer import SpecDiffAnalyzer


@pytest.fixture
def spec_diff(old_spec, new_spec):
    return SpecDiffAnalyzer().compare_specs(old_spec, new_spec)


class TestRelevantChanges:

    def test_changes_for_endpoint(self, spec_diff):
        changes = relevant_changes(spec_diff, ("GET", "/products/42"))

        assert len(changes) == 1
        assert changes[0].severity == ChangeSeverity.BREAKING

    def test_removed_endpoint_lists_additions(self, spec_diff):
        changes = relevant_changes(spec_diff, ("GET", "/users/7"))

        assert [c.severity for c in changes] == [ChangeSeverity.BREAKING, ChangeSeverity.MINOR]

    def test_without_endpoint_skips_patch_changes(self, spec_diff):
        changes = relevant_changes(spec_diff, None)

        assert len(changes) == 5
        assert changes[0].severity == ChangeSeverity.BREAKING
        assert all(c.severity != ChangeSeverity.PATCH for c in changes)

    def test_no_diff(self):
        assert relevant_changes(None, ("GET", "/products/42")) == []

    def test_format_changes(self, spec_diff):
        text = format_changes(relevant_changes(spec_diff, ("GET", "/products/42")))

        assert text.startswith("- [BREAKING] ")
        assert "product_name" in text
        assert format_changes([]) == "No API specification changes are known for this endpoint."


class TestBuildRepairPrompt:
    """Test cases for the repair prompt."""

    @pytest.fixture
    def analysis(self, make_test_result):
        return FailureAnalyzer().analyze_failure(
            make_test_result("Error: expect(received).toBe(expected)\n\nExpected: \"Widget\"\nReceived: undefined"))

    def test_sections(self, analysis, spec_diff, product_test_code):
        prompt = build_repair_prompt(product_test_code, analysis, spec_diff, ("GET", "/products/42"))

        for section in ("--- ORIGINAL TEST CODE ---", "--- TEST FAILURE ---", "--- API CHANGES ---",
                        "--- REQUIREMENTS ---", "--- EXAMPLE:", "--- OUTPUT FORMAT ---"):
            assert section in prompt
        assert product_test_code in prompt
        assert "- Failure Type: assertion" in prompt
        assert "- [BREAKING]" in prompt

    def test_without_example_or_diff(self, analysis, product_test_code):
        prompt = build_repair_prompt(product_test_code, analysis, include_example=False)

        assert "--- EXAMPLE:" not in prompt
        assert "No API specification changes are known for this endpoint." in prompt


class TestLLMOutputCleaner:
    """Test cases for LLMOutputCleaner."""

    def test_fenced_block_with_chatter(self):
        text = ("Here is the fixed test:\n```typescript\ntest('a', () => { expect(1).toBe(1); });\n```\n"
                "I renamed the field.")

        assert LLMOutputCleaner.clean_code(text) == "test('a', () => { expect(1).toBe(1); });\n"

    def test_code_fence_preferred_over_other_languages(self):
        text = ("```json\n{\"a very long\": \"json payload that is longer than the code\"}\n```\n"
                "```ts\ntest('a', () => {});\n```")

        assert LLMOutputCleaner.clean_code(text) == "test('a', () => {});\n"

    def test_longest_code_block_wins(self):
        text = "```ts\nshort();\n```\n```ts\ntest('a', () => { longer(); });\n```"

        assert LLMOutputCleaner.clean_code(text) == "test('a', () => { longer(); });\n"

    def test_unfenced_chatter_stripped(self):
        text = "Sure, here you go.\ntest('a', () => {});\nExplanation: renamed the field"

        assert LLMOutputCleaner.clean_code(text) == "test('a', () => {});\n"

    @pytest.mark.parametrize("text", [None, "", "Certainly!"])
    def test_nothing_left(self, text):
        assert LLMOutputCleaner.clean_code(text) == ""
