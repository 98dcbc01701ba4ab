"""
LLM Output Cleaner - extracts repaired test code from model responses.

Models rarely return bare code. Typical responses wrap the code in markdown
fences and surround it with explanations:

    "Here is the fixed test:
    ```typescript
    test('...', async ({ request }) => { ... });
    ```
    I renamed the field because..."

The cleaner keeps only the code so that it can be validated and written back.
"""

import re
import logging

logger = logging.getLogger(__name__)


class LLMOutputCleaner:
    """Static helpers that turn a raw completion into test source."""

    FENCE_PATTERN = re.compile(r'```[ \t]*([\w+-]*)[ \t]*\n(.*?)```', re.DOTALL)

    # Lines models put before or after the code
    CHATTER_PATTERNS = [
        r'^(?:here(?:\'s| is)|below is|this is)\b.*:\s*$',
        r'^(?:sure|certainly|of course)[,!.].*$',
        r'^(?:the|i) (?:fixed|updated|repaired|changed)\b.*$',
        r'^(?:explanation|changes made|notes?)\s*:.*$',
    ]

    CODE_LANGUAGES = ("", "ts", "typescript", "js", "javascript", "tsx", "jsx")

    @staticmethod
    def extract_code_block(text: str) -> str:
        """
        Return the most relevant fenced block, or the text itself when unfenced.

        A block in a TypeScript/JavaScript fence wins over other languages; among
        those the longest block is taken.
        """
        blocks = LLMOutputCleaner.FENCE_PATTERN.findall(text)
        if not blocks:
            return text

        code_blocks = [body for lang, body in blocks if lang.lower() in LLMOutputCleaner.CODE_LANGUAGES]
        candidates = code_blocks or [body for _, body in blocks]
        return max(candidates, key=len)

    @staticmethod
    def strip_chatter(text: str) -> str:
        """Drop leading and trailing prose lines around the code."""
        lines = text.split('\n')

        def is_chatter(line: str) -> bool:
            stripped = line.strip()
            return any(re.match(p, stripped, re.IGNORECASE) for p in LLMOutputCleaner.CHATTER_PATTERNS)

        while lines and (not lines[0].strip() or is_chatter(lines[0])):
            lines.pop(0)
        while lines and (not lines[-1].strip() or is_chatter(lines[-1])):
            lines.pop()
        return '\n'.join(lines)

    @staticmethod
    def clean_code(text: str) -> str:
        """
        Apply all cleaning operations to a completion.

        Args:
            text: Raw model output

        Returns:
            Test source ready for structural validation; empty string if nothing is left
        """
        if not isinstance(text, str):
            return ""

        cleaned = LLMOutputCleaner.extract_code_block(text.strip())
        cleaned = LLMOutputCleaner.strip_chatter(cleaned)

        if cleaned != text.strip():
            logger.debug(f"🧹 Cleaned LLM output (length: {len(text)} → {len(cleaned)})")
        return cleaned.strip() + "\n" if cleaned.strip() else ""
