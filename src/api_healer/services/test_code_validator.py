"""Structural checks for patched test code before it is handed to validation."""

import logging
from dataclasses import dataclass, field
from typing import List

logger = logging.getLogger(__name__)

BRACKET_PAIRS = {")": "(", "]": "[", "}": "{"}


@dataclass
class CodeCheckResult:
    """Outcome of the structural checks on patched code."""
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def brackets_balanced(code: str) -> bool:
    """True when (), [] and {} nest correctly outside strings and comments."""
    stack: List[str] = []
    i, length = 0, len(code)
    while i < length:
        ch = code[i]
        nxt = code[i + 1] if i + 1 < length else ""

        if ch == "/" and nxt == "/":
            newline = code.find("\n", i)
            i = length if newline == -1 else newline
            continue
        if ch == "/" and nxt == "*":
            end = code.find("*/", i + 2)
            i = length if end == -1 else end + 2
            continue
        if ch in "\"'`":
            i += 1
            while i < length and code[i] != ch:
                if code[i] == "\\":
                    i += 1
                elif ch != "`" and code[i] == "\n":
                    break
                i += 1
            i += 1
            continue

        if ch in "([{":
            stack.append(ch)
        elif ch in BRACKET_PAIRS:
            if not stack or stack.pop() != BRACKET_PAIRS[ch]:
                return False
        i += 1
    return not stack


class TestCodeValidator:
    """Rejects patched code that cannot be a working test."""

    __test__ = False

    def validate(self, original_code: str, patched_code: str) -> CodeCheckResult:
        errors = []
        warnings = []

        if not patched_code or not patched_code.strip():
            errors.append("Patched code is empty")
            return CodeCheckResult(valid=False, errors=errors)

        if patched_code.strip() == (original_code or "").strip():
            errors.append("Patched code is identical to the original")
        if not brackets_balanced(patched_code):
            errors.append("Unbalanced brackets")
        if "test(" not in patched_code and "it(" not in patched_code:
            errors.append("Missing test() or it() block")
        if "expect(" not in patched_code:
            errors.append("Missing expect() assertions")

        if "console.log(" in patched_code:
            warnings.append("Contains console.log statements")
        if "await" in (original_code or "") and "await" not in patched_code:
            warnings.append("Patched code dropped all await expressions")

        if errors:
            logger.debug(f"Patched code rejected: {', '.join(errors)}")
        return CodeCheckResult(valid=not errors, errors=errors, warnings=warnings)
