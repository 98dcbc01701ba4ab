"""Unit tests for failure fingerprinting."""

import pytest

from src.api_healer.core.models import FailureType
from src.api_healer.services.fingerprinting_service import (
    MAX_SIGNATURE_LENGTH,
    compute_fingerprint,
    normalize_error_signature,
)


class TestNormalizeErrorSignature:
    """Test cases for error signature normalization."""

    @pytest.mark.parametrize("message,expected", [
        ("Expected: 200\nReceived: 404", "Expected: <n> Received: <n>"),
        ("User 123e4567-e89b-12d3-a456-426614174000 not found", "User <uuid> not found"),
        ("GET https://api.test/products/42 failed", "GET <url> failed"),
        ("Expected \"Widget\" got 'Gadget'", "Expected <str> got <str>"),
        ("Segfault at 0x1f3a", "Segfault at <hex>"),
        ("\x1b[31mExpected: 200\x1b[39m", "Expected: <n>"),
    ])
    def test_volatile_parts_replaced(self, message, expected):
        assert normalize_error_signature(message) == expected

    def test_stack_after_blank_line_dropped(self):
        message = "Boom 1\n\n    at handler (products.spec.ts:10:5)"

        assert normalize_error_signature(message) == "Boom <n>"

    def test_long_messages_truncated(self):
        assert len(normalize_error_signature("x" * 2000)) == MAX_SIGNATURE_LENGTH

    def test_empty_message(self):
        assert normalize_error_signature("") == ""
        assert normalize_error_signature(None) == ""


class TestComputeFingerprint:
    """Test cases for fingerprint stability."""

    def test_stable_across_volatile_values(self):
        first = compute_fingerprint("t::a", FailureType.ASSERTION, "Expected: 200\nReceived: 404", "1.0.0")
        second = compute_fingerprint("t::a", FailureType.ASSERTION, "Expected: 201\nReceived: 500", "1.0.0")

        assert first == second
        assert len(first) == 64

    def test_differs_by_test_type_and_spec_version(self):
        base = compute_fingerprint("t::a", FailureType.ASSERTION, "boom", "1.0.0")

        assert compute_fingerprint("t::b", FailureType.ASSERTION, "boom", "1.0.0") != base
        assert compute_fingerprint("t::a", FailureType.TIMEOUT, "boom", "1.0.0") != base
        assert compute_fingerprint("t::a", FailureType.ASSERTION, "boom", "2.0.0") != base
        assert compute_fingerprint("t::a", FailureType.ASSERTION, "bang", "1.0.0") != base

    def test_missing_spec_version(self):
        assert (compute_fingerprint("t::a", FailureType.UNKNOWN, "boom")
                == compute_fingerprint("t::a", FailureType.UNKNOWN, "boom", None))
