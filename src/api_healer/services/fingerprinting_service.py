"""Failure fingerprinting for the healing cache.

A fingerprint identifies "the same failure of the same test against the same
spec version". Volatile parts of the error message (ids, numbers, URLs, quoted
values, colors) are normalized away so reruns map onto one cache entry.
"""

import hashlib
import logging
import re
from typing import Optional

from ..core.models import FailureType
from .failure_analyzer import clean_error_message


logger = logging.getLogger(__name__)

# Applied in order; UUIDs and URLs before bare numbers
SIGNATURE_NORMALIZERS = [
    (re.compile(r'[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}', re.IGNORECASE), '<uuid>'),
    (re.compile(r'https?://[^\s\'"<>)]+'), '<url>'),
    (re.compile(r'"[^"\n]*"|\'[^\'\n]*\'|`[^`\n]*`'), '<str>'),
    (re.compile(r'\b0x[0-9a-f]+\b', re.IGNORECASE), '<hex>'),
    (re.compile(r'\d+(?:\.\d+)?'), '<n>'),
    (re.compile(r'\s+'), ' '),
]

# Only the head of long messages carries the signature
MAX_SIGNATURE_LENGTH = 500


def normalize_error_signature(message: str) -> str:
    """Reduce an error message to its stable shape."""
    signature = clean_error_message(message)
    # Stack frames and logs after the first blank line vary between runs
    signature = signature.split("\n\n", 1)[0]
    for pattern, replacement in SIGNATURE_NORMALIZERS:
        signature = pattern.sub(replacement, signature)
    return signature.strip()[:MAX_SIGNATURE_LENGTH]


def compute_fingerprint(test_id: str, failure_type: FailureType, error_message: str,
                        spec_version: Optional[str] = None) -> str:
    """Stable sha256 fingerprint of (test id, failure type, signature, spec version)."""
    signature = normalize_error_signature(error_message)
    material = "|".join([test_id, failure_type.value, signature, spec_version or ""])
    fingerprint = hashlib.sha256(material.encode("utf-8")).hexdigest()
    logger.debug(f"Fingerprint {fingerprint[:12]} for {test_id} ({failure_type.value})")
    return fingerprint
