"""Utility functions for working with self-healing data models."""

import uuid
from datetime import datetime
from typing import Optional, Tuple

from .models import (
    FailureType,
    HealingAttempt,
    HealingDecision,
    HealingStatus,
    HealingStrategy,
)

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    """Rough token count: about four characters per token."""
    if not text:
        return 0
    return max(1, (len(text) + CHARS_PER_TOKEN - 1) // CHARS_PER_TOKEN)


def estimate_cost(prompt_tokens: int, completion_tokens: int,
                  prompt_price_per_1k: float, completion_price_per_1k: float) -> float:
    """Dollar cost of a completion at per-1K-token prices."""
    return (prompt_tokens / 1000) * prompt_price_per_1k + (completion_tokens / 1000) * completion_price_per_1k


def generate_attempt_id() -> str:
    return str(uuid.uuid4())


def parse_endpoint(endpoint: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split "PUT /products/{id}" into ("PUT", "/products/{id}")."""
    if not endpoint:
        return None
    method, _, path = endpoint.strip().partition(" ")
    if not path:
        return None
    return method.upper(), path.strip()


def create_healing_attempt(
    attempt_id: str,
    test_ref: str,
    start_time: datetime,
    failure_type: FailureType,
    decision: HealingDecision,
    status: HealingStatus,
    fingerprint: str = "",
    cache_hit: bool = False,
) -> HealingAttempt:
    """Build the attempt record for a decision.

    Cache hits report zero tokens and cost: the spend belongs to the attempt
    that produced the decision.
    """
    return HealingAttempt(
        id=attempt_id,
        test_ref=test_ref,
        strategy=decision.strategy,
        status=status,
        start_time=start_time,
        end_time=datetime.now(),
        success=status == HealingStatus.HEALED,
        failure_type=failure_type,
        cache_hit=cache_hit,
        tokens_used=0 if cache_hit else decision.tokens_used,
        estimated_cost=0.0 if cache_hit else decision.estimated_cost,
        reason=decision.reason,
        fingerprint=fingerprint,
        rules_applied=decision.rules_applied,
    )


def create_failed_attempt(
    attempt_id: str,
    test_ref: str,
    start_time: datetime,
    failure_type: FailureType,
    reason: str,
    strategy: HealingStrategy = HealingStrategy.FALLBACK,
    fingerprint: str = "",
) -> HealingAttempt:
    """Build a FAILED attempt that never produced a decision (e.g. cancellation)."""
    return HealingAttempt(
        id=attempt_id,
        test_ref=test_ref,
        strategy=strategy,
        status=HealingStatus.FAILED,
        start_time=start_time,
        end_time=datetime.now(),
        success=False,
        failure_type=failure_type,
        reason=reason,
        fingerprint=fingerprint,
    )
