"""Data models for the test self-healing system."""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .failure_models import FailureAnalysis, FailureType, TestResult


class HealingStrategy(Enum):
    """Repair strategies the orchestrator can select."""
    AI_POWERED = "ai_powered"
    RULE_BASED = "rule_based"
    FALLBACK = "fallback"


class HealingStatus(Enum):
    """States of a single healing attempt."""
    DETECTED = "detected"
    ANALYZING = "analyzing"
    STRATEGY_SELECTED = "strategy_selected"
    AI_HEALING = "ai_healing"
    RULE_HEALING = "rule_healing"
    VALIDATING = "validating"
    HEALED = "healed"
    FAILED = "failed"
    BUDGET_EXCEEDED = "budget_exceeded"

    @property
    def is_terminal(self) -> bool:
        return self in (HealingStatus.HEALED, HealingStatus.FAILED, HealingStatus.BUDGET_EXCEEDED)


@dataclass
class HealingConfiguration:
    """Configuration settings for the self-healing system."""
    enabled: bool = True

    # Retry and backoff for AI calls
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.25

    # Budget
    max_tokens: int = 100000
    max_cost_per_run: float = 5.0
    prompt_price_per_1k: float = 0.03
    completion_price_per_1k: float = 0.06
    estimated_completion_tokens: int = 1500

    # Cache
    cache_ttl: int = 3600  # seconds
    cache_max_size: int = 1000
    cache_path: Optional[str] = None

    # Concurrency
    max_concurrent_healings: int = 3
    healing_timeout: int = 300  # seconds

    # History and output
    history_path: Optional[str] = None
    write_patched_tests: bool = False
    backup_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "enabled": self.enabled,
            "max_retries": self.max_retries,
            "initial_delay_ms": self.initial_delay_ms,
            "max_delay_ms": self.max_delay_ms,
            "backoff_multiplier": self.backoff_multiplier,
            "jitter_factor": self.jitter_factor,
            "max_tokens": self.max_tokens,
            "max_cost_per_run": self.max_cost_per_run,
            "prompt_price_per_1k": self.prompt_price_per_1k,
            "completion_price_per_1k": self.completion_price_per_1k,
            "estimated_completion_tokens": self.estimated_completion_tokens,
            "cache_ttl": self.cache_ttl,
            "cache_max_size": self.cache_max_size,
            "cache_path": self.cache_path,
            "max_concurrent_healings": self.max_concurrent_healings,
            "healing_timeout": self.healing_timeout,
            "history_path": self.history_path,
            "write_patched_tests": self.write_patched_tests,
            "backup_dir": self.backup_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingConfiguration':
        """Create configuration from dictionary, ignoring unknown keys."""
        known = set(cls().to_dict())
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class HealingDecision:
    """Outcome of strategy selection and execution; the unit stored in the cache."""
    strategy: HealingStrategy
    success: bool
    reason: str
    patched_code: Optional[str] = None
    rules_applied: Tuple[str, ...] = ()
    tokens_used: int = 0
    estimated_cost: float = 0.0
    budget_exceeded: bool = False
    ai_unavailable: bool = False

    @property
    def cacheable(self) -> bool:
        # Budget exhaustion and AI outages are properties of the run, not of the failure.
        return not (self.budget_exceeded or self.ai_unavailable)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "success": self.success,
            "reason": self.reason,
            "patched_code": self.patched_code,
            "rules_applied": list(self.rules_applied),
            "tokens_used": self.tokens_used,
            "estimated_cost": self.estimated_cost,
            "budget_exceeded": self.budget_exceeded,
            "ai_unavailable": self.ai_unavailable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingDecision':
        return cls(
            strategy=HealingStrategy(data["strategy"]),
            success=bool(data["success"]),
            reason=data.get("reason", ""),
            patched_code=data.get("patched_code"),
            rules_applied=tuple(data.get("rules_applied") or ()),
            tokens_used=int(data.get("tokens_used", 0)),
            estimated_cost=float(data.get("estimated_cost", 0.0)),
            budget_exceeded=bool(data.get("budget_exceeded", False)),
            ai_unavailable=bool(data.get("ai_unavailable", False)),
        )


@dataclass(frozen=True)
class HealingCacheEntry:
    """Cached decision for a failure fingerprint. Times are epoch seconds."""
    fingerprint: str
    decision: HealingDecision
    created_at: float
    expires_at: float
    test_ref: str = ""

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "fingerprint": self.fingerprint,
            "decision": self.decision.to_dict(),
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "test_ref": self.test_ref,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingCacheEntry':
        return cls(
            fingerprint=data["fingerprint"],
            decision=HealingDecision.from_dict(data["decision"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            test_ref=data.get("test_ref", ""),
        )


@dataclass(frozen=True)
class HealingAttempt:
    """Record of one repair try. Finalizing an attempt produces a new record."""
    id: str
    test_ref: str
    strategy: HealingStrategy
    status: HealingStatus
    start_time: datetime
    end_time: datetime
    success: bool
    failure_type: FailureType
    cache_hit: bool = False
    tokens_used: int = 0
    estimated_cost: float = 0.0
    reason: str = ""
    fingerprint: str = ""
    rules_applied: Tuple[str, ...] = ()

    @property
    def duration(self) -> float:
        """Attempt duration in seconds."""
        return (self.end_time - self.start_time).total_seconds()

    def finalized(self, passed: bool, reason: Optional[str] = None) -> 'HealingAttempt':
        """Return the terminal version of a VALIDATING attempt."""
        return replace(
            self,
            status=HealingStatus.HEALED if passed else HealingStatus.FAILED,
            success=passed,
            end_time=datetime.now(),
            reason=reason or ("validated" if passed else "patched test failed validation"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "test_ref": self.test_ref,
            "strategy": self.strategy.value,
            "status": self.status.value,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "duration": self.duration,
            "success": self.success,
            "failure_type": self.failure_type.value,
            "cache_hit": self.cache_hit,
            "tokens_used": self.tokens_used,
            "estimated_cost": self.estimated_cost,
            "reason": self.reason,
            "fingerprint": self.fingerprint,
            "rules_applied": list(self.rules_applied),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'HealingAttempt':
        return cls(
            id=data["id"],
            test_ref=data["test_ref"],
            strategy=HealingStrategy(data["strategy"]),
            status=HealingStatus(data["status"]),
            start_time=datetime.fromisoformat(data["start_time"]),
            end_time=datetime.fromisoformat(data["end_time"]),
            success=bool(data["success"]),
            failure_type=FailureType(data["failure_type"]),
            cache_hit=bool(data.get("cache_hit", False)),
            tokens_used=int(data.get("tokens_used", 0)),
            estimated_cost=float(data.get("estimated_cost", 0.0)),
            reason=data.get("reason", ""),
            fingerprint=data.get("fingerprint", ""),
            rules_applied=tuple(data.get("rules_applied") or ()),
        )


@dataclass
class HealingRequest:
    """A failing test submitted for repair."""
    test_result: TestResult
    test_code: str
    spec_version: Optional[str] = None
    endpoint: Optional[str] = None  # "METHOD /path", inferred from test code when absent


@dataclass
class PatchedTest:
    """Repaired test source produced by a successful decision."""
    test_path: str
    original_code: str
    patched_code: str
    strategy: HealingStrategy
    rules_applied: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "test_path": self.test_path,
            "original_code": self.original_code,
            "patched_code": self.patched_code,
            "strategy": self.strategy.value,
            "rules_applied": self.rules_applied,
        }


@dataclass
class HealingOutcome:
    """What heal() returns to the caller."""
    attempt: HealingAttempt
    analysis: Optional[FailureAnalysis] = None
    decision: Optional[HealingDecision] = None
    patched_test: Optional[PatchedTest] = None

    @property
    def status(self) -> HealingStatus:
        return self.attempt.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt": self.attempt.to_dict(),
            "analysis": self.analysis.to_dict() if self.analysis else None,
            "decision": self.decision.to_dict() if self.decision else None,
            "patched_test": self.patched_test.to_dict() if self.patched_test else None,
        }
