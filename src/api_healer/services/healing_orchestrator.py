"""
Healing Orchestrator Service for API test self-healing.

This service coordinates the healing workflow for failed API tests:

    DETECTED -> ANALYZING -> STRATEGY_SELECTED -> {AI_HEALING | RULE_HEALING}
             -> VALIDATING -> {HEALED | FAILED | BUDGET_EXCEEDED}

Decisions are cached per failure fingerprint, AI calls run under a shared
token/cost budget with exponential backoff, and every attempt is appended to
the healing history.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..core.errors import InvalidInputError
from ..core.healing_history import HealingHistory
from ..core.healing_utils import (
    create_failed_attempt,
    create_healing_attempt,
    estimate_cost,
    estimate_tokens,
    generate_attempt_id,
    parse_endpoint,
)
from ..core.logging_config import get_healing_logger
from ..core.metrics import MetricsCollector, get_metrics_collector
from ..core.models import (
    FailureAnalysis,
    FailureType,
    HealingAttempt,
    HealingConfiguration,
    HealingDecision,
    HealingOutcome,
    HealingRequest,
    HealingStatus,
    HealingStrategy,
    PatchedTest,
    SpecDiff,
)
from ..crew_ai.completion_client import CompletionClient, CompletionResult
from ..crew_ai.llm_output_cleaner import LLMOutputCleaner
from ..crew_ai.prompts import build_repair_prompt
from .budget import Budget
from .failure_analyzer import FailureAnalyzer
from .fingerprinting_service import compute_fingerprint
from .healing_cache import HealingCache, LeaderCancelledError
from .rule_based_healer import RuleBasedHealer, infer_endpoint
from .test_code_updater import PatchedTestWriter
from .test_code_validator import TestCodeValidator


logger = logging.getLogger(__name__)

Validator = Callable[[PatchedTest], Awaitable[bool]]

CANCELLED_REASON = "cancelled"


@dataclass
class HealingContext:
    """State shared by every healing in one run."""
    config: HealingConfiguration
    budget: Budget
    cache: HealingCache
    history: HealingHistory
    metrics: MetricsCollector

    @classmethod
    def create(cls, config: HealingConfiguration,
               metrics: Optional[MetricsCollector] = None) -> 'HealingContext':
        """Build a fresh context from configuration."""
        return cls(
            config=config,
            budget=Budget(config.max_tokens, config.max_cost_per_run),
            cache=HealingCache(ttl=config.cache_ttl, max_size=config.cache_max_size,
                               storage_path=config.cache_path),
            history=HealingHistory.load(config.history_path) if config.history_path else HealingHistory(),
            metrics=metrics or get_metrics_collector(),
        )


class HealingOrchestrator:
    """Main orchestrator for the API test self-healing workflow."""

    def __init__(
        self,
        context: HealingContext,
        completion_client: Optional[CompletionClient] = None,
        validator: Optional[Validator] = None,
        failure_analyzer: Optional[FailureAnalyzer] = None,
        rule_healer: Optional[RuleBasedHealer] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        """Initialize the healing orchestrator.

        Args:
            context: Shared config, budget, cache, history and metrics
            completion_client: AI completion capability; None disables AI healing
            validator: Optional async check that runs a patched test
            failure_analyzer: Failure classifier (default FailureAnalyzer)
            rule_healer: Deterministic patcher (default RuleBasedHealer)
            sleep: Awaitable used for backoff delays
            rng: Source of [0, 1) values for backoff jitter
        """
        self.context = context
        self.completion_client = completion_client
        self.validator = validator
        self.failure_analyzer = failure_analyzer or FailureAnalyzer()
        self.code_validator = TestCodeValidator()
        self.rule_healer = rule_healer or RuleBasedHealer(validator=self.code_validator)
        self.sleep = sleep
        self.rng = rng

        self.writer = PatchedTestWriter(self.config.backup_dir) if self.config.write_patched_tests else None

        # Outcomes waiting for complete_validation, by attempt id
        self._pending: Dict[str, HealingOutcome] = {}

        logger.info(
            f"Healing orchestrator initialized (AI healing: "
            f"{'enabled' if completion_client else 'disabled'}, "
            f"validator: {'yes' if validator else 'no'})")

    @property
    def config(self) -> HealingConfiguration:
        return self.context.config

    @property
    def budget(self) -> Budget:
        return self.context.budget

    @property
    def cache(self) -> HealingCache:
        return self.context.cache

    @property
    def history(self) -> HealingHistory:
        return self.context.history

    @property
    def metrics(self) -> MetricsCollector:
        return self.context.metrics

    async def heal(self, request: HealingRequest, spec_diff: Optional[SpecDiff] = None,
                   attempt_id: Optional[str] = None) -> HealingOutcome:
        """Run one failed test through the healing workflow.

        Args:
            request: Failed test result and its source code
            spec_diff: Optional diff between the spec the test targets and the current one
            attempt_id: Optional id for the attempt record

        Returns:
            HealingOutcome. Its attempt is HEALED, FAILED, BUDGET_EXCEEDED, or
            VALIDATING when no validator is configured.

        Raises:
            InvalidInputError: If the request lacks a test id or an error
        """
        self._validate_request(request)
        attempt_id = attempt_id or generate_attempt_id()

        try:
            return await asyncio.wait_for(
                self._heal(request, spec_diff, attempt_id),
                timeout=self.config.healing_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"⏱️ Healing {attempt_id} timed out after {self.config.healing_timeout}s")
            return self._cancelled_outcome(request, attempt_id)

    async def heal_many(self, requests: List[HealingRequest], spec_diff: Optional[SpecDiff] = None,
                        timeout: Optional[float] = None) -> List[HealingOutcome]:
        """Heal several tests with bounded concurrency.

        Tasks still running when the timeout expires are cancelled and resolve
        as cancelled failures. Invalid requests resolve as failures too.

        Returns:
            One outcome per request, in request order
        """
        semaphore = asyncio.Semaphore(self.config.max_concurrent_healings)
        attempt_ids = [generate_attempt_id() for _ in requests]

        async def run(request: HealingRequest, attempt_id: str) -> HealingOutcome:
            async with semaphore:
                return await self.heal(request, spec_diff, attempt_id)

        tasks = [asyncio.create_task(run(r, a)) for r, a in zip(requests, attempt_ids)]
        if not tasks:
            return []

        logger.info(f"🩹 Healing {len(tasks)} failed test(s), "
                    f"max {self.config.max_concurrent_healings} concurrently")
        try:
            done, pending = await asyncio.wait(tasks, timeout=timeout)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

        if pending:
            logger.warning(f"⏱️ Run timed out; cancelling {len(pending)} healing(s)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes = []
        for request, attempt_id, task in zip(requests, attempt_ids, tasks):
            if task.cancelled():
                outcomes.append(self._cancelled_outcome(request, attempt_id))
            elif task.exception() is not None:
                error = task.exception()
                if not isinstance(error, InvalidInputError):
                    raise error
                outcomes.append(self._rejected_outcome(request, attempt_id, str(error)))
            else:
                outcomes.append(task.result())
        return outcomes

    def complete_validation(self, outcome: HealingOutcome, passed: bool,
                            reason: Optional[str] = None) -> HealingOutcome:
        """Finalize a VALIDATING outcome once the patched test has been run.

        Raises:
            InvalidInputError: If the attempt is not awaiting validation
        """
        pending = self.history.get(outcome.attempt.id)
        if pending is None or pending.status != HealingStatus.VALIDATING:
            raise InvalidInputError(f"Attempt {outcome.attempt.id} is not awaiting validation")

        final = pending.finalized(passed, reason)
        self.history.append(final)
        self.metrics.record_validation(pending, final)
        self._pending.pop(final.id, None)

        finalized = replace(outcome, attempt=final)
        if passed:
            self._write_patched_test(finalized)
        logger.info(f"{'✅' if passed else '❌'} Validation for {final.test_ref}: {final.status.value}")
        return finalized

    def complete_validation_by_id(self, attempt_id: str, passed: bool,
                                  reason: Optional[str] = None) -> HealingOutcome:
        """complete_validation for callers that only hold the attempt id."""
        outcome = self._pending.get(attempt_id)
        if outcome is None:
            raise InvalidInputError(f"Attempt {attempt_id} is not awaiting validation")
        return self.complete_validation(outcome, passed, reason)

    def get_history(self, test_ref: Optional[str] = None) -> List[HealingAttempt]:
        """Latest record per attempt, optionally for one test."""
        attempts = self.history.latest()
        if test_ref:
            attempts = [a for a in attempts if a.test_ref == test_ref]
        return attempts

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate statistics over the latest record of every attempt."""
        attempts = self.history.latest()
        total = len(attempts)
        successful = sum(1 for a in attempts if a.status == HealingStatus.HEALED)
        by_strategy: Dict[str, int] = {}
        by_failure_type: Dict[str, int] = {}
        for attempt in attempts:
            by_strategy[attempt.strategy.value] = by_strategy.get(attempt.strategy.value, 0) + 1
            by_failure_type[attempt.failure_type.value] = by_failure_type.get(attempt.failure_type.value, 0) + 1

        cache_hits = sum(1 for a in attempts if a.cache_hit)
        return {
            "total": total,
            "successful": successful,
            "failed": sum(1 for a in attempts if a.status == HealingStatus.FAILED),
            "budget_exceeded": sum(1 for a in attempts if a.status == HealingStatus.BUDGET_EXCEEDED),
            "pending_validation": sum(1 for a in attempts if a.status == HealingStatus.VALIDATING),
            "success_rate": successful / total if total else 0.0,
            "average_healing_time": sum(a.duration for a in attempts) / total if total else 0.0,
            "by_strategy": by_strategy,
            "by_failure_type": by_failure_type,
            "cache_hit_rate": cache_hits / total if total else 0.0,
            "total_tokens": sum(a.tokens_used for a in attempts),
            "total_cost": round(sum(a.estimated_cost for a in attempts), 6),
        }

    def get_summary(self) -> Dict[str, Any]:
        """Short summary: attempt counts and time spent."""
        attempts = self.history.latest()
        total_time = sum(a.duration for a in attempts)
        return {
            "total_attempts": len(attempts),
            "successful_attempts": sum(1 for a in attempts if a.success),
            "failed_attempts": sum(1 for a in attempts if a.status.is_terminal and not a.success),
            "pending_validation": sum(1 for a in attempts if a.status == HealingStatus.VALIDATING),
            "total_time_spent": total_time,
            "average_time": total_time / len(attempts) if attempts else 0.0,
            "budget": self.budget.to_dict(),
            "cache": self.cache.stats.to_dict(),
        }

    def clear_history(self) -> None:
        self.history.clear()
        self._pending.clear()

    def get_config(self) -> HealingConfiguration:
        return replace(self.config)

    def update_config(self, config: HealingConfiguration) -> None:
        """Swap in new settings.

        Budget ceilings and cache limits take effect immediately. Usage so far,
        open reservations and cached entries are kept.
        """
        self.context.config = config
        self.budget.set_limits(config.max_tokens, config.max_cost_per_run)
        self.cache.configure(config.cache_ttl, config.cache_max_size)
        self.writer = PatchedTestWriter(config.backup_dir) if config.write_patched_tests else None
        logger.info("Healing configuration updated")

    # -- workflow ------------------------------------------------------------

    async def _heal(self, request: HealingRequest, spec_diff: Optional[SpecDiff],
                    attempt_id: str) -> HealingOutcome:
        start_time = datetime.now()
        test_result = request.test_result
        test_ref = test_result.test_id
        log = get_healing_logger("orchestrator", session_id=attempt_id, test_case=test_ref)
        log.info(f"🩺 {HealingStatus.DETECTED.value}: {test_ref}")

        if not self.config.enabled:
            decision = HealingDecision(strategy=HealingStrategy.FALLBACK, success=False,
                                       reason="Self-healing is disabled")
            attempt = create_healing_attempt(attempt_id, test_ref, start_time, FailureType.UNKNOWN,
                                             decision, HealingStatus.FAILED)
            self._record(attempt)
            return HealingOutcome(attempt=attempt, decision=decision)

        # ANALYZING
        analysis = self.failure_analyzer.analyze_failure(test_result)
        spec_version = request.spec_version or (spec_diff.new_version if spec_diff else None)
        self.cache.ensure_spec_version(spec_version)
        fingerprint = compute_fingerprint(test_ref, analysis.failure_type,
                                          test_result.error.message, spec_version)
        log.info(f"🔍 {HealingStatus.ANALYZING.value}: {analysis.failure_type.value} "
                 f"(confidence {analysis.confidence:.2f}, fingerprint {fingerprint[:12]})")

        try:
            decision, cache_hit = await self.cache.get_or_compute(
                fingerprint,
                lambda: self._decide(request, analysis, spec_diff, log),
                test_ref=test_ref)
            self.metrics.record_cache_lookup(cache_hit)
            if cache_hit:
                log.info(f"♻️ Reusing cached {decision.strategy.value} decision")

            status = self._status_for(decision)
            attempt = create_healing_attempt(attempt_id, test_ref, start_time, analysis.failure_type,
                                             decision, status, fingerprint, cache_hit)
            patched_test = self._patched_test(request, decision)

            if status == HealingStatus.VALIDATING and self.validator is not None:
                attempt = await self._run_validator(attempt, patched_test, log)
        except asyncio.CancelledError:
            attempt = create_failed_attempt(attempt_id, test_ref, start_time, analysis.failure_type,
                                            CANCELLED_REASON, fingerprint=fingerprint)
            self._record(attempt)
            log.warning(f"🛑 Healing cancelled for {test_ref}")
            raise
        except LeaderCancelledError:
            attempt = create_failed_attempt(attempt_id, test_ref, start_time, analysis.failure_type,
                                            CANCELLED_REASON, fingerprint=fingerprint)
            self._record(attempt)
            log.warning(f"🛑 Shared healing for {test_ref} was cancelled by its leader")
            return HealingOutcome(attempt=attempt, analysis=analysis)

        self._record(attempt)
        outcome = HealingOutcome(attempt=attempt, analysis=analysis, decision=decision,
                                 patched_test=patched_test)
        if attempt.status == HealingStatus.VALIDATING:
            self._pending[attempt.id] = outcome
        elif attempt.status == HealingStatus.HEALED:
            self._write_patched_test(outcome)

        log.info(f"🏁 {attempt.status.value}: {test_ref} via {attempt.strategy.value} "
                 f"({attempt.reason})")
        return outcome

    async def _decide(self, request: HealingRequest, analysis: FailureAnalysis,
                      spec_diff: Optional[SpecDiff], log) -> HealingDecision:
        """STRATEGY_SELECTED plus execution of the chosen strategy."""
        if self.budget.is_exhausted:
            log.info(f"💰 {HealingStatus.STRATEGY_SELECTED.value}: fallback (budget exhausted)")
            return self._budget_fallback(request, analysis, "Budget exhausted before healing")

        endpoint = parse_endpoint(request.endpoint) or infer_endpoint(request.test_code)
        rule_errors: List[str] = []
        if spec_diff is not None and endpoint is not None:
            rules = self.rule_healer.detect_rules(spec_diff, *endpoint)
            if rules:
                log.info(f"🔧 {HealingStatus.STRATEGY_SELECTED.value}: rule_based "
                         f"({', '.join(r.name for r in rules)})")
                log.info(f"🔧 {HealingStatus.RULE_HEALING.value}")
                result = self.rule_healer.apply_rules(request.test_code, rules)
                if result.success:
                    return HealingDecision(
                        strategy=HealingStrategy.RULE_BASED,
                        success=True,
                        reason=f"Applied {len(result.rules_applied)} rule(s) "
                               f"with confidence {result.confidence:.2f}",
                        patched_code=result.patched_code,
                        rules_applied=tuple(r.name for r in result.rules_applied),
                    )
                rule_errors = result.errors
                log.warning(f"⚠️ Rule-based healing failed: {'; '.join(result.errors)}")

        if self.completion_client is not None:
            log.info(f"🤖 {HealingStatus.STRATEGY_SELECTED.value}: ai_powered")
            return await self._ai_heal(request, analysis, spec_diff, endpoint, log)

        log.info(f"🩹 {HealingStatus.STRATEGY_SELECTED.value}: fallback")
        decision = self._fallback(request, analysis)
        if rule_errors and not decision.success:
            decision = replace(decision, reason=f"Rules failed ({'; '.join(rule_errors)}); {decision.reason}")
        return decision

    async def _ai_heal(self, request: HealingRequest, analysis: FailureAnalysis,
                       spec_diff: Optional[SpecDiff], endpoint: Optional[Tuple[str, str]],
                       log) -> HealingDecision:
        """AI_HEALING: reserve, call, commit or release, retry with backoff."""
        prompt = build_repair_prompt(request.test_code, analysis, spec_diff, endpoint)
        prompt_tokens = estimate_tokens(prompt)
        estimated_tokens = prompt_tokens + self.config.estimated_completion_tokens
        estimated_cost = estimate_cost(prompt_tokens, self.config.estimated_completion_tokens,
                                       self.config.prompt_price_per_1k, self.config.completion_price_per_1k)

        tokens_used, cost_used = 0, 0.0
        errors: List[str] = []
        tries = 0
        call_failed = False

        for retry in range(self.config.max_retries):
            if retry > 0:
                delay = self._backoff_delay(retry - 1)
                log.info(f"⏳ Retrying AI repair in {delay:.2f}s (try {retry + 1}/{self.config.max_retries})")
                await self.sleep(delay)

            reservation = self.budget.reserve(estimated_tokens, estimated_cost)
            if reservation is None:
                decision = self._budget_fallback(request, analysis, "Budget exceeded during AI healing")
                return replace(decision, tokens_used=tokens_used, estimated_cost=cost_used)

            tries += 1
            log.info(f"🤖 {HealingStatus.AI_HEALING.value}: try {tries} (~{estimated_tokens} tokens)")
            started = time.time()
            try:
                result = await asyncio.to_thread(self.completion_client.complete, prompt)
            except asyncio.CancelledError:
                self.budget.release(reservation)
                raise
            except Exception as e:
                result = CompletionResult.failure(f"{type(e).__name__}: {e}", prompt_tokens)
            self.metrics.record_ai_call(result.ok, time.time() - started, result.total_tokens)

            if not result.ok:
                self.budget.release(reservation)
                call_failed = True
                errors.append(result.error or "completion failed")
                log.warning(f"⚠️ AI call failed: {errors[-1]}")
                continue

            actual_cost = estimate_cost(result.prompt_tokens, result.completion_tokens,
                                        self.config.prompt_price_per_1k, self.config.completion_price_per_1k)
            self.budget.commit(reservation, result.total_tokens, actual_cost)
            tokens_used += result.total_tokens
            cost_used += actual_cost

            patched = LLMOutputCleaner.clean_code(result.text)
            check = self.code_validator.validate(request.test_code, patched)
            if check.valid:
                return HealingDecision(
                    strategy=HealingStrategy.AI_POWERED,
                    success=True,
                    reason=f"AI repair produced valid code on try {tries}",
                    patched_code=patched,
                    tokens_used=tokens_used,
                    estimated_cost=cost_used,
                )
            errors.append(f"invalid output: {'; '.join(check.errors)}")
            log.warning(f"⚠️ AI output rejected: {'; '.join(check.errors)}")

        decision = self._fallback(request, analysis)
        last_error = errors[-1] if errors else "no tries allowed"
        return replace(
            decision,
            reason=f"AI repair failed after {tries} tries ({last_error}); {decision.reason}",
            tokens_used=tokens_used,
            estimated_cost=cost_used,
            ai_unavailable=call_failed,
        )

    def _fallback(self, request: HealingRequest, analysis: FailureAnalysis) -> HealingDecision:
        """Deterministic patches that need neither a spec diff nor AI."""
        rules = self.rule_healer.fallback_rules(analysis)
        result = self.rule_healer.apply_rules(request.test_code, rules)
        if result.success:
            return HealingDecision(
                strategy=HealingStrategy.FALLBACK,
                success=True,
                reason="Fallback patch: " + "; ".join(r.description for r in result.rules_applied),
                patched_code=result.patched_code,
                rules_applied=tuple(r.name for r in result.rules_applied),
            )
        return HealingDecision(
            strategy=HealingStrategy.FALLBACK,
            success=False,
            reason="No automatic repair available: " + "; ".join(result.errors),
        )

    def _budget_fallback(self, request: HealingRequest, analysis: FailureAnalysis,
                         reason: str) -> HealingDecision:
        decision = self._fallback(request, analysis)
        if decision.success:
            return replace(decision, reason=f"{reason}; {decision.reason}")
        return replace(decision, reason=reason, budget_exceeded=True)

    def _backoff_delay(self, retry: int) -> float:
        """Delay in seconds before retry number ``retry + 1``."""
        base = min(self.config.max_delay_ms,
                   self.config.initial_delay_ms * (self.config.backoff_multiplier ** retry))
        jitter = self.config.jitter_factor * (2 * self.rng() - 1)
        return max(0.0, base * (1 + jitter)) / 1000

    # -- validation and recording ---------------------------------------------

    @staticmethod
    def _status_for(decision: HealingDecision) -> HealingStatus:
        if decision.success:
            return HealingStatus.VALIDATING
        if decision.budget_exceeded:
            return HealingStatus.BUDGET_EXCEEDED
        return HealingStatus.FAILED

    async def _run_validator(self, attempt: HealingAttempt, patched_test: PatchedTest,
                             log) -> HealingAttempt:
        log.info(f"🧪 {HealingStatus.VALIDATING.value}: running patched test")
        try:
            passed = bool(await self.validator(patched_test))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.warning(f"⚠️ Validator raised {type(e).__name__}: {e}")
            return attempt.finalized(False, f"validation error: {e}")
        return attempt.finalized(passed)

    @staticmethod
    def _patched_test(request: HealingRequest, decision: HealingDecision) -> Optional[PatchedTest]:
        if not decision.success or decision.patched_code is None:
            return None
        return PatchedTest(
            test_path=request.test_result.test_path,
            original_code=request.test_code,
            patched_code=decision.patched_code,
            strategy=decision.strategy,
            rules_applied=list(decision.rules_applied),
        )

    def _write_patched_test(self, outcome: HealingOutcome) -> None:
        if self.writer is None or outcome.patched_test is None:
            return
        result = self.writer.write_patched_test(outcome.patched_test)
        if not result.success:
            logger.error(f"Failed to write patched test {outcome.patched_test.test_path}: "
                         f"{result.error_message}")

    def _record(self, attempt: HealingAttempt) -> None:
        self.history.append(attempt)
        self.metrics.record_attempt(attempt)

    def _cancelled_outcome(self, request: HealingRequest, attempt_id: str) -> HealingOutcome:
        """Outcome for an attempt cancelled before or during healing."""
        attempt = self.history.get(attempt_id)
        if attempt is None:
            attempt = create_failed_attempt(attempt_id, request.test_result.test_id, datetime.now(),
                                            FailureType.UNKNOWN, CANCELLED_REASON)
            self._record(attempt)
        return HealingOutcome(attempt=attempt)

    def _rejected_outcome(self, request: HealingRequest, attempt_id: str, reason: str) -> HealingOutcome:
        attempt = create_failed_attempt(attempt_id, request.test_result.test_id, datetime.now(),
                                        FailureType.UNKNOWN, f"invalid input: {reason}")
        self._record(attempt)
        return HealingOutcome(attempt=attempt)

    @staticmethod
    def _validate_request(request: HealingRequest) -> None:
        result = request.test_result
        if not result.test_path or not result.test_name:
            raise InvalidInputError("Test result must have a test_path and a test_name")
        if result.error is None or not result.error.message:
            raise InvalidInputError(f"Test {result.test_id} has no error to heal")
