"""
Unit tests for the healing orchestrator.
"""

import asyncio
import threading
from unittest.mock import AsyncMock, call

import pytest

from src.api_healer.core.errors import InvalidInputError
from src.api_healer.core.metrics import MetricsCollector
from src.api_healer.core.models import (
    HealingConfiguration,
    HealingRequest,
    HealingStatus,
    HealingStrategy,
)
from src.api_healer.crew_ai.completion_client import CompletionResult
from src.api_healer.services.healing_orchestrator import HealingContext, HealingOrchestrator
from src.api_healer.services.spec_diff_analyzer import SpecDiffAnalyzer


VALUE_MISMATCH = "Error: expect(received).toBe(expected)\n\nExpected: \"Widget\"\nReceived: undefined"
TIMEOUT_MESSAGE = "Test timeout of 5000ms exceeded."


class FakeCompletionClient:
    """Completion client returning scripted results; exceptions are raised."""

    def __init__(self, *results):
        self.results = list(results)
        self.prompts = []
        self._lock = threading.Lock()

    def complete(self, prompt):
        with self._lock:
            self.prompts.append(prompt)
            result = self.results[min(len(self.prompts), len(self.results)) - 1]
        if isinstance(result, Exception):
            raise result
        return result


def fenced(code):
    return CompletionResult.success(f"Here is the fixed test:\n```typescript\n{code}```\n", 100, 50)


@pytest.fixture
def spec_diff(old_spec, new_spec):
    return SpecDiffAnalyzer().compare_specs(old_spec, new_spec)


@pytest.fixture
def make_orchestrator():
    """Factory for orchestrators with deterministic backoff."""
    def _make(client=None, validator=None, **config):
        context = HealingContext.create(HealingConfiguration(**config), metrics=MetricsCollector())
        return HealingOrchestrator(context, completion_client=client, validator=validator,
                                   sleep=AsyncMock(), rng=lambda: 0.5)
    return _make


@pytest.fixture
def make_request(make_test_result):
    def _make(code, message=VALUE_MISMATCH, test_name="get product", **kwargs):
        return HealingRequest(test_result=make_test_result(message, test_name=test_name),
                              test_code=code, **kwargs)
    return _make


class TestRuleBasedHealing:
    """Test cases for healing driven by the spec diff."""

    @pytest.mark.asyncio
    async def test_rename_rule_heals(self, make_orchestrator, make_request, spec_diff, product_test_code):
        orchestrator = make_orchestrator()

        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        assert outcome.status == HealingStatus.VALIDATING
        assert outcome.attempt.strategy == HealingStrategy.RULE_BASED
        assert outcome.attempt.reason == "Applied 1 rule(s) with confidence 0.95"
        assert outcome.attempt.rules_applied == ("field_rename:product_name->productName",)
        assert "body.productName" in outcome.patched_test.patched_code
        assert outcome.patched_test.original_code == product_test_code
        assert outcome.attempt.tokens_used == 0

    @pytest.mark.asyncio
    async def test_repeat_failure_is_cache_hit(self, make_orchestrator, make_request, spec_diff,
                                               product_test_code):
        orchestrator = make_orchestrator()

        first = await orchestrator.heal(make_request(product_test_code), spec_diff)
        second = await orchestrator.heal(make_request(product_test_code), spec_diff)

        assert not first.attempt.cache_hit
        assert second.attempt.cache_hit
        assert second.attempt.fingerprint == first.attempt.fingerprint
        assert second.patched_test.patched_code == first.patched_test.patched_code
        assert orchestrator.metrics.get_current_metrics().cache_hits == 1

    @pytest.mark.asyncio
    async def test_new_spec_version_invalidates_cache(self, make_orchestrator, make_request, spec_diff,
                                                      product_test_code):
        orchestrator = make_orchestrator()

        await orchestrator.heal(make_request(product_test_code, spec_version="2.0.0"), spec_diff)
        outcome = await orchestrator.heal(make_request(product_test_code, spec_version="3.0.0"), spec_diff)

        assert not outcome.attempt.cache_hit
        assert len(orchestrator.cache) == 1

    @pytest.mark.asyncio
    async def test_rule_errors_reported_when_nothing_else_works(self, make_orchestrator, make_request,
                                                                spec_diff):
        code = ("test('get product', async ({ request }) => {\n"
                "  const r = await request.get('/products/42');\n"
                "  expect(r.ok()).toBeTruthy();\n"
                "});\n")
        orchestrator = make_orchestrator()

        outcome = await orchestrator.heal(make_request(code), spec_diff)

        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.reason.startswith(
            "Rules failed (No rule matched the test code); No automatic repair available")

    @pytest.mark.asyncio
    async def test_explicit_endpoint_overrides_inference(self, make_orchestrator, make_request, spec_diff):
        code = ("test('get user', async ({ request }) => {\n"
                "  const response = await request.get(url);\n"
                "  expect(response.status()).toBe(200);\n"
                "});\n")
        orchestrator = make_orchestrator()

        outcome = await orchestrator.heal(
            make_request(code, test_name="get user", endpoint="GET /users/7"), spec_diff)

        # The path rule has nothing to rewrite in code that builds its URL elsewhere
        assert outcome.status == HealingStatus.FAILED
        assert "Rules failed" in outcome.attempt.reason


class TestAIHealing:
    """Test cases for AI-powered healing."""

    @pytest.mark.asyncio
    async def test_ai_repair(self, make_orchestrator, make_request, product_test_code):
        repaired = product_test_code.replace("product_name", "productName")
        client = FakeCompletionClient(fenced(repaired))
        orchestrator = make_orchestrator(client)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.attempt.strategy == HealingStrategy.AI_POWERED
        assert outcome.status == HealingStatus.VALIDATING
        assert outcome.attempt.reason == "AI repair produced valid code on try 1"
        assert outcome.patched_test.patched_code == repaired
        assert outcome.attempt.tokens_used == 150
        assert outcome.attempt.estimated_cost == pytest.approx(0.006)
        assert orchestrator.budget.used_tokens == 150
        assert orchestrator.budget.open_reservations == 0
        assert "--- ORIGINAL TEST CODE ---" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_retries_with_backoff(self, make_orchestrator, make_request, product_test_code):
        repaired = product_test_code.replace("product_name", "productName")
        client = FakeCompletionClient(CompletionResult.failure("rate limited"),
                                      RuntimeError("connection reset"),
                                      fenced(repaired))
        orchestrator = make_orchestrator(client)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.attempt.reason == "AI repair produced valid code on try 3"
        assert orchestrator.sleep.await_args_list == [call(1.0), call(2.0)]
        assert orchestrator.budget.used_tokens == 150
        assert orchestrator.budget.open_reservations == 0
        metrics = orchestrator.metrics.get_current_metrics()
        assert (metrics.ai_calls, metrics.ai_failures) == (3, 2)

    @pytest.mark.asyncio
    async def test_exhausted_retries_fall_back(self, make_orchestrator, make_request, product_test_code):
        client = FakeCompletionClient(RuntimeError("down"))
        orchestrator = make_orchestrator(client)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.strategy == HealingStrategy.FALLBACK
        assert outcome.attempt.reason.startswith("AI repair failed after 3 tries (RuntimeError: down); ")
        assert len(client.prompts) == 3
        assert orchestrator.budget.used_tokens == 0
        assert len(orchestrator.cache) == 0

    @pytest.mark.asyncio
    async def test_ai_outage_not_cached(self, make_orchestrator, make_request, product_test_code):
        repaired = product_test_code.replace("product_name", "productName")
        client = FakeCompletionClient(RuntimeError("down"), RuntimeError("down"), fenced(repaired))
        orchestrator = make_orchestrator(client, max_retries=2)

        first = await orchestrator.heal(make_request(product_test_code))
        second = await orchestrator.heal(make_request(product_test_code))

        assert (first.status, first.attempt.strategy) == (HealingStatus.FAILED, HealingStrategy.FALLBACK)
        assert first.decision.ai_unavailable
        assert second.attempt.strategy == HealingStrategy.AI_POWERED
        assert second.status == HealingStatus.VALIDATING
        assert not second.attempt.cache_hit
        assert len(client.prompts) == 3

    @pytest.mark.asyncio
    async def test_invalid_output_still_costs_tokens(self, make_orchestrator, make_request, product_test_code):
        client = FakeCompletionClient(CompletionResult.success("I cannot help with that.", 100, 50))
        orchestrator = make_orchestrator(client, max_retries=2)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.status == HealingStatus.FAILED
        assert "invalid output" in outcome.attempt.reason
        assert outcome.attempt.tokens_used == 300
        assert orchestrator.budget.used_tokens == 300
        assert len(orchestrator.cache) == 1

    @pytest.mark.asyncio
    async def test_zero_retries_skips_ai(self, make_orchestrator, make_request, timeout_test_code):
        client = FakeCompletionClient(RuntimeError("never called"))
        orchestrator = make_orchestrator(client, max_retries=0)

        outcome = await orchestrator.heal(make_request(timeout_test_code, message=TIMEOUT_MESSAGE))

        assert client.prompts == []
        assert outcome.attempt.strategy == HealingStrategy.FALLBACK
        assert outcome.attempt.reason.startswith("AI repair failed after 0 tries (no tries allowed); ")

    @pytest.mark.asyncio
    async def test_concurrent_identical_failures_share_one_call(self, make_orchestrator, make_request,
                                                                product_test_code):
        repaired = product_test_code.replace("product_name", "productName")
        client = FakeCompletionClient(fenced(repaired))
        orchestrator = make_orchestrator(client)

        outcomes = await orchestrator.heal_many([make_request(product_test_code) for _ in range(3)])

        assert len(client.prompts) == 1
        assert sorted(o.attempt.cache_hit for o in outcomes) == [False, True, True]
        assert sum(o.attempt.tokens_used for o in outcomes) == 150


class TestBudget:
    """Test cases for budget enforcement."""

    @pytest.mark.asyncio
    async def test_reservation_refused(self, make_orchestrator, make_request, product_test_code):
        client = FakeCompletionClient(RuntimeError("never called"))
        orchestrator = make_orchestrator(client, max_tokens=10)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.status == HealingStatus.BUDGET_EXCEEDED
        assert outcome.attempt.reason == "Budget exceeded during AI healing"
        assert client.prompts == []
        assert len(orchestrator.cache) == 0

    @pytest.mark.asyncio
    async def test_exhausted_budget_still_allows_fallback(self, make_orchestrator, make_request,
                                                          timeout_test_code):
        orchestrator = make_orchestrator(FakeCompletionClient(RuntimeError("never called")), max_tokens=0)

        outcome = await orchestrator.heal(make_request(timeout_test_code, message=TIMEOUT_MESSAGE))

        assert outcome.attempt.strategy == HealingStrategy.FALLBACK
        assert outcome.status == HealingStatus.VALIDATING
        assert outcome.attempt.reason.startswith("Budget exhausted before healing; Fallback patch:")
        assert "test.setTimeout(10000)" in outcome.patched_test.patched_code


class TestFallbackAndLifecycle:
    """Test cases for fallback, validation and bookkeeping."""

    @pytest.mark.asyncio
    async def test_fallback_timeout_patch(self, make_orchestrator, make_request, timeout_test_code):
        orchestrator = make_orchestrator()

        outcome = await orchestrator.heal(make_request(timeout_test_code, message=TIMEOUT_MESSAGE))

        assert outcome.attempt.strategy == HealingStrategy.FALLBACK
        assert outcome.status == HealingStatus.VALIDATING
        assert outcome.attempt.reason.startswith("Fallback patch: Increase timeout")

    @pytest.mark.asyncio
    async def test_disabled(self, make_orchestrator, make_request, product_test_code):
        orchestrator = make_orchestrator(enabled=False)

        outcome = await orchestrator.heal(make_request(product_test_code))

        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.reason == "Self-healing is disabled"
        assert len(orchestrator.history) == 1

    @pytest.mark.asyncio
    async def test_missing_error_rejected(self, make_orchestrator, make_test_result, product_test_code):
        orchestrator = make_orchestrator()
        request = HealingRequest(test_result=make_test_result(None, status="passed"),
                                 test_code=product_test_code)

        with pytest.raises(InvalidInputError):
            await orchestrator.heal(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("passed,status,reason", [
        (True, HealingStatus.HEALED, "validated"),
        (False, HealingStatus.FAILED, "patched test failed validation"),
    ])
    async def test_validator_result(self, make_orchestrator, make_request, spec_diff, product_test_code,
                                    passed, status, reason):
        validator = AsyncMock(return_value=passed)
        orchestrator = make_orchestrator(validator=validator)

        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        assert outcome.status == status
        assert outcome.attempt.success is passed
        assert outcome.attempt.reason == reason
        patched_test = validator.await_args.args[0]
        assert "productName" in patched_test.patched_code

    @pytest.mark.asyncio
    async def test_validator_error_fails_attempt(self, make_orchestrator, make_request, spec_diff,
                                                 product_test_code):
        orchestrator = make_orchestrator(validator=AsyncMock(side_effect=RuntimeError("runner crashed")))

        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.reason == "validation error: runner crashed"

    @pytest.mark.asyncio
    async def test_complete_validation(self, make_orchestrator, make_request, spec_diff, product_test_code):
        orchestrator = make_orchestrator()
        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        final = orchestrator.complete_validation(outcome, passed=True)

        assert final.status == HealingStatus.HEALED
        assert len(orchestrator.history.records()) == 2
        assert orchestrator.get_history()[0].status == HealingStatus.HEALED
        metrics = orchestrator.metrics.get_current_metrics()
        assert (metrics.successful_healings, metrics.pending_validation) == (1, 0)
        with pytest.raises(InvalidInputError):
            orchestrator.complete_validation(outcome, passed=False)

    @pytest.mark.asyncio
    async def test_complete_validation_by_id(self, make_orchestrator, make_request, spec_diff,
                                             product_test_code):
        orchestrator = make_orchestrator()
        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        final = orchestrator.complete_validation_by_id(outcome.attempt.id, passed=False, reason="still 404")

        assert final.status == HealingStatus.FAILED
        assert final.attempt.reason == "still 404"
        with pytest.raises(InvalidInputError):
            orchestrator.complete_validation_by_id("unknown", passed=True)

    @pytest.mark.asyncio
    async def test_healed_test_written_to_disk(self, make_orchestrator, make_test_result, spec_diff,
                                               product_test_code, tmp_path):
        test_file = tmp_path / "products.spec.ts"
        test_file.write_text(product_test_code, encoding="utf-8")
        orchestrator = make_orchestrator(validator=AsyncMock(return_value=True), write_patched_tests=True,
                                         backup_dir=str(tmp_path / "backups"))
        request = HealingRequest(test_result=make_test_result(VALUE_MISMATCH, test_path=str(test_file)),
                                 test_code=product_test_code)

        outcome = await orchestrator.heal(request, spec_diff)

        assert outcome.status == HealingStatus.HEALED
        assert "body.productName" in test_file.read_text(encoding="utf-8")
        assert len(list((tmp_path / "backups").iterdir())) == 1

    @pytest.mark.asyncio
    async def test_healing_timeout(self, make_orchestrator, make_request, spec_diff, product_test_code):
        async def hanging_validator(patched_test):
            await asyncio.sleep(10)
            return True

        orchestrator = make_orchestrator(validator=hanging_validator, healing_timeout=0.05)

        outcome = await orchestrator.heal(make_request(product_test_code), spec_diff)

        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.reason == "cancelled"
        assert len(orchestrator.history) == 1

    @pytest.mark.asyncio
    async def test_cancelled_leader_fails_waiter_without_cancelling_it(self, make_orchestrator, make_request,
                                                                      product_test_code):
        orchestrator = make_orchestrator()
        started = asyncio.Event()

        async def never_decides(*args):
            started.set()
            await asyncio.Event().wait()

        orchestrator._decide = never_decides
        request = make_request(product_test_code)

        leader = asyncio.create_task(orchestrator.heal(request))
        await started.wait()
        waiter = asyncio.create_task(orchestrator.heal(request))
        while orchestrator.cache.stats.coalesced == 0:
            await asyncio.sleep(0)
        leader.cancel()

        outcome = await waiter

        assert not waiter.cancelled()
        assert outcome.status == HealingStatus.FAILED
        assert outcome.attempt.reason == "cancelled"
        with pytest.raises(asyncio.CancelledError):
            await leader
        assert [a.reason for a in orchestrator.get_history()] == ["cancelled", "cancelled"]

    @pytest.mark.asyncio
    async def test_heal_many_keeps_order_and_handles_bad_input(self, make_orchestrator, make_request,
                                                                make_test_result, spec_diff,
                                                                product_test_code, timeout_test_code):
        orchestrator = make_orchestrator()
        requests = [
            make_request(product_test_code),
            HealingRequest(test_result=make_test_result(None), test_code=product_test_code),
            make_request(timeout_test_code, message=TIMEOUT_MESSAGE, test_name="slow report"),
        ]

        outcomes = await orchestrator.heal_many(requests, spec_diff)

        assert [o.attempt.strategy for o in outcomes] == [
            HealingStrategy.RULE_BASED, HealingStrategy.FALLBACK, HealingStrategy.FALLBACK]
        assert outcomes[1].status == HealingStatus.FAILED
        assert outcomes[1].attempt.reason.startswith("invalid input:")
        assert outcomes[2].attempt.test_ref.endswith("slow report")

    @pytest.mark.asyncio
    async def test_heal_many_timeout_cancels_remaining(self, make_orchestrator, make_request, spec_diff,
                                                       product_test_code):
        async def hanging_validator(patched_test):
            await asyncio.sleep(10)
            return True

        orchestrator = make_orchestrator(validator=hanging_validator)
        requests = [make_request(product_test_code, test_name=f"get product {i}") for i in range(2)]

        outcomes = await orchestrator.heal_many(requests, spec_diff, timeout=0.05)

        assert [o.status for o in outcomes] == [HealingStatus.FAILED, HealingStatus.FAILED]
        assert all(o.attempt.reason == "cancelled" for o in outcomes)

    @pytest.mark.asyncio
    async def test_heal_many_empty(self, make_orchestrator):
        assert await make_orchestrator().heal_many([]) == []

    @pytest.mark.asyncio
    async def test_statistics_and_summary(self, make_orchestrator, make_request, spec_diff,
                                          product_test_code):
        orchestrator = make_orchestrator()
        await orchestrator.heal(make_request(product_test_code), spec_diff)
        await orchestrator.heal(make_request(product_test_code, test_name="other"))

        stats = orchestrator.get_statistics()
        summary = orchestrator.get_summary()

        assert stats["total"] == 2
        assert stats["pending_validation"] == 1
        assert stats["failed"] == 1
        assert stats["by_strategy"] == {"rule_based": 1, "fallback": 1}
        assert stats["by_failure_type"] == {"assertion": 2}
        assert summary["total_attempts"] == 2
        assert summary["failed_attempts"] == 1
        assert summary["budget"]["max_tokens"] == 100000

        orchestrator.clear_history()
        assert orchestrator.get_statistics()["total"] == 0


class TestBackoffAndConfig:

    @pytest.mark.parametrize("retry,rng,expected", [
        (0, 0.5, 1.0),
        (1, 0.5, 2.0),
        (10, 0.5, 30.0),
        (0, 0.0, 0.75),
    ])
    def test_backoff_delay(self, retry, rng, expected):
        orchestrator = HealingOrchestrator(HealingContext.create(HealingConfiguration(),
                                                                 metrics=MetricsCollector()),
                                           rng=lambda: rng)

        assert orchestrator._backoff_delay(retry) == pytest.approx(expected)

    def test_update_config(self, make_orchestrator):
        orchestrator = make_orchestrator()
        config = orchestrator.get_config()
        config.max_retries = 7

        assert orchestrator.config.max_retries == 3
        orchestrator.update_config(config)
        assert orchestrator.config.max_retries == 7

    def test_update_config_applies_limits(self, make_orchestrator):
        orchestrator = make_orchestrator()
        reservation = orchestrator.budget.reserve(50, 0.01)

        orchestrator.update_config(HealingConfiguration(max_tokens=10, max_cost_per_run=0.5,
                                                        cache_ttl=60, cache_max_size=5))

        assert orchestrator.budget.max_tokens == 10
        assert orchestrator.budget.max_cost == 0.5
        assert orchestrator.budget.is_exhausted
        assert orchestrator.budget.reserve(1, 0.0) is None
        assert orchestrator.budget.open_reservations == 1
        orchestrator.budget.release(reservation)
        assert orchestrator.budget.remaining_tokens == 10
        assert (orchestrator.cache.ttl, orchestrator.cache.max_size) == (60, 5)
