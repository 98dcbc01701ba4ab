"""
Healing API endpoints for the API test self-healing engine.

This module provides REST endpoints for spec diffing, failure analysis,
healing, validation feedback, history, statistics and configuration.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from ..core.config import settings
from ..core.config_loader import ConfigurationError, get_healing_config, get_comparison_options, save_healing_config
from ..core.errors import InvalidInputError, SpecLoadError
from ..core.models import HealingConfiguration, HealingRequest, TestResult
from ..crew_ai.completion_client import create_completion_client
from ..services.failure_analyzer import FailureAnalyzer
from ..services.healing_orchestrator import HealingContext, HealingOrchestrator
from ..services.spec_diff_analyzer import ComparisonOptions, SpecDiffAnalyzer

logger = logging.getLogger(__name__)

# Global healing orchestrator instance
_healing_orchestrator: Optional[HealingOrchestrator] = None

router = APIRouter(prefix="/healing", tags=["healing"])


# Pydantic models for API requests/responses
class DiffOptions(BaseModel):
    ignore_description_changes: Optional[bool] = None
    track_field_renames: Optional[bool] = None
    rename_similarity_threshold: Optional[float] = Field(None, gt=0.0, le=1.0)


class SpecDiffRequest(BaseModel):
    old_spec: Dict[str, Any]
    new_spec: Dict[str, Any]
    options: Optional[DiffOptions] = None


class AnalyzeRequest(BaseModel):
    test_result: Dict[str, Any]


class HealRequest(BaseModel):
    test_result: Dict[str, Any]
    test_code: str
    spec_version: Optional[str] = None
    endpoint: Optional[str] = Field(None, description='Endpoint the test calls, e.g. "GET /products/{id}"')
    old_spec: Optional[Dict[str, Any]] = None
    new_spec: Optional[Dict[str, Any]] = None


class ValidationFeedback(BaseModel):
    passed: bool
    reason: Optional[str] = None


class HealingConfigUpdate(BaseModel):
    enabled: Optional[bool] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    initial_delay_ms: Optional[int] = Field(None, ge=0, le=60000)
    max_delay_ms: Optional[int] = Field(None, ge=0)
    backoff_multiplier: Optional[float] = Field(None, ge=1.0, le=10.0)
    jitter_factor: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_tokens: Optional[int] = Field(None, ge=0)
    max_cost_per_run: Optional[float] = Field(None, ge=0.0)
    cache_ttl: Optional[int] = Field(None, ge=0, le=604800)
    max_concurrent_healings: Optional[int] = Field(None, ge=1, le=50)
    healing_timeout: Optional[int] = Field(None, ge=10, le=3600)


async def get_healing_orchestrator() -> HealingOrchestrator:
    """Get or create the global healing orchestrator instance."""
    global _healing_orchestrator

    if _healing_orchestrator is None:
        config = get_healing_config()
        _healing_orchestrator = HealingOrchestrator(
            HealingContext.create(config),
            completion_client=create_completion_client(settings)
        )
        logger.info(f"🚀 Healing orchestrator initialized with {settings.MODEL_PROVIDER} provider")

    return _healing_orchestrator


def _diff_analyzer(options: Optional[DiffOptions]) -> SpecDiffAnalyzer:
    try:
        base = get_comparison_options()
    except ConfigurationError as e:
        logger.warning(f"Using default spec diff options: {e}")
        base = ComparisonOptions()

    if options:
        for name, value in options.dict(exclude_unset=True).items():
            if value is not None:
                setattr(base, name, value)
    return SpecDiffAnalyzer(base)


def _compare(request: SpecDiffRequest):
    analyzer = _diff_analyzer(request.options)
    try:
        analyzer.validate_spec(request.old_spec, "old_spec")
        analyzer.validate_spec(request.new_spec, "new_spec")
    except SpecLoadError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return analyzer, analyzer.compare_specs(request.old_spec, request.new_spec)


@router.post("/diff")
async def diff_specs(request: SpecDiffRequest):
    """Compute the severity-classified diff between two spec documents."""
    _, diff = _compare(request)
    logger.info(f"📊 HEALING API: Diff {diff.old_version} -> {diff.new_version}: "
                f"{diff.summary.total_changes} change(s)")
    return {"status": "success", "diff": diff.to_dict()}


@router.post("/diff/report")
async def diff_report(request: SpecDiffRequest):
    """Diff two spec documents and return the human-readable report."""
    analyzer, diff = _compare(request)
    report = analyzer.generate_diff_report(diff)
    return {
        "status": "success",
        "summary": diff.summary.to_dict(),
        "report": report.to_dict(),
        "text": report.to_text(),
    }


@router.post("/analyze")
async def analyze_failure(request: AnalyzeRequest):
    """Classify one failed test result."""
    try:
        analysis = FailureAnalyzer().analyze_failure(TestResult.from_dict(request.test_result))
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "analysis": analysis.to_dict()}


@router.post("/heal")
async def heal_test(
    request: HealRequest,
    orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)
):
    """Run one failed test through the healing workflow."""
    spec_diff = None
    if request.old_spec is not None and request.new_spec is not None:
        _, spec_diff = _compare(SpecDiffRequest(old_spec=request.old_spec, new_spec=request.new_spec))

    healing_request = HealingRequest(
        test_result=TestResult.from_dict(request.test_result),
        test_code=request.test_code,
        spec_version=request.spec_version,
        endpoint=request.endpoint,
    )
    try:
        outcome = await orchestrator.heal(healing_request, spec_diff)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"🩹 HEALING API: {outcome.attempt.test_ref} -> {outcome.status.value}")
    return {"status": "success", "outcome": outcome.to_dict()}


@router.post("/attempts/{attempt_id}/validation")
async def report_validation(
    attempt_id: str,
    feedback: ValidationFeedback,
    orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)
):
    """Finalize a VALIDATING attempt with the result of running the patched test."""
    try:
        outcome = orchestrator.complete_validation_by_id(attempt_id, feedback.passed, feedback.reason)
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "success", "attempt": outcome.attempt.to_dict()}


@router.get("/history")
async def get_healing_history(
    test_ref: Optional[str] = None,
    limit: int = 50,
    orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)
):
    """Latest record of each healing attempt, newest first."""
    attempts = orchestrator.get_history(test_ref)
    attempts.sort(key=lambda a: a.start_time, reverse=True)
    return {
        "status": "success",
        "attempts": [a.to_dict() for a in attempts[:limit]],
        "total_attempts": len(attempts),
    }


@router.get("/statistics")
async def get_healing_statistics(orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)):
    return {
        "status": "success",
        "statistics": orchestrator.get_statistics(),
        "metrics": orchestrator.metrics.get_summary(),
    }


@router.get("/budget")
async def get_budget(orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)):
    return {"status": "success", "budget": orchestrator.budget.to_dict()}


@router.get("/config")
async def get_config(orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)):
    return {"status": "success", "configuration": orchestrator.get_config().to_dict()}


@router.put("/config")
async def update_healing_config(
    config_update: HealingConfigUpdate,
    orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)
):
    """Update healing configuration settings."""
    config_dict = orchestrator.get_config().to_dict()
    for field, value in config_update.dict(exclude_unset=True).items():
        if value is not None:
            config_dict[field] = value

    updated_config = HealingConfiguration.from_dict(config_dict)
    try:
        save_healing_config(updated_config)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    orchestrator.update_config(updated_config)
    logger.info("Healing configuration updated via API")
    return {
        "status": "success",
        "message": "Healing configuration updated successfully",
        "configuration": updated_config.to_dict(),
    }


@router.get("/status")
async def get_healing_status(orchestrator: HealingOrchestrator = Depends(get_healing_orchestrator)):
    """Get current healing system status."""
    config = orchestrator.get_config()
    pending: List[str] = [a.id for a in orchestrator.history.pending_validation()]
    return {
        "status": "success",
        "healing_enabled": config.enabled,
        "ai_enabled": orchestrator.completion_client is not None,
        "model_provider": settings.MODEL_PROVIDER,
        "pending_validation": pending,
        "budget": orchestrator.budget.to_dict(),
        "cache": {"entries": len(orchestrator.cache), **orchestrator.cache.stats.to_dict()},
        "summary": orchestrator.get_summary(),
    }
