"""
Tests for the Healing API endpoints.

This module covers spec diffing, failure analysis, healing, validation
feedback, history, statistics and configuration endpoints.
"""

from unittest.mock import patch

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from src.api_healer.api.healing_endpoints import get_healing_orchestrator, router as healing_router
from src.api_healer.core.config_loader import ConfigurationError
from src.api_healer.core.metrics import MetricsCollector
from src.api_healer.core.models import HealingConfiguration
from src.api_healer.services.healing_orchestrator import HealingContext, HealingOrchestrator


@pytest.fixture
def orchestrator():
    """Orchestrator without AI, isolated from the global instance."""
    context = HealingContext.create(HealingConfiguration(), metrics=MetricsCollector())
    return HealingOrchestrator(context)


@pytest.fixture
def app(orchestrator):
    """Create FastAPI app with healing router for testing."""
    app = FastAPI()
    app.include_router(healing_router)
    app.dependency_overrides[get_healing_orchestrator] = lambda: orchestrator
    return app


@pytest.fixture
def client(app):
    """Create test client."""
    return TestClient(app)


@pytest.fixture
def failed_result():
    return {
        "test_path": "tests/products.spec.ts",
        "test_name": "get product",
        "status": "failed",
        "duration": 1.2,
        "error": {"message": "Error: expect(received).toBe(expected)\n\nExpected: \"Widget\"\nReceived: undefined"},
    }


class TestDiffEndpoints:
    """Test cases for spec diff endpoints."""

    def test_diff(self, client, old_spec, new_spec):
        response = client.post("/healing/diff", json={"old_spec": old_spec, "new_spec": new_spec})

        assert response.status_code == 200
        diff = response.json()["diff"]
        assert diff["old_version"] == "1.0.0"
        assert diff["new_version"] == "2.0.0"
        assert diff["summary"]["breaking_changes"] == 3
        assert diff["summary"]["total_changes"] == 6

    def test_diff_rejects_invalid_spec(self, client, old_spec):
        response = client.post("/healing/diff", json={"old_spec": old_spec, "new_spec": {"openapi": "3.0.0"}})

        assert response.status_code == 422
        assert "paths" in response.json()["detail"]

    def test_diff_report(self, client, old_spec, new_spec):
        response = client.post("/healing/diff/report", json={"old_spec": old_spec, "new_spec": new_spec})

        assert response.status_code == 200
        data = response.json()
        assert data["summary"]["total_changes"] == 6
        assert len(data["report"]["breaking_changes"]) == 3
        assert isinstance(data["text"], str)

    def test_diff_options_validated(self, client, old_spec, new_spec):
        response = client.post("/healing/diff", json={
            "old_spec": old_spec, "new_spec": new_spec,
            "options": {"rename_similarity_threshold": 1.5},
        })

        assert response.status_code == 422


class TestAnalyzeEndpoint:

    def test_analyze_failure(self, client, failed_result):
        failed_result["error"]["message"] = "Test timeout of 5000ms exceeded."

        response = client.post("/healing/analyze", json={"test_result": failed_result})

        assert response.status_code == 200
        assert response.json()["analysis"]["failure_type"] == "timeout"

    def test_analyze_passed_test(self, client, failed_result):
        failed_result["status"] = "passed"
        failed_result["error"] = None

        response = client.post("/healing/analyze", json={"test_result": failed_result})

        assert response.status_code == 400


class TestHealingEndpoints:
    """Test cases for healing and validation feedback."""

    def test_heal_and_report_validation(self, client, failed_result, old_spec, new_spec, product_test_code):
        response = client.post("/healing/heal", json={
            "test_result": failed_result,
            "test_code": product_test_code,
            "old_spec": old_spec,
            "new_spec": new_spec,
        })

        assert response.status_code == 200
        outcome = response.json()["outcome"]
        assert outcome["attempt"]["status"] == "validating"
        assert outcome["attempt"]["strategy"] == "rule_based"
        assert "body.productName" in outcome["patched_test"]["patched_code"]

        attempt_id = outcome["attempt"]["id"]
        status = client.get("/healing/status").json()
        assert status["pending_validation"] == [attempt_id]

        response = client.post(f"/healing/attempts/{attempt_id}/validation", json={"passed": True})

        assert response.status_code == 200
        assert response.json()["attempt"]["status"] == "healed"

        history = client.get("/healing/history").json()
        assert history["total_attempts"] == 1
        assert history["attempts"][0]["status"] == "healed"

        statistics = client.get("/healing/statistics").json()
        assert statistics["statistics"]["successful"] == 1
        assert statistics["metrics"]["successful"] == 1

    def test_heal_without_error(self, client, failed_result, product_test_code):
        failed_result["error"] = None

        response = client.post("/healing/heal", json={"test_result": failed_result,
                                                      "test_code": product_test_code})

        assert response.status_code == 400

    def test_unknown_attempt_validation(self, client):
        response = client.post("/healing/attempts/missing/validation", json={"passed": False})

        assert response.status_code == 400

    def test_history_filter(self, client, failed_result, product_test_code):
        client.post("/healing/heal", json={"test_result": failed_result, "test_code": product_test_code})

        matching = client.get("/healing/history",
                              params={"test_ref": "tests/products.spec.ts::get product"}).json()
        other = client.get("/healing/history", params={"test_ref": "nope"}).json()

        assert matching["total_attempts"] == 1
        assert other["total_attempts"] == 0


class TestConfigEndpoints:
    """Test cases for configuration and status endpoints."""

    def test_get_config(self, client):
        response = client.get("/healing/config")

        assert response.status_code == 200
        assert response.json()["configuration"]["max_retries"] == 3

    def test_update_config(self, client, orchestrator):
        with patch("src.api_healer.api.healing_endpoints.save_healing_config") as mock_save:
            response = client.put("/healing/config", json={"max_retries": 5, "jitter_factor": 0.1})

        assert response.status_code == 200
        assert response.json()["configuration"]["max_retries"] == 5
        assert orchestrator.config.max_retries == 5
        assert orchestrator.config.jitter_factor == 0.1
        mock_save.assert_called_once()

    def test_update_config_enforces_new_limits(self, client, orchestrator):
        with patch("src.api_healer.api.healing_endpoints.save_healing_config"):
            response = client.put("/healing/config",
                                  json={"max_tokens": 10, "max_cost_per_run": 0.5, "cache_ttl": 60})

        assert response.status_code == 200
        budget = client.get("/healing/budget").json()["budget"]
        assert budget["max_tokens"] == 10
        assert budget["max_cost"] == 0.5
        assert orchestrator.cache.ttl == 60

    def test_update_config_out_of_range(self, client):
        response = client.put("/healing/config", json={"max_retries": 99})

        assert response.status_code == 422

    def test_update_config_save_failure(self, client, orchestrator):
        with patch("src.api_healer.api.healing_endpoints.save_healing_config",
                   side_effect=ConfigurationError("disk full")):
            response = client.put("/healing/config", json={"max_retries": 5})

        assert response.status_code == 400
        assert orchestrator.config.max_retries == 3

    def test_status_and_budget(self, client):
        status = client.get("/healing/status").json()
        budget = client.get("/healing/budget").json()

        assert status["healing_enabled"] is True
        assert status["ai_enabled"] is False
        assert status["cache"]["entries"] == 0
        assert budget["budget"]["max_tokens"] == 100000
