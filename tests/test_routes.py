"""
Tests for API Routes.

Exercises the HTTP surface through TestClient with the engine dependency
overridden by an in-process engine (see conftest).
"""

from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from credit_engine.config import settings
from credit_engine.exceptions import (
    DataIntegrityError,
    LedgerUnavailableError,
    WriteVerificationError,
)
from credit_engine.models.api import DenialReason
from credit_engine.models.domain import BillingDecision
from credit_engine.services.engine import BillingEngine


def _evaluate(client: TestClient, account_id: str, model_id: str, units: int, usage_id: str):
    return client.post(
        "/v1/billing/evaluate",
        json={
            "account_id": account_id,
            "model_id": model_id,
            "estimated_units": units,
            "usage_id": usage_id,
        },
    )


@pytest.fixture
def funded(client: TestClient) -> TestClient:
    """Client whose entry account holds 100 purchased credits."""
    response = client.post(
        "/v1/accounts/acct-entry/credits",
        json={"amount": 100, "idempotency_key": "seed"},
    )
    assert response.status_code == 201
    return client


# ============================================================================
# Evaluate
# ============================================================================


class TestEvaluateRoute:
    """Tests for POST /v1/billing/evaluate."""

    def test_approved(self, client: TestClient, funded: TestClient):
        response = _evaluate(client, "acct-entry", "test/basic", 30, "u-1")

        assert response.status_code == 200
        body = response.json()
        assert body["allowed"] is True
        assert body["route"] == "platform_credits"
        assert body["estimated_cost"] == 30
        assert body["usage_id"] == "u-1"

    def test_personal_key(self, client: TestClient):
        response = _evaluate(client, "acct-premium", "test/pro", 500, "u-1")

        assert response.status_code == 200
        assert response.json()["route"] == "personal_key"

    def test_model_not_in_tier_is_403(self, client: TestClient, funded: TestClient):
        response = _evaluate(client, "acct-entry", "test/pro", 1, "u-1")

        assert response.status_code == 403
        detail = response.json()["detail"]
        assert detail["reason"] == "model_not_in_tier"
        assert detail["required_tier"] == "premium"
        assert detail["route"] == "denied"

    def test_insufficient_credits_is_402(self, client: TestClient):
        response = _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["reason"] == "insufficient_credits"
        assert detail["available"] == 0
        assert detail["required"] == 5

    def test_unknown_account_is_404(self, client: TestClient):
        response = _evaluate(client, "acct-ghost", "test/basic", 5, "u-1")

        assert response.status_code == 404
        assert response.json()["detail"]["reason"] == "account_not_found"

    def test_ledger_outage_is_503_with_retry_after(
        self, client: TestClient, engine: BillingEngine
    ):
        engine.router.reservations = MagicMock()
        engine.router.reservations.get = AsyncMock(side_effect=LedgerUnavailableError("down"))

        response = _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["detail"]["retryable"] is True

    def test_usage_id_conflict_is_409(self, client: TestClient, funded: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        response = _evaluate(client, "acct-premium", "test/basic", 5, "u-1")

        assert response.status_code == 409

    def test_released_reservation_is_409(self, client: TestClient, engine: BillingEngine):
        engine.router.evaluate = AsyncMock(
            return_value=BillingDecision.deny(
                "u-1",
                DenialReason.RESERVATION_RELEASED,
                "Reservation u-1 was released before approval",
                estimated_cost=5,
            )
        )

        response = _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "reservation_released"

    def test_missing_reservation_after_conflict_is_500(
        self, client: TestClient, engine: BillingEngine
    ):
        engine.router.evaluate = AsyncMock(side_effect=DataIntegrityError("u-1 vanished"))

        response = _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        assert response.status_code == 500
        assert response.json()["detail"] == "Database integrity error"

    def test_negative_units_rejected(self, client: TestClient):
        response = _evaluate(client, "acct-entry", "test/basic", -1, "u-1")

        assert response.status_code == 422


# ============================================================================
# Reconcile / Cancel
# ============================================================================


class TestReconcileRoute:
    """Tests for POST /v1/billing/reconcile and /v1/billing/cancel."""

    def test_reconcile_refunds_difference(self, client: TestClient, funded: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")

        response = client.post(
            "/v1/billing/reconcile",
            json={
                "usage_id": "u-1",
                "actual_input_units": 10,
                "actual_output_units": 10,
                "outcome": "success",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["computed_cost"] == 20
        assert body["estimated_cost"] == 30
        assert body["related_ledger_entry_id"] is not None

        balance = client.get("/v1/accounts/acct-entry/balance").json()
        assert balance["balance"] == 80

    def test_reconcile_retry_returns_same_record(
        self, client: TestClient, funded: TestClient
    ):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")
        payload = {
            "usage_id": "u-1",
            "actual_input_units": 10,
            "actual_output_units": 10,
            "outcome": "success",
        }

        first = client.post("/v1/billing/reconcile", json=payload)
        second = client.post("/v1/billing/reconcile", json=payload)

        assert first.json() == second.json()

    def test_reconcile_unknown_usage_is_404(self, client: TestClient):
        response = client.post(
            "/v1/billing/reconcile",
            json={
                "usage_id": "u-missing",
                "actual_input_units": 1,
                "actual_output_units": 1,
                "outcome": "success",
            },
        )

        assert response.status_code == 404

    def test_reconcile_denied_is_409(self, client: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 5, "u-1")

        response = client.post(
            "/v1/billing/reconcile",
            json={
                "usage_id": "u-1",
                "actual_input_units": 1,
                "actual_output_units": 1,
                "outcome": "success",
            },
        )

        assert response.status_code == 409

    def test_reconcile_partial_unbilled_on_request(
        self, client: TestClient, funded: TestClient
    ):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")

        response = client.post(
            "/v1/billing/reconcile",
            json={
                "usage_id": "u-1",
                "actual_input_units": 10,
                "actual_output_units": 3,
                "outcome": "partial",
                "bill_partial": False,
            },
        )

        assert response.json()["computed_cost"] == 0

    def test_cancel(self, client: TestClient, funded: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")

        response = client.post("/v1/billing/cancel", json={"usage_id": "u-1"})

        assert response.status_code == 200
        assert response.json()["outcome"] == "cancelled"
        assert client.get("/v1/accounts/acct-entry/balance").json()["balance"] == 100

    @pytest.mark.parametrize(
        "error",
        [DataIntegrityError("usage record mismatch"), WriteVerificationError("entry not found")],
    )
    def test_cancel_integrity_failure_is_500(
        self, client: TestClient, engine: BillingEngine, error: Exception
    ):
        engine.router.cancel = AsyncMock(side_effect=error)

        response = client.post("/v1/billing/cancel", json={"usage_id": "u-1"})

        assert response.status_code == 500
        assert response.json()["detail"] == "Database integrity error"


# ============================================================================
# Accounts
# ============================================================================


class TestAccountRoutes:
    """Tests for balance, ledger, usage, credits and cycle reset."""

    def test_ledger_history(self, client: TestClient, funded: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")

        response = client.get("/v1/accounts/acct-entry/ledger", params={"limit": 10})

        assert response.status_code == 200
        body = response.json()
        assert body["balance"] == 70
        assert [e["delta"] for e in body["entries"]] == [100, -30]
        assert body["entries"][1]["related_usage_id"] == "u-1"

    def test_ledger_limit_bounds(self, client: TestClient):
        response = client.get("/v1/accounts/acct-entry/ledger", params={"limit": 0})

        assert response.status_code == 422

    def test_usage_summary(self, client: TestClient, funded: TestClient):
        _evaluate(client, "acct-entry", "test/basic", 30, "u-1")
        client.post(
            "/v1/billing/reconcile",
            json={
                "usage_id": "u-1",
                "actual_input_units": 10,
                "actual_output_units": 5,
                "outcome": "success",
            },
        )

        response = client.get("/v1/accounts/acct-entry/usage")

        assert response.status_code == 200
        body = response.json()
        assert body["requests"] == 1
        assert body["total_cost"] == 15
        assert body["by_model"][0]["model_id"] == "test/basic"
        assert body["platform_requests"] == 1

    def test_add_credits_amount(self, client: TestClient):
        response = client.post(
            "/v1/accounts/acct-entry/credits",
            json={"amount": 250, "idempotency_key": "order-1"},
        )

        assert response.status_code == 201
        body = response.json()
        assert body["delta"] == 250
        assert body["reason"] == "purchase"
        assert body["resulting_balance"] == 250

    def test_add_credits_pack(self, client: TestClient):
        response = client.post(
            "/v1/accounts/acct-entry/credits",
            json={"pack_id": "small", "idempotency_key": "order-1"},
        )

        assert response.status_code == 201
        assert response.json()["delta"] == 50

    def test_add_credits_unknown_pack(self, client: TestClient):
        response = client.post(
            "/v1/accounts/acct-entry/credits",
            json={"pack_id": "huge", "idempotency_key": "order-1"},
        )

        assert response.status_code == 404

    def test_add_credits_replay(self, client: TestClient):
        payload = {"amount": 250, "idempotency_key": "order-1"}

        first = client.post("/v1/accounts/acct-entry/credits", json=payload)
        second = client.post("/v1/accounts/acct-entry/credits", json=payload)

        assert first.json()["entry_id"] == second.json()["entry_id"]
        assert client.get("/v1/accounts/acct-entry/balance").json()["balance"] == 250

    def test_add_credits_conflict(self, client: TestClient):
        first = client.post(
            "/v1/accounts/acct-entry/credits",
            json={"amount": 250, "idempotency_key": "order-1"},
        )
        response = client.post(
            "/v1/accounts/acct-entry/credits",
            json={"amount": 300, "idempotency_key": "order-1"},
        )

        assert response.status_code == 409
        assert response.headers["X-Existing-Entry-ID"] == first.json()["entry_id"]

    @pytest.mark.parametrize(
        "payload",
        [
            {"idempotency_key": "k"},
            {"amount": 5, "pack_id": "small", "idempotency_key": "k"},
            {"amount": 5, "idempotency_key": "k", "reason": "ai_usage"},
            {"amount": 0, "idempotency_key": "k"},
        ],
    )
    def test_add_credits_validation(self, client: TestClient, payload: dict):
        response = client.post("/v1/accounts/acct-entry/credits", json=payload)

        assert response.status_code == 422

    def test_cycle_reset(self, client: TestClient):
        response = client.post("/v1/accounts/acct-entry/cycle-reset", json={"cycle": "2026-03"})

        assert response.status_code == 200
        assert response.json()["reason"] == "monthly_reset"
        assert response.json()["resulting_balance"] == 100

    def test_cycle_reset_without_body(self, client: TestClient):
        response = client.post("/v1/accounts/acct-premium/cycle-reset")

        assert response.status_code == 200
        assert response.json()["resulting_balance"] == 1000

    def test_cycle_reset_unknown_account(self, client: TestClient):
        response = client.post("/v1/accounts/acct-ghost/cycle-reset", json={"cycle": "2026-03"})

        assert response.status_code == 404

    def test_cycle_reset_bad_cycle(self, client: TestClient):
        response = client.post("/v1/accounts/acct-entry/cycle-reset", json={"cycle": "2026-13"})

        assert response.status_code == 422


# ============================================================================
# Catalog / Health / Auth
# ============================================================================


class TestCatalogAndHealth:
    """Tests for catalog listing, health and metrics."""

    def test_catalog(self, client: TestClient):
        response = client.get("/v1/catalog/tiers")

        assert response.status_code == 200
        body = response.json()
        assert [t["tier"] for t in body["tiers"]] == ["entry", "premium"]
        assert body["tiers"][0]["next_tier"] == "premium"
        assert body["tiers"][1]["next_tier"] is None
        assert body["tiers"][1]["personal_key_allowed"] is True
        assert body["credit_packs"][0]["pack_id"] == "small"

    def test_health(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["storage"] == "memory"

    def test_health_unhealthy(self, client: TestClient, engine: BillingEngine):
        engine.read_session_factory = MagicMock(side_effect=RuntimeError("db down"))

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["detail"]["status"] == "unhealthy"

    def test_root(self, client: TestClient):
        assert client.get("/").json()["status"] == "running"

    def test_metrics(self, client: TestClient):
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "credit_engine" in response.text

    def test_request_id_echoed(self, client: TestClient):
        response = client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"

    def test_request_id_generated(self, client: TestClient):
        assert client.get("/").headers["X-Request-ID"]

    def test_http_metrics_use_route_template(self, client: TestClient):
        client.get("/v1/accounts/acct-entry/balance")

        text = client.get("/metrics").text
        assert 'endpoint="/v1/accounts/{account_id}/balance"' in text
        assert 'endpoint="/v1/accounts/acct-entry/balance"' not in text


class TestApiKey:
    """Tests for the shared API key."""

    def test_key_required_when_configured(
        self, client: TestClient, monkeypatch: pytest.MonkeyPatch
    ):
        monkeypatch.setattr(settings, "api_key", "orchestrator-key")

        response = client.get("/v1/accounts/acct-entry/balance")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "ApiKey"

    def test_wrong_key_rejected(self, client: TestClient, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "api_key", "orchestrator-key")

        response = client.get(
            "/v1/accounts/acct-entry/balance", headers={"X-API-Key": "wrong"}
        )

        assert response.status_code == 401

    def test_correct_key_accepted(self, client: TestClient, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "api_key", "orchestrator-key")

        response = client.get(
            "/v1/accounts/acct-entry/balance", headers={"X-API-Key": "orchestrator-key"}
        )

        assert response.status_code == 200
        assert response.json() == {"account_id": "acct-entry", "balance": 0}

    def test_catalog_is_public(self, client: TestClient, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setattr(settings, "api_key", "orchestrator-key")

        assert client.get("/v1/catalog/tiers").status_code == 200
