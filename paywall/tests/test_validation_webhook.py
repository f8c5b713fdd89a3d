"""
Tests for the validation outcome webhook.

Covers:
- HMAC signature verification (missing, invalid, unconfigured secret)
- Body validation
- Revocation on rejection or revoking notifications
- Confirmation of pending grants
"""

import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from paywall.api.routes.webhooks_validation import (
    SIGNATURE_HEADER,
    compute_signature,
    get_fallback_reconciler,
    router,
    verify_signature,
)
from paywall.config.billing_config import reset_billing_config
from paywall.jobs.reconcile_fallback_grants import FallbackGrantReconciler

SECRET = "test-webhook-secret"


@pytest.fixture
def reconciler():
    mock = AsyncMock(spec=FallbackGrantReconciler)
    mock.revoke_fallback_grant.return_value = True
    mock.confirm_fallback_grant.return_value = True
    return mock


@pytest.fixture
def client(monkeypatch, reconciler):
    monkeypatch.setenv("VALIDATION_WEBHOOK_SECRET", SECRET)
    reset_billing_config()

    app = FastAPI()
    app.include_router(router)
    app.dependency_overrides[get_fallback_reconciler] = lambda: reconciler
    return TestClient(app)


def _post(client, payload: dict, secret: str = SECRET, signature: str = None):
    body = json.dumps(payload).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if signature is None:
        signature = compute_signature(body, secret)
    if signature:
        headers[SIGNATURE_HEADER] = signature
    return client.post("/api/webhooks/receipt-validation", content=body, headers=headers)


class TestSignature:
    def test_verify_signature_round_trip(self):
        body = b'{"user_id": "u1"}'
        assert verify_signature(body, compute_signature(body, SECRET), SECRET)
        assert not verify_signature(body, compute_signature(body, "other"), SECRET)
        assert not verify_signature(body, None, SECRET)
        assert not verify_signature(body, "anything", None)

    def test_missing_signature_rejected(self, client, reconciler):
        response = _post(client, {"user_id": "u1", "outcome": "rejected"}, signature="")

        assert response.status_code == 401
        reconciler.revoke_fallback_grant.assert_not_awaited()

    def test_wrong_secret_rejected(self, client, reconciler):
        response = _post(client, {"user_id": "u1", "outcome": "rejected"}, secret="wrong")

        assert response.status_code == 401
        reconciler.revoke_fallback_grant.assert_not_awaited()

    def test_unconfigured_secret(self, monkeypatch, reconciler):
        monkeypatch.delenv("VALIDATION_WEBHOOK_SECRET", raising=False)
        reset_billing_config()
        app = FastAPI()
        app.include_router(router)
        app.dependency_overrides[get_fallback_reconciler] = lambda: reconciler

        response = _post(TestClient(app), {"user_id": "u1", "outcome": "rejected"})

        assert response.status_code == 503


class TestOutcomes:
    def test_invalid_body(self, client):
        response = _post(client, {"user_id": "u1", "outcome": "maybe"})
        assert response.status_code == 400

    def test_rejected_revokes(self, client, reconciler):
        response = _post(client, {"user_id": "u1", "outcome": "rejected"})

        assert response.status_code == 200
        assert response.json()["action"] == "revoked"
        reconciler.revoke_fallback_grant.assert_awaited_once_with("u1", reason="rejected")

    def test_refund_notification_revokes_even_if_confirmed(self, client, reconciler):
        response = _post(client, {
            "user_id": "u1",
            "outcome": "confirmed",
            "notification_type": "REFUND",
        })

        assert response.json()["action"] == "revoked"
        reconciler.revoke_fallback_grant.assert_awaited_once_with("u1", reason="REFUND")
        reconciler.confirm_fallback_grant.assert_not_awaited()

    def test_confirmed(self, client, reconciler):
        response = _post(client, {
            "user_id": "u1",
            "outcome": "confirmed",
            "notification_type": "VALIDATED",
            "transaction_id": "2000000000000001",
        })

        assert response.status_code == 200
        assert response.json()["action"] == "confirmed"
        reconciler.confirm_fallback_grant.assert_awaited_once_with("u1")

    def test_nothing_to_revoke(self, client, reconciler):
        reconciler.revoke_fallback_grant.return_value = False

        response = _post(client, {"user_id": "u1", "outcome": "rejected"})

        assert response.json()["action"] == "none"
