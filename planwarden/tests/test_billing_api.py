"""
HTTP contract for the billing routes.
"""
import pytest
from unittest.mock import patch

from fastapi.testclient import TestClient

from planwarden.main import app
from planwarden.features.billing import interpreter, ledger
from planwarden.features.billing.provider import BillingProviderError
from planwarden.features.usage.service import emit_usage_event
from planwarden.features.users.service import get_or_create_user
from planwarden.models.plan import PlanTier
from planwarden.models.webhook_event import WebhookEventStatus
from planwarden.tests.mocks import event_body, signed_headers, subscription


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def stripe_enabled(fake_provider):
    with patch("planwarden.features.billing.service.get_provider", return_value=fake_provider):
        yield fake_provider


@pytest.fixture
def subscriber(fake_provider):
    fake_provider.set_subscription(subscription("sub_api", plan=PlanTier.PLUS, customer_id="cus_api"))
    return get_or_create_user("user_api", stripe_customer_id="cus_api")


def _post_webhook(client, secret, event_id="evt_api", event_type="checkout.session.completed", obj=None):
    body = event_body(event_id, event_type, obj or {"id": "cs_api", "customer": "cus_api", "subscription": "sub_api"})
    return client.post("/api/billing/webhook", content=body, headers=signed_headers(body, secret))


# ---------------------------------------------------------------------------
# Webhook
# ---------------------------------------------------------------------------

def test_webhook_processed(client, stripe_enabled, billing_settings, subscriber):
    resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)

    assert resp.status_code == 200
    assert resp.json() == {"received": True, "event_id": "evt_api", "outcome": "processed"}
    assert resp.headers.get("x-request-id")


def test_webhook_duplicate_acknowledged(client, stripe_enabled, billing_settings, subscriber):
    _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)
    resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "already_processed"


def test_webhook_unknown_customer_acknowledged(client, stripe_enabled, billing_settings):
    resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "unknown_subject"


def test_webhook_ignored_type_acknowledged(client, stripe_enabled, billing_settings):
    resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET, event_type="charge.refunded", obj={"id": "ch_1"})

    assert resp.status_code == 200
    assert resp.json()["outcome"] == "ignored"


def test_webhook_bad_signature_is_400(client, stripe_enabled, subscriber):
    resp = _post_webhook(client, "whsec_wrong")

    assert resp.status_code == 400
    body = resp.json()
    assert body["error"]["code"] == "invalid_signature"
    assert body["error"]["request_id"] == resp.headers.get("x-request-id")
    assert ledger.get_event("evt_api") is None


def test_webhook_billing_disabled_is_503(client, monkeypatch):
    from planwarden.core.config import settings
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    resp = client.post("/api/billing/webhook", content=b"{}", headers={"stripe-signature": "t=1,v1=x"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_webhook_provider_outage_is_retryable(client, stripe_enabled, billing_settings, subscriber):
    stripe_enabled.fail_with = BillingProviderError("Stripe subscription fetch failed: timeout")

    resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)

    assert resp.status_code == 503
    assert ledger.get_event("evt_api").status is WebhookEventStatus.FAILED


def test_webhook_unexpected_error_is_retryable(client, stripe_enabled, billing_settings, subscriber):
    with patch.object(interpreter, "apply_entitlement_change", side_effect=RuntimeError("bug")):
        resp = _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "infrastructure_failure"


# ---------------------------------------------------------------------------
# Plan status
# ---------------------------------------------------------------------------

def test_plan_status_requires_user(client):
    resp = client.get("/api/billing/plan-status")
    assert resp.status_code == 401


def test_plan_status_for_new_user(client):
    resp = client.get("/api/billing/plan-status", headers={"X-User-Id": "user_fresh"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["plan"] == "free"
    assert body["effective_plan"] == "free"
    assert body["limit"] == 7
    assert body["remaining"] == 7
    assert body["can_create"] is True
    assert body["entitlements"]["show_ads"] is True


def test_plan_status_after_checkout(client, stripe_enabled, billing_settings, subscriber):
    _post_webhook(client, billing_settings.STRIPE_WEBHOOK_SECRET)
    for _ in range(10):
        emit_usage_event(subscriber.user_id)

    body = client.get("/api/billing/plan-status", headers={"X-User-Id": subscriber.user_id}).json()

    assert body["plan"] == "plus"
    assert body["is_plus"] is True
    assert body["attendance_count"] == 10
    assert body["limit"] is None
    assert body["remaining"] is None
    assert body["entitlements"]["can_export"] is True
    assert body["entitlements"]["can_advanced_stats"] is False


# ---------------------------------------------------------------------------
# Checkout / portal
# ---------------------------------------------------------------------------

def test_checkout_returns_url(client, stripe_enabled):
    resp = client.post(
        "/api/billing/checkout",
        json={"plan": "pro", "cycle": "monthly"},
        headers={"X-User-Id": "user_checkout"},
    )

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/c/session_1"}
    assert stripe_enabled.checkout_sessions[0]["price_id"] == "price_pro_monthly"


def test_checkout_invalid_plan_is_400(client, stripe_enabled):
    resp = client.post(
        "/api/billing/checkout",
        json={"plan": "platinum", "cycle": "monthly"},
        headers={"X-User-Id": "user_checkout"},
    )

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_checkout_billing_disabled_is_503(client, monkeypatch):
    from planwarden.core.config import settings
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)

    resp = client.post(
        "/api/billing/checkout",
        json={"plan": "plus", "cycle": "monthly"},
        headers={"X-User-Id": "user_checkout"},
    )
    assert resp.status_code == 503


def test_portal_without_billing_account_is_400(client, stripe_enabled):
    resp = client.post("/api/billing/portal", json={}, headers={"X-User-Id": "user_nobill"})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "No billing account found"


def test_portal_returns_url(client, stripe_enabled, subscriber):
    resp = client.post("/api/billing/portal", json={}, headers={"X-User-Id": subscriber.user_id})

    assert resp.status_code == 200
    assert resp.json()["url"] == "https://billing.stripe.test/p/session_1"


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_readyz_with_schema(client):
    resp = client.get("/readyz")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}
