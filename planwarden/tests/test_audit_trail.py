from planwarden.core.config import settings
from planwarden.core.logging import request_id_ctx_var
from planwarden.features.audit.service import list_audit_events, record_audit_event


def test_audit_event_inserts_row(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)

    record_audit_event(
        action="subscription_updated",
        user_id="user-123",
        event_id="evt_123",
        request_id="rid-123",
        metadata={"plan": "pro", "amount": 499},
    )

    rows = list_audit_events(user_id="user-123")
    assert len(rows) == 1
    row = rows[0]
    assert row["request_id"] == "rid-123"
    assert row["event_id"] == "evt_123"
    assert row["action"] == "subscription_updated"
    assert row["metadata"] == {"plan": "pro", "amount": 499}


def test_audit_disabled_writes_nothing(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_ENABLED", False)

    record_audit_event(action="payment_failed", user_id="user-off")

    assert list_audit_events(user_id="user-off") == []


def test_audit_metadata_is_truncated(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)

    record_audit_event(action="payment_failed", user_id="user-long", metadata={"note": "x" * 2000, "attempt_count": 3})

    metadata = list_audit_events(user_id="user-long")[0]["metadata"]
    assert metadata["note"].endswith("...<truncated>")
    assert len(metadata["note"]) < 600
    assert metadata["attempt_count"] == 3


def test_request_id_taken_from_context(monkeypatch):
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)
    token = request_id_ctx_var.set("rid-from-context")
    try:
        record_audit_event(action="checkout_session_created", user_id="user-ctx")
    finally:
        request_id_ctx_var.reset(token)

    assert list_audit_events(user_id="user-ctx")[0]["request_id"] == "rid-from-context"


def test_filters_combine():
    record_audit_event(action="subscription_created", user_id="u1", event_id="e1")
    record_audit_event(action="subscription_deleted", user_id="u1", event_id="e2")
    record_audit_event(action="subscription_created", user_id="u2", event_id="e3")

    assert [r["event_id"] for r in list_audit_events(user_id="u1", action="subscription_created")] == ["e1"]
    assert len(list_audit_events(limit=2)) == 2
