"""
Checkout, portal and customer provisioning.
"""
import pytest

from planwarden.core.errors import BillingDisabledError, NotFoundError, ValidationError
from planwarden.features.audit.service import list_audit_events
from planwarden.features.billing.service import (
    billing_enabled,
    ensure_customer_for_user,
    get_stripe_price_for_plan,
    start_checkout,
    start_portal,
)
from planwarden.features.users.service import get_or_create_user, get_user
from planwarden.models.plan import BillingCycle, PlanTier


@pytest.fixture
def buyer():
    return get_or_create_user("user_buyer", email="buyer@example.com", display_name="Buyer")


def test_billing_enabled_follows_secret_key(billing_settings, monkeypatch):
    assert billing_enabled()
    monkeypatch.setattr(billing_settings, "STRIPE_SECRET_KEY", None)
    assert not billing_enabled()


def test_price_lookup(billing_settings):
    assert get_stripe_price_for_plan(PlanTier.PLUS, BillingCycle.MONTHLY) == "price_plus_monthly"
    assert get_stripe_price_for_plan(PlanTier.PRO, BillingCycle.MONTHLY) == "price_pro_monthly"
    assert get_stripe_price_for_plan(PlanTier.PRO, BillingCycle.YEARLY) is None
    assert get_stripe_price_for_plan(PlanTier.FREE, BillingCycle.MONTHLY) is None


def test_checkout_creates_customer_and_session(fake_provider, buyer):
    url = start_checkout(buyer.user_id, "plus", "monthly", provider=fake_provider)

    assert url == "https://checkout.stripe.test/c/session_1"
    assert fake_provider.customers == [{"user_id": "user_buyer", "email": "buyer@example.com", "name": "Buyer"}]
    assert get_user(buyer.user_id).stripe_customer_id == "cus_user_buyer"

    session = fake_provider.checkout_sessions[0]
    assert session["customer_id"] == "cus_user_buyer"
    assert session["price_id"] == "price_plus_monthly"
    assert session["metadata"] == {"user_id": "user_buyer", "plan": "plus"}
    assert session["success_url"].startswith("https://app.test/account?success=true")
    assert session["cancel_url"] == "https://app.test/pricing?canceled=true"

    audit = list_audit_events(user_id=buyer.user_id, action="checkout_session_created")
    assert audit[0]["metadata"] == {"plan": "plus", "cycle": "monthly"}


def test_checkout_reuses_existing_customer(fake_provider):
    get_or_create_user("user_known", stripe_customer_id="cus_known")

    start_checkout("user_known", "pro", "monthly", provider=fake_provider)

    assert fake_provider.customers == []
    assert fake_provider.checkout_sessions[0]["customer_id"] == "cus_known"


def test_checkout_custom_redirects(fake_provider, buyer):
    start_checkout(
        buyer.user_id, "plus", "yearly",
        success_url="https://app.test/thanks", cancel_url="https://app.test/back",
        provider=fake_provider,
    )
    session = fake_provider.checkout_sessions[0]
    assert session["price_id"] == "price_plus_yearly"
    assert session["success_url"] == "https://app.test/thanks"
    assert session["cancel_url"] == "https://app.test/back"


@pytest.mark.parametrize("plan,cycle", [("free", "monthly"), ("gold", "monthly"), ("plus", "weekly")])
def test_checkout_rejects_bad_input(fake_provider, buyer, plan, cycle):
    with pytest.raises(ValidationError):
        start_checkout(buyer.user_id, plan, cycle, provider=fake_provider)
    assert fake_provider.checkout_sessions == []


def test_checkout_without_configured_price(fake_provider, buyer):
    with pytest.raises(ValidationError) as exc_info:
        start_checkout(buyer.user_id, "pro", "yearly", provider=fake_provider)
    assert "pro yearly" in exc_info.value.message


def test_checkout_unknown_user(fake_provider):
    with pytest.raises(NotFoundError):
        start_checkout("ghost", "plus", "monthly", provider=fake_provider)


def test_checkout_billing_disabled(buyer, monkeypatch):
    from planwarden.core.config import settings
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    with pytest.raises(BillingDisabledError):
        start_checkout(buyer.user_id, "plus", "monthly")


def test_ensure_customer_is_stable(fake_provider, buyer):
    first = ensure_customer_for_user(buyer.user_id, fake_provider)
    second = ensure_customer_for_user(buyer.user_id, fake_provider)
    assert first == second == "cus_user_buyer"
    assert len(fake_provider.customers) == 1


def test_portal_requires_billing_account(fake_provider, buyer):
    with pytest.raises(ValidationError):
        start_portal(buyer.user_id, provider=fake_provider)
    assert fake_provider.portal_sessions == []


def test_portal_session(fake_provider):
    get_or_create_user("user_sub", stripe_customer_id="cus_sub")

    url = start_portal("user_sub", provider=fake_provider)

    assert url == "https://billing.stripe.test/p/session_1"
    assert fake_provider.portal_sessions == [{"customer_id": "cus_sub", "return_url": "https://app.test/account"}]
    assert list_audit_events(user_id="user_sub", action="portal_session_created")
