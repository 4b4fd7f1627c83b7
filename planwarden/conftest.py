# planwarden/conftest.py
import sys
import pytest
from pathlib import Path

# Add repository root to PYTHONPATH so `import planwarden` works from any cwd
REPO_ROOT = Path(__file__).resolve().parent.parent
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

TEST_WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(scope="function", autouse=True)
def db():
    """
    Fresh in-memory SQLite database for every test.

    All sessions share one connection (StaticPool), so rows written in one
    `get_db_session()` block are visible to the next.
    """
    from planwarden.core.database import init_engine, reset_database

    engine = init_engine("sqlite://")
    reset_database()
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def billing_settings(monkeypatch):
    """Stripe configured with fixed test keys and price ids."""
    from planwarden.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_planwarden")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", TEST_WEBHOOK_SECRET)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_TOLERANCE", 300)
    monkeypatch.setattr(settings, "STRIPE_PRICE_PLUS_MONTHLY", "price_plus_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PLUS_YEARLY", "price_plus_yearly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO_MONTHLY", "price_pro_monthly")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO_YEARLY", None)
    monkeypatch.setattr(settings, "APP_BASE_URL", "https://app.test")
    monkeypatch.setattr(settings, "ADMIN_KEY", "admin-test-key")
    monkeypatch.setattr(settings, "AUDIT_ENABLED", True)
    return settings


@pytest.fixture(scope="function")
def fake_provider(billing_settings):
    from planwarden.tests.mocks import FakeProvider

    return FakeProvider()
