# vmdash/conftest.py
import os
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

os.environ.setdefault("ENV", "test")


@pytest.fixture(scope="function", autouse=True)
def db_url(tmp_path, monkeypatch):
    """
    Point the service at a fresh SQLite file for every test.

    TEST_DATABASE_URL wins over DATABASE_URL, so code that lazily builds
    its own engine lands on the same file.
    """
    url = f"sqlite:///{tmp_path / 'vmdash_test.db'}"
    monkeypatch.setenv("TEST_DATABASE_URL", url)

    from vmdash.core.database import init_engine, create_all_tables
    init_engine(url)
    create_all_tables()
    yield url


@pytest.fixture(scope="function", autouse=True)
def billing_env(monkeypatch):
    """Billing starts disabled; tests opt in via mock_stripe_provider."""
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    from vmdash.core.config import settings
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", None)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)


@pytest.fixture(scope="function", autouse=True)
def hypervisor():
    """Fresh in-memory hypervisor per test."""
    from vmdash.features.hypervisor.provider import InMemoryHypervisor, get_hypervisor, set_hypervisor

    previous = get_hypervisor()
    hv = InMemoryHypervisor()
    set_hypervisor(hv)
    yield hv
    set_hypervisor(previous)


@pytest.fixture
def mock_stripe_provider(monkeypatch):
    """Mock Stripe provider for testing (no real API calls)."""
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_123")
    with patch("vmdash.features.billing.service.StripeProvider") as mock:
        instance = Mock()
        mock.return_value = instance
        yield instance


@pytest.fixture
def now():
    return datetime.now(timezone.utc).replace(microsecond=0)


@pytest.fixture
def save_sub(now):
    """Persist a subscription record; expiry given as days from `now`."""
    from vmdash.features.subscriptions.service import save_subscription
    from vmdash.models.subscription import Subscription

    def _save(account_id="user_alice", plan_id="hour_booster", vm_count=2, days=30,
              cancel=False, ref="sub_123", customer="cus_123"):
        sub = Subscription(
            account_id=account_id,
            plan_id=plan_id,
            vm_count=vm_count,
            expires_at=None if days is None else now + timedelta(days=days),
            cancel_at_period_end=cancel,
            provider_subscription_ref=ref,
            provider_customer_ref=customer,
        )
        return save_subscription(sub, now)

    return _save
