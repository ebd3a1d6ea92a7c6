"""Pytest configuration and shared fixtures for the ledger tests."""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add the project root to PYTHONPATH
project_root = Path(__file__).parent.parent.parent
sys.path.insert(0, str(project_root))

import pytest

from affiliate_ledger.config import Settings
from affiliate_ledger.db import LedgerStore
from affiliate_ledger.models import OrderPaidRequest, RegisterAffiliateRequest, SignupRequest
from affiliate_ledger.service import LedgerService


BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_settings(**overrides) -> Settings:
    values = {"database_url": "sqlite://", "log_level": "DEBUG"}
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    """Fresh in-memory database per test."""
    store = LedgerStore.from_url("sqlite://")
    store.create_all()
    yield store
    store.drop_all()
    store.engine.dispose()


@pytest.fixture
def file_store(tmp_path):
    """File-backed database, shared safely across threads."""
    store = LedgerStore.from_url(f"sqlite:///{tmp_path / 'ledger.db'}")
    store.create_all()
    yield store
    store.engine.dispose()


@pytest.fixture
def service(store, settings):
    return LedgerService(store=store, settings=settings)


@pytest.fixture
def affiliate(service):
    """Affiliate X with code ABC123."""
    return service.register_affiliate(
        RegisterAffiliateRequest(name="Affiliate X", email="x@example.com", code="ABC123")
    )


@pytest.fixture
def other_affiliate(service):
    """Affiliate Y with code YYY999."""
    return service.register_affiliate(
        RegisterAffiliateRequest(name="Affiliate Y", email="y@example.com", code="YYY999")
    )


def refer(service, customer_id, code):
    """Attribute a customer to an affiliate code through signup."""
    return service.on_customer_signup(SignupRequest(customer_id=customer_id, referral_code=code))


def pay(service, order_id, customer_id, amount, plan_id="P1", minutes=0, affiliate_id=None):
    """Report a paid order, ``minutes`` after BASE_TIME."""
    return service.on_order_paid(
        OrderPaidRequest(
            order_id=order_id,
            customer_id=customer_id,
            affiliate_id=affiliate_id,
            amount=amount,
            plan_id=plan_id,
            paid_at=BASE_TIME + timedelta(minutes=minutes),
        )
    )
