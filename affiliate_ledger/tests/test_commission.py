"""
Unit Tests for Commission Configuration and the Commission Ledger

Tests cover:
1. Rounding of percentage commissions
2. Config fallback order (override, plan default, system default)
3. First-payment vs recurring detection
4. Idempotency per order, including concurrent retries
5. Zero-commission and no-attribution rejections
6. Commission summaries
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal
from uuid import uuid4

import pytest
from pydantic import ValidationError

from affiliate_ledger.commission import percentage_commission
from affiliate_ledger.errors import AffiliateNotFoundError
from affiliate_ledger.models import (
    CommissionOutcome,
    CommissionScheme,
    CommissionStatus,
    CommissionType,
    ConfigSource,
    OrderPaidRequest,
    ReferralStatus,
    RegisterAffiliateRequest,
)
from affiliate_ledger.repositories import CommissionRepository, OrderRepository
from affiliate_ledger.service import LedgerService

from conftest import make_settings, pay, refer


def percent(first, recurring):
    return CommissionScheme(use_percentage=True, first_payment_rate=Decimal(first), recurring_rate=Decimal(recurring))


def fixed(first, recurring):
    return CommissionScheme(use_percentage=False, fixed_first_payment=first, fixed_recurring=recurring)


def commission_rows(service, order_id):
    with service.store.transaction() as session:
        return CommissionRepository(session).count(order_id=order_id)


class TestRounding:
    """Tests for percentage commission rounding."""

    @pytest.mark.parametrize("amount,rate,expected", [
        (100000, "10", 10000),
        (999, "5", 50),
        (10, "5", 1),
        (1, "49", 0),
        (12345, "12.5", 1543),
        (333, "33.33", 111),
        (5000, "0", 0),
        (5000, "100", 5000),
    ])
    def test_percentage_commission(self, amount, rate, expected):
        """Test round(amount * rate / 100) rounds halves up to a whole minor unit."""
        assert percentage_commission(amount, Decimal(rate)) == expected


class TestConfigResolution:
    """Tests for the commission config fallback chain."""

    def test_system_default(self, service, affiliate):
        """Test the system default applies when nothing is configured."""
        config = service.resolve_config(affiliate.id, "P1")

        assert config.source == ConfigSource.SYSTEM_DEFAULT
        assert config.use_percentage is True
        assert config.first_payment_rate == Decimal("10")
        assert config.recurring_rate == Decimal("5")

    def test_system_default_from_settings(self, store, affiliate):
        """Test the system default rates are configurable."""
        service = LedgerService(store=store, settings=make_settings(default_first_payment_rate=20, default_recurring_rate=2))

        config = service.resolve_config(affiliate.id, "P1")

        assert config.first_payment_rate == Decimal("20")
        assert config.recurring_rate == Decimal("2")

    def test_plan_default(self, service, affiliate):
        """Test a plan default beats the system default."""
        service.set_plan_commission_default("P1", percent("15", "7.5"))

        config = service.resolve_config(affiliate.id, "P1")

        assert config.source == ConfigSource.PLAN_DEFAULT
        assert config.first_payment_rate == Decimal("15")
        assert config.recurring_rate == Decimal("7.5")

    def test_override_wins_without_blending(self, service, affiliate):
        """Test an affiliate override is returned as-is when all three sources exist."""
        service.set_plan_commission_default("P1", percent("15", "7.5"))
        service.set_affiliate_commission_config(affiliate.id, "P1", fixed(2500, 1000))

        config = service.resolve_config(affiliate.id, "P1")

        assert config.source == ConfigSource.AFFILIATE_OVERRIDE
        assert config.use_percentage is False
        assert config.fixed_first_payment == 2500
        assert config.fixed_recurring == 1000
        assert config.first_payment_rate is None
        assert config.recurring_rate is None

    def test_override_is_per_plan(self, service, affiliate):
        """Test an override for one plan does not leak into another."""
        service.set_affiliate_commission_config(affiliate.id, "P1", percent("30", "30"))

        assert service.resolve_config(affiliate.id, "P2").source == ConfigSource.SYSTEM_DEFAULT

    def test_override_upsert(self, service, affiliate):
        """Test setting an override twice replaces the scheme."""
        service.set_affiliate_commission_config(affiliate.id, "P1", percent("30", "30"))
        service.set_affiliate_commission_config(affiliate.id, "P1", percent("12", "6"))

        config = service.resolve_config(affiliate.id, "P1")

        assert config.first_payment_rate == Decimal("12")

    def test_override_for_unknown_affiliate(self, service):
        """Test overrides require an existing affiliate."""
        with pytest.raises(AffiliateNotFoundError):
            service.set_affiliate_commission_config(uuid4(), "P1", percent("10", "5"))

    def test_partial_scheme_rejected(self):
        """Test schemes missing one of their two values are invalid."""
        with pytest.raises(ValidationError):
            CommissionScheme(use_percentage=True, first_payment_rate=Decimal("10"))
        with pytest.raises(ValidationError):
            CommissionScheme(use_percentage=False, fixed_first_payment=100)

    def test_rate_out_of_range_rejected(self):
        """Test rates outside [0, 100] are invalid."""
        with pytest.raises(ValidationError):
            percent("101", "5")
        with pytest.raises(ValidationError):
            percent("10", "-1")


class TestCommissionEngine:
    """Tests for commission computation."""

    def test_first_payment_commission(self, service, affiliate):
        """Test order O1 for 100000 at 10% yields a pending first-payment commission of 10000."""
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        assert response.outcome == CommissionOutcome.CREATED
        assert response.commission.type == CommissionType.FIRST_PAYMENT
        assert response.commission.amount == 10000
        assert response.commission.rate == Decimal("10")
        assert response.commission.status == CommissionStatus.PENDING
        assert response.commission.affiliate_id == affiliate.id

    def test_duplicate_order(self, service, affiliate):
        """Test recomputing O1 returns the existing commission and writes nothing."""
        refer(service, "cust-1", "ABC123")
        first = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        second = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        assert second.outcome == CommissionOutcome.DUPLICATE_ORDER
        assert second.commission.id == first.commission.id
        assert second.retryable is False
        assert commission_rows(service, "O1") == 1

    def test_recurring_after_first_paid_order(self, service, affiliate):
        """Test the second paid order of a customer is a recurring commission."""
        refer(service, "cust-1", "ABC123")
        pay(service, "O1", "cust-1", 100000, minutes=0)

        response = pay(service, "O2", "cust-1", 100000, minutes=60)

        assert response.outcome == CommissionOutcome.CREATED
        assert response.commission.type == CommissionType.RECURRING
        assert response.commission.amount == 5000

    def test_direct_calls_detect_recurring(self, service, affiliate):
        """Test direct computation records each order, so a second order is recurring."""
        refer(service, "cust-1", "ABC123")

        first = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")
        second = service.compute_commission("O2", "cust-1", affiliate.id, 100000, "P1")

        assert first.commission.type == CommissionType.FIRST_PAYMENT
        assert first.commission.amount == 10000
        assert second.commission.type == CommissionType.RECURRING
        assert second.commission.amount == 5000
        with service.store.transaction() as session:
            assert OrderRepository(session).count(customer_id="cust-1") == 2

    def test_rejected_direct_call_still_records_order(self, service, affiliate):
        """Test an order rejected for lack of attribution still counts as paid."""
        service.compute_commission("O0", "cust-1", affiliate.id, 100000, "P1")
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        assert response.commission.type == CommissionType.RECURRING

    def test_first_payment_counts_orders_before_attribution(self, service, affiliate):
        """Test prior paid orders make later ones recurring even if they earned nothing."""
        pay(service, "O0", "cust-1", 100000, minutes=0)
        refer(service, "cust-1", "ABC123")

        response = pay(service, "O1", "cust-1", 100000, minutes=60)

        assert response.commission.type == CommissionType.RECURRING

    def test_fixed_scheme(self, service, affiliate):
        """Test fixed schemes pay the configured amount regardless of order value."""
        service.set_affiliate_commission_config(affiliate.id, "P1", fixed(2500, 1000))
        refer(service, "cust-1", "ABC123")

        first = pay(service, "O1", "cust-1", 100, minutes=0)
        second = pay(service, "O2", "cust-1", 999999, minutes=60)

        assert first.commission.amount == 2500
        assert first.commission.rate is None
        assert second.commission.amount == 1000

    def test_zero_rate_writes_nothing(self, service, affiliate):
        """Test a zero rate yields ZeroCommission and no ledger row."""
        service.set_plan_commission_default("P1", percent("0", "0"))
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        assert response.outcome == CommissionOutcome.ZERO_COMMISSION
        assert response.commission is None
        assert commission_rows(service, "O1") == 0

    def test_amount_rounding_to_zero(self, service, affiliate):
        """Test tiny orders that round to nothing are ZeroCommission."""
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission("O1", "cust-1", affiliate.id, 4, "P1")

        assert response.outcome == CommissionOutcome.ZERO_COMMISSION

    def test_no_attribution(self, service, affiliate):
        """Test an unreferred customer is never credited, even with an affiliate id."""
        response = service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        assert response.outcome == CommissionOutcome.NO_ATTRIBUTION
        assert commission_rows(service, "O1") == 0

    def test_no_attribution_for_other_affiliate(self, service, affiliate, other_affiliate):
        """Test the supplied affiliate must be the one the customer is attributed to."""
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission("O1", "cust-1", other_affiliate.id, 100000, "P1")

        assert response.outcome == CommissionOutcome.NO_ATTRIBUTION

    def test_referral_marked_converted(self, service, affiliate):
        """Test the first commission converts the referral and stamps the payment time."""
        refer(service, "cust-1", "ABC123")

        response = pay(service, "O1", "cust-1", 100000)

        referral = service.get_referral("cust-1")
        assert referral.status == ReferralStatus.CONVERTED
        assert referral.first_payment_at == response.commission.created_at

    @pytest.mark.parametrize("order_id,customer_id,amount,plan_id", [
        ("O1", "cust-1", 0, "P1"),
        ("O1", "cust-1", -5, "P1"),
        (" ", "cust-1", 100, "P1"),
        ("O1", "", 100, "P1"),
        ("O1", "cust-1", 100, "  "),
    ])
    def test_invalid_input_outcome(self, service, affiliate, order_id, customer_id, amount, plan_id):
        """Test non-positive amounts and blank identifiers are an invalid_input outcome with nothing stored."""
        refer(service, "cust-1", "ABC123")

        response = service.compute_commission(order_id, customer_id, affiliate.id, amount, plan_id)

        assert response.outcome == CommissionOutcome.INVALID_INPUT
        assert response.commission is None
        assert response.retryable is False
        with service.store.transaction() as session:
            assert OrderRepository(session).count() == 0
            assert CommissionRepository(session).count() == 0

    def test_order_request_validates_amount(self):
        """Test the order-paid request rejects non-positive amounts."""
        with pytest.raises(ValidationError):
            OrderPaidRequest(order_id="O1", customer_id="cust-1", amount=-5, plan_id="P1")


class TestOrderPaid:
    """Tests for the order-paid entry point."""

    def test_affiliate_looked_up_from_referral(self, service, affiliate):
        """Test the affiliate is taken from the customer's referral when omitted."""
        refer(service, "cust-1", "ABC123")

        response = pay(service, "O1", "cust-1", 100000)

        assert response.outcome == CommissionOutcome.CREATED
        assert response.commission.affiliate_id == affiliate.id

    def test_unreferred_customer(self, service, affiliate):
        """Test orders of unreferred customers are recorded but not credited."""
        response = pay(service, "O1", "cust-1", 100000)

        assert response.outcome == CommissionOutcome.NO_ATTRIBUTION
        with service.store.transaction() as session:
            assert OrderRepository(session).count(order_id="O1") == 1

    def test_redelivered_order(self, service, affiliate):
        """Test a redelivered payment event is recorded once and credited once."""
        refer(service, "cust-1", "ABC123")

        first = pay(service, "O1", "cust-1", 100000)
        second = pay(service, "O1", "cust-1", 100000)

        assert first.outcome == CommissionOutcome.CREATED
        assert second.outcome == CommissionOutcome.DUPLICATE_ORDER
        assert second.commission.id == first.commission.id
        with service.store.transaction() as session:
            assert OrderRepository(session).count(order_id="O1") == 1
        assert commission_rows(service, "O1") == 1

    def test_concurrent_retries_create_one_commission(self, file_store):
        """Test racing deliveries of one payment event create exactly one commission."""
        service = LedgerService(store=file_store, settings=make_settings())
        affiliate = service.register_affiliate(
            RegisterAffiliateRequest(name="X", email="x@example.com", code="ABC123")
        )
        refer(service, "cust-1", "ABC123")

        def deliver(_):
            return service.compute_commission("O1", "cust-1", affiliate.id, 100000, "P1")

        with ThreadPoolExecutor(max_workers=4) as pool:
            responses = list(pool.map(deliver, range(8)))

        outcomes = [r.outcome for r in responses]
        assert outcomes.count(CommissionOutcome.CREATED) == 1
        assert outcomes.count(CommissionOutcome.DUPLICATE_ORDER) == 7
        assert len({r.commission.id for r in responses}) == 1
        assert commission_rows(service, "O1") == 1


class TestCommissionSummary:
    """Tests for commission read projections."""

    def test_summary_totals(self, service, affiliate):
        """Test totals are split by status and type."""
        refer(service, "cust-1", "ABC123")
        refer(service, "cust-2", "ABC123")
        pay(service, "O1", "cust-1", 100000, minutes=0)
        pay(service, "O2", "cust-1", 100000, minutes=1)
        pay(service, "O3", "cust-2", 50000, minutes=2)

        summary = service.get_commission_summary(affiliate.id)

        assert summary.total == 10000 + 5000 + 5000
        assert summary.pending == 20000
        assert summary.paid == 0
        assert summary.first_payment == 15000
        assert summary.recurring == 5000
        assert summary.total_count == 3
        assert summary.pending_count == 3
        assert summary.paid_count == 0

    def test_empty_summary(self, service, affiliate):
        """Test an affiliate without commissions sums to zero."""
        summary = service.get_commission_summary(affiliate.id)

        assert summary.total == 0
        assert summary.total_count == 0

    def test_list_commissions_newest_first(self, service, affiliate):
        """Test commissions are listed newest first and filterable by type."""
        refer(service, "cust-1", "ABC123")
        pay(service, "O1", "cust-1", 100000, minutes=0)
        pay(service, "O2", "cust-1", 100000, minutes=1)

        listed = service.list_commissions(affiliate.id)
        recurring = service.list_commissions(affiliate.id, commission_type="recurring")

        assert [c.order_id for c in listed] == ["O2", "O1"]
        assert [c.order_id for c in recurring] == ["O2"]
