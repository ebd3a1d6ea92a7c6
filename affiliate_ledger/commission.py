"""
Commission configuration and the commission ledger.

Config resolution is a strict fallback chain, first match wins:
    1. affiliate override for (affiliate, plan)
    2. plan default for the plan
    3. system default (percentage, 10% first payment / 5% recurring)

Amounts are integers in currency minor units. Percentage commissions are
rounded half up to a whole minor unit.
"""

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .attribution import mark_converted
from .db import AffiliateRow, LedgerStore, as_utc, utcnow
from .errors import AffiliateNotFoundError, DuplicateOrderError, NoAttributionError, ZeroCommissionError
from .models import (
    Commission,
    CommissionConfig,
    CommissionScheme,
    CommissionStatus,
    CommissionType,
    ConfigSource,
    OrderStatus,
)
from .repositories import CommissionConfigRepository, CommissionRepository, OrderRepository, ReferralRepository

HUNDRED = Decimal("100")


def percentage_commission(amount: int, rate: Decimal) -> int:
    """``round(amount * rate / 100)`` with halves rounded away from zero."""
    value = Decimal(amount) * Decimal(rate) / HUNDRED
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_commission(amount: int, config: CommissionConfig, commission_type: CommissionType) -> tuple[int, Optional[Decimal]]:
    """
    Returns:
        Tuple of (commission amount, percentage rate used or None for fixed schemes)
    """
    if config.use_percentage:
        rate = config.rate_for(commission_type)
        return percentage_commission(amount, rate), rate
    return config.fixed_for(commission_type), None


def _config_from_row(row, source: ConfigSource, affiliate_id: Optional[UUID], plan_id: str) -> CommissionConfig:
    return CommissionConfig(
        affiliate_id=affiliate_id,
        plan_id=plan_id,
        source=source,
        use_percentage=row.use_percentage,
        first_payment_rate=row.first_payment_rate,
        recurring_rate=row.recurring_rate,
        fixed_first_payment=row.fixed_first_payment,
        fixed_recurring=row.fixed_recurring,
    )


class CommissionConfigResolver:
    def __init__(
        self,
        store: LedgerStore,
        default_first_payment_rate: Decimal = Decimal("10"),
        default_recurring_rate: Decimal = Decimal("5"),
    ):
        self.store = store
        self.default_first_payment_rate = Decimal(default_first_payment_rate)
        self.default_recurring_rate = Decimal(default_recurring_rate)

    def resolve(self, affiliate_id: Optional[UUID], plan_id: str) -> CommissionConfig:
        with self.store.transaction() as session:
            return self.resolve_in(session, affiliate_id, plan_id)

    def resolve_in(self, session: Session, affiliate_id: Optional[UUID], plan_id: str) -> CommissionConfig:
        """Resolve inside an existing unit of work. Never blends sources."""
        configs = CommissionConfigRepository(session)

        if affiliate_id is not None:
            override = configs.get_override(affiliate_id, plan_id)
            if override is not None:
                return _config_from_row(override, ConfigSource.AFFILIATE_OVERRIDE, affiliate_id, plan_id)

        plan_default = configs.get_plan_default(plan_id)
        if plan_default is not None:
            return _config_from_row(plan_default, ConfigSource.PLAN_DEFAULT, affiliate_id, plan_id)

        return CommissionConfig(
            affiliate_id=affiliate_id,
            plan_id=plan_id,
            source=ConfigSource.SYSTEM_DEFAULT,
            use_percentage=True,
            first_payment_rate=self.default_first_payment_rate,
            recurring_rate=self.default_recurring_rate,
        )

    def set_affiliate_override(self, affiliate_id: UUID, plan_id: str, scheme: CommissionScheme) -> CommissionConfig:
        with self.store.transaction() as session:
            if session.get(AffiliateRow, affiliate_id) is None:
                raise AffiliateNotFoundError(f"Affiliate {affiliate_id} not found")
            row = CommissionConfigRepository(session).upsert_override(affiliate_id, plan_id, scheme.model_dump())
            config = _config_from_row(row, ConfigSource.AFFILIATE_OVERRIDE, affiliate_id, plan_id)

        logger.info(f"Commission override set: affiliate={affiliate_id} plan={plan_id}")
        return config

    def set_plan_default(self, plan_id: str, scheme: CommissionScheme) -> CommissionConfig:
        with self.store.transaction() as session:
            row = CommissionConfigRepository(session).upsert_plan_default(plan_id, scheme.model_dump())
            config = _config_from_row(row, ConfigSource.PLAN_DEFAULT, None, plan_id)

        logger.info(f"Plan commission default set: plan={plan_id}")
        return config


class CommissionEngine:
    """
    Writes at most one commission per order.

    Rejections are raised as ``DuplicateOrderError``, ``ZeroCommissionError``
    and ``NoAttributionError``. The paid order is recorded before any check,
    but no commission is written when a rejection fires.
    """

    def __init__(self, store: LedgerStore, configs: CommissionConfigResolver):
        self.store = store
        self.configs = configs

    def record_paid_order(self, order_id: str, customer_id: str, amount: int, plan_id: str, paid_at: datetime) -> None:
        """
        Record an order as paid, once per order id.

        Runs in its own unit of work so the order counts towards first-payment
        detection even when the commission itself is rejected.
        """
        try:
            with self.store.transaction() as session:
                orders = OrderRepository(session)
                if orders.get_by_order_id(order_id) is None:
                    orders.create(
                        order_id=order_id,
                        customer_id=customer_id,
                        plan_id=plan_id,
                        amount=amount,
                        status=OrderStatus.PAID.value,
                        paid_at=paid_at,
                    )
        except IntegrityError:
            logger.debug(f"Order {order_id} already recorded concurrently")

    def compute_commission(
        self,
        order_id: str,
        customer_id: str,
        affiliate_id: UUID,
        amount: int,
        plan_id: str,
        created_at: Optional[datetime] = None,
    ) -> Commission:
        created_at = as_utc(created_at) or utcnow()
        self.record_paid_order(order_id, customer_id, amount, plan_id, created_at)

        try:
            with self.store.transaction() as session:
                commissions = CommissionRepository(session)
                existing = commissions.get_by_order(order_id)
                if existing is not None:
                    raise DuplicateOrderError(order_id, Commission.model_validate(existing))

                prior_paid = OrderRepository(session).count_prior_paid(customer_id, exclude_order_id=order_id)
                commission_type = CommissionType.FIRST_PAYMENT if prior_paid == 0 else CommissionType.RECURRING

                config = self.configs.resolve_in(session, affiliate_id, plan_id)
                commission_amount, rate = calculate_commission(amount, config, commission_type)
                if commission_amount <= 0:
                    raise ZeroCommissionError(
                        f"Order {order_id} yields no commission under the {config.source.value} scheme"
                    )

                referral = ReferralRepository(session).get_for_affiliate(customer_id, affiliate_id)
                if referral is None:
                    raise NoAttributionError(customer_id, affiliate_id)

                row = commissions.create(
                    affiliate_id=affiliate_id,
                    referral_id=referral.id,
                    customer_id=customer_id,
                    order_id=order_id,
                    type=commission_type.value,
                    amount=commission_amount,
                    rate=rate,
                    status=CommissionStatus.PENDING.value,
                    created_at=created_at,
                )
                mark_converted(referral, created_at)
                session.flush()
                commission = Commission.model_validate(row)
        except IntegrityError as e:
            winner = self._get_by_order(order_id)
            if winner is None:
                raise
            logger.info(f"Concurrent commission insert for order {order_id}, returning existing row")
            raise DuplicateOrderError(order_id, winner) from e

        logger.info(
            f"Commission created: order={order_id} affiliate={affiliate_id} "
            f"type={commission.type.value} amount={commission.amount}"
        )
        return commission

    def _get_by_order(self, order_id: str) -> Optional[Commission]:
        with self.store.transaction() as session:
            row = CommissionRepository(session).get_by_order(order_id)
            return Commission.model_validate(row) if row else None
