"""
Attribution store and ledger tables.

SQLAlchemy 2.0 models for every entity the ledger persists, plus
``LedgerStore``: the engine/session factory and the transactional unit of
work every ledger operation runs inside.

Uniqueness that the ledger relies on is declared here, not checked in Python:
- ``referrals.customer_id``: one attribution per customer
- ``commissions.order_id``: one commission per order
- ``orders.order_id`` and ``voucher_redemptions.order_id``
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    TypeDecorator,
    UniqueConstraint,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps, also on backends that store naive values (SQLite)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class Base(DeclarativeBase):
    pass


class AffiliateRow(Base):
    __tablename__ = "affiliates"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False, default=Decimal("10"))
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class TrackingLinkRow(Base):
    __tablename__ = "tracking_links"
    __table_args__ = (
        Index("idx_tracking_links_affiliate_ref", "affiliate_id", "ref_code"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False)
    ref_code: Mapped[str] = mapped_column(String(100), nullable=False)
    link_type: Mapped[str] = mapped_column(String(20), nullable=False, default="checkout")
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ClickRow(Base):
    __tablename__ = "affiliate_clicks"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False, index=True)
    raw_code: Mapped[str] = mapped_column(String(100), nullable=False)
    link_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("tracking_links.id"), nullable=True)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class ReferralRow(Base):
    __tablename__ = "affiliate_referrals"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    customer_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False, index=True)
    referral_code: Mapped[str] = mapped_column(String(100), nullable=False)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="click")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    signup_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    first_payment_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)


class AffiliateVoucherRow(Base):
    __tablename__ = "affiliate_vouchers"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False, index=True)
    code: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class VoucherRedemptionRow(Base):
    __tablename__ = "voucher_redemptions"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    voucher_id: Mapped[UUID] = mapped_column(ForeignKey("affiliate_vouchers.id"), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    redeemed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class OrderRow(Base):
    __tablename__ = "orders"
    __table_args__ = (
        Index("idx_orders_customer_status", "customer_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="paid")
    paid_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class AffiliateCommissionConfigRow(Base):
    __tablename__ = "affiliate_commission_configs"
    __table_args__ = (
        UniqueConstraint("affiliate_id", "plan_id", name="uq_affiliate_commission_configs_affiliate_plan"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False)
    plan_id: Mapped[str] = mapped_column(String(100), nullable=False)
    use_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    first_payment_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    recurring_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    fixed_first_payment: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fixed_recurring: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PlanCommissionDefaultRow(Base):
    __tablename__ = "plan_commission_defaults"

    plan_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    use_percentage: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    first_payment_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    recurring_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    fixed_first_payment: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fixed_recurring: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)


class PayoutRow(Base):
    __tablename__ = "affiliate_payouts"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    batch: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False, index=True)
    total_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_count: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)


class CommissionRow(Base):
    __tablename__ = "affiliate_commissions"
    __table_args__ = (
        Index("idx_commissions_affiliate_status", "affiliate_id", "status"),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    affiliate_id: Mapped[UUID] = mapped_column(ForeignKey("affiliates.id"), nullable=False)
    referral_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("affiliate_referrals.id"), nullable=True)
    customer_id: Mapped[str] = mapped_column(String(100), nullable=False)
    order_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(5, 2), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payout_id: Mapped[Optional[UUID]] = mapped_column(ForeignKey("affiliate_payouts.id"), nullable=True)


class LedgerStore:
    """
    Engine and session factory for the ledger.

    Usage:
        store = LedgerStore.from_url("sqlite://")
        store.create_all()

        with store.transaction() as session:
            session.add(row)
    """

    def __init__(self, engine: Engine):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, echo: bool = False) -> "LedgerStore":
        kwargs = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        return cls(create_engine(database_url, echo=echo, **kwargs))

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def drop_all(self) -> None:
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Commit on success, roll back on any exception."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
