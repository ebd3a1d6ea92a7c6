"""
Repositories.

Data access layer for the ledger tables. Every repository works inside the
session of the caller's unit of work and never commits on its own.
"""

from datetime import datetime
from typing import Any, Generic, Optional, TypeVar
from uuid import UUID

from sqlalchemy import case, func, or_, select, update
from sqlalchemy.orm import Session

from .db import (
    AffiliateCommissionConfigRow,
    AffiliateRow,
    AffiliateVoucherRow,
    Base,
    ClickRow,
    CommissionRow,
    OrderRow,
    PayoutRow,
    PlanCommissionDefaultRow,
    ReferralRow,
    TrackingLinkRow,
    VoucherRedemptionRow,
)

ModelType = TypeVar("ModelType", bound=Base)


class BaseRepository(Generic[ModelType]):
    """
    Base repository with generic CRUD operations.

    Type Parameters:
        ModelType: SQLAlchemy model class

    Example:
        class AffiliateRepository(BaseRepository[AffiliateRow]):
            def __init__(self, session: Session):
                super().__init__(AffiliateRow, session)
    """

    def __init__(self, model: type[ModelType], session: Session) -> None:
        self.model = model
        self.session = session

    def get_by_id(self, id: Any) -> Optional[ModelType]:
        return self.session.get(self.model, id)

    def get_by(self, **filters: Any) -> Optional[ModelType]:
        """
        Get single entity by filters.

        Args:
            **filters: Column filters

        Returns:
            Matching entity or None
        """
        stmt = select(self.model).filter_by(**filters)
        return self.session.execute(stmt).scalar_one_or_none()

    def create(self, **data: Any) -> ModelType:
        """
        Create new entity and flush it, so unique constraints fire inside
        the caller's transaction.

        Args:
            **data: Entity data

        Returns:
            Created entity
        """
        entity = self.model(**data)
        self.session.add(entity)
        self.session.flush()
        return entity

    def apply_patch(self, id: Any, changes: dict[str, Any]) -> int:
        """
        Apply a typed patch as one parameterized UPDATE.

        Args:
            id: Entity primary key
            changes: Column values to set; keys must be mapped columns

        Returns:
            Number of updated rows
        """
        unknown = set(changes) - set(self.model.__table__.columns.keys())
        if unknown:
            raise ValueError(f"Unknown columns for {self.model.__tablename__}: {sorted(unknown)}")

        stmt = update(self.model).where(self.model.id == id).values(**changes)
        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount

    def count(self, **filters: Any) -> int:
        stmt = select(func.count()).select_from(self.model)
        if filters:
            stmt = stmt.filter_by(**filters)
        return self.session.execute(stmt).scalar() or 0


class AffiliateRepository(BaseRepository[AffiliateRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(AffiliateRow, session)

    def get_by_code(self, code: str) -> Optional[AffiliateRow]:
        return self.get_by(code=code)

    def get_active_by_code(self, code: str) -> Optional[AffiliateRow]:
        return self.get_by(code=code, status="active")


class TrackingLinkRepository(BaseRepository[TrackingLinkRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(TrackingLinkRow, session)

    def find_for_hint(self, affiliate_id: UUID, ref_code: str, hint: str) -> Optional[TrackingLinkRow]:
        """
        Find the tracking link a click's link hint refers to.

        The hint matches either the link id or its full URL. When several
        links match, the most recently created one wins.
        """
        matches = [TrackingLinkRow.url == hint]
        try:
            matches.append(TrackingLinkRow.id == UUID(hint))
        except ValueError:
            pass

        stmt = (
            select(TrackingLinkRow)
            .where(
                TrackingLinkRow.affiliate_id == affiliate_id,
                TrackingLinkRow.ref_code == ref_code,
                or_(*matches),
            )
            .order_by(TrackingLinkRow.created_at.desc())
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def list_for_affiliate(self, affiliate_id: UUID) -> list[TrackingLinkRow]:
        stmt = (
            select(TrackingLinkRow)
            .where(TrackingLinkRow.affiliate_id == affiliate_id)
            .order_by(TrackingLinkRow.created_at.desc())
        )
        return list(self.session.execute(stmt).scalars().all())


class ClickRepository(BaseRepository[ClickRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(ClickRow, session)


class ReferralRepository(BaseRepository[ReferralRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(ReferralRow, session)

    def get_by_customer(self, customer_id: str) -> Optional[ReferralRow]:
        return self.get_by(customer_id=customer_id)

    def get_for_affiliate(self, customer_id: str, affiliate_id: UUID) -> Optional[ReferralRow]:
        return self.get_by(customer_id=customer_id, affiliate_id=affiliate_id)


class VoucherRepository(BaseRepository[AffiliateVoucherRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(AffiliateVoucherRow, session)

    def get_by_code(self, code: str) -> Optional[AffiliateVoucherRow]:
        return self.get_by(code=code)

    def usage_count(self, voucher_id: UUID) -> int:
        stmt = select(func.count()).select_from(VoucherRedemptionRow).where(
            VoucherRedemptionRow.voucher_id == voucher_id
        )
        return self.session.execute(stmt).scalar() or 0


class VoucherRedemptionRepository(BaseRepository[VoucherRedemptionRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(VoucherRedemptionRow, session)


class OrderRepository(BaseRepository[OrderRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(OrderRow, session)

    def get_by_order_id(self, order_id: str) -> Optional[OrderRow]:
        return self.get_by(order_id=order_id)

    def count_prior_paid(self, customer_id: str, exclude_order_id: str) -> int:
        """Count the customer's paid orders other than ``exclude_order_id``."""
        stmt = select(func.count()).select_from(OrderRow).where(
            OrderRow.customer_id == customer_id,
            OrderRow.status == "paid",
            OrderRow.order_id != exclude_order_id,
        )
        return self.session.execute(stmt).scalar() or 0


class CommissionConfigRepository:
    """Affiliate overrides and plan defaults that feed config resolution."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def get_override(self, affiliate_id: UUID, plan_id: str) -> Optional[AffiliateCommissionConfigRow]:
        stmt = select(AffiliateCommissionConfigRow).where(
            AffiliateCommissionConfigRow.affiliate_id == affiliate_id,
            AffiliateCommissionConfigRow.plan_id == plan_id,
        )
        return self.session.execute(stmt).scalar_one_or_none()

    def get_plan_default(self, plan_id: str) -> Optional[PlanCommissionDefaultRow]:
        return self.session.get(PlanCommissionDefaultRow, plan_id)

    def upsert_override(self, affiliate_id: UUID, plan_id: str, scheme: dict[str, Any]) -> AffiliateCommissionConfigRow:
        row = self.get_override(affiliate_id, plan_id)
        if row is None:
            row = AffiliateCommissionConfigRow(affiliate_id=affiliate_id, plan_id=plan_id)
            self.session.add(row)
        for key, value in scheme.items():
            setattr(row, key, value)
        self.session.flush()
        return row

    def upsert_plan_default(self, plan_id: str, scheme: dict[str, Any]) -> PlanCommissionDefaultRow:
        row = self.get_plan_default(plan_id)
        if row is None:
            row = PlanCommissionDefaultRow(plan_id=plan_id)
            self.session.add(row)
        for key, value in scheme.items():
            setattr(row, key, value)
        self.session.flush()
        return row


class CommissionRepository(BaseRepository[CommissionRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(CommissionRow, session)

    def get_by_order(self, order_id: str) -> Optional[CommissionRow]:
        return self.get_by(order_id=order_id)

    def pending_for_affiliate(self, affiliate_id: UUID, for_update: bool = False) -> list[CommissionRow]:
        """
        Pending commissions for an affiliate, oldest first.

        Args:
            affiliate_id: Affiliate ID
            for_update: Lock the rows (SELECT FOR UPDATE) where the backend supports it

        Returns:
            Commissions ordered by created_at, ties broken by order_id
        """
        stmt = (
            select(CommissionRow)
            .where(CommissionRow.affiliate_id == affiliate_id, CommissionRow.status == "pending")
            .order_by(CommissionRow.created_at, CommissionRow.order_id)
        )
        if for_update:
            stmt = stmt.with_for_update()
        return list(self.session.execute(stmt).scalars().all())

    def mark_paid(self, commission_ids: list[UUID], payout_id: UUID, paid_at: datetime) -> int:
        """
        Settle commissions into a payout.

        Only rows still ``pending`` are touched, so the returned count is
        smaller than ``len(commission_ids)`` if another batch got there first.
        """
        if not commission_ids:
            return 0
        stmt = (
            update(CommissionRow)
            .where(CommissionRow.id.in_(commission_ids), CommissionRow.status == "pending")
            .values(status="paid", payout_id=payout_id, paid_at=paid_at)
        )
        result = self.session.execute(stmt)
        self.session.flush()
        return result.rowcount

    def list_for_affiliate(
        self,
        affiliate_id: UUID,
        status: Optional[str] = None,
        commission_type: Optional[str] = None,
    ) -> list[CommissionRow]:
        stmt = select(CommissionRow).where(CommissionRow.affiliate_id == affiliate_id)
        if status:
            stmt = stmt.where(CommissionRow.status == status)
        if commission_type:
            stmt = stmt.where(CommissionRow.type == commission_type)
        stmt = stmt.order_by(CommissionRow.created_at.desc(), CommissionRow.order_id.desc())
        return list(self.session.execute(stmt).scalars().all())

    def list_for_payout(self, payout_id: UUID) -> list[CommissionRow]:
        stmt = (
            select(CommissionRow)
            .where(CommissionRow.payout_id == payout_id)
            .order_by(CommissionRow.created_at, CommissionRow.order_id)
            .execution_options(populate_existing=True)
        )
        return list(self.session.execute(stmt).scalars().all())

    def summary(self, affiliate_id: UUID) -> dict[str, int]:
        """
        Totals by status and type in a single aggregate query.

        Returns:
            Dict with total, pending, paid, first_payment, recurring amounts
            and total_count, pending_count, paid_count
        """
        def amount_where(condition):
            return func.coalesce(func.sum(case((condition, CommissionRow.amount), else_=0)), 0)

        def count_where(condition):
            return func.coalesce(func.sum(case((condition, 1), else_=0)), 0)

        stmt = select(
            func.coalesce(func.sum(CommissionRow.amount), 0).label("total"),
            amount_where(CommissionRow.status == "pending").label("pending"),
            amount_where(CommissionRow.status == "paid").label("paid"),
            amount_where(CommissionRow.type == "first_payment").label("first_payment"),
            amount_where(CommissionRow.type == "recurring").label("recurring"),
            func.count(CommissionRow.id).label("total_count"),
            count_where(CommissionRow.status == "pending").label("pending_count"),
            count_where(CommissionRow.status == "paid").label("paid_count"),
        ).where(CommissionRow.affiliate_id == affiliate_id)

        row = self.session.execute(stmt).one()
        return {key: int(value or 0) for key, value in row._mapping.items()}


class PayoutRepository(BaseRepository[PayoutRow]):
    def __init__(self, session: Session) -> None:
        super().__init__(PayoutRow, session)

    def find_paginated(
        self,
        affiliate_id: Optional[UUID] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[PayoutRow], int]:
        """
        Payouts newest first, with the total count of matching rows.

        Returns:
            Tuple of (items, total_count)
        """
        conditions = []
        if affiliate_id:
            conditions.append(PayoutRow.affiliate_id == affiliate_id)
        if status:
            conditions.append(PayoutRow.status == status)

        count_stmt = select(func.count()).select_from(PayoutRow)
        stmt = select(PayoutRow)
        if conditions:
            count_stmt = count_stmt.where(*conditions)
            stmt = stmt.where(*conditions)

        total = self.session.execute(count_stmt).scalar() or 0
        stmt = stmt.order_by(PayoutRow.created_at.desc(), PayoutRow.batch.desc()).offset(offset).limit(limit)
        return list(self.session.execute(stmt).scalars().all()), total
