"""
Payout batching.

A payout settles a prefix of an affiliate's pending commissions, oldest
first. Commissions are never split and never skipped: selection stops at the
first commission that would push the batch over the requested amount.
"""

import secrets
from datetime import datetime
from typing import Optional, Sequence
from uuid import UUID

from loguru import logger

from .db import CommissionRow, LedgerStore, utcnow
from .errors import (
    BelowMinimumPayoutError,
    NothingPendingError,
    RequestBelowOldestCommissionError,
    StorageFailureError,
)
from .models import Commission, Payout, PayoutStatus
from .repositories import CommissionRepository, PayoutRepository


def generate_batch_id(now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    return f"PAY-{now:%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"


def select_for_payout(pending: Sequence[CommissionRow], requested_amount: int) -> list[CommissionRow]:
    """
    Pick the commissions a payout of ``requested_amount`` settles.

    ``pending`` must already be ordered oldest first.
    """
    if requested_amount >= sum(c.amount for c in pending):
        return list(pending)

    selected = []
    running = 0
    for commission in pending:
        if running + commission.amount > requested_amount:
            break
        selected.append(commission)
        running += commission.amount
    return selected


class PayoutBatcher:
    def __init__(self, store: LedgerStore, minimum_payout: int = 0):
        self.store = store
        self.minimum_payout = minimum_payout

    def create_payout(self, affiliate_id: UUID, requested_amount: int) -> tuple[Payout, list[Commission], int]:
        """
        Create a payout batch and settle its commissions in one transaction.

        Returns:
            Tuple of (payout, commissions now paid, pending total before the payout)

        Raises:
            NothingPendingError: affiliate has no pending commissions
            RequestBelowOldestCommissionError: requested amount is smaller than the oldest pending commission
            BelowMinimumPayoutError: batch total is below the configured minimum
            StorageFailureError: a selected commission was settled concurrently
        """
        with self.store.transaction() as session:
            commissions = CommissionRepository(session)
            pending = commissions.pending_for_affiliate(affiliate_id, for_update=True)
            if not pending:
                raise NothingPendingError(f"Affiliate {affiliate_id} has no pending commissions")

            pending_total = sum(c.amount for c in pending)
            selected = select_for_payout(pending, requested_amount)
            if not selected:
                raise RequestBelowOldestCommissionError(
                    f"Requested {requested_amount} is less than the oldest pending commission ({pending[0].amount})"
                )

            total = sum(c.amount for c in selected)
            if self.minimum_payout and total < self.minimum_payout:
                raise BelowMinimumPayoutError(total, self.minimum_payout)

            now = utcnow()
            payout_row = PayoutRepository(session).create(
                batch=generate_batch_id(now),
                affiliate_id=affiliate_id,
                total_amount=total,
                commission_count=len(selected),
                status=PayoutStatus.PENDING.value,
                created_at=now,
            )

            updated = commissions.mark_paid([c.id for c in selected], payout_row.id, now)
            if updated != len(selected):
                raise StorageFailureError(
                    f"Payout for affiliate {affiliate_id} settled {updated} of {len(selected)} commissions; rolled back"
                )

            payout = Payout.model_validate(payout_row)
            paid = [Commission.model_validate(row) for row in commissions.list_for_payout(payout_row.id)]

        logger.info(
            f"Payout {payout.batch} created: affiliate={affiliate_id} total={payout.total_amount} "
            f"commissions={payout.commission_count} pending_before={pending_total}"
        )
        return payout, paid, pending_total
