"""
Affiliate Attribution & Commission Ledger

This package provides:
- Click tracking with campaign-variant referral codes
- One permanent referral per customer (signup or voucher attribution)
- Commission config fallback: affiliate override, plan default, system default
- Idempotent commission ledger, one commission per order
- Atomic payout batches over pending commissions
"""

from .models import (
    CommissionOutcome,
    CommissionStatus,
    CommissionType,
    PayoutOutcome,
    ReferralOutcome,
    ReferralStatus,
)
from .db import LedgerStore
from .service import LedgerService

__all__ = [
    "CommissionOutcome",
    "CommissionStatus",
    "CommissionType",
    "PayoutOutcome",
    "ReferralOutcome",
    "ReferralStatus",
    "LedgerStore",
    "LedgerService",
]
