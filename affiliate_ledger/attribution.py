"""
Click tracking and referral attribution.

A customer is attributed to at most one affiliate, and the first recorded
attribution is permanent. Signups with a referral code create a ``pending``
referral; redeeming an affiliate voucher backfills a ``converted`` referral
when none exists yet.
"""

import re
from datetime import datetime
from typing import Callable, Optional, TypeVar

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import AffiliateRow, LedgerStore, ReferralRow, as_utc, utcnow
from .errors import StorageFailureError
from .models import Click, Referral, ReferralSource, ReferralStatus, normalize_code
from .repositories import (
    AffiliateRepository,
    ClickRepository,
    ReferralRepository,
    TrackingLinkRepository,
    VoucherRedemptionRepository,
    VoucherRepository,
)

CODE_VARIANT_SEPARATOR = "_"
MAX_CODE_LENGTH = 100
MAX_IP_LENGTH = 64
MAX_LINK_HINT_LENGTH = 2048
MAX_USER_AGENT_LENGTH = 500
PRESENTED_CODE_RE = re.compile(r"^[A-Z0-9_]+$")

T = TypeVar("T")


def base_code(code: str) -> str:
    """The affiliate part of a campaign variant: ``ABC123_IG`` -> ``ABC123``."""
    return code.split(CODE_VARIANT_SEPARATOR, 1)[0]


def resolve_affiliate_code(session: Session, raw_code: str) -> Optional[AffiliateRow]:
    """
    Resolve a presented referral code to an active affiliate.

    Tie-break, first match wins:
        1. the affiliate whose code equals the base code
        2. the affiliate whose code equals the full code
    Affiliate codes are unique, so each step matches at most one row.
    """
    code = normalize_code(raw_code)
    if not code:
        return None

    affiliates = AffiliateRepository(session)
    prefix = base_code(code)
    affiliate = affiliates.get_active_by_code(prefix) if prefix else None
    if affiliate is None and prefix != code:
        affiliate = affiliates.get_active_by_code(code)
    return affiliate


def is_trackable_code(presented: str) -> bool:
    """Blank, over-long and malformed codes are never looked up."""
    if not presented or len(presented) > MAX_CODE_LENGTH:
        return False
    return PRESENTED_CODE_RE.match(normalize_code(presented)) is not None


def truncate(value: Optional[str], limit: int) -> Optional[str]:
    return value[:limit] if value else None


def mark_converted(referral: ReferralRow, converted_at: datetime) -> bool:
    """Idempotent pending -> converted transition. Returns True if anything changed."""
    changed = False
    if referral.status != ReferralStatus.CONVERTED.value:
        referral.status = ReferralStatus.CONVERTED.value
        changed = True
    if referral.first_payment_at is None:
        referral.first_payment_at = converted_at
        changed = True
    return changed


class ClickTracker:
    def __init__(self, store: LedgerStore):
        self.store = store

    def record_click(
        self,
        raw_code: str,
        link_hint: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[Click]:
        """Append a click for an active affiliate, or return None for unknown codes."""
        presented = raw_code.strip()
        if not is_trackable_code(presented):
            logger.warning(f"Click with malformed referral code ignored: {presented[:MAX_CODE_LENGTH]!r}")
            return None
        link_hint = truncate(link_hint.strip() if link_hint else None, MAX_LINK_HINT_LENGTH)

        with self.store.transaction() as session:
            affiliate = resolve_affiliate_code(session, presented)
            if affiliate is None:
                logger.warning(f"Click with invalid or inactive referral code: {presented!r}")
                return None

            link_id = None
            if link_hint:
                link = TrackingLinkRepository(session).find_for_hint(
                    affiliate.id, normalize_code(presented), link_hint
                )
                link_id = link.id if link else None

            row = ClickRepository(session).create(
                affiliate_id=affiliate.id,
                raw_code=presented,
                link_id=link_id,
                ip_address=truncate(ip_address, MAX_IP_LENGTH),
                user_agent=truncate(user_agent, MAX_USER_AGENT_LENGTH),
                created_at=utcnow(),
            )
            click = Click.model_validate(row)

        logger.info(f"Click recorded: affiliate={click.affiliate_id} code={click.raw_code} link={click.link_id}")
        return click


class ReferralResolver:
    """
    Owns the customer -> affiliate attribution.

    Both entry points return ``(referral, created)``. ``referral`` is None
    only when nothing could be attributed.
    """

    def __init__(self, store: LedgerStore):
        self.store = store

    def get_referral(self, customer_id: str) -> Optional[Referral]:
        with self.store.transaction() as session:
            row = ReferralRepository(session).get_by_customer(customer_id)
            return Referral.model_validate(row) if row else None

    def resolve_on_signup(
        self,
        customer_id: str,
        referral_code: Optional[str],
        signup_time: Optional[datetime] = None,
    ) -> tuple[Optional[Referral], bool]:
        signup_time = as_utc(signup_time) or utcnow()

        def attempt() -> tuple[Optional[Referral], bool]:
            with self.store.transaction() as session:
                referrals = ReferralRepository(session)
                existing = referrals.get_by_customer(customer_id)
                if existing is not None:
                    return Referral.model_validate(existing), False

                if not referral_code or not referral_code.strip():
                    return None, False

                affiliate = resolve_affiliate_code(session, referral_code)
                if affiliate is None:
                    logger.warning(f"Signup for {customer_id} with invalid or inactive referral code: {referral_code!r}")
                    return None, False

                row = referrals.create(
                    customer_id=customer_id,
                    affiliate_id=affiliate.id,
                    referral_code=referral_code.strip(),
                    source=ReferralSource.CLICK.value,
                    status=ReferralStatus.PENDING.value,
                    signup_at=signup_time,
                )
                return Referral.model_validate(row), True

        referral, created = self._create_once(attempt, customer_id)
        if created:
            logger.info(f"Referral created on signup: customer={customer_id} affiliate={referral.affiliate_id}")
        return referral, created

    def resolve_on_voucher_redemption(
        self,
        customer_id: str,
        voucher_code: str,
        redemption_time: Optional[datetime] = None,
        order_id: Optional[str] = None,
    ) -> tuple[Optional[Referral], bool]:
        redemption_time = as_utc(redemption_time) or utcnow()
        code = normalize_code(voucher_code)

        def attempt() -> tuple[Optional[Referral], bool]:
            with self.store.transaction() as session:
                voucher = VoucherRepository(session).get_by_code(code)
                if voucher is not None and order_id:
                    redemptions = VoucherRedemptionRepository(session)
                    if redemptions.get_by(order_id=order_id) is None:
                        redemptions.create(
                            voucher_id=voucher.id,
                            customer_id=customer_id,
                            order_id=order_id,
                            redeemed_at=redemption_time,
                        )

                referrals = ReferralRepository(session)
                existing = referrals.get_by_customer(customer_id)
                if existing is not None:
                    return Referral.model_validate(existing), False

                affiliate = session.get(AffiliateRow, voucher.affiliate_id) if voucher else None
                if voucher is None or not voucher.is_active or affiliate is None or affiliate.status != "active":
                    logger.warning(f"Voucher {code!r} redeemed by {customer_id} is not an active affiliate voucher")
                    return None, False

                row = referrals.create(
                    customer_id=customer_id,
                    affiliate_id=affiliate.id,
                    referral_code=code,
                    source=ReferralSource.VOUCHER.value,
                    status=ReferralStatus.CONVERTED.value,
                    signup_at=redemption_time,
                )
                return Referral.model_validate(row), True

        referral, created = self._create_once(attempt, customer_id)
        if created:
            logger.info(f"Referral backfilled from voucher {code}: customer={customer_id} affiliate={referral.affiliate_id}")
        return referral, created

    def _create_once(self, attempt: Callable[[], T], customer_id: str) -> T:
        """
        Run a create-if-absent attempt, retrying once after losing a race.

        A concurrent attempt for the same customer trips a unique constraint;
        the retry then reads and returns the winner's row.
        """
        try:
            return attempt()
        except IntegrityError:
            logger.info(f"Concurrent attribution for customer {customer_id}, re-reading winner")

        try:
            return attempt()
        except IntegrityError as e:
            raise StorageFailureError(f"Could not resolve attribution for customer {customer_id}", e) from e
