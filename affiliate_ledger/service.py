import re
import secrets
import string
from datetime import datetime
from typing import Optional
from uuid import UUID

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .attribution import ClickTracker, ReferralResolver
from .commission import CommissionConfigResolver, CommissionEngine
from .config import Settings, get_settings
from .db import AffiliateRow, LedgerStore, as_utc, utcnow
from .errors import (
    AffiliateCodeTakenError,
    AffiliateNotFoundError,
    BelowMinimumPayoutError,
    DuplicateOrderError,
    InvalidInputError,
    NoAttributionError,
    NothingPendingError,
    PayoutNotFoundError,
    ReferralNotFoundError,
    RequestBelowOldestCommissionError,
    StorageFailureError,
    VoucherCodeTakenError,
    ZeroCommissionError,
)
from .models import (
    Affiliate,
    AffiliatePatch,
    ClickOutcome,
    ClickRequest,
    ClickResponse,
    Commission,
    CommissionConfig,
    CommissionOutcome,
    CommissionResponse,
    CommissionScheme,
    CommissionSummary,
    LinkType,
    OrderPaidRequest,
    Payout,
    PayoutDetail,
    PayoutListResponse,
    PayoutOutcome,
    PayoutRequest,
    PayoutResponse,
    Referral,
    ReferralOutcome,
    ReferralResponse,
    RegisterAffiliateRequest,
    SignupRequest,
    TrackingLink,
    TrackingLinkRequest,
    Voucher,
    VoucherRedeemedRequest,
    VoucherRequest,
    normalize_code,
)
from .payouts import PayoutBatcher
from .repositories import (
    AffiliateRepository,
    CommissionRepository,
    PayoutRepository,
    TrackingLinkRepository,
    VoucherRepository,
)

GENERATED_CODE_ALPHABET = string.ascii_uppercase + string.digits
GENERATED_CODE_LENGTH = 8
GENERATED_CODE_ATTEMPTS = 10

STORAGE_FAILURE_MESSAGE = "Storage failure; nothing was applied, retry the call"


def generate_affiliate_code() -> str:
    return "".join(secrets.choice(GENERATED_CODE_ALPHABET) for _ in range(GENERATED_CODE_LENGTH))


def sanitize_ref_suffix(custom_ref: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]", "", custom_ref).upper()


class LedgerService:
    """
    Entry points for the collaborators of the affiliate ledger.

    Collaborator calls (clicks, signups, paid orders, voucher redemptions,
    payout requests) never raise for business rejections: they return a
    response whose ``outcome`` says what happened. Admin and read operations
    raise ``LedgerServiceError`` subclasses.
    """

    def __init__(self, store: Optional[LedgerStore] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        if store is None:
            store = LedgerStore.from_url(self.settings.database_url, echo=self.settings.database_echo)
            store.create_all()
        self.store = store

        self.clicks = ClickTracker(store)
        self.referrals = ReferralResolver(store)
        self.configs = CommissionConfigResolver(
            store,
            default_first_payment_rate=self.settings.default_first_payment_rate,
            default_recurring_rate=self.settings.default_recurring_rate,
        )
        self.engine = CommissionEngine(store, self.configs)
        self.payouts = PayoutBatcher(store, minimum_payout=self.settings.minimum_payout)

    # Collaborator entry points

    def record_click(self, request: ClickRequest) -> ClickResponse:
        try:
            click = self.clicks.record_click(
                request.raw_code,
                link_hint=request.link_hint,
                ip_address=request.ip_address,
                user_agent=request.user_agent,
            )
        except SQLAlchemyError:
            logger.exception(f"Storage failure recording click for {request.raw_code[:100]!r}")
            return ClickResponse(outcome=ClickOutcome.STORAGE_FAILURE, message=STORAGE_FAILURE_MESSAGE)

        if click is None:
            return ClickResponse(outcome=ClickOutcome.NO_OP, message="Unknown or inactive referral code")
        return ClickResponse(outcome=ClickOutcome.RECORDED, click=click, message="Click recorded")

    def on_customer_signup(self, request: SignupRequest) -> ReferralResponse:
        try:
            referral, created = self.referrals.resolve_on_signup(
                request.customer_id, request.referral_code, request.signup_time
            )
        except (StorageFailureError, SQLAlchemyError):
            logger.exception(f"Storage failure attributing signup of {request.customer_id}")
            return self._referral_storage_failure()
        return self._referral_response(referral, created)

    def on_voucher_redeemed(self, request: VoucherRedeemedRequest) -> ReferralResponse:
        try:
            referral, created = self.referrals.resolve_on_voucher_redemption(
                request.customer_id,
                request.voucher_code,
                request.redeemed_at,
                order_id=request.order_id,
            )
        except (StorageFailureError, SQLAlchemyError):
            logger.exception(f"Storage failure attributing voucher redemption of {request.customer_id}")
            return self._referral_storage_failure()
        return self._referral_response(referral, created)

    def on_order_paid(self, request: OrderPaidRequest) -> CommissionResponse:
        """
        Record the order as paid, then credit the attributed affiliate.

        When ``affiliate_id`` is omitted it is taken from the customer's
        referral; a customer without one yields ``no_attribution``.
        """
        paid_at = as_utc(request.paid_at) or utcnow()
        try:
            affiliate_id = request.affiliate_id
            if affiliate_id is None:
                referral = self.referrals.get_referral(request.customer_id)
                affiliate_id = referral.affiliate_id if referral else None
            if affiliate_id is None:
                self.engine.record_paid_order(
                    request.order_id, request.customer_id, request.amount, request.plan_id, paid_at
                )
        except SQLAlchemyError:
            logger.exception(f"Storage failure recording paid order {request.order_id}")
            return self._commission_storage_failure()

        if affiliate_id is None:
            logger.info(f"Order {request.order_id}: customer {request.customer_id} has no referral")
            return CommissionResponse(
                outcome=CommissionOutcome.NO_ATTRIBUTION,
                message=f"Customer {request.customer_id} is not attributed to any affiliate",
            )

        return self.compute_commission(
            request.order_id,
            request.customer_id,
            affiliate_id,
            request.amount,
            request.plan_id,
            created_at=paid_at,
        )

    def compute_commission(
        self,
        order_id: str,
        customer_id: str,
        affiliate_id: UUID,
        amount: int,
        plan_id: str,
        created_at: Optional[datetime] = None,
    ) -> CommissionResponse:
        """
        Credit a paid order to an affiliate. The order is recorded as paid
        even when no commission results.
        """
        if not order_id.strip() or not customer_id.strip() or not plan_id.strip():
            return self._invalid_commission_input("order_id, customer_id and plan_id must be non-empty")
        if amount <= 0:
            return self._invalid_commission_input(f"amount must be positive, got {amount}")

        try:
            commission = self.engine.compute_commission(
                order_id, customer_id, affiliate_id, amount, plan_id, created_at=created_at
            )
        except DuplicateOrderError as e:
            logger.info(f"Duplicate commission request for order {order_id}")
            return CommissionResponse(
                outcome=CommissionOutcome.DUPLICATE_ORDER, commission=e.existing, message=str(e)
            )
        except ZeroCommissionError as e:
            logger.info(str(e))
            return CommissionResponse(outcome=CommissionOutcome.ZERO_COMMISSION, message=str(e))
        except NoAttributionError as e:
            logger.info(str(e))
            return CommissionResponse(outcome=CommissionOutcome.NO_ATTRIBUTION, message=str(e))
        except SQLAlchemyError:
            logger.exception(f"Storage failure computing commission for order {order_id}")
            return self._commission_storage_failure()

        return CommissionResponse(
            outcome=CommissionOutcome.CREATED, commission=commission, message="Commission created"
        )

    def request_payout(self, request: PayoutRequest) -> PayoutResponse:
        try:
            payout, commissions, pending_total = self.payouts.create_payout(
                request.affiliate_id, request.requested_amount
            )
        except NothingPendingError as e:
            return self._payout_rejected(PayoutOutcome.NOTHING_PENDING, e)
        except RequestBelowOldestCommissionError as e:
            return self._payout_rejected(PayoutOutcome.REQUEST_BELOW_OLDEST_COMMISSION, e)
        except BelowMinimumPayoutError as e:
            return self._payout_rejected(PayoutOutcome.BELOW_MINIMUM_PAYOUT, e)
        except (StorageFailureError, SQLAlchemyError):
            logger.exception(f"Storage failure creating payout for affiliate {request.affiliate_id}")
            return PayoutResponse(
                outcome=PayoutOutcome.STORAGE_FAILURE, message=STORAGE_FAILURE_MESSAGE, retryable=True
            )

        return PayoutResponse(
            outcome=PayoutOutcome.CREATED,
            payout=payout,
            commissions=commissions,
            pending_total=pending_total,
            message=f"Payout {payout.batch} created for {payout.total_amount}",
        )

    # Admin operations

    def register_affiliate(self, request: RegisterAffiliateRequest) -> Affiliate:
        try:
            with self.store.transaction() as session:
                affiliates = AffiliateRepository(session)
                if affiliates.get_by(email=request.email) is not None:
                    raise InvalidInputError(f"Email {request.email} is already registered")

                code = request.code
                if code is None:
                    code = self._unused_code(affiliates)
                elif affiliates.get_by_code(code) is not None:
                    raise AffiliateCodeTakenError(f"Affiliate code {code} is already taken")

                row = affiliates.create(
                    code=code,
                    name=request.name,
                    email=request.email,
                    status=request.status.value,
                    commission_rate=request.commission_rate,
                )
                affiliate = Affiliate.model_validate(row)
        except IntegrityError as e:
            raise AffiliateCodeTakenError(f"Affiliate code or email already registered: {request.email}") from e

        logger.info(f"Affiliate registered: {affiliate.code} ({affiliate.id})")
        return affiliate

    def get_affiliate(self, affiliate_id: UUID) -> Affiliate:
        with self.store.transaction() as session:
            return Affiliate.model_validate(self._require_affiliate(session, affiliate_id))

    def update_affiliate(self, affiliate_id: UUID, patch: AffiliatePatch) -> Affiliate:
        changes = patch.changes()
        if not changes:
            raise InvalidInputError("No fields to update")

        with self.store.transaction() as session:
            affiliates = AffiliateRepository(session)
            self._require_affiliate(session, affiliate_id)
            affiliates.apply_patch(affiliate_id, changes)
            session.expire_all()
            affiliate = Affiliate.model_validate(affiliates.get_by_id(affiliate_id))

        logger.info(f"Affiliate {affiliate_id} updated: {sorted(changes)}")
        return affiliate

    def create_tracking_link(self, affiliate_id: UUID, request: TrackingLinkRequest) -> TrackingLink:
        with self.store.transaction() as session:
            affiliate = self._require_affiliate(session, affiliate_id)

            ref_code = affiliate.code
            if request.custom_ref:
                suffix = sanitize_ref_suffix(request.custom_ref)
                if suffix:
                    ref_code = f"{affiliate.code}_{suffix}"

            base_url = self.settings.public_base_url.rstrip("/")
            path = "/checkout" if request.link_type == LinkType.CHECKOUT else "/"
            row = TrackingLinkRepository(session).create(
                affiliate_id=affiliate.id,
                ref_code=ref_code,
                link_type=request.link_type.value,
                url=f"{base_url}{path}?ref={ref_code}",
                created_at=utcnow(),
            )
            link = TrackingLink.model_validate(row)

        logger.info(f"Tracking link created for {affiliate_id}: {link.url}")
        return link

    def list_tracking_links(self, affiliate_id: UUID) -> list[TrackingLink]:
        with self.store.transaction() as session:
            self._require_affiliate(session, affiliate_id)
            rows = TrackingLinkRepository(session).list_for_affiliate(affiliate_id)
            return [TrackingLink.model_validate(row) for row in rows]

    def create_voucher(self, affiliate_id: UUID, request: VoucherRequest) -> Voucher:
        code = normalize_code(request.code)
        try:
            with self.store.transaction() as session:
                self._require_affiliate(session, affiliate_id)
                vouchers = VoucherRepository(session)
                if vouchers.get_by_code(code) is not None:
                    raise VoucherCodeTakenError(f"Voucher code {code} is already taken")
                row = vouchers.create(affiliate_id=affiliate_id, code=code, is_active=request.is_active)
                voucher = Voucher.model_validate(row)
        except IntegrityError as e:
            raise VoucherCodeTakenError(f"Voucher code {code} is already taken") from e

        logger.info(f"Voucher {code} created for affiliate {affiliate_id}")
        return voucher

    def get_voucher(self, code: str) -> Optional[Voucher]:
        with self.store.transaction() as session:
            vouchers = VoucherRepository(session)
            row = vouchers.get_by_code(normalize_code(code))
            if row is None:
                return None
            voucher = Voucher.model_validate(row)
            voucher.usage_count = vouchers.usage_count(row.id)
            return voucher

    def set_affiliate_commission_config(self, affiliate_id: UUID, plan_id: str, scheme: CommissionScheme) -> CommissionConfig:
        return self.configs.set_affiliate_override(affiliate_id, plan_id, scheme)

    def set_plan_commission_default(self, plan_id: str, scheme: CommissionScheme) -> CommissionConfig:
        return self.configs.set_plan_default(plan_id, scheme)

    def resolve_config(self, affiliate_id: Optional[UUID], plan_id: str) -> CommissionConfig:
        return self.configs.resolve(affiliate_id, plan_id)

    # Read projections

    def get_referral(self, customer_id: str) -> Referral:
        referral = self.referrals.get_referral(customer_id)
        if referral is None:
            raise ReferralNotFoundError(f"No referral for customer {customer_id}")
        return referral

    def get_commission_summary(self, affiliate_id: UUID) -> CommissionSummary:
        with self.store.transaction() as session:
            self._require_affiliate(session, affiliate_id)
            totals = CommissionRepository(session).summary(affiliate_id)
        return CommissionSummary(affiliate_id=affiliate_id, **totals)

    def list_commissions(
        self,
        affiliate_id: UUID,
        status: Optional[str] = None,
        commission_type: Optional[str] = None,
    ) -> list[Commission]:
        with self.store.transaction() as session:
            self._require_affiliate(session, affiliate_id)
            rows = CommissionRepository(session).list_for_affiliate(affiliate_id, status, commission_type)
            return [Commission.model_validate(row) for row in rows]

    def list_payouts(
        self,
        affiliate_id: Optional[UUID] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> PayoutListResponse:
        with self.store.transaction() as session:
            rows, total = PayoutRepository(session).find_paginated(affiliate_id, status, limit, offset)
            payouts = [Payout.model_validate(row) for row in rows]
        return PayoutListResponse(payouts=payouts, total_count=total, limit=limit, offset=offset)

    def get_payout(self, payout_id: UUID) -> PayoutDetail:
        with self.store.transaction() as session:
            row = PayoutRepository(session).get_by_id(payout_id)
            if row is None:
                raise PayoutNotFoundError(f"Payout {payout_id} not found")
            commissions = CommissionRepository(session).list_for_payout(payout_id)
            return PayoutDetail(
                payout=Payout.model_validate(row),
                commissions=[Commission.model_validate(c) for c in commissions],
            )

    # Helpers

    def _require_affiliate(self, session, affiliate_id: UUID) -> AffiliateRow:
        row = AffiliateRepository(session).get_by_id(affiliate_id)
        if row is None:
            raise AffiliateNotFoundError(f"Affiliate {affiliate_id} not found")
        return row

    def _unused_code(self, affiliates: AffiliateRepository) -> str:
        for _ in range(GENERATED_CODE_ATTEMPTS):
            code = generate_affiliate_code()
            if affiliates.get_by_code(code) is None:
                return code
        raise AffiliateCodeTakenError("Could not generate an unused affiliate code")

    def _referral_response(self, referral: Optional[Referral], created: bool) -> ReferralResponse:
        if referral is None:
            return ReferralResponse(outcome=ReferralOutcome.NO_OP, message="No affiliate to attribute")
        if created:
            return ReferralResponse(outcome=ReferralOutcome.CREATED, referral=referral, message="Referral created")
        return ReferralResponse(
            outcome=ReferralOutcome.EXISTING,
            referral=referral,
            message="Customer is already attributed; first attribution wins",
        )

    def _referral_storage_failure(self) -> ReferralResponse:
        return ReferralResponse(
            outcome=ReferralOutcome.STORAGE_FAILURE, message=STORAGE_FAILURE_MESSAGE, retryable=True
        )

    def _commission_storage_failure(self) -> CommissionResponse:
        return CommissionResponse(
            outcome=CommissionOutcome.STORAGE_FAILURE, message=STORAGE_FAILURE_MESSAGE, retryable=True
        )

    def _invalid_commission_input(self, message: str) -> CommissionResponse:
        logger.info(f"Rejected commission input: {message}")
        return CommissionResponse(outcome=CommissionOutcome.INVALID_INPUT, message=message)

    def _payout_rejected(self, outcome: PayoutOutcome, error: Exception) -> PayoutResponse:
        logger.info(f"Payout rejected ({outcome.value}): {error}")
        return PayoutResponse(outcome=outcome, message=str(error))
