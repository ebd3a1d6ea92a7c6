import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, field_validator, model_validator


Identifier = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=100)]
Percent = Annotated[Decimal, Field(ge=0, le=100, max_digits=5, decimal_places=2)]

AFFILIATE_CODE_RE = re.compile(r"^[A-Z0-9_]{3,50}$")


class AffiliateStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class ReferralStatus(str, Enum):
    PENDING = "pending"
    CONVERTED = "converted"


class ReferralSource(str, Enum):
    CLICK = "click"
    VOUCHER = "voucher"


class CommissionType(str, Enum):
    FIRST_PAYMENT = "first_payment"
    RECURRING = "recurring"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"


class PayoutStatus(str, Enum):
    PENDING = "pending"


class OrderStatus(str, Enum):
    PAID = "paid"


class LinkType(str, Enum):
    LANDING = "landing"
    CHECKOUT = "checkout"


class ConfigSource(str, Enum):
    AFFILIATE_OVERRIDE = "affiliate_override"
    PLAN_DEFAULT = "plan_default"
    SYSTEM_DEFAULT = "system_default"


class ClickOutcome(str, Enum):
    RECORDED = "recorded"
    NO_OP = "no_op"
    STORAGE_FAILURE = "storage_failure"


class ReferralOutcome(str, Enum):
    CREATED = "created"
    EXISTING = "existing"
    NO_OP = "no_op"
    STORAGE_FAILURE = "storage_failure"


class CommissionOutcome(str, Enum):
    CREATED = "created"
    DUPLICATE_ORDER = "duplicate_order"
    NO_ATTRIBUTION = "no_attribution"
    ZERO_COMMISSION = "zero_commission"
    INVALID_INPUT = "invalid_input"
    STORAGE_FAILURE = "storage_failure"


class PayoutOutcome(str, Enum):
    CREATED = "created"
    NOTHING_PENDING = "nothing_pending"
    REQUEST_BELOW_OLDEST_COMMISSION = "request_below_oldest_commission"
    BELOW_MINIMUM_PAYOUT = "below_minimum_payout"
    STORAGE_FAILURE = "storage_failure"


def normalize_code(code: str) -> str:
    return code.strip().upper()


# Requests

class ClickRequest(BaseModel):
    raw_code: str = Field(..., description="Referral code exactly as presented by the visitor")
    link_hint: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "raw_code": "ABC123_IG",
            "link_hint": "https://example.com/checkout?ref=ABC123_IG",
            "ip_address": "203.0.113.7",
            "user_agent": "Mozilla/5.0",
        }
    })


class SignupRequest(BaseModel):
    customer_id: Identifier
    referral_code: Optional[str] = Field(default=None, max_length=100)
    signup_time: Optional[datetime] = None


class OrderPaidRequest(BaseModel):
    order_id: Identifier
    customer_id: Identifier
    affiliate_id: Optional[UUID] = Field(
        default=None,
        description="Affiliate credited by the customer's referral; looked up when omitted",
    )
    amount: int = Field(..., gt=0, description="Paid amount in currency minor units")
    plan_id: Identifier
    paid_at: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "order_id": "O1",
            "customer_id": "cust-42",
            "affiliate_id": "7d4c3b9e-1f7a-4c55-9d61-1a2b3c4d5e6f",
            "amount": 100000,
            "plan_id": "P1",
        }
    })


class VoucherRedeemedRequest(BaseModel):
    customer_id: Identifier
    voucher_code: Identifier
    order_id: Identifier
    redeemed_at: Optional[datetime] = None


class PayoutRequest(BaseModel):
    affiliate_id: UUID
    requested_amount: int = Field(..., gt=0, description="Requested payout in currency minor units")


class RegisterAffiliateRequest(BaseModel):
    name: Identifier
    email: Annotated[str, StringConstraints(strip_whitespace=True, to_lower=True, pattern=r"^[^@\s]+@[^@\s]+$")]
    code: Optional[str] = None
    commission_rate: Percent = Decimal("10")
    status: AffiliateStatus = AffiliateStatus.ACTIVE

    @field_validator("code")
    @classmethod
    def canonical_code(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        value = normalize_code(value)
        if not AFFILIATE_CODE_RE.match(value):
            raise ValueError("code must be 3-50 characters of A-Z, 0-9 or underscore")
        return value


class AffiliatePatch(BaseModel):
    """Fields an admin may change on an affiliate. The code is never patchable."""

    status: Optional[AffiliateStatus] = None
    commission_rate: Optional[Percent] = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("status", "commission_rate")
    @classmethod
    def not_null(cls, value: Any) -> Any:
        if value is None:
            raise ValueError("field cannot be cleared")
        return value

    def changes(self) -> dict[str, Any]:
        return {
            key: value.value if isinstance(value, Enum) else value
            for key, value in self.model_dump(exclude_unset=True).items()
        }


class TrackingLinkRequest(BaseModel):
    link_type: LinkType = LinkType.CHECKOUT
    custom_ref: Optional[str] = Field(default=None, max_length=40)


class VoucherRequest(BaseModel):
    code: Identifier
    is_active: bool = True


class CommissionScheme(BaseModel):
    use_percentage: bool = True
    first_payment_rate: Optional[Percent] = None
    recurring_rate: Optional[Percent] = None
    fixed_first_payment: Optional[int] = Field(default=None, ge=0)
    fixed_recurring: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def complete_scheme(self) -> "CommissionScheme":
        if self.use_percentage and (self.first_payment_rate is None or self.recurring_rate is None):
            raise ValueError("percentage schemes need both first_payment_rate and recurring_rate")
        if not self.use_percentage and (self.fixed_first_payment is None or self.fixed_recurring is None):
            raise ValueError("fixed schemes need both fixed_first_payment and fixed_recurring")
        return self


# Ledger records

class Affiliate(BaseModel):
    id: UUID
    code: str
    name: str
    email: str
    status: AffiliateStatus
    commission_rate: Decimal
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Click(BaseModel):
    id: UUID
    affiliate_id: UUID
    raw_code: str
    link_id: Optional[UUID] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: UUID
    customer_id: str
    affiliate_id: UUID
    referral_code: str
    source: ReferralSource
    status: ReferralStatus
    signup_at: datetime
    first_payment_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CommissionConfig(BaseModel):
    affiliate_id: Optional[UUID] = None
    plan_id: str
    source: ConfigSource
    use_percentage: bool
    first_payment_rate: Optional[Decimal] = None
    recurring_rate: Optional[Decimal] = None
    fixed_first_payment: Optional[int] = None
    fixed_recurring: Optional[int] = None

    def rate_for(self, commission_type: CommissionType) -> Decimal:
        if commission_type == CommissionType.FIRST_PAYMENT:
            return self.first_payment_rate or Decimal("0")
        return self.recurring_rate or Decimal("0")

    def fixed_for(self, commission_type: CommissionType) -> int:
        if commission_type == CommissionType.FIRST_PAYMENT:
            return self.fixed_first_payment or 0
        return self.fixed_recurring or 0


class Commission(BaseModel):
    id: UUID
    affiliate_id: UUID
    referral_id: Optional[UUID] = None
    customer_id: str
    order_id: str
    type: CommissionType
    amount: int
    rate: Optional[Decimal] = None
    status: CommissionStatus
    created_at: datetime
    paid_at: Optional[datetime] = None
    payout_id: Optional[UUID] = None

    model_config = ConfigDict(from_attributes=True)


class Payout(BaseModel):
    id: UUID
    batch: str
    affiliate_id: UUID
    total_amount: int
    commission_count: int
    status: PayoutStatus
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class TrackingLink(BaseModel):
    id: UUID
    affiliate_id: UUID
    ref_code: str
    link_type: LinkType
    url: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class Voucher(BaseModel):
    id: UUID
    affiliate_id: UUID
    code: str
    is_active: bool
    created_at: datetime
    usage_count: int = 0

    model_config = ConfigDict(from_attributes=True)


# Responses

class ClickResponse(BaseModel):
    outcome: ClickOutcome
    click: Optional[Click] = None
    message: str


class ReferralResponse(BaseModel):
    outcome: ReferralOutcome
    referral: Optional[Referral] = None
    message: str
    retryable: bool = False


class CommissionResponse(BaseModel):
    outcome: CommissionOutcome
    commission: Optional[Commission] = None
    message: str
    retryable: bool = False


class PayoutResponse(BaseModel):
    outcome: PayoutOutcome
    payout: Optional[Payout] = None
    commissions: list[Commission] = Field(default_factory=list)
    pending_total: int = 0
    message: str
    retryable: bool = False


class CommissionSummary(BaseModel):
    affiliate_id: UUID
    total: int
    pending: int
    paid: int
    first_payment: int
    recurring: int
    total_count: int
    pending_count: int
    paid_count: int


class PayoutDetail(BaseModel):
    payout: Payout
    commissions: list[Commission]


class PayoutListResponse(BaseModel):
    payouts: list[Payout]
    total_count: int
    limit: int
    offset: int
