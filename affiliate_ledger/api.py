from functools import lru_cache
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Response, status
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .errors import (
    AffiliateCodeTakenError,
    AffiliateNotFoundError,
    InvalidInputError,
    LedgerServiceError,
    PayoutNotFoundError,
    ReferralNotFoundError,
    VoucherCodeTakenError,
)
from .logging_setup import setup_logging
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
    CommissionStatus,
    CommissionSummary,
    CommissionType,
    OrderPaidRequest,
    PayoutDetail,
    PayoutListResponse,
    PayoutOutcome,
    PayoutRequest,
    PayoutResponse,
    PayoutStatus,
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
)
from .service import LedgerService

STORAGE_FAILURE = status.HTTP_503_SERVICE_UNAVAILABLE

REFERRAL_STATUS = {
    ReferralOutcome.CREATED: status.HTTP_201_CREATED,
    ReferralOutcome.EXISTING: status.HTTP_200_OK,
    ReferralOutcome.NO_OP: status.HTTP_200_OK,
    ReferralOutcome.STORAGE_FAILURE: STORAGE_FAILURE,
}

COMMISSION_STATUS = {
    CommissionOutcome.CREATED: status.HTTP_201_CREATED,
    CommissionOutcome.DUPLICATE_ORDER: status.HTTP_200_OK,
    CommissionOutcome.NO_ATTRIBUTION: status.HTTP_200_OK,
    CommissionOutcome.ZERO_COMMISSION: status.HTTP_200_OK,
    CommissionOutcome.INVALID_INPUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    CommissionOutcome.STORAGE_FAILURE: STORAGE_FAILURE,
}

PAYOUT_STATUS = {
    PayoutOutcome.CREATED: status.HTTP_201_CREATED,
    PayoutOutcome.NOTHING_PENDING: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PayoutOutcome.REQUEST_BELOW_OLDEST_COMMISSION: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PayoutOutcome.BELOW_MINIMUM_PAYOUT: status.HTTP_422_UNPROCESSABLE_ENTITY,
    PayoutOutcome.STORAGE_FAILURE: STORAGE_FAILURE,
}


@lru_cache
def get_ledger_service() -> LedgerService:
    settings = get_settings()
    setup_logging(settings)
    return LedgerService(settings=settings)


router = APIRouter()


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "affiliate-ledger"}


# Collaborator endpoints

@router.post("/clicks", response_model=ClickResponse, status_code=status.HTTP_201_CREATED, tags=["Tracking"])
def record_click(
    request: ClickRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
) -> ClickResponse:
    result = service.record_click(request)
    if result.outcome == ClickOutcome.NO_OP:
        response.status_code = status.HTTP_200_OK
    elif result.outcome == ClickOutcome.STORAGE_FAILURE:
        response.status_code = STORAGE_FAILURE
    return result


@router.post("/signups", response_model=ReferralResponse, tags=["Attribution"])
def customer_signup(
    request: SignupRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
) -> ReferralResponse:
    result = service.on_customer_signup(request)
    response.status_code = REFERRAL_STATUS[result.outcome]
    return result


@router.post("/voucher-redemptions", response_model=ReferralResponse, tags=["Attribution"])
def voucher_redeemed(
    request: VoucherRedeemedRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
) -> ReferralResponse:
    result = service.on_voucher_redeemed(request)
    response.status_code = REFERRAL_STATUS[result.outcome]
    return result


@router.post("/orders/paid", response_model=CommissionResponse, tags=["Commissions"])
def order_paid(
    request: OrderPaidRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
) -> CommissionResponse:
    result = service.on_order_paid(request)
    response.status_code = COMMISSION_STATUS[result.outcome]
    return result


@router.post("/payouts", response_model=PayoutResponse, tags=["Payouts"])
def request_payout(
    request: PayoutRequest,
    response: Response,
    service: LedgerService = Depends(get_ledger_service),
) -> PayoutResponse:
    result = service.request_payout(request)
    response.status_code = PAYOUT_STATUS[result.outcome]
    return result


# Admin endpoints

@router.post("/affiliates", response_model=Affiliate, status_code=status.HTTP_201_CREATED, tags=["Affiliates"])
def register_affiliate(
    request: RegisterAffiliateRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> Affiliate:
    try:
        return service.register_affiliate(request)
    except AffiliateCodeTakenError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except LedgerServiceError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/affiliates/{affiliate_id}", response_model=Affiliate, tags=["Affiliates"])
def get_affiliate(affiliate_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> Affiliate:
    try:
        return service.get_affiliate(affiliate_id)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.patch("/affiliates/{affiliate_id}", response_model=Affiliate, tags=["Affiliates"])
def update_affiliate(
    affiliate_id: UUID,
    patch: AffiliatePatch,
    service: LedgerService = Depends(get_ledger_service),
) -> Affiliate:
    try:
        return service.update_affiliate(affiliate_id, patch)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except InvalidInputError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.post(
    "/affiliates/{affiliate_id}/links",
    response_model=TrackingLink,
    status_code=status.HTTP_201_CREATED,
    tags=["Affiliates"],
)
def create_tracking_link(
    affiliate_id: UUID,
    request: TrackingLinkRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> TrackingLink:
    try:
        return service.create_tracking_link(affiliate_id, request)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/affiliates/{affiliate_id}/links", response_model=list[TrackingLink], tags=["Affiliates"])
def list_tracking_links(affiliate_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> list[TrackingLink]:
    try:
        return service.list_tracking_links(affiliate_id)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post(
    "/affiliates/{affiliate_id}/vouchers",
    response_model=Voucher,
    status_code=status.HTTP_201_CREATED,
    tags=["Affiliates"],
)
def create_voucher(
    affiliate_id: UUID,
    request: VoucherRequest,
    service: LedgerService = Depends(get_ledger_service),
) -> Voucher:
    try:
        return service.create_voucher(affiliate_id, request)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except VoucherCodeTakenError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))


@router.get("/vouchers/{code}", response_model=Voucher, tags=["Affiliates"])
def get_voucher(code: str, service: LedgerService = Depends(get_ledger_service)) -> Voucher:
    voucher = service.get_voucher(code)
    if voucher is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Voucher {code} not found")
    return voucher


@router.put(
    "/affiliates/{affiliate_id}/commission-configs/{plan_id}",
    response_model=CommissionConfig,
    tags=["Commission Config"],
)
def set_affiliate_commission_config(
    affiliate_id: UUID,
    plan_id: str,
    scheme: CommissionScheme,
    service: LedgerService = Depends(get_ledger_service),
) -> CommissionConfig:
    try:
        return service.set_affiliate_commission_config(affiliate_id, plan_id, scheme)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.put("/plans/{plan_id}/commission-default", response_model=CommissionConfig, tags=["Commission Config"])
def set_plan_commission_default(
    plan_id: str,
    scheme: CommissionScheme,
    service: LedgerService = Depends(get_ledger_service),
) -> CommissionConfig:
    return service.set_plan_commission_default(plan_id, scheme)


@router.get("/commission-config", response_model=CommissionConfig, tags=["Commission Config"])
def resolve_config(
    plan_id: str,
    affiliate_id: Optional[UUID] = None,
    service: LedgerService = Depends(get_ledger_service),
) -> CommissionConfig:
    return service.resolve_config(affiliate_id, plan_id)


# Read projections

@router.get("/referrals/{customer_id}", response_model=Referral, tags=["Attribution"])
def get_referral(customer_id: str, service: LedgerService = Depends(get_ledger_service)) -> Referral:
    try:
        return service.get_referral(customer_id)
    except ReferralNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/affiliates/{affiliate_id}/commissions/summary", response_model=CommissionSummary, tags=["Commissions"])
def get_commission_summary(affiliate_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> CommissionSummary:
    try:
        return service.get_commission_summary(affiliate_id)
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/affiliates/{affiliate_id}/commissions", response_model=list[Commission], tags=["Commissions"])
def list_commissions(
    affiliate_id: UUID,
    status_filter: Optional[CommissionStatus] = Query(default=None, alias="status"),
    type_filter: Optional[CommissionType] = Query(default=None, alias="type"),
    service: LedgerService = Depends(get_ledger_service),
) -> list[Commission]:
    try:
        return service.list_commissions(
            affiliate_id,
            status=status_filter.value if status_filter else None,
            commission_type=type_filter.value if type_filter else None,
        )
    except AffiliateNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.get("/payouts", response_model=PayoutListResponse, tags=["Payouts"])
def list_payouts(
    affiliate_id: Optional[UUID] = None,
    status_filter: Optional[PayoutStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    service: LedgerService = Depends(get_ledger_service),
) -> PayoutListResponse:
    return service.list_payouts(
        affiliate_id=affiliate_id,
        status=status_filter.value if status_filter else None,
        limit=limit,
        offset=offset,
    )


@router.get("/payouts/{payout_id}", response_model=PayoutDetail, tags=["Payouts"])
def get_payout(payout_id: UUID, service: LedgerService = Depends(get_ledger_service)) -> PayoutDetail:
    try:
        return service.get_payout(payout_id)
    except PayoutNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


def create_app(root_path: str = "") -> FastAPI:
    app = FastAPI(
        title="Affiliate Ledger API",
        description="Affiliate attribution, commission ledger and payout batching",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(router)
    return app


app = create_app()
