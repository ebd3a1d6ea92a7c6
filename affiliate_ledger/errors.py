from typing import Optional


class LedgerServiceError(Exception):
    pass


class InvalidInputError(LedgerServiceError):
    pass


class AffiliateNotFoundError(LedgerServiceError):
    pass


class PayoutNotFoundError(LedgerServiceError):
    pass


class ReferralNotFoundError(LedgerServiceError):
    pass


class AffiliateCodeTakenError(LedgerServiceError):
    pass


class VoucherCodeTakenError(LedgerServiceError):
    pass


class DuplicateOrderError(LedgerServiceError):
    def __init__(self, order_id: str, existing=None):
        super().__init__(f"Commission already exists for order {order_id}")
        self.order_id = order_id
        self.existing = existing


class NoAttributionError(LedgerServiceError):
    def __init__(self, customer_id: str, affiliate_id):
        super().__init__(f"No referral links customer {customer_id} to affiliate {affiliate_id}")
        self.customer_id = customer_id
        self.affiliate_id = affiliate_id


class ZeroCommissionError(LedgerServiceError):
    pass


class PayoutRejectedError(LedgerServiceError):
    pass


class NothingPendingError(PayoutRejectedError):
    pass


class RequestBelowOldestCommissionError(PayoutRejectedError):
    pass


class BelowMinimumPayoutError(PayoutRejectedError):
    def __init__(self, amount: int, minimum: int):
        super().__init__(f"Payout of {amount} is below the minimum payout of {minimum}")
        self.amount = amount
        self.minimum = minimum


class StorageFailureError(LedgerServiceError):
    retryable = True

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__(message)
        self.cause = cause
