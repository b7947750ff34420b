from typing import Any, Optional


class CommerceError(Exception):
    """Base for every failure the pricing/refund core reports to a caller."""

    code = "COMMERCE_ERROR"

    def __init__(self, message: str, state: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.state = state or {}

    def as_dict(self) -> dict[str, Any]:
        return {"status": False, "error": self.code, "message": self.message, "state": self.state}


class ValidationError(CommerceError):
    code = "VALIDATION_ERROR"


class StateConflictError(CommerceError):
    code = "STATE_CONFLICT"


class NotFoundError(CommerceError):
    code = "NOT_FOUND"


class TransientInfraError(CommerceError):
    """Transaction start/commit failed. Nothing was persisted, the request may be retried."""

    code = "TRANSIENT_INFRA_ERROR"


class CouponNotFoundError(NotFoundError):
    code = "COUPON_NOT_FOUND"


class UsageLimitExceededError(StateConflictError):
    code = "USAGE_LIMIT_EXCEEDED"


class CouponAlreadyUsedError(StateConflictError):
    code = "COUPON_ALREADY_USED"


class MinOrderNotMetError(StateConflictError):
    code = "MIN_ORDER_NOT_MET"


class InsufficientStockError(StateConflictError):
    code = "INSUFFICIENT_STOCK"


class InsufficientBalanceError(StateConflictError):
    code = "INSUFFICIENT_BALANCE"


class DuplicateReferenceError(StateConflictError):
    code = "DUPLICATE_REFERENCE"
