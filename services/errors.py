"""
Error taxonomy for deal and exchange operations.

Every error exposes a stable machine-readable ``kind`` and a human-readable
message; ``to_dict()`` is the shape handed to API layers.
"""

from decimal import Decimal
from typing import Any, Dict, Iterable, Optional


class TradePortError(Exception):
    """Base exception for deal and exchange processing errors"""

    kind = "error"

    def __init__(
        self,
        message: str,
        error_code: str = None,
        is_retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.kind
        self.is_retryable = is_retryable
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "error_code": self.error_code,
            "message": self.message,
            "retryable": self.is_retryable,
            "details": self.details,
        }


class NotFoundError(TradePortError):
    """Deal, order, dispute or pair absent"""

    kind = "not_found"


class UnauthorizedError(TradePortError):
    """Caller identity missing"""

    kind = "unauthorized"

    def __init__(self, message: str = "Wallet address required", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(TradePortError):
    """Caller identified but not allowed"""

    kind = "forbidden"

    def __init__(self, message: str = "Access denied", **kwargs):
        super().__init__(message, **kwargs)


class InvalidTransitionError(TradePortError):
    """Stage or status graph violation"""

    kind = "invalid_transition"

    def __init__(self, current: str, requested: str, allowed: Iterable[str] = (), entity: str = "deal"):
        self.current = current
        self.requested = requested
        self.allowed = sorted(allowed)
        allowed_text = ", ".join(self.allowed) if self.allowed else "none"
        super().__init__(
            f"Invalid {entity} transition from '{current}' to '{requested}' (allowed: {allowed_text})",
            details={"current": current, "requested": requested, "allowed": self.allowed},
        )


class ValidationError(TradePortError):
    """Malformed input: percentage sums, minimum quantities, amounts"""

    kind = "validation_error"


class InsufficientBalanceError(TradePortError):
    """Lock or debit precondition failed at update time"""

    kind = "insufficient_balance"

    def __init__(self, wallet: str, token: str, required: Decimal, available: Optional[Decimal] = None,
                 balance_field: str = "available"):
        self.wallet = wallet
        self.token = token
        self.required = required
        self.available = available
        shown = "unknown" if available is None else str(available)
        super().__init__(
            f"Insufficient {token} {balance_field} balance. Required: {required}, {balance_field.capitalize()}: {shown}",
            details={
                "wallet": wallet,
                "token": token,
                "required": str(required),
                balance_field: None if available is None else str(available),
            },
        )


class ConflictError(TradePortError):
    """Idempotent replay with divergent parameters, or a lost race after retries"""

    kind = "conflict"


class UpstreamFailureError(TradePortError):
    """Venue relay or store unavailable (retryable)"""

    kind = "upstream_failure"

    def __init__(self, message: str, error_code: str = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code=error_code, is_retryable=True, details=details)


class VenueOutcomeUnknownError(UpstreamFailureError):
    """The venue may hold an order whose fill could not be confirmed"""

    def __init__(self, message: str, venue_order_id: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message,
            error_code="venue_outcome_unknown",
            details={**(details or {}), "venue_order_id": venue_order_id},
        )
        self.venue_order_id = venue_order_id
        # Resubmitting could double the order
        self.is_retryable = False
