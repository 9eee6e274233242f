"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
Every rejected mutation carries a stable machine-readable code and a human-readable message.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors
    INTERNAL_ERROR = "internal_error"
    VALIDATION_ERROR = "validation_error"
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    INVALID_OPERATION = "invalid_operation"
    RATE_LIMITED = "rate_limited"

    # Stream / chat errors
    STREAM_NOT_FOUND = "stream_not_found"
    STREAM_NOT_LIVE = "stream_not_live"
    CHAT_DISABLED = "chat_disabled"
    GIFTS_DISABLED = "gifts_disabled"
    IDEMPOTENCY_KEY_REUSED = "idempotency_key_reused"
    USER_BLOCKED = "user_blocked"
    MESSAGE_NOT_FOUND = "message_not_found"
    CONTENT_REJECTED = "content_rejected"

    # Wallet errors
    WALLET_NOT_FOUND = "wallet_not_found"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    PAYMENT_FAILED = "payment_failed"
    BELOW_MINIMUM = "below_minimum"

    # Subscription / payout errors
    SUBSCRIPTION_NOT_FOUND = "subscription_not_found"
    ALREADY_SUBSCRIBED = "already_subscribed"
    PAYOUT_NOT_FOUND = "payout_not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"

    # Transient infrastructure errors (retryable)
    LOCK_TIMEOUT = "lock_timeout"
    STORE_UNAVAILABLE = "store_unavailable"

    # External service errors
    EXTERNAL_SERVICE_UNAVAILABLE = "external_service_unavailable"
    EXTERNAL_SERVICE_TIMEOUT = "external_service_timeout"

    # Fatal
    INVARIANT_VIOLATION = "invariant_violation"


class AppException(Exception):
    """Base exception for all application errors"""

    retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        body = {
            "code": self.error_code.value,
            "message": self.message,
            "details": self.details,
        }
        if self.retryable:
            body["retryable"] = True
        return {"error": body}


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class InvalidOperationError(AppException):
    """Raised for requests that are well-formed but never allowed (self-gift, self-subscribe)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_OPERATION,
            status_code=400,
            details=details
        )


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ForbiddenError(AppException):
    """Raised when the acting user lacks permission"""

    def __init__(
        self,
        message: str = "You do not have permission to perform this action",
        error_code: ErrorCode = ErrorCode.FORBIDDEN,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=403,
            details=details
        )


# ==================== Stream / chat ====================

class StreamNotFoundError(NotFoundException):
    """Raised when stream is not found"""

    def __init__(self, stream_id: int):
        super().__init__("Stream", stream_id, ErrorCode.STREAM_NOT_FOUND)


class StreamNotLiveError(AppException):
    """Raised when an operation requires a live stream"""

    def __init__(self, stream_id: int):
        super().__init__(
            message=f"Stream {stream_id} is not live",
            error_code=ErrorCode.STREAM_NOT_LIVE,
            status_code=400,
            details={"stream_id": stream_id}
        )


class ChatDisabledError(ForbiddenError):
    def __init__(self, stream_id: int):
        super().__init__(
            message="Chat is disabled for this stream",
            error_code=ErrorCode.CHAT_DISABLED,
            details={"stream_id": stream_id}
        )


class GiftsDisabledError(ForbiddenError):
    def __init__(self, stream_id: int):
        super().__init__(
            message="Gifts are disabled for this stream",
            error_code=ErrorCode.GIFTS_DISABLED,
            details={"stream_id": stream_id}
        )


class IdempotencyKeyReusedError(AppException):
    """Raised when a sender reuses an Idempotency-Key for a different gift"""

    def __init__(self, idempotency_key: str, gift_id: int):
        super().__init__(
            message="Idempotency-Key was already used for a different gift",
            error_code=ErrorCode.IDEMPOTENCY_KEY_REUSED,
            status_code=409,
            details={"idempotency_key": idempotency_key, "gift_id": gift_id}
        )


class UserBlockedError(ForbiddenError):
    """Raised when the stream host blocked the acting user"""

    def __init__(self, stream_id: int, user_id: int):
        super().__init__(
            message="You are blocked from this chat",
            error_code=ErrorCode.USER_BLOCKED,
            details={"stream_id": stream_id, "user_id": user_id}
        )


class ContentRejectedError(ForbiddenError):
    """Raised when the moderation service rejects message content"""

    def __init__(self, reason: str | None = None):
        super().__init__(
            message="Message rejected by moderation",
            error_code=ErrorCode.CONTENT_REJECTED,
            details={"reason": reason} if reason else None
        )


class MessageNotFoundError(NotFoundException):
    def __init__(self, message_id: int):
        super().__init__("Message", message_id, ErrorCode.MESSAGE_NOT_FOUND)


class RateLimitedError(AppException):
    """Raised when a user exceeds the chat message rate"""

    def __init__(self, retry_after_seconds: int, limit: int, window_seconds: int):
        super().__init__(
            message="Too many messages. Please slow down.",
            error_code=ErrorCode.RATE_LIMITED,
            status_code=429,
            details={
                "retry_after_seconds": retry_after_seconds,
                "limit": limit,
                "window_seconds": window_seconds,
            }
        )
        self.retry_after_seconds = retry_after_seconds


# ==================== Wallet ====================

class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InsufficientBalanceError(WalletException):
    """Raised when a wallet cannot cover the requested debit"""

    def __init__(self, user_id: int, available: Any, required: Any):
        super().__init__(
            message="Insufficient balance",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            user_id=user_id,
            details={"available": str(available), "required": str(required)}
        )


class WalletNotFoundError(WalletException):
    """Raised when wallet is not found"""

    def __init__(self, user_id: int):
        super().__init__(
            message=f"Wallet not found for user {user_id}",
            error_code=ErrorCode.WALLET_NOT_FOUND,
            user_id=user_id
        )
        self.status_code = 404


class PaymentFailedError(WalletException):
    """Raised when the payment rail declines a charge"""

    def __init__(self, user_id: int, reason: str | None = None):
        super().__init__(
            message=f"Payment failed: {reason}" if reason else "Payment failed",
            error_code=ErrorCode.PAYMENT_FAILED,
            user_id=user_id,
            details={"reason": reason} if reason else None
        )
        self.status_code = 402


class BelowMinimumPayoutError(WalletException):
    def __init__(self, user_id: int, amount: Any, minimum: Any, currency: str):
        super().__init__(
            message=f"Minimum payout is {minimum} {currency}",
            error_code=ErrorCode.BELOW_MINIMUM,
            user_id=user_id,
            details={"amount": str(amount), "minimum": str(minimum)}
        )


# ==================== Subscription / payout ====================

class SubscriptionNotFoundError(NotFoundException):
    def __init__(self, subscription_id: int):
        super().__init__("Subscription", subscription_id, ErrorCode.SUBSCRIPTION_NOT_FOUND)


class AlreadySubscribedError(AppException):
    def __init__(self, subscriber_id: int, creator_id: int):
        super().__init__(
            message="Already subscribed to this creator",
            error_code=ErrorCode.ALREADY_SUBSCRIBED,
            status_code=409,
            details={"subscriber_id": subscriber_id, "creator_id": creator_id}
        )


class PayoutNotFoundError(NotFoundException):
    def __init__(self, payout_id: int):
        super().__init__("Payout", payout_id, ErrorCode.PAYOUT_NOT_FOUND)


class InvalidStateTransitionError(AppException):
    """Raised when state transition is not allowed"""

    def __init__(self, current_state: str, target_state: str, entity: str | None = None):
        super().__init__(
            message=f"Invalid transition from '{current_state}' to '{target_state}'",
            error_code=ErrorCode.INVALID_STATE_TRANSITION,
            status_code=409,
            details={
                "current_state": current_state,
                "target_state": target_state,
                "entity": entity
            }
        )


# ==================== Transient / fatal ====================

class TransientError(AppException):
    """Base for infrastructure errors that may succeed on retry"""

    retryable = True

    def __init__(self, message: str, error_code: ErrorCode, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )


class LockTimeoutError(TransientError):
    """Raised when a wallet lock could not be acquired within the deadline"""

    def __init__(self, resource: str, timeout_seconds: float):
        super().__init__(
            message=f"Could not acquire lock on {resource} within {timeout_seconds}s",
            error_code=ErrorCode.LOCK_TIMEOUT,
            details={"resource": resource, "timeout_seconds": timeout_seconds}
        )


class StoreUnavailableError(TransientError):
    def __init__(self, store: str, reason: str | None = None):
        super().__init__(
            message=f"{store} is temporarily unavailable",
            error_code=ErrorCode.STORE_UNAVAILABLE,
            details={"store": store, "reason": reason}
        )


class InvariantViolationError(AppException):
    """
    Raised when a unit of work would commit an inconsistent state.

    Treated as a bug: the unit is aborted and an alert is raised.
    """

    def __init__(self, invariant: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=f"Invariant violated: {invariant}",
            error_code=ErrorCode.INVARIANT_VIOLATION,
            status_code=500,
            details=details
        )
        self.invariant = invariant


# ==================== External services ====================

class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        service_name: str,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ExternalServiceException":
        """
        יצירת שגיאה מתוך HTTP response בצורה עקבית.

        Args:
            service_name: שם השירות החיצוני (payment_rail, moderation, notifications)
            operation: שם הפעולה (לדוגמה: charge, payouts)
            response: אובייקט response (למשל httpx.Response)
            max_response_chars: אורך מקסימלי לשמירת response_text (מניעת לוגים גדולים)
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            service_name=service_name,
            message=f"{service_name} {operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class ServiceTimeoutError(ExternalServiceException):
    """Raised when external service times out"""

    def __init__(self, service_name: str, timeout_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} request timed out after {timeout_seconds}s",
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"timeout_seconds": timeout_seconds}
        )


class CircuitBreakerOpenError(ExternalServiceException):
    """Raised when circuit breaker is open"""

    def __init__(self, service_name: str, retry_after_seconds: float):
        super().__init__(
            service_name=service_name,
            message=f"{service_name} is temporarily unavailable (circuit breaker open)",
            error_code=ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
            details={"retry_after_seconds": retry_after_seconds}
        )
