"""
Exception Handler Module
Provides the payment error taxonomy and error handling decorators
"""

import logging
import functools
from decimal import Decimal
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class ChatWalletError(Exception):
    """Base class for all categorised errors; `code` is stable across the wire"""

    code = "InternalError"
    http_status = 500
    default_user_message = "Something went wrong. Please try again."

    def __init__(self, message: str, user_message: Optional[str] = None, **context: Any):
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.user_message}
        for key, value in self.context.items():
            payload[key] = float(value) if isinstance(value, Decimal) else value
        return payload


class ValidationError(ChatWalletError):
    """Custom validation error for input validation failures"""

    code = "ValidationError"
    http_status = 400

    def __init__(self, message: str, field: Optional[str] = None):
        self.field = field
        super().__init__(message, user_message=message, field=field)


class AuthError(ChatWalletError):
    code = "AuthError"
    http_status = 401
    default_user_message = "Invalid session. Please start again."


class InsufficientFunds(ChatWalletError):
    code = "InsufficientFunds"
    http_status = 422

    def __init__(self, required: Decimal, available: Decimal):
        self.required = Decimal(required)
        self.available = Decimal(available)
        self.shortfall = self.required - self.available
        super().__init__(
            f"Insufficient funds: required {self.required}, available {self.available}",
            user_message=(
                f"Insufficient balance. You need ₦{self.required:,.2f} but have "
                f"₦{self.available:,.2f} (short by ₦{self.shortfall:,.2f})."
            ),
            required=self.required,
            available=self.available,
            shortfall=self.shortfall,
        )


class WalletFrozen(ChatWalletError):
    code = "WalletFrozen"
    http_status = 403
    default_user_message = "Your wallet is currently restricted. Please contact support."


class UserBanned(ChatWalletError):
    code = "UserBanned"
    http_status = 403
    default_user_message = "Your account is restricted. Please contact support."


class LimitExceeded(ChatWalletError):
    code = "LimitExceeded"
    http_status = 422

    def __init__(self, limit_type: str, limit: Decimal, remaining: Decimal, message: Optional[str] = None):
        self.limit_type = limit_type
        self.limit = Decimal(limit)
        self.remaining = max(Decimal(remaining), Decimal("0"))
        text = message or (
            f"This transfer exceeds your {limit_type} limit of ₦{self.limit:,.2f}. "
            f"Remaining: ₦{self.remaining:,.2f}."
        )
        super().__init__(text, user_message=text, limit_type=limit_type, limit=self.limit, remaining=self.remaining)


class ProviderUnavailable(ChatWalletError):
    code = "ProviderUnavailable"
    http_status = 503
    default_user_message = "The service is temporarily unavailable. Please try again shortly."


class ProviderRejected(ChatWalletError):
    code = "ProviderRejected"
    http_status = 502
    default_user_message = "The transaction was declined by the bank."

    def __init__(self, message: str, response_code: Optional[str] = None, user_message: Optional[str] = None):
        self.response_code = response_code
        super().__init__(message, user_message=user_message, response_code=response_code)


class IllegalTransition(ChatWalletError):
    code = "IllegalTransition"
    http_status = 409


class StatePersistenceFailed(ChatWalletError):
    code = "StatePersistenceFailed"
    http_status = 500


class UserNotFound(ChatWalletError):
    code = "UserNotFound"
    http_status = 404
    default_user_message = "We couldn't find your account. Send 'hi' to get started."


class WalletNotFound(ChatWalletError):
    code = "WalletNotFound"
    http_status = 404
    default_user_message = "We couldn't find your wallet. Please complete onboarding."


def safe_chat_handler(func: Callable) -> Callable:
    """
    Decorator for chat message handlers.
    Categorised errors are logged and returned as the user-facing text;
    anything else is logged with a traceback and mapped to a generic reply.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> Any:
        try:
            return await func(*args, **kwargs)
        except ChatWalletError as e:
            logger.warning(f"⚠️ {e.code} in chat handler {func.__name__}: {e.message}")
            return e.user_message
        except Exception as e:
            logger.error(f"Error in chat handler {func.__name__}: {type(e).__name__}: {e}", exc_info=True)
            return ChatWalletError.default_user_message

    return wrapper
