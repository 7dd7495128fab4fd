"""Custom exceptions for the storefront backend."""

from enum import Enum
from typing import Optional


class AuthFailure(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MISSING_USER = "missing_user"
    TOKEN_INVALID = "token_invalid"
    MISSING_CREDENTIALS = "missing_credentials"
    INVALID_CREDENTIALS = "invalid_credentials"
    NOT_CONFIGURED = "not_configured"


class RejectReason(str, Enum):
    PRODUCT_UNAVAILABLE = "product_unavailable"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_STATE = "invalid_state"


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class AuthenticationError(StorefrontError):
    """Raised when a caller cannot be identified."""

    MESSAGES = {
        AuthFailure.INVALID_SIGNATURE: "Invalid Telegram authentication data",
        AuthFailure.EXPIRED: "Authentication data is too old",
        AuthFailure.MISSING_USER: "User data not found",
        AuthFailure.TOKEN_INVALID: "Invalid token",
        AuthFailure.MISSING_CREDENTIALS: "No valid authentication found",
        AuthFailure.INVALID_CREDENTIALS: "Invalid credentials",
        AuthFailure.NOT_CONFIGURED: "Telegram bot token not configured",
    }

    def __init__(self, reason: AuthFailure):
        self.reason = reason
        super().__init__(self.MESSAGES[reason])


class PermissionDeniedError(StorefrontError):
    """Raised when an identified caller lacks the required role."""

    def __init__(self, message: str = "Admins only"):
        super().__init__(message)


class OrderRejected(StorefrontError):
    """Raised when an order cannot be admitted or transitioned."""

    def __init__(self, reason: RejectReason, message: str):
        self.reason = reason
        super().__init__(message)


class NotFoundError(StorefrontError):
    """Raised when a direct id lookup finds nothing."""

    def __init__(self, entity: str, key: Optional[str] = None):
        self.entity = entity
        self.key = key
        super().__init__(f"{entity} not found")


class ConflictError(StorefrontError):
    """Raised when a unique value is already taken."""

    pass


class BadRequestError(StorefrontError):
    """Raised when input is well-formed JSON but unusable."""

    pass


class InvalidIdError(BadRequestError):
    """Raised when a path id is not a valid ObjectId."""

    def __init__(self, entity: str, value: str):
        self.entity = entity
        self.value = value
        super().__init__(f"Invalid {entity.lower()} id: {value}")


ERROR_STATUS_CODES = {
    AuthenticationError: 401,
    PermissionDeniedError: 403,
    OrderRejected: 400,
    NotFoundError: 404,
    ConflictError: 409,
    BadRequestError: 400,
}
