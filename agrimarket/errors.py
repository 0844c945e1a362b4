# agrimarket/errors.py
from fastapi import HTTPException


class MarketError(HTTPException):
    """Base for every error the API reports with a machine-readable code."""

    code = "MARKET_ERROR"
    status_code = 400
    default_detail = "Request failed"

    def __init__(self, detail: str = None, status_code: int = None):
        super().__init__(
            status_code=status_code or self.status_code,
            detail=detail or self.default_detail,
        )


class AuthRequired(MarketError):
    code = "AUTH_REQUIRED"
    status_code = 401
    default_detail = "Authentication required"

    def __init__(self, detail: str = None):
        super().__init__(detail)
        self.headers = {"WWW-Authenticate": "Bearer"}


class Forbidden(MarketError):
    code = "FORBIDDEN"
    status_code = 403
    default_detail = "Not allowed"


class NotFound(MarketError):
    code = "NOT_FOUND"
    status_code = 404
    default_detail = "Not found"


class EmptyCart(MarketError):
    code = "EMPTY_CART"
    status_code = 400
    default_detail = "Please add items to your cart before checking out"


class EmailTaken(MarketError):
    code = "EMAIL_TAKEN"
    status_code = 409
    default_detail = "User with this email already exists"


class OrderFailed(MarketError):
    code = "ORDER_FAILED"
    status_code = 503
    default_detail = "There was an issue processing your order. Please try again"


class InsufficientStock(OrderFailed):
    status_code = 409

    def __init__(self, product_id: str, name: str = None):
        self.product_id = product_id
        super().__init__(f"Not enough stock left for {name or product_id}")


class RatingFailed(MarketError):
    code = "RATING_FAILED"
    status_code = 503
    default_detail = "Failed to submit rating. Please try again"


class RatingNotAllowed(MarketError):
    code = "RATING_NOT_ALLOWED"
    status_code = 409
    default_detail = "This item cannot be rated"


class InvalidTransition(MarketError):
    code = "INVALID_TRANSITION"
    status_code = 409
    default_detail = "Order status change not allowed"


class StoreUnavailable(MarketError):
    code = "STORE_UNAVAILABLE"
    status_code = 503
    default_detail = "Store unavailable. Please try again"
