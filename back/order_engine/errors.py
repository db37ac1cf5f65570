"""
Domain errors raised by the engine.

Every failure an operation can report carries a machine-readable code and a
message meant to be shown to the cashier verbatim. The HTTP layer renders them
as `{"success": false, "error": {"code", "message"}}`.
"""

from decimal import Decimal
from enum import Enum

from .money import as_json


class ErrorCode(str, Enum):
    NOT_FOUND = "NOT_FOUND"
    ORDER_CLOSED = "ORDER_CLOSED"
    ORDER_PAID = "ORDER_PAID"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    ALREADY_PAID = "ALREADY_PAID"
    ALREADY_CANCELLED = "ALREADY_CANCELLED"
    ORDER_HAS_ITEMS = "ORDER_HAS_ITEMS"
    PRODUCT_NOT_FOUND = "PRODUCT_NOT_FOUND"
    PRODUCT_SOLD_OUT = "PRODUCT_SOLD_OUT"
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_ITEMS = "INVALID_ITEMS"
    INVALID_STATUS = "INVALID_STATUS"
    PIN_REQUIRED = "PIN_REQUIRED"
    INVALID_PIN = "INVALID_PIN"
    INSUFFICIENT_PAYMENT = "INSUFFICIENT_PAYMENT"
    INVALID_VOUCHER = "INVALID_VOUCHER"
    VOUCHER_NOT_ACTIVE = "VOUCHER_NOT_ACTIVE"
    VOUCHER_EXPIRED = "VOUCHER_EXPIRED"
    VOUCHER_LIMIT_REACHED = "VOUCHER_LIMIT_REACHED"
    MIN_ORDER_AMOUNT = "MIN_ORDER_AMOUNT"


_STATUS_CODES = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.PRODUCT_NOT_FOUND: 404,
    ErrorCode.PIN_REQUIRED: 403,
    ErrorCode.INVALID_PIN: 401,
}


class OrderError(Exception):
    """Base class for every failure reported by an engine operation."""

    def __init__(self, code: ErrorCode, message: str, status_code: int | None = None):
        self.code = code
        self.message = message
        self.status_code = status_code or _STATUS_CODES.get(code, 400)
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class InsufficientPaymentError(OrderError):
    def __init__(self, required: Decimal, paid: Decimal):
        self.required = required
        self.paid = paid
        self.shortfall = required - paid
        super().__init__(
            ErrorCode.INSUFFICIENT_PAYMENT,
            f"Insufficient payment. Need {as_json(required)}, got {as_json(paid)}",
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["shortfall"] = as_json(self.shortfall)
        return data


def not_found(what: str = "Order") -> OrderError:
    return OrderError(ErrorCode.NOT_FOUND, f"{what} not found")
