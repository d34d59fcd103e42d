"""
Reservation error taxonomy.

Every error carries the HTTP status it maps to and whether a caller may
retry it unchanged. InsufficientStock is a normal business outcome, not a
system failure.
"""

from typing import Any, Dict, Optional


class ReservationError(Exception):
    error_code = "reservation_error"
    status_code = 400
    retryable = False

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.error_code, "detail": self.detail}


class InvalidQuantity(ReservationError):
    error_code = "invalid_quantity"
    status_code = 422

    def __init__(self, quantity: Any, maximum: Optional[int] = None):
        if maximum is None:
            detail = f"Quantity must be a non-negative integer, got {quantity!r}"
        else:
            detail = f"Quantity must be a positive integer no greater than {maximum}, got {quantity!r}"
        super().__init__(detail)
        self.quantity = quantity
        self.maximum = maximum


class InvalidHolder(ReservationError):
    error_code = "invalid_holder"
    status_code = 422

    def __init__(self, detail: str = "User ID or session ID required"):
        super().__init__(detail)


class InsufficientStock(ReservationError):
    error_code = "insufficient_stock"
    status_code = 409

    def __init__(self, stock_key: str, requested: int, available: int):
        super().__init__(
            f"Not enough stock available for {stock_key}: "
            f"{available} available, {requested} requested"
        )
        self.stock_key = stock_key
        self.requested = requested
        self.available = available

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update(requested=self.requested, available_stock=self.available)
        return data


class NotFound(ReservationError):
    error_code = "not_found"
    status_code = 404

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} not found")
        self.reservation_id = reservation_id


class AlreadyTerminal(ReservationError):
    """The reservation already left the active state. Benign for release and expiry."""
    error_code = "already_terminal"
    status_code = 409

    def __init__(self, reservation_id: str, status: str):
        super().__init__(f"Reservation {reservation_id} is already {status}")
        self.reservation_id = reservation_id
        self.status = status

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status"] = self.status
        return data


class ReservationExpired(AlreadyTerminal):
    error_code = "reservation_expired"

    def __init__(self, reservation_id: str):
        super().__init__(reservation_id, "expired")


class NotExpired(ReservationError):
    error_code = "not_expired"
    status_code = 409

    def __init__(self, reservation_id: str):
        super().__init__(f"Reservation {reservation_id} has not expired")
        self.reservation_id = reservation_id


class StockLedgerError(ReservationError):
    error_code = "stock_ledger_error"
    status_code = 409

    def __init__(self, detail: str, stock_key: Optional[str] = None):
        super().__init__(detail)
        self.stock_key = stock_key


class StoreUnavailable(ReservationError):
    error_code = "store_unavailable"
    status_code = 503
    retryable = True


class LockTimeout(StoreUnavailable):
    error_code = "lock_timeout"

    def __init__(self, stock_key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock on {stock_key}")
        self.stock_key = stock_key
        self.timeout = timeout
