"""
Custom domain exceptions for consistent error handling.

These exceptions are mapped to HTTP status codes by the global exception handler
in main.py.
"""
from fastapi import HTTPException, status


class DomainError(HTTPException):
    """Base class for all domain-specific errors."""
    def __init__(self, message: str, status_code: int = status.HTTP_400_BAD_REQUEST, details: dict | None = None):
        super().__init__(status_code=status_code, detail=message)
        self.message = message
        self.details = details or {}


class NotFoundError(DomainError):
    """Resource not found (404)."""
    def __init__(self, resource_type: str, identifier: str, details: dict | None = None):
        message = f"{resource_type} not found: {identifier}"
        super().__init__(message, status_code=status.HTTP_404_NOT_FOUND, details=details)


class ValidationError(DomainError):
    """Validation error (400)."""
    def __init__(self, message: str, field: str | None = None, details: dict | None = None):
        if field:
            message = f"Validation error on {field}: {message}"
        super().__init__(message, status_code=status.HTTP_400_BAD_REQUEST, details=details)


class UnauthorizedError(DomainError):
    """Unauthorized access (401)."""
    def __init__(self, message: str = "Unauthorized", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_401_UNAUTHORIZED, details=details)


class ForbiddenError(DomainError):
    """The calling source may not mutate the requested signal (403)."""
    def __init__(self, message: str = "Forbidden", details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_403_FORBIDDEN, details=details)


class InvalidTransitionError(DomainError):
    """Delivery state graph violation (422)."""
    def __init__(self, current: str | None, requested: str, details: dict | None = None):
        message = f"Invalid transition: {current} → {requested}"
        super().__init__(
            message,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            details={"from": current, "to": requested, **(details or {})},
        )
        self.current = current
        self.requested = requested


class InvariantViolationError(DomainError):
    """The prospective order state would break a data-model invariant (422)."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, details=details)


class ConflictError(DomainError):
    """Resource conflict (409): cancelled order, lost optimistic-concurrency race."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message, status_code=status.HTTP_409_CONFLICT, details=details)


class StaleWriteError(ConflictError):
    """The order row changed between read and conditional write (409)."""
    def __init__(self, order_id: int, expected_version: int):
        super().__init__(
            f"Order {order_id} was modified concurrently",
            details={"order_id": order_id, "expected_version": expected_version},
        )


class InsufficientStockError(ConflictError):
    """A stock decrement would go negative (409)."""
    def __init__(self, item_id: int, requested: int, available: int | None = None):
        super().__init__(
            f"Insufficient stock for item {item_id}",
            details={"item_id": item_id, "requested": requested, "available": available},
        )
        self.item_id = item_id


class ExternalServiceError(DomainError):
    """Carrier or gateway call failed (502). Always retryable."""
    def __init__(self, service: str, message: str, details: dict | None = None):
        super().__init__(
            f"{service} error: {message}",
            status_code=status.HTTP_502_BAD_GATEWAY,
            details=details,
        )
        self.service = service
        self.reason = message
