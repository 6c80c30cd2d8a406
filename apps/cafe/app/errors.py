"""
Error taxonomy of the order core.

Every error the store or the gateway raises on purpose is a CafeError. The
gateway turns them into JSON responses with the status, a stable machine code
the surfaces switch on, and whether the request may simply be retried.
"""
from __future__ import annotations

from typing import Any, Optional


class CafeError(Exception):
    status_code = 500
    code = "error"
    retryable = False

    def __init__(self, detail: str = "", **context: Any):
        super().__init__(detail or self.code)
        self.detail = detail or self.code
        self.context = context

    def to_payload(self) -> dict:
        payload: dict[str, Any] = {"detail": self.detail, "error": self.code, "retryable": self.retryable}
        if self.context:
            payload["context"] = self.context
        return payload


class InvalidInput(CafeError):
    status_code = 400
    code = "invalid_input"


class IdempotencyConflict(InvalidInput):
    status_code = 409
    code = "idempotency_conflict"


class Forbidden(CafeError):
    status_code = 403
    code = "forbidden"


class NotFound(CafeError):
    status_code = 404
    code = "not_found"


class InvalidTransition(CafeError):
    status_code = 409
    code = "invalid_transition"

    def __init__(self, detail: str = "", current: Optional[str] = None, target: Optional[str] = None, **context: Any):
        if current is not None:
            context["current"] = current
        if target is not None:
            context["target"] = target
        super().__init__(detail, **context)


class InsufficientStock(CafeError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: int, requested: int, available: int, name: str = ""):
        label = name or f"product {product_id}"
        super().__init__(
            f"{label} is out of stock" if available <= 0 else f"only {available} left of {label}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class AllocationConflict(CafeError):
    status_code = 503
    code = "allocation_conflict"
    retryable = True


class StoreUnavailable(CafeError):
    status_code = 503
    code = "store_unavailable"
    retryable = True


class RequestTimeout(StoreUnavailable):
    code = "request_timeout"
