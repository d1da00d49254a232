"""
Error taxonomy for the wallet ledger.

Every failure raised by the services carries a ``kind`` discriminator and the
HTTP status it maps to. ``main.py`` registers handlers that render them as
``{"success": false, "kind": ..., "message": ...}``.
"""
from typing import Any, Dict, Optional


class LedgerError(Exception):
    kind = "internal"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


# 400

class ValidationError(LedgerError):
    kind = "validation"
    status_code = 400


class InvalidStatus(ValidationError):
    kind = "invalid_status"

    def __init__(self, status: str):
        super().__init__(f"Invalid status: {status}", {"status": status})


# 404

class NotFoundError(LedgerError):
    kind = "not_found"
    status_code = 404
    resource = "Resource"

    def __init__(self, resource_id: Any = None):
        message = f"{self.resource} not found"
        if resource_id is not None:
            message = f"{self.resource} {resource_id} not found"
        super().__init__(message, {"resource": self.resource, "id": resource_id})


class AccountNotFound(NotFoundError):
    resource = "Account"


class ProductNotFound(NotFoundError):
    resource = "Product"


class OrderNotFound(NotFoundError):
    resource = "Order"


class OrderItemNotFound(NotFoundError):
    resource = "Order item"


# 400 / 409

class ConflictError(LedgerError):
    kind = "conflict"
    status_code = 409


class InsufficientBalance(ConflictError):
    kind = "insufficient_balance"
    status_code = 400

    def __init__(self, balance: int, required: int):
        super().__init__(
            "Insufficient balance to place order",
            {"balance": balance, "required": required},
        )


class EmptyCart(ConflictError):
    kind = "empty_cart"
    status_code = 400

    def __init__(self):
        super().__init__("Cart is empty")


class OutOfStock(ConflictError):
    kind = "out_of_stock"

    def __init__(self, product_id: int, requested: int, available: int):
        super().__init__(
            f"Product {product_id} has {available} in stock, {requested} requested",
            {"product_id": product_id, "requested": requested, "available": available},
        )


class InvalidTransition(ConflictError):
    kind = "invalid_transition"

    def __init__(self, current: str, target: str):
        super().__init__(
            f"Cannot move from {current} to {target}",
            {"current": current, "target": target},
        )


class LoanStillOutstanding(ConflictError):
    kind = "loan_outstanding"
    status_code = 400


# Store-level

class TransientStoreError(LedgerError):
    """Deadlock, serialization failure or lock timeout. Safe to retry the whole unit of work."""
    kind = "transient"
    status_code = 503


class TransactionTimeout(TransientStoreError):
    pass


class DuplicateReference(LedgerError):
    """A concurrent writer already recorded an entry with the same idempotency reference."""
    kind = "duplicate"
    status_code = 409


class InternalError(LedgerError):
    kind = "internal"
    status_code = 500
