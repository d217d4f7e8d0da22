"""Custom exceptions for the order service."""


class ShopError(Exception):
    """Base exception for all order service errors."""

    def to_dict(self) -> dict:
        """Structured fields exposed to API clients next to the message."""
        return {}


# --- Store ---


class StoreError(ShopError):
    """Base class for document store failures."""


class DocumentNotFoundError(StoreError):
    """Raised by the store when a document id does not exist."""

    def __init__(self, collection: str, doc_id: str):
        self.collection = collection
        self.doc_id = doc_id
        super().__init__(f"Document not found in {collection}: {doc_id}")


class ConcurrentUpdateError(StoreError):
    """Raised when a conditional update keeps losing the version race."""

    def __init__(self, collection: str, doc_id: str, attempts: int):
        self.collection = collection
        self.doc_id = doc_id
        self.attempts = attempts
        super().__init__(
            f"Gave up updating {collection}/{doc_id} after {attempts} conflicting writes"
        )


# --- Lookups ---


class ProductNotFoundError(ShopError):
    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")

    def to_dict(self) -> dict:
        return {"product_id": self.product_id}


class VariantNotFoundError(ShopError):
    def __init__(self, product_id: str, variant_id: str):
        self.product_id = product_id
        self.variant_id = variant_id
        super().__init__(f"Variant {variant_id} not found on product {product_id}")

    def to_dict(self) -> dict:
        return {"product_id": self.product_id, "variant_id": self.variant_id}


class UserNotFoundError(ShopError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class OrderNotFoundError(ShopError):
    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


# --- Stock ---


class InsufficientStockError(ShopError):
    """Raised when a product cannot cover the requested quantity."""

    def __init__(self, product_id: str, available: int, requested: int, name: str | None = None):
        self.product_id = product_id
        self.available = available
        self.requested = requested
        label = name or product_id
        super().__init__(
            f"Insufficient stock for {label}. Available: {available}, Requested: {requested}"
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "available": self.available,
            "requested": self.requested,
        }


class InsufficientReservedStockError(ShopError):
    """Raised when confirm/release finds no matching live reservation."""

    def __init__(self, product_id: str, requested: int, reserved: int):
        self.product_id = product_id
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"No matching reservation of {requested} on product {product_id} "
            f"(reserved: {reserved})"
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "requested": self.requested,
            "reserved": self.reserved,
        }


class StockReservationFailedError(ShopError):
    """Raised when a batch reservation was rolled back."""

    def __init__(self, failures: list[dict]):
        self.failures = failures
        super().__init__(f"Stock reservation failed for {len(failures)} item(s)")

    def to_dict(self) -> dict:
        return {"failures": self.failures}


# --- Orders ---


class PaymentFailedError(ShopError):
    def __init__(self, order_id: str, order_number: str, reason: str | None = None):
        self.order_id = order_id
        self.order_number = order_number
        self.reason = reason
        msg = "Payment processing failed"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)

    def to_dict(self) -> dict:
        return {"order_id": self.order_id, "order_number": self.order_number}


class PaymentGatewayError(ShopError):
    """Raised when the payment provider cannot be reached or errors out."""

    def __init__(self, message: str):
        super().__init__(f"Payment gateway error: {message}")


class OrderNotCancellableError(ShopError):
    def __init__(self, current_status: str):
        self.current_status = current_status
        super().__init__(f"Order cannot be cancelled. Current status: {current_status}")

    def to_dict(self) -> dict:
        return {"current_status": self.current_status}


class InvalidTransitionError(ShopError):
    def __init__(self, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")

    def to_dict(self) -> dict:
        return {"from": self.from_status, "to": self.to_status}


class StockConfirmationFailedError(ShopError):
    """Raised when a paid order's units could not be secured and the order was cancelled."""

    def __init__(self, order_id: str, order_number: str, failures: list[dict], refunded: bool):
        self.order_id = order_id
        self.order_number = order_number
        self.failures = failures
        self.refunded = refunded
        outcome = "the payment was refunded" if refunded else "the refund must be issued manually"
        super().__init__(
            f"Stock for order {order_number} could not be secured after payment; "
            f"the order was cancelled and {outcome}"
        )

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "order_number": self.order_number,
            "failures": self.failures,
            "refunded": self.refunded,
        }
