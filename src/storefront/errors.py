"""Custom exceptions for storefront."""


class StorefrontError(Exception):
    """Base exception for all storefront errors."""

    pass


class ValidationError(StorefrontError):
    """Raised when a request payload is missing or malformed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class UnauthorizedError(StorefrontError):
    """Raised when no caller identity can be resolved for a user-scoped read."""

    def __init__(self, message: str = "User ID is required"):
        super().__init__(message)


class SignatureError(StorefrontError):
    """Raised when a webhook signature does not verify."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid signature: {reason}")


class NotFoundError(StorefrontError):
    """Raised when a requested entity doesn't exist."""

    pass


class OrderNotFoundError(NotFoundError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class PaymentNotFoundError(NotFoundError):
    """Raised when the payment provider reports no such payment."""

    def __init__(self, payment_id: str):
        self.payment_id = payment_id
        super().__init__(f"Payment not found: {payment_id}")


class OrderPersistenceError(StorefrontError):
    """Raised when the row store rejects or fails a write."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        self.message = message
        super().__init__(f"Error during {operation}: {message}")


class UpstreamError(StorefrontError):
    """Raised when a payment provider call fails."""

    def __init__(self, provider: str, message: str, detail: object | None = None):
        self.provider = provider
        self.message = message
        self.detail = detail
        super().__init__(f"{provider} error: {message}")
