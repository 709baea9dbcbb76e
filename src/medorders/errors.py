"""Custom exceptions for medorders."""


class MedordersError(Exception):
    """Base exception for all medorders errors."""

    pass


class DatabaseExistsError(MedordersError):
    """Raised when trying to init but the data file already exists."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Database already exists at {path}. Use --force to overwrite.")


class InvalidSchemaVersionError(MedordersError):
    """Raised when the data file has an unsupported schema version."""

    def __init__(self, found: int, supported: int):
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported schema version {found}. This tool supports version {supported}."
        )


class UserNotFoundError(MedordersError):
    """Raised when a user ID doesn't exist."""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class ProfileNotFoundError(MedordersError):
    """Raised when no laboratory or delivery profile matches."""

    def __init__(self, kind: str, ref: str):
        self.kind = kind
        self.ref = ref
        super().__init__(f"{kind.capitalize()} profile not found: {ref}")


class ProductNotFoundError(MedordersError):
    """Raised when a product ID doesn't exist."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product not found: {product_id}")


class OrderNotFoundError(MedordersError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class InsufficientStockError(MedordersError):
    """Raised when a product has fewer units than requested."""

    def __init__(self, product_name: str, available: int, requested: int):
        self.product_name = product_name
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient quantity for product {product_name} "
            f"(available {available}, requested {requested})"
        )


class InvalidOrderError(MedordersError):
    """Raised when order input fails validation."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid order: {reason}")


class InvalidTransitionError(MedordersError):
    """Raised when an order is not in the state an action requires."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        msg = f"Cannot move order from '{current}' to '{target}'"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)


class OrderAlreadyAssignedError(MedordersError):
    """Raised when claiming an order that already has a laboratory."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(
            f"Order {order_id} does not need assignment or has already been assigned"
        )


class NotAssignedError(MedordersError):
    """Raised when the acting user is not the party assigned to an order."""

    def __init__(self, order_id: str, role: str = "delivery partner"):
        self.order_id = order_id
        self.role = role
        super().__init__(f"Order {order_id} is not assigned to you as {role}")


class PermissionDeniedError(MedordersError):
    """Raised when a user's role does not allow an action."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Forbidden: {reason}")


class AuthenticationError(MedordersError):
    """Raised when a request carries no valid credentials."""

    def __init__(self, reason: str = "missing or invalid token"):
        self.reason = reason
        super().__init__(f"Unauthorized: {reason}")


class InvalidSignatureError(MedordersError):
    """Raised when a payment or webhook signature does not verify."""

    def __init__(self, what: str = "payment"):
        self.what = what
        super().__init__(f"Invalid {what} signature")


class PaymentNotCapturedError(MedordersError):
    """Raised when the gateway reports a payment that was not captured."""

    def __init__(self, payment_id: str, status: str):
        self.payment_id = payment_id
        self.status = status
        super().__init__(f"Payment {payment_id} not captured (status: {status})")


class WebhookRejectedError(MedordersError):
    """Raised when a webhook payload is malformed or not allowed."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Webhook rejected: {reason}")


class PaymentGatewayError(MedordersError):
    """Raised when the payment gateway cannot be reached or errors."""

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"Payment gateway {operation} failed: {detail}")
