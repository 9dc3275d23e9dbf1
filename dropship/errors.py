"""Failure taxonomy for the fulfillment pipeline."""


class DropshipError(Exception):
    """Base class for all dropship errors."""


class SignatureInvalid(DropshipError):
    """Webhook payload could not be authenticated."""


class Uncorrelated(DropshipError):
    """A webhook references something we cannot map to a purchase."""


class IntegrityMismatch(DropshipError):
    def __init__(self, reason: str, expected=None, actual=None):
        self.reason = reason
        self.expected = expected
        self.actual = actual
        super().__init__(f"{reason}: expected {expected}, got {actual}")


class AlreadyFulfilled(DropshipError):
    def __init__(self, intent_id: str, order_id: str | None = None):
        self.intent_id = intent_id
        self.order_id = order_id
        super().__init__(f"{intent_id} already fulfilled ({order_id or 'in progress'})")


class InvalidInput(DropshipError):
    pass


class SupplierError(DropshipError):
    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"Supplier error {code}: {message}")


class CredentialError(DropshipError):
    """Supplier token is unusable; the connection needs re-authorization."""


class NotConnected(CredentialError):
    def __init__(self):
        super().__init__("Supplier token not found; run the OAuth flow first")


class RefreshFailed(CredentialError):
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Supplier token refresh failed: {reason}")


class NotificationError(DropshipError):
    pass
