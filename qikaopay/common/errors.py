"""Error taxonomy shared by the payment service, store and gateway client."""

from typing import Any


class PaymentError(Exception):
    """Base class for all payment subsystem errors."""


class ValidationError(PaymentError):
    """Malformed initiate/status request; user-correctable."""


class ConfigurationError(PaymentError):
    """Required gateway credentials or URLs are missing."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = missing
        super().__init__(f"payment gateway not configured: missing {', '.join(missing)}")


class GatewayError(PaymentError):
    """Upstream provider rejected the request or was unreachable."""

    def __init__(self, message: str, detail: Any = None, status_code: int | None = None) -> None:
        self.detail = detail
        self.status_code = status_code
        super().__init__(message)


class CallbackParseError(PaymentError):
    """Vendor callback payload could not be interpreted."""


class DuplicateIntent(PaymentError):
    """An intent already exists for this correlation id."""

    def __init__(self, correlation_id: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"intent already exists: {correlation_id}")


class IntentNotFound(PaymentError):
    """No intent is recorded for this correlation id."""

    def __init__(self, correlation_id: str) -> None:
        self.correlation_id = correlation_id
        super().__init__(f"intent not found: {correlation_id}")


class InvalidTransition(PaymentError, ValueError):
    """Requested state change is not permitted by the state machine."""
