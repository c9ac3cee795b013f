"""Custom exceptions for the card gateway integration."""


class GatewayError(Exception):
    """Base exception for gateway-related errors."""

    pass


class ConfigurationError(GatewayError):
    """Raised when required gateway settings are missing or malformed."""

    pass


class CardValidationError(GatewayError, ValueError):
    """
    Raised when card data fails local validation (Luhn, expiry).

    This is a TERMINAL error. It is raised before any network call and is
    never retried; the message is safe to show to the cardholder.
    """

    pass


class GatewayTransportError(GatewayError):
    """
    Raised when the processor cannot be reached or answers with something
    that is not a JSON document.

    The gateway client converts this into an ``error`` outcome and never
    retries it itself. Only the status poller re-polls after it.
    """

    def __init__(self, message: str, payment_id: str = None):
        super().__init__(message)
        self.payment_id = payment_id


class SignatureMismatchError(GatewayError):
    """
    Raised when a callback or processor reply carries a signature that does
    not match the recomputed one.

    This is a SECURITY fault: the document is discarded and must never
    change the state of a payment.
    """

    pass


class InvalidCallbackError(GatewayError):
    """Raised when a callback body cannot be parsed into CallbackData."""

    pass
