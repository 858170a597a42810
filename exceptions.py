from typing import Any, Optional


class PhonePeException(Exception):
    def __init__(self, message):
        self.message = message
        super().__init__(self.message)


class AuthError(PhonePeException):
    """Token exchange with the PhonePe OAuth endpoint failed."""


class GatewayResponseError(PhonePeException):
    """Gateway unreachable or answered with a body we cannot parse."""


class PaymentInitError(PhonePeException):
    """Gateway answered but gave us no usable redirect URL."""

    def __init__(self, message, payload: Optional[Any] = None):
        super().__init__(message)
        self.payload = payload


class VerificationError(PhonePeException):
    """Order status lookup failed; callers treat this as not successful."""


class NotificationError(PhonePeException):
    """A fan-out side effect (storage, rewards, email, sms) failed."""


class InvalidPaymentRequest(ValueError):
    pass
