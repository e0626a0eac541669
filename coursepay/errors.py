"""
Error types for the payment reconciliation core
"""

from typing import Optional


class ConfigError(RuntimeError):
    """Missing or malformed configuration. Fatal at startup."""


class PaymentError(Exception):
    """Base class for errors raised by the payment services"""


class InitiationFailed(PaymentError):
    """The gateway could not open a transaction"""

    def __init__(self, message: str, *, reference: Optional[str] = None, retryable: bool = False):
        super().__init__(message)
        self.message = message
        self.reference = reference
        self.retryable = retryable


class InvalidSignature(PaymentError):
    """Webhook signature did not match the raw body"""


class MalformedNotification(PaymentError):
    """Webhook body passed the signature check but is not a JSON object"""


class UnknownReference(PaymentError):
    """No payment intent exists for the reference"""

    def __init__(self, reference: str):
        super().__init__(f"Unknown payment reference: {reference}")
        self.reference = reference


class GrantPending(PaymentError):
    """Payment is confirmed but the entitlement has not been applied yet"""

    def __init__(self, reference: str, reason: str):
        super().__init__(f"Entitlement for {reference} pending: {reason}")
        self.reference = reference
        self.reason = reason
