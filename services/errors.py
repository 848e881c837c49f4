"""
Error taxonomy for billing reconciliation
"""
from typing import Optional


class BillingError(Exception):
    """Base class for every reconciliation failure."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details:
            body["details"] = self.details
        return body


class SignatureInvalidError(BillingError):
    """Webhook signature did not verify. The sender must re-sign; never retried."""


class MalformedEventError(BillingError):
    """Payload verified but cannot be parsed into an event."""


class UnresolvedAccountError(BillingError):
    """No account id on the subscription, its customer, or the checkout session."""


class IncompleteCheckoutError(BillingError):
    """Checkout session has no subscription yet; a subscription event will follow."""


class TransientReadError(BillingError):
    """A read kept failing after the bounded retry loop."""


class StoreWriteError(BillingError):
    """The record store rejected a write. Recovery is webhook redelivery."""
