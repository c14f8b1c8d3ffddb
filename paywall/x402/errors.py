# paywall/x402/errors.py
"""
Exception taxonomy for the x402 payment path.

Verify and settle outcomes are normally returned as values
(VerifyResponse / SettleResponse). These exceptions cover the cases that
must not be mistaken for "the payment is bad": broken configuration,
unparseable envelopes, settlement invariant violations and unreachable
backends. Each carries a machine-readable ``reason`` and the HTTP status
the Gate maps it to; ``str(exc)`` is for logs only.
"""
from typing import Optional


class PaymentError(Exception):
    """Base class for x402 payment errors."""

    status_code = 500
    default_reason = "payment_error"

    def __init__(self, message: str = "", reason: Optional[str] = None):
        super().__init__(message or self.default_reason)
        self.reason = reason or self.default_reason


class ConfigurationError(PaymentError):
    """No payee or payment requirement could be constructed."""
    status_code = 500
    default_reason = "payment_configuration_error"


class MalformedPayload(PaymentError):
    """The payment envelope cannot be decoded or misses required fields."""
    status_code = 400
    default_reason = "malformed_payload"


class RequirementMismatch(MalformedPayload):
    """The envelope references a price, asset or resource that was never offered."""
    default_reason = "requirement_mismatch"


class SettleFailure(PaymentError):
    """Funds movement was attempted and did not complete."""
    status_code = 402
    default_reason = "settlement_failed"


class SettlementInvariantError(SettleFailure):
    """The backend reported a state that contradicts itself (e.g. COMPLETE without a tx hash)."""
    status_code = 500
    default_reason = "settlement_invariant_violation"


class BackendUnavailable(PaymentError):
    """The custodial signer or chain reader could not be reached. Safe to retry."""
    status_code = 503
    default_reason = "backend_unavailable"
