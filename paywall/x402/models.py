# paywall/x402/models.py
"""
Wire models for the x402 payment protocol.

The protocol envelopes (PaymentRequired, PaymentRequirements, PaymentPayload,
VerifyResponse, SettleResponse, ...) come from the x402 SDK. The SDK keeps the
scheme payload of a PaymentPayload as a plain dict, so the ``exact`` EIP-3009
payload is validated here (Authorization, ExactPayload), together with the
ledger records.

Integers that can exceed 53 bits (amounts, timestamps) travel as decimal
strings and must be plain ASCII digits.
"""
import re
import time
from typing import Any, Dict, Optional

from pydantic import Field, ValidationError, ValidationInfo, field_validator
from x402.schemas import (
    X402_VERSION,
    BaseX402Model,
    PaymentPayload,
    PaymentRequired,
    PaymentRequirements,
    ResourceInfo,
    SettleRequest,
    SettleResponse,
    SupportedKind,
    SupportedResponse,
    VerifyRequest,
    VerifyResponse,
)

from paywall.x402.errors import MalformedPayload

__all__ = [
    "X402_VERSION",
    "EXACT_SCHEME",
    "PaymentPayload",
    "PaymentRequired",
    "PaymentRequirements",
    "ResourceInfo",
    "SettleRequest",
    "SettleResponse",
    "SupportedKind",
    "SupportedResponse",
    "VerifyRequest",
    "VerifyResponse",
    "Authorization",
    "ExactPayload",
    "Payment",
    "UnresolvedSettlement",
    "amount_of",
    "failed_settlement",
    "is_uint_string",
    "outcome_unknown",
    "payer_of",
    "pending_id_of",
    "requirements_match",
    "to_wire",
]

EXACT_SCHEME = "exact"

_UINT_PATTERN = re.compile(r"^[0-9]+$")
_NONCE_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")
_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_uint_string(value: Any) -> bool:
    """True for non-empty strings of ASCII digits (what ``int()`` accepts without surprises)."""
    return isinstance(value, str) and bool(_UINT_PATTERN.match(value))


def _validate_uint_string(value: str, field_name: str) -> str:
    if not is_uint_string(value):
        raise ValueError(f"{field_name} must be a non-negative integer encoded as a string")
    return value


def _coerce_uint_string(value: Any) -> Any:
    # Accept plain ints from callers; the wire form stays a string.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value


def to_wire(model: BaseX402Model) -> Dict[str, Any]:
    """JSON-ready dict with camelCase keys and without unset optionals."""
    return model.model_dump(by_alias=True, exclude_none=True)


def amount_of(requirement: PaymentRequirements) -> int:
    """
    The required amount in smallest units.

    Raises:
        MalformedPayload: If the amount is not a plain decimal integer.
    """
    if not is_uint_string(requirement.amount):
        raise MalformedPayload(f"Invalid requirement amount: {requirement.amount!r}")
    return int(requirement.amount)


def requirements_match(offered: PaymentRequirements, accepted: PaymentRequirements) -> bool:
    """
    Compare the fields that define the price of a resource.

    Addresses compare case-insensitively since checksum casing is not
    significant on EVM chains.
    """
    return (
        offered.scheme == accepted.scheme
        and offered.network == accepted.network
        and offered.asset.lower() == accepted.asset.lower()
        and offered.pay_to.lower() == accepted.pay_to.lower()
        and is_uint_string(accepted.amount)
        and amount_of(offered) == int(accepted.amount)
        and offered.max_timeout_seconds == accepted.max_timeout_seconds
    )


class Authorization(BaseX402Model):
    """EIP-3009 TransferWithAuthorization message."""
    from_: str = Field(alias="from")
    to: str
    value: str
    valid_after: str
    valid_before: str
    nonce: str

    @field_validator("value", "valid_after", "valid_before", mode="before")
    @classmethod
    def coerce_uints(cls, v: Any) -> Any:
        return _coerce_uint_string(v)

    @field_validator("value", "valid_after", "valid_before")
    @classmethod
    def validate_uints(cls, v: str, info: ValidationInfo) -> str:
        return _validate_uint_string(v, info.field_name)

    @field_validator("from_", "to")
    @classmethod
    def validate_address(cls, v: str) -> str:
        if not _ADDRESS_PATTERN.match(v):
            raise ValueError("must be a 20-byte hex address")
        return v

    @field_validator("nonce")
    @classmethod
    def validate_nonce(cls, v: str) -> str:
        if not _NONCE_PATTERN.match(v):
            raise ValueError("nonce must be 32 bytes of 0x-prefixed hex")
        return v

    @property
    def value_int(self) -> int:
        return int(self.value)

    @property
    def valid_after_int(self) -> int:
        return int(self.valid_after)

    @property
    def valid_before_int(self) -> int:
        return int(self.valid_before)


class ExactPayload(BaseX402Model):
    """Scheme payload for ``exact``: the signed authorization."""
    signature: str
    authorization: Authorization

    @classmethod
    def from_payment(cls, payload: PaymentPayload) -> "ExactPayload":
        """
        Validate the scheme payload carried by ``payload``.

        Raises:
            MalformedPayload: If it is not a well-formed EIP-3009 authorization.
        """
        try:
            return cls.model_validate(payload.payload)
        except ValidationError as e:
            raise MalformedPayload(f"Invalid exact payload: {e.error_count()} error(s)") from e

    def to_payload(self) -> Dict[str, Any]:
        """The dict form stored in ``PaymentPayload.payload``."""
        return to_wire(self)


def payer_of(payload: PaymentPayload) -> str:
    """Address that signed the authorization (the ``from`` field)."""
    return ExactPayload.from_payment(payload).authorization.from_


def failed_settlement(
    reason: str,
    network: str,
    payer: Optional[str] = None,
    pending_id: Optional[str] = None,
) -> SettleResponse:
    """
    SettleResponse for a settlement that did not complete.

    ``pending_id`` is set when a transfer was submitted but its terminal state
    was never observed; it travels in ``extra``.
    """
    return SettleResponse(
        success=False,
        error_reason=reason,
        transaction="",
        network=network,
        payer=payer,
        extra={"pendingId": pending_id} if pending_id else None,
    )


def pending_id_of(settlement: SettleResponse) -> Optional[str]:
    return (settlement.extra or {}).get("pendingId")


def outcome_unknown(settlement: SettleResponse) -> bool:
    """True when funds may have moved but no terminal state was observed."""
    return not settlement.success and pending_id_of(settlement) is not None


class Payment(BaseX402Model):
    """Ledger record of an accepted purchase."""
    resource_id: str
    amount: int
    tx_hash: Optional[str] = None
    payer: str
    timestamp: float = Field(default_factory=time.time)


class UnresolvedSettlement(BaseX402Model):
    """Settlement attempt whose on-chain outcome was never observed."""
    resource_id: str
    payer: str
    pending_id: str
    reason: str
    timestamp: float = Field(default_factory=time.time)
