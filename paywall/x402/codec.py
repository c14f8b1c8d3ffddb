# paywall/x402/codec.py
"""
Encoding helpers for x402 envelopes and the EIP-3009 typed-data structure.

Headers carry base64(JSON) and are encoded with the x402 SDK's HTTP helpers;
this module turns every decoding failure into MalformedPayload and rejects
envelopes of other protocol versions. The typed-data builder is shared by the
payer (signing) and the Verifier (signature recovery) so both hash exactly
the same structure.
"""
import binascii
import json
import logging
import re
from typing import Any, Callable, Dict, Tuple, TypeVar

from eth_utils import to_checksum_address
from hexbytes import HexBytes
from x402.http import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    decode_payment_required_header,
    decode_payment_response_header,
    decode_payment_signature_header,
    encode_payment_required_header,
    encode_payment_response_header,
    encode_payment_signature_header,
    safe_base64_decode,
    safe_base64_encode,
)

from paywall.x402.errors import MalformedPayload
from paywall.x402.models import (
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequired,
    SettleResponse,
)

logger = logging.getLogger(__name__)

__all__ = [
    "PAYMENT_REQUIRED_HEADER",
    "PAYMENT_RESPONSE_HEADER",
    "PAYMENT_SIGNATURE_HEADER",
]

EIP712_DOMAIN_TYPE = [
    {"name": "name", "type": "string"},
    {"name": "version", "type": "string"},
    {"name": "chainId", "type": "uint256"},
    {"name": "verifyingContract", "type": "address"},
]

TRANSFER_WITH_AUTHORIZATION_TYPE = [
    {"name": "from", "type": "address"},
    {"name": "to", "type": "address"},
    {"name": "value", "type": "uint256"},
    {"name": "validAfter", "type": "uint256"},
    {"name": "validBefore", "type": "uint256"},
    {"name": "nonce", "type": "bytes32"},
]

_CHAIN_REFERENCE = re.compile(r"^[0-9]+$")

T = TypeVar("T")

# Errors the SDK decoders raise for bad input: base64 padding, JSON and UTF-8
# errors and pydantic ValidationError (all ValueError), and non-object JSON.
_DECODE_ERRORS = (binascii.Error, ValueError, AttributeError, TypeError)


def _decode(decoder: Callable[[str], T], header_value: str, header_name: str) -> T:
    try:
        return decoder(header_value.strip())
    except _DECODE_ERRORS as e:
        raise MalformedPayload(f"Cannot decode {header_name} header: {e}") from e


def encode_header(data: Dict[str, Any]) -> str:
    """Serialise a JSON object into a base64 header value."""
    return safe_base64_encode(json.dumps(data, separators=(",", ":")))


def decode_header(header_value: str) -> Dict[str, Any]:
    """
    Decode a base64(JSON) header value into a dict.

    Raises:
        MalformedPayload: If the value is not base64, not UTF-8 JSON, or not an object.
    """
    data = _decode(lambda value: json.loads(safe_base64_decode(value)), header_value, "x402")
    if not isinstance(data, dict):
        raise MalformedPayload("Header must decode to a JSON object")
    return data


def encode_payment_required(payment_required: PaymentRequired) -> str:
    return encode_payment_required_header(payment_required)


def decode_payment_required(header_value: str) -> PaymentRequired:
    """
    Decode a ``payment-required`` challenge.

    Raises:
        MalformedPayload: If undecodable, not protocol v2, or offering nothing.
    """
    challenge = _decode(decode_payment_required_header, header_value, PAYMENT_REQUIRED_HEADER)
    if not isinstance(challenge, PaymentRequired):
        raise MalformedPayload(f"Unsupported x402Version {challenge.x402_version}")
    if not challenge.accepts:
        raise MalformedPayload("Challenge offers no payment requirements")
    return challenge


def encode_payment_payload(payload: PaymentPayload) -> str:
    return encode_payment_signature_header(payload)


def decode_payment_payload(header_value: str) -> PaymentPayload:
    """
    Decode the ``payment-signature`` header sent by the payer.

    The scheme payload is validated as an ``exact`` EIP-3009 authorization.

    Raises:
        MalformedPayload: If undecodable, not protocol v2, or the authorization is malformed.
    """
    payload = _decode(decode_payment_signature_header, header_value, PAYMENT_SIGNATURE_HEADER)
    if not isinstance(payload, PaymentPayload):
        raise MalformedPayload(f"Unsupported x402Version {payload.x402_version}")
    ExactPayload.from_payment(payload)
    return payload


def encode_payment_response(settle_response: SettleResponse) -> str:
    """Encode the ``payment-response`` header. ``transaction`` is always present."""
    return encode_payment_response_header(settle_response)


def decode_payment_response(header_value: str) -> SettleResponse:
    return _decode(decode_payment_response_header, header_value, PAYMENT_RESPONSE_HEADER)


def chain_id_from_network(network: str) -> int:
    """
    Extract the numeric chain id from a CAIP-2 ``eip155:<id>`` identifier.

    Raises:
        ValueError: For non-EVM namespaces or a reference that is not ASCII digits.
    """
    namespace, _, reference = network.partition(":")
    if namespace != "eip155" or not _CHAIN_REFERENCE.match(reference):
        raise ValueError(f"Unsupported network identifier: {network}")
    return int(reference)


def build_typed_data(
    authorization: Authorization,
    *,
    token_name: str,
    token_version: str,
    chain_id: int,
    verifying_contract: str,
) -> Dict[str, Any]:
    """
    Build the EIP-712 TransferWithAuthorization structure.

    The domain binds the signature to one token deployment on one chain,
    so an authorization cannot be replayed against another asset or network.
    """
    return {
        "types": {
            "EIP712Domain": EIP712_DOMAIN_TYPE,
            "TransferWithAuthorization": TRANSFER_WITH_AUTHORIZATION_TYPE,
        },
        "primaryType": "TransferWithAuthorization",
        "domain": {
            "name": token_name,
            "version": token_version,
            "chainId": chain_id,
            "verifyingContract": to_checksum_address(verifying_contract),
        },
        "message": {
            "from": to_checksum_address(authorization.from_),
            "to": to_checksum_address(authorization.to),
            "value": authorization.value_int,
            "validAfter": authorization.valid_after_int,
            "validBefore": authorization.valid_before_int,
            "nonce": HexBytes(authorization.nonce),
        },
    }


def typed_data_to_json(typed_data: Dict[str, Any]) -> str:
    """JSON form of typed data for signers that take a string (bytes as 0x-hex)."""
    def _default(value: Any) -> Any:
        if isinstance(value, (bytes, bytearray)):
            return "0x" + bytes(value).hex()
        raise TypeError(f"Cannot serialise {type(value).__name__}")

    return json.dumps(typed_data, default=_default)


def split_signature(signature: str) -> Tuple[int, str, str]:
    """
    Split a 65-byte ``r || s || v`` signature into ``(v, r, s)``.

    Raises:
        MalformedPayload: If the signature is not 65 bytes of hex.
    """
    try:
        raw = bytes(HexBytes(signature))
    except (ValueError, TypeError) as e:
        raise MalformedPayload(f"Signature is not hex: {e}") from e
    if len(raw) != 65:
        raise MalformedPayload(f"Signature must be 65 bytes, got {len(raw)}")

    v = raw[64]
    if v < 27:
        v += 27
    return v, "0x" + raw[:32].hex(), "0x" + raw[32:64].hex()
