# tests/test_x402_codec.py
"""
Unit tests for the x402 header codec and typed-data helpers.
"""
import base64
import json

import pytest
from hexbytes import HexBytes

from paywall.x402.codec import (
    build_typed_data,
    chain_id_from_network,
    decode_header,
    decode_payment_payload,
    decode_payment_required,
    decode_payment_response,
    encode_header,
    encode_payment_payload,
    encode_payment_required,
    encode_payment_response,
    split_signature,
    typed_data_to_json,
)
from paywall.x402.errors import MalformedPayload
from paywall.x402.models import ExactPayload, PaymentRequired, ResourceInfo, SettleResponse, payer_of, to_wire


def _b64(text: str) -> str:
    return base64.b64encode(text.encode("utf-8")).decode("ascii")


class TestHeaderEncoding:
    """Test base64(JSON) header values."""

    def test_encode_is_base64_json(self):
        """Encoded header decodes to the original JSON."""
        value = encode_header({"a": 1, "b": "x"})
        assert json.loads(base64.b64decode(value)) == {"a": 1, "b": "x"}

    def test_decode_invalid_base64(self):
        """Non-base64 input raises MalformedPayload."""
        with pytest.raises(MalformedPayload) as exc:
            decode_header("not base64 !!!")
        assert exc.value.reason == "malformed_payload"

    def test_decode_invalid_json(self):
        """Base64 of non-JSON raises MalformedPayload."""
        with pytest.raises(MalformedPayload):
            decode_header(_b64("{not json"))

    def test_decode_non_object(self):
        """JSON that is not an object is rejected."""
        with pytest.raises(MalformedPayload):
            decode_header(_b64("[1, 2, 3]"))


class TestPaymentRequired:
    """Test the payment-required header."""

    def test_uses_camel_case(self, requirement):
        """Wire form uses camelCase field names."""
        challenge = PaymentRequired(
            resource=ResourceInfo(url="http://testserver/api/premium", mime_type="application/json"),
            accepts=[requirement],
        )
        data = json.loads(base64.b64decode(encode_payment_required(challenge)))

        assert data["x402Version"] == 2
        assert data["resource"]["mimeType"] == "application/json"
        assert data["accepts"][0]["payTo"] == requirement.pay_to
        assert data["accepts"][0]["maxTimeoutSeconds"] == 300
        assert "error" not in data

    def test_decode(self, requirement):
        """Decoded challenge equals the encoded one."""
        challenge = PaymentRequired(resource=ResourceInfo(url="http://testserver/x"), accepts=[requirement])
        assert decode_payment_required(encode_payment_required(challenge)) == challenge

    def test_empty_accepts_rejected(self):
        """A challenge without payment methods is malformed."""
        value = encode_header({"x402Version": 2, "resource": {"url": "http://x"}, "accepts": []})
        with pytest.raises(MalformedPayload):
            decode_payment_required(value)


class TestPaymentPayload:
    """Test the payment-signature header."""

    def test_authorization_uses_from(self, requirement, make_payload):
        """The authorization's payer field is serialised as 'from'."""
        payload = make_payload(requirement)
        data = json.loads(base64.b64decode(encode_payment_payload(payload)))
        authorization = data["payload"]["authorization"]

        assert authorization["from"] == payer_of(payload)
        assert isinstance(authorization["value"], str)
        assert isinstance(authorization["validBefore"], str)

    def test_decode_restores_payload(self, requirement, make_payload):
        """Decoding returns an equal payload."""
        payload = make_payload(requirement)
        assert decode_payment_payload(encode_payment_payload(payload)) == payload

    def test_missing_authorization_rejected(self, requirement):
        """Payload without an authorization is malformed."""
        value = encode_header({
            "x402Version": 2,
            "resource": {"url": "http://x"},
            "accepted": to_wire(requirement),
            "payload": {"signature": "0x00"},
        })
        with pytest.raises(MalformedPayload):
            decode_payment_payload(value)

    def test_short_nonce_rejected(self, requirement, make_payload):
        """Nonce must be 32 bytes."""
        data = to_wire(make_payload(requirement))
        data["payload"]["authorization"]["nonce"] = "0x1234"
        with pytest.raises(MalformedPayload):
            decode_payment_payload(encode_header(data))

    def test_non_numeric_value_rejected(self, requirement, make_payload):
        """Integer fields must be decimal strings."""
        data = to_wire(make_payload(requirement))
        data["payload"]["authorization"]["value"] = "0.01"
        with pytest.raises(MalformedPayload):
            decode_payment_payload(encode_header(data))

    @pytest.mark.parametrize("value", ["²", "١٠٠٠٠", " 10000", "-1"])
    def test_non_ascii_digits_rejected(self, requirement, make_payload, value):
        """Unicode digits that str.isdigit accepts are still malformed."""
        data = to_wire(make_payload(requirement))
        data["payload"]["authorization"]["value"] = value
        with pytest.raises(MalformedPayload):
            decode_payment_payload(encode_header(data))

    def test_other_protocol_version_rejected(self):
        """A version 1 payload is not accepted."""
        value = encode_header({
            "x402Version": 1,
            "scheme": "exact",
            "network": "base-sepolia",
            "payload": {"signature": "0x00"},
        })
        with pytest.raises(MalformedPayload):
            decode_payment_payload(value)


class TestPaymentResponse:
    """Test the payment-response header."""

    def test_contains_settlement_fields(self):
        """Header carries success, transaction, network and payer."""
        settlement = SettleResponse(success=True, transaction="0xabc", network="eip155:5042002", payer="0x1")
        value = encode_payment_response(settlement)

        assert json.loads(base64.b64decode(value)) == {
            "success": True,
            "transaction": "0xabc",
            "network": "eip155:5042002",
            "payer": "0x1",
        }
        assert decode_payment_response(value) == settlement

    def test_failure_keeps_empty_transaction(self):
        """A failed settlement still carries the transaction field."""
        settlement = SettleResponse(success=False, error_reason="x", transaction="", network="eip155:5042002")
        data = json.loads(base64.b64decode(encode_payment_response(settlement)))

        assert data["transaction"] == ""


class TestTypedData:
    """Test EIP-712 helpers."""

    def test_chain_id_from_network(self):
        """CAIP-2 eip155 ids map to chain ids."""
        assert chain_id_from_network("eip155:5042002") == 5042002
        assert chain_id_from_network("eip155:8453") == 8453

    def test_chain_id_rejects_other_namespaces(self):
        """Only eip155 networks are supported."""
        with pytest.raises(ValueError):
            chain_id_from_network("solana:mainnet")
        with pytest.raises(ValueError):
            chain_id_from_network("base-sepolia")

    def test_chain_id_rejects_unicode_digits(self):
        """The chain reference must be plain ASCII digits."""
        with pytest.raises(ValueError):
            chain_id_from_network("eip155:²")

    def test_build_typed_data(self, requirement, make_payload):
        """Domain and message are built from the authorization."""
        authorization = ExactPayload.from_payment(make_payload(requirement)).authorization
        typed = build_typed_data(
            authorization,
            token_name="USDC",
            token_version="2",
            chain_id=5042002,
            verifying_contract=requirement.asset,
        )

        assert typed["primaryType"] == "TransferWithAuthorization"
        assert typed["domain"]["chainId"] == 5042002
        assert typed["message"]["value"] == 10000
        assert typed["message"]["nonce"] == HexBytes(authorization.nonce)

    def test_typed_data_json_renders_bytes_as_hex(self, requirement, make_payload):
        """Bytes fields serialise as 0x-hex strings."""
        authorization = ExactPayload.from_payment(make_payload(requirement)).authorization
        typed = build_typed_data(
            authorization,
            token_name="USDC",
            token_version="2",
            chain_id=5042002,
            verifying_contract=requirement.asset,
        )
        data = json.loads(typed_data_to_json(typed))
        assert data["message"]["nonce"] == authorization.nonce.lower()


class TestSplitSignature:
    """Test signature splitting for transferWithAuthorization."""

    def test_split(self):
        """65-byte signature splits into v, r, s."""
        signature = "0x" + "aa" * 32 + "bb" * 32 + "1b"
        v, r, s = split_signature(signature)

        assert v == 27
        assert r == "0x" + "aa" * 32
        assert s == "0x" + "bb" * 32

    def test_normalises_v(self):
        """v of 0/1 is shifted to 27/28."""
        v, _, _ = split_signature("0x" + "00" * 64 + "01")
        assert v == 28

    def test_wrong_length(self):
        """Signatures that are not 65 bytes are rejected."""
        with pytest.raises(MalformedPayload):
            split_signature("0x" + "aa" * 64)
