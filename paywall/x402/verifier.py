# paywall/x402/verifier.py
"""
Side-effect-free verification of x402 ``exact`` payments.

Checks run in a fixed order and the first failure decides the reason:
1. scheme / network / asset of ``accepted`` match the requirement, and the
   network is an ``eip155`` chain
2. authorization value equals the required amount exactly
3. validity window: validAfter <= now < validBefore, and the window is no
   longer than maxTimeoutSeconds
4. recipient is the payee
5. EIP-712 signature recovers to ``from``
6. payer balance covers the value (read from the execution backend)

Nothing here tracks or consumes nonces; single use is enforced by the
token contract when the transfer is executed.
"""
import logging
import time
from enum import Enum
from typing import Callable, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data
from eth_utils import to_checksum_address

from paywall.services.custody import ChainReader
from paywall.x402.codec import build_typed_data, chain_id_from_network
from paywall.x402.models import ExactPayload, PaymentPayload, PaymentRequirements, VerifyResponse, amount_of

logger = logging.getLogger(__name__)


class InvalidReason(str, Enum):
    """Machine-readable verify failure reasons."""
    SCHEME_MISMATCH = "scheme_mismatch"
    NETWORK_MISMATCH = "network_mismatch"
    UNSUPPORTED_NETWORK = "unsupported_network"
    ASSET_MISMATCH = "asset_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    AUTHORIZATION_NOT_YET_VALID = "authorization_not_yet_valid"
    AUTHORIZATION_EXPIRED = "authorization_expired"
    VALIDITY_WINDOW_TOO_LONG = "validity_window_too_long"
    RECIPIENT_MISMATCH = "recipient_mismatch"
    MISSING_SIGNING_DOMAIN = "missing_signing_domain"
    INVALID_SIGNATURE = "invalid_signature"
    INSUFFICIENT_FUNDS = "insufficient_funds"


def _same_address(a: str, b: str) -> bool:
    return a.lower() == b.lower()


def recover_signer(payload: PaymentPayload, requirement: PaymentRequirements) -> Optional[str]:
    """
    Recover the address that signed the payload's authorization.

    The signing domain comes from the server-side requirement, never from
    the client's ``accepted`` block.

    Returns:
        Checksummed signer address, or None if the signature cannot be recovered.
    """
    exact = ExactPayload.from_payment(payload)
    extra = requirement.extra or {}
    typed_data = build_typed_data(
        exact.authorization,
        token_name=extra["name"],
        token_version=extra["version"],
        chain_id=chain_id_from_network(requirement.network),
        verifying_contract=requirement.asset,
    )
    try:
        signable = encode_typed_data(full_message=typed_data)
        return to_checksum_address(
            Account.recover_message(signable, signature=exact.signature)
        )
    except Exception as e:
        # eth_account raises a mix of ValueError / BadSignature / eth_keys errors
        logger.debug(f"x402: signature recovery failed: {e}")
        return None


class Verifier:
    """Checks a payment payload against one requirement without moving funds."""

    def __init__(self, chain_reader: ChainReader, clock: Callable[[], float] = time.time):
        self.chain_reader = chain_reader
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def _invalid(self, reason: InvalidReason, payer: str, detail: str) -> VerifyResponse:
        logger.info(f"x402: verify rejected payer {payer}: {reason.value} ({detail})")
        return VerifyResponse(is_valid=False, invalid_reason=reason.value, payer=payer)

    def verify(self, payload: PaymentPayload, requirement: PaymentRequirements) -> VerifyResponse:
        """
        Verify ``payload`` against ``requirement``.

        Returns:
            VerifyResponse with is_valid and, on failure, the first failing reason.

        Raises:
            BackendUnavailable: If the balance cannot be read (not a payment failure).
        """
        accepted = payload.accepted
        authorization = ExactPayload.from_payment(payload).authorization
        payer = authorization.from_

        # 1. Scheme, network and asset
        if accepted.scheme != requirement.scheme:
            return self._invalid(InvalidReason.SCHEME_MISMATCH, payer, f"{accepted.scheme} != {requirement.scheme}")
        if accepted.network != requirement.network:
            return self._invalid(InvalidReason.NETWORK_MISMATCH, payer, f"{accepted.network} != {requirement.network}")
        try:
            chain_id_from_network(requirement.network)
        except ValueError as e:
            return self._invalid(InvalidReason.UNSUPPORTED_NETWORK, payer, str(e))
        if not _same_address(accepted.asset, requirement.asset):
            return self._invalid(InvalidReason.ASSET_MISMATCH, payer, f"{accepted.asset} != {requirement.asset}")

        # 2. Exact amount
        if authorization.value_int != amount_of(requirement):
            return self._invalid(
                InvalidReason.AMOUNT_MISMATCH,
                payer,
                f"value {authorization.value} != required {requirement.amount}",
            )

        # 3. Validity window; the upper bound is exclusive
        now = self.now()
        valid_after = authorization.valid_after_int
        valid_before = authorization.valid_before_int
        if now < valid_after:
            return self._invalid(InvalidReason.AUTHORIZATION_NOT_YET_VALID, payer, f"validAfter {valid_after} > now {now}")
        if now >= valid_before:
            return self._invalid(InvalidReason.AUTHORIZATION_EXPIRED, payer, f"validBefore {valid_before} <= now {now}")
        if valid_before - valid_after > requirement.max_timeout_seconds:
            return self._invalid(
                InvalidReason.VALIDITY_WINDOW_TOO_LONG,
                payer,
                f"window {valid_before - valid_after}s > {requirement.max_timeout_seconds}s",
            )

        # 4. Recipient
        if not _same_address(authorization.to, requirement.pay_to):
            return self._invalid(InvalidReason.RECIPIENT_MISMATCH, payer, f"{authorization.to} != {requirement.pay_to}")

        # 5. Signature under the requirement's signing domain
        extra = requirement.extra or {}
        if not extra.get("name") or not extra.get("version"):
            return self._invalid(InvalidReason.MISSING_SIGNING_DOMAIN, payer, "requirement.extra lacks name/version")
        signer = recover_signer(payload, requirement)
        if signer is None or not _same_address(signer, payer):
            return self._invalid(InvalidReason.INVALID_SIGNATURE, payer, f"recovered {signer}")

        # 6. Funding
        balance = self.chain_reader.read_balance(payer, requirement.asset)
        if balance < authorization.value_int:
            return self._invalid(
                InvalidReason.INSUFFICIENT_FUNDS,
                payer,
                f"balance {balance} < value {authorization.value}",
            )

        logger.info(f"x402: payment verified for payer {payer} ({authorization.value} units)")
        return VerifyResponse(is_valid=True, payer=payer)
