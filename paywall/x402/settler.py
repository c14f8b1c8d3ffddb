# paywall/x402/settler.py
"""
Settlement of verified x402 payments through a custodial signer.

Flow:
1. Re-verify the payload (never submit something that fails verification)
2. Submit transferWithAuthorization on the asset contract
3. Poll the signer until a terminal state or the attempt budget runs out

Terminal failures (FAILED / CANCELLED / DENIED) and rejected submissions
come back as ``SettleResponse(success=False)``. Exhausting the polling
budget also fails, with a pending id in ``extra`` because the transfer may still
land. COMPLETE without a transaction hash raises SettlementInvariantError.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from paywall.core.config import settings
from paywall.services.custody import PENDING_STATES, SignerRejected, TransferExecutor, TransferStatus
from paywall.x402.errors import BackendUnavailable, MalformedPayload, SettlementInvariantError
from paywall.x402.models import ExactPayload, PaymentPayload, PaymentRequirements, SettleResponse, failed_settlement
from paywall.x402.verifier import Verifier

logger = logging.getLogger(__name__)

# Error reasons
NONCE_ALREADY_USED = "nonce_already_used"
SUBMISSION_REJECTED = "submission_rejected"
TRANSACTION_FAILED = "transaction_failed"
TRANSACTION_CANCELLED = "transaction_cancelled"
TRANSACTION_DENIED = "transaction_denied"
SETTLEMENT_TIMEOUT = "settlement_timeout"
UNEXPECTED_STATE = "unexpected_transfer_state"

# Fragments of the revert messages token contracts use for a consumed or
# cancelled authorization ("FiatTokenV2: authorization is used or canceled").
_USED_AUTHORIZATION_MARKERS = (
    "authorization is used",
    "authorization is canceled",
    "authorization is cancelled",
    "authorization used",
    "nonce already used",
)


def is_used_authorization_error(message: Optional[str]) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _USED_AUTHORIZATION_MARKERS)


class Settler:
    """
    Executes verified authorizations and waits for their terminal state.

    Polling sleeps in the calling thread and holds no locks, so concurrent
    settlements for different payers proceed independently.
    """

    def __init__(
        self,
        verifier: Verifier,
        executor: TransferExecutor,
        wallet_id: Optional[str] = None,
        poll_attempts: Optional[int] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.verifier = verifier
        self.executor = executor
        self.wallet_id = wallet_id or settings.X402_FACILITATOR_WALLET_ID
        self.poll_attempts = poll_attempts if poll_attempts is not None else settings.X402_SETTLE_POLL_ATTEMPTS
        self.poll_interval = poll_interval if poll_interval is not None else settings.X402_SETTLE_POLL_INTERVAL_SECONDS
        self._sleep = sleep

    def settle(self, payload: PaymentPayload, requirement: PaymentRequirements) -> SettleResponse:
        """
        Settle ``payload`` against ``requirement``.

        Returns:
            SettleResponse; ``transaction`` is the on-chain hash on success.

        Raises:
            SettlementInvariantError: If the signer reports COMPLETE without a tx hash.
            BackendUnavailable: If verification or submission cannot reach a backend.
        """
        network = requirement.network
        exact = ExactPayload.from_payment(payload)
        payer = exact.authorization.from_

        # Settle only what verifies right now
        verification = self.verifier.verify(payload, requirement)
        if not verification.is_valid:
            logger.warning(f"x402: refusing to settle unverified payment from {payer}: {verification.invalid_reason}")
            return failed_settlement(verification.invalid_reason, network, payer)

        if not self.wallet_id:
            raise BackendUnavailable("No facilitator wallet configured (X402_FACILITATOR_WALLET_ID)")

        authorization = exact.authorization
        try:
            pending_id = self.executor.execute_transfer(
                account_id=self.wallet_id,
                asset=requirement.asset,
                to=authorization.to,
                value=authorization.value_int,
                authorization=authorization.model_dump(by_alias=True),
                signature=exact.signature,
                idempotency_key=str(uuid.uuid4()),
            )
        except SignerRejected as e:
            reason = NONCE_ALREADY_USED if is_used_authorization_error(str(e)) else SUBMISSION_REJECTED
            logger.warning(f"x402: settlement submission rejected for {payer}: {e}")
            return failed_settlement(reason, network, payer)
        except MalformedPayload as e:
            logger.warning(f"x402: settlement payload unusable for {payer}: {e}")
            return failed_settlement(e.reason, network, payer)

        logger.info(f"x402: settlement submitted for {payer}: pending id {pending_id}")
        return self._wait_for_terminal_state(pending_id, network, payer)

    def _wait_for_terminal_state(self, pending_id: str, network: str, payer: str) -> SettleResponse:
        for attempt in range(1, self.poll_attempts + 1):
            try:
                status = self.executor.poll_status(pending_id)
            except (BackendUnavailable, SignerRejected) as e:
                logger.warning(f"x402: polling {pending_id} failed (attempt {attempt}/{self.poll_attempts}): {e}")
                status = None

            if status is not None:
                logger.debug(f"x402: polling {pending_id}: {status.state} (attempt {attempt}/{self.poll_attempts})")
                if status.is_terminal:
                    return self._terminal_response(pending_id, status, network, payer)
                if status.state not in PENDING_STATES:
                    # Unknown state: funds may or may not move, keep it reconcilable
                    logger.error(f"x402: transfer {pending_id} reported unexpected state {status.state}")
                    return failed_settlement(UNEXPECTED_STATE, network, payer, pending_id=pending_id)

            if attempt < self.poll_attempts:
                self._sleep(self.poll_interval)

        logger.error(
            f"x402: settlement {pending_id} for {payer} timed out after {self.poll_attempts} attempts; "
            f"outcome unknown"
        )
        return failed_settlement(SETTLEMENT_TIMEOUT, network, payer, pending_id=pending_id)

    def _terminal_response(
        self,
        pending_id: str,
        status: TransferStatus,
        network: str,
        payer: str,
    ) -> SettleResponse:
        if status.state == "COMPLETE":
            if not status.tx_hash:
                logger.error(f"x402: transfer {pending_id} is COMPLETE but has no transaction hash")
                raise SettlementInvariantError(f"Transfer {pending_id} COMPLETE without txHash")
            logger.info(f"x402: payment settled for {payer}: {status.tx_hash}")
            return SettleResponse(success=True, transaction=status.tx_hash, network=network, payer=payer)

        if status.state == "FAILED":
            reason = NONCE_ALREADY_USED if is_used_authorization_error(status.error_reason) else TRANSACTION_FAILED
        elif status.state == "CANCELLED":
            reason = TRANSACTION_CANCELLED
        else:
            reason = TRANSACTION_DENIED

        logger.warning(
            f"x402: settlement {pending_id} for {payer} ended {status.state}: {status.error_reason or 'no reason given'}"
        )
        return failed_settlement(reason, network, payer)
