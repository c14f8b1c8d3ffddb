# tests/test_x402_settler.py
"""
Unit tests for x402 settlement.
"""
from unittest.mock import MagicMock

import pytest

from paywall.services.custody import SignerRejected, TransferStatus
from paywall.x402.errors import BackendUnavailable, SettlementInvariantError
from paywall.x402.models import outcome_unknown, payer_of, pending_id_of
from paywall.x402.settler import (
    SETTLEMENT_TIMEOUT,
    UNEXPECTED_STATE,
    Settler,
    is_used_authorization_error,
)

from conftest import FakeCustody


def _settler(verifier, custody, attempts=5, sleeps=None):
    sleeps = sleeps if sleeps is not None else []
    return Settler(
        verifier,
        custody,
        wallet_id="facilitator-wallet",
        poll_attempts=attempts,
        poll_interval=0.25,
        sleep=sleeps.append,
    )


class TestSuccessfulSettlement:
    """Test the COMPLETE path."""

    def test_settles_valid_payment(self, settler, custody, requirement, make_payload, payer):
        """A valid payment settles and returns the transaction hash."""
        result = settler.settle(make_payload(requirement), requirement)

        assert result.success is True
        assert result.transaction.startswith("0x")
        assert result.network == requirement.network
        assert result.payer == payer.address
        assert len(custody.transfers) == 1

    def test_submits_transfer_with_authorization(self, settler, custody, requirement, make_payload):
        """The signed authorization is submitted unchanged."""
        payload = make_payload(requirement)
        settler.settle(payload, requirement)
        transfer = custody.transfers[0]

        assert transfer["account_id"] == "facilitator-wallet"
        assert transfer["asset"] == requirement.asset
        assert transfer["value"] == 10000
        assert transfer["signature"] == payload.payload["signature"]
        assert transfer["authorization"]["from"] == payer_of(payload)
        assert transfer["authorization"]["nonce"] == payload.payload["authorization"]["nonce"]

    def test_fresh_idempotency_key_per_settle(self, settler, custody, requirement, make_payload):
        """Each settle call uses its own idempotency key."""
        settler.settle(make_payload(requirement), requirement)
        settler.settle(make_payload(requirement), requirement)

        keys = {t["idempotency_key"] for t in custody.transfers}
        assert len(keys) == 2

    def test_polls_through_pending_states(self, verifier, requirement, make_payload):
        """Pending states are polled until COMPLETE."""
        custody = FakeCustody(states=[
            TransferStatus("INITIATED"),
            TransferStatus("QUEUED"),
            TransferStatus("SENT"),
            TransferStatus("CONFIRMED"),
            TransferStatus("COMPLETE", tx_hash="0xfeed"),
        ])
        sleeps = []
        result = _settler(verifier, custody, attempts=10, sleeps=sleeps).settle(make_payload(requirement), requirement)

        assert result.success is True
        assert result.transaction == "0xfeed"
        assert custody.polls == 5
        assert sleeps == [0.25] * 4


class TestRefusals:
    """Test payments that must not be submitted."""

    def test_invalid_payment_not_submitted(self, settler, custody, requirement, make_payload):
        """Settle re-verifies and never submits an invalid payment."""
        result = settler.settle(make_payload(requirement, value="9999"), requirement)

        assert result.success is False
        assert result.error_reason == "amount_mismatch"
        assert custody.transfers == []

    def test_no_wallet_configured(self, verifier, custody, requirement, make_payload):
        """Without a facilitator wallet, settlement cannot run."""
        settler = Settler(verifier, custody, wallet_id="", poll_attempts=1, poll_interval=0, sleep=lambda s: None)
        settler.wallet_id = None

        with pytest.raises(BackendUnavailable):
            settler.settle(make_payload(requirement), requirement)


class TestTerminalFailures:
    """Test FAILED / CANCELLED / DENIED outcomes."""

    @pytest.mark.parametrize("state,reason", [
        ("FAILED", "transaction_failed"),
        ("CANCELLED", "transaction_cancelled"),
        ("DENIED", "transaction_denied"),
    ])
    def test_terminal_failure(self, verifier, requirement, make_payload, state, reason):
        """Terminal failure states map to error reasons."""
        custody = FakeCustody(states=[TransferStatus(state, error_reason="policy")])
        result = _settler(verifier, custody).settle(make_payload(requirement), requirement)

        assert result.success is False
        assert result.error_reason == reason
        assert result.transaction == ""
        assert pending_id_of(result) is None

    def test_complete_without_hash_is_invariant_violation(self, verifier, requirement, make_payload):
        """COMPLETE without a transaction hash raises."""
        custody = FakeCustody(states=[TransferStatus("COMPLETE")])

        with pytest.raises(SettlementInvariantError):
            _settler(verifier, custody).settle(make_payload(requirement), requirement)

    def test_nonce_reuse_fails(self, settler, custody, requirement, make_payload):
        """The second settlement of the same authorization fails on chain."""
        payload = make_payload(requirement)

        first = settler.settle(payload, requirement)
        second = settler.settle(payload, requirement)

        assert first.success is True
        assert second.success is False
        assert second.error_reason == "nonce_already_used"
        assert len(custody.transfers) == 2

    def test_submission_rejected(self, verifier, requirement, make_payload):
        """A 4xx on submission is reported, not raised."""
        custody = FakeCustody()
        custody.execute_transfer = MagicMock(side_effect=SignerRejected("bad request", status_code=400))
        result = _settler(verifier, custody).settle(make_payload(requirement), requirement)

        assert result.success is False
        assert result.error_reason == "submission_rejected"

    def test_submission_rejected_for_used_authorization(self, verifier, requirement, make_payload):
        """A submission refused because the nonce is spent maps to nonce_already_used."""
        custody = FakeCustody()
        custody.execute_transfer = MagicMock(
            side_effect=SignerRejected("FiatTokenV2: authorization is used or canceled", status_code=400)
        )
        result = _settler(verifier, custody).settle(make_payload(requirement), requirement)

        assert result.error_reason == "nonce_already_used"


class TestTimeout:
    """Test the bounded polling loop."""

    def test_timeout_reports_pending_id(self, verifier, requirement, make_payload):
        """Exhausting the poll budget fails with the pending id."""
        custody = FakeCustody(states=[TransferStatus("SENT")])
        sleeps = []
        result = _settler(verifier, custody, attempts=3, sleeps=sleeps).settle(make_payload(requirement), requirement)

        assert result.success is False
        assert result.error_reason == SETTLEMENT_TIMEOUT
        assert pending_id_of(result) == "tx-1"
        assert outcome_unknown(result) is True
        assert custody.polls == 3
        assert len(sleeps) == 2

    def test_unknown_state_stops_polling(self, verifier, requirement, make_payload):
        """A state that is neither pending nor terminal fails at once and stays reconcilable."""
        custody = FakeCustody(states=[TransferStatus("STUCK")])
        result = _settler(verifier, custody, attempts=5).settle(make_payload(requirement), requirement)

        assert result.success is False
        assert result.error_reason == UNEXPECTED_STATE
        assert pending_id_of(result) == "tx-1"
        assert custody.polls == 1

    def test_poll_outage_consumes_attempt(self, verifier, requirement, make_payload):
        """A failed poll counts against the budget and polling continues."""
        custody = FakeCustody()
        original_poll = custody.poll_status
        calls = []

        def flaky_poll(pending_id):
            calls.append(pending_id)
            if len(calls) == 1:
                raise BackendUnavailable("signer down")
            return original_poll(pending_id)

        custody.poll_status = flaky_poll
        result = _settler(verifier, custody, attempts=3).settle(make_payload(requirement), requirement)

        assert result.success is True
        assert len(calls) == 2


class TestUsedAuthorizationMessages:
    """Test revert message classification."""

    def test_known_messages(self):
        """Token revert messages for spent nonces are recognised."""
        assert is_used_authorization_error("FiatTokenV2: authorization is used or canceled") is True
        assert is_used_authorization_error("EIP3009: authorization is used") is True

    def test_other_messages(self):
        """Unrelated failures are not mistaken for nonce reuse."""
        assert is_used_authorization_error("out of gas") is False
        assert is_used_authorization_error(None) is False
