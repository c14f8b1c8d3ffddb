# tests/conftest.py
"""
Shared fixtures: fake custody/chain backends, a funded test payer and a
factory for signed payment payloads.
"""
import os
from typing import Dict, List, Optional

import pytest
from eth_utils import to_checksum_address

from paywall.core.config import settings
from paywall.services.custody import (
    ChainReader,
    CustodialSigner,
    LocalAccountSigner,
    SignerRejected,
    TransferStatus,
    WalletInfo,
)
from paywall.x402.codec import build_typed_data, chain_id_from_network
from paywall.x402.facilitator import Facilitator
from paywall.x402.gate import ResourceGate
from paywall.x402.ledger import PaymentLedger
from paywall.x402.models import (
    Authorization,
    ExactPayload,
    PaymentPayload,
    PaymentRequirements,
    ResourceInfo,
)
from paywall.x402.pricing import PaymentRequirementsRegistry
from paywall.x402.settler import Settler
from paywall.x402.verifier import Verifier

NOW = 1_760_000_000
NETWORK = "eip155:5042002"
PAYER_KEY = "0x" + "11" * 32
OTHER_KEY = "0x" + "22" * 32
PAY_TO = to_checksum_address("0x" + "ab" * 20)
USED_AUTHORIZATION_ERROR = "execution reverted: FiatTokenV2: authorization is used or canceled"


class FakeChain(ChainReader):
    """Balances by lowercase address; everyone else has ``default_balance``."""

    def __init__(self, default_balance: int = 1_000_000, balances: Optional[Dict[str, int]] = None):
        self.default_balance = default_balance
        self.balances = {k.lower(): v for k, v in (balances or {}).items()}
        self.reads: List[str] = []

    def read_balance(self, account: str, asset: str) -> int:
        self.reads.append(account)
        return self.balances.get(account.lower(), self.default_balance)

    def get_code(self, address: str) -> bytes:
        return b""


class FakeCustody(CustodialSigner):
    """
    In-memory custodial signer.

    Transfers complete on the first poll unless ``states`` scripts another
    sequence. Like the token contract, a nonce can only be executed once:
    the second transfer with the same nonce ends FAILED.
    """

    def __init__(self, states: Optional[List[TransferStatus]] = None, wallet_address: str = PAY_TO):
        self.states = states
        self.wallet_address = wallet_address
        self.balance = "12.5"
        self.transfers: List[Dict] = []
        self.polls = 0
        self.used_nonces = set()
        self._pending: Dict[str, List[TransferStatus]] = {}

    def sign_typed_data(self, account_id, typed_data):
        raise NotImplementedError

    def execute_transfer(self, account_id, asset, to, value, authorization, signature, idempotency_key):
        pending_id = f"tx-{len(self.transfers) + 1}"
        self.transfers.append({
            "account_id": account_id,
            "asset": asset,
            "to": to,
            "value": value,
            "authorization": authorization,
            "signature": signature,
            "idempotency_key": idempotency_key,
        })
        nonce = authorization["nonce"].lower()
        if nonce in self.used_nonces:
            self._pending[pending_id] = [TransferStatus("FAILED", error_reason=USED_AUTHORIZATION_ERROR)]
        elif self.states is not None:
            self._pending[pending_id] = list(self.states)
        else:
            self.used_nonces.add(nonce)
            self._pending[pending_id] = [TransferStatus("COMPLETE", tx_hash="0x" + f"{len(self.transfers):064x}")]
        return pending_id

    def poll_status(self, pending_id):
        self.polls += 1
        script = self._pending.get(pending_id)
        if script is None:
            raise SignerRejected(f"unknown transaction {pending_id}", status_code=404)
        if len(script) > 1:
            return script.pop(0)
        return script[0]

    def get_wallet(self, wallet_id):
        return WalletInfo(id=wallet_id, address=self.wallet_address)

    def get_token_balance(self, wallet_id, symbol="USDC"):
        return self.balance


@pytest.fixture(autouse=True)
def audit_log_path(tmp_path, monkeypatch):
    """Keep the audit trail of every test inside its tmp dir."""
    path = tmp_path / "x402_audit.jsonl"
    monkeypatch.setattr(settings, "X402_AUDIT_LOG_PATH", str(path))
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", True)
    return path


@pytest.fixture
def payer():
    return LocalAccountSigner(PAYER_KEY)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def custody():
    return FakeCustody()


@pytest.fixture
def registry():
    return PaymentRequirementsRegistry(network=NETWORK, pay_to=PAY_TO, max_timeout_seconds=300)


@pytest.fixture
def requirement(registry):
    return registry.requirements_for("premium", "$0.01")[0]


@pytest.fixture
def verifier(chain):
    return Verifier(chain, clock=lambda: NOW)


@pytest.fixture
def settler(verifier, custody):
    return Settler(verifier, custody, wallet_id="facilitator-wallet", poll_attempts=5, poll_interval=0, sleep=lambda s: None)


@pytest.fixture
def facilitator(verifier, settler):
    return Facilitator(verifier, settler, network=NETWORK, wallet_address=PAY_TO)


@pytest.fixture
def ledger():
    return PaymentLedger()


@pytest.fixture
def gate(registry, facilitator, ledger):
    return ResourceGate(registry=registry, facilitator=facilitator, ledger=ledger)


@pytest.fixture
def make_payload(payer):
    """
    Factory for signed payloads.

    Defaults produce a payload that verifies against ``requirement`` at NOW;
    keyword arguments override single authorization fields.
    """

    def _make(
        requirement: PaymentRequirements,
        *,
        url: str = "http://testserver/api/premium",
        signer: Optional[LocalAccountSigner] = None,
        value: Optional[str] = None,
        to: Optional[str] = None,
        valid_after: Optional[int] = None,
        valid_before: Optional[int] = None,
        nonce: Optional[str] = None,
        accepted: Optional[PaymentRequirements] = None,
        sign_with: Optional[LocalAccountSigner] = None,
    ) -> PaymentPayload:
        account = signer or payer
        after = NOW - 5 if valid_after is None else valid_after
        authorization = Authorization(
            from_=account.address,
            to=to or requirement.pay_to,
            value=value if value is not None else requirement.amount,
            valid_after=str(after),
            valid_before=str(after + 60 if valid_before is None else valid_before),
            nonce=nonce or "0x" + os.urandom(32).hex(),
        )
        typed_data = build_typed_data(
            authorization,
            token_name=requirement.extra["name"],
            token_version=requirement.extra["version"],
            chain_id=chain_id_from_network(requirement.network),
            verifying_contract=requirement.asset,
        )
        key_holder = sign_with or account
        signature = key_holder.sign_typed_data(key_holder.address, typed_data)
        return PaymentPayload(
            resource=ResourceInfo(url=url),
            accepted=accepted or requirement,
            payload=ExactPayload(signature=signature, authorization=authorization).to_payload(),
        )

    return _make
