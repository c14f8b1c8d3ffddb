# paywall/services/custody.py
"""
Interfaces for the external collaborators the payment core depends on.

- TypedDataSigner: produces EIP-712 signatures for an account.
- TransferExecutor: submits the funds-moving transaction and reports its state.
- ChainReader: read-only access to contract state.

Concrete implementations: CircleWalletClient (custodial, services/circle.py),
JsonRpcChainReader (services/chain.py) and LocalAccountSigner below.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from eth_account import Account
from eth_account.messages import encode_typed_data

logger = logging.getLogger(__name__)

# Transfer lifecycle states reported by the custodial signer
PENDING_STATES = frozenset({"INITIATED", "QUEUED", "SENT", "CONFIRMED"})
TERMINAL_STATES = frozenset({"COMPLETE", "FAILED", "CANCELLED", "DENIED"})


class SignerRejected(Exception):
    """The custodial signer definitively refused a request (client-side error)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class TransferStatus:
    """Snapshot of a submitted transfer."""
    state: str
    tx_hash: Optional[str] = None
    error_reason: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


@dataclass(frozen=True)
class WalletInfo:
    """A custodial wallet: opaque id plus on-chain address."""
    id: str
    address: str


class TypedDataSigner(ABC):
    @abstractmethod
    def sign_typed_data(self, account_id: str, typed_data: Dict[str, Any]) -> str:
        """Sign an EIP-712 structure and return the 0x-prefixed 65-byte signature."""


class TransferExecutor(ABC):
    @abstractmethod
    def execute_transfer(
        self,
        account_id: str,
        asset: str,
        to: str,
        value: int,
        authorization: Dict[str, Any],
        signature: str,
        idempotency_key: str,
    ) -> str:
        """
        Submit ``transferWithAuthorization`` on ``asset`` from ``account_id``.

        Returns:
            The signer's pending transaction id.
        """

    @abstractmethod
    def poll_status(self, pending_id: str) -> TransferStatus:
        """Return the current state of a submitted transfer."""


class WalletDirectory(ABC):
    """Lookup of custodial wallets, used to resolve the payee address."""

    @abstractmethod
    def get_wallet(self, wallet_id: str) -> WalletInfo:
        """Return the wallet with the given id."""

    @abstractmethod
    def get_token_balance(self, wallet_id: str, symbol: str = "USDC") -> str:
        """Return the human-readable balance of ``symbol`` held by the wallet."""


class ChainReader(ABC):
    @abstractmethod
    def read_balance(self, account: str, asset: str) -> int:
        """ERC-20 balance of ``account`` in the asset's smallest unit."""

    @abstractmethod
    def get_code(self, address: str) -> bytes:
        """Deployed bytecode at ``address`` (empty for externally owned accounts)."""


class CustodialSigner(TypedDataSigner, TransferExecutor, WalletDirectory):
    """A custodial wallet service that can sign, transact and list wallets."""


class LocalAccountSigner(TypedDataSigner):
    """
    Signs typed data with a locally held private key.

    Used by payers that custody their own key and by the test suite. The
    ``account_id`` argument is accepted for interface compatibility and
    must match the key's address when given.
    """

    def __init__(self, private_key: str):
        self._account = Account.from_key(private_key)

    @property
    def address(self) -> str:
        return self._account.address

    def sign_typed_data(self, account_id: str, typed_data: Dict[str, Any]) -> str:
        if account_id and account_id.lower() != self.address.lower():
            raise ValueError(f"LocalAccountSigner holds {self.address}, not {account_id}")
        signable = encode_typed_data(full_message=typed_data)
        signed = self._account.sign_message(signable)
        return "0x" + bytes(signed.signature).hex()
