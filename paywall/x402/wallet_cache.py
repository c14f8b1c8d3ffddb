# paywall/x402/wallet_cache.py
"""
Process-wide cache of the merchant wallet (payee address) and its balance.

The payee address is needed on every 402 challenge; the balance only for the
stats endpoint. Both come from the custodial signer's wallet directory, so
they are cached together with a short TTL (default 30 seconds) to keep that
service off the request path.

Coherence is loose: reads take no lock, a refresh overwrites
whatever is cached (last writer wins), and two requests racing past an
expired entry may both fetch.
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from paywall.services.custody import WalletDirectory, WalletInfo

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30.0


@dataclass(frozen=True)
class WalletSnapshot:
    wallet: WalletInfo
    balance: Optional[str]
    fetched_at: float


class WalletCache:
    """
    TTL cache for the merchant wallet.

    Created once per process (see paywall.core.dependencies) and injected where needed;
    tests build their own instances.
    """

    def __init__(
        self,
        directory: WalletDirectory,
        wallet_id: str,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        balance_symbol: str = "USDC",
    ):
        self.directory = directory
        self.wallet_id = wallet_id
        self.ttl_seconds = ttl_seconds
        self.balance_symbol = balance_symbol
        self._clock = clock
        self._snapshot: Optional[WalletSnapshot] = None
        self._needs_refresh = True

    def should_refresh(self) -> bool:
        """
        True when a refresh is due:
        - a payment was recorded since the last fetch (mark_stale)
        - nothing is cached yet
        - the cached value is older than the TTL
        """
        if self._needs_refresh or self._snapshot is None:
            return True
        return self._clock() - self._snapshot.fetched_at > self.ttl_seconds

    def refresh(self, include_balance: bool = True) -> WalletSnapshot:
        """Fetch the wallet (and optionally its balance) and replace the snapshot."""
        wallet = self.directory.get_wallet(self.wallet_id)
        balance = None
        if include_balance:
            balance = self.directory.get_token_balance(self.wallet_id, self.balance_symbol)
        elif self._snapshot is not None:
            balance = self._snapshot.balance

        snapshot = WalletSnapshot(wallet=wallet, balance=balance, fetched_at=self._clock())
        self._snapshot = snapshot
        # A payee-only refresh leaves a pending balance refresh in place
        if include_balance:
            self._needs_refresh = False
        logger.info(f"Merchant wallet refreshed: {wallet.address} (balance={balance})")
        return snapshot

    def get(self, include_balance: bool = True) -> WalletSnapshot:
        """Return the cached snapshot, refreshing it first if due."""
        snapshot = self._snapshot
        if snapshot is None or self.should_refresh():
            return self.refresh(include_balance=include_balance)
        if include_balance and snapshot.balance is None:
            return self.refresh(include_balance=True)
        return snapshot

    def payee_address(self) -> str:
        """
        The address payments should go to.

        Payee changes propagate within one TTL; a pending balance refresh
        (mark_stale) does not force a directory round-trip here.
        """
        snapshot = self._snapshot
        if snapshot is None or self._clock() - snapshot.fetched_at > self.ttl_seconds:
            snapshot = self.refresh(include_balance=False)
        return snapshot.wallet.address

    def cached(self) -> Optional[WalletSnapshot]:
        """The current snapshot without refreshing (may be stale or None)."""
        return self._snapshot

    def mark_stale(self) -> None:
        """Force the next balance read to hit the directory (called after each payment)."""
        self._needs_refresh = True

    def reset(self) -> None:
        """Drop everything; administrative reset only."""
        self._snapshot = None
        self._needs_refresh = True
