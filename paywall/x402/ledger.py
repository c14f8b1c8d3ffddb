# paywall/x402/ledger.py
"""
In-memory reconciliation ledger of accepted payments.

A record is written as soon as a request settles, before its protected handler runs.
Settlement can be reported asynchronously, so the transaction hash may be
attached later through ``attach_transaction``. Settlements whose outcome is
unknown are kept separately until someone reconciles them.

The ledger is created once per process (see paywall.core.dependencies) and injected into
the gate and the stats endpoints. All mutations take the same lock; records
are only ever removed by ``reset``.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from paywall.x402.models import Payment, UnresolvedSettlement

logger = logging.getLogger(__name__)

RECENT_PAYMENTS_LIMIT = 10


class PaymentLedger:
    """Thread-safe list of payments and unresolved settlements."""

    def __init__(self):
        self._lock = threading.Lock()
        self._payments: List[Payment] = []
        self._unresolved: List[UnresolvedSettlement] = []

    def record_accepted(self, payment: Payment) -> Payment:
        """Append a payment record. Returns the stored record."""
        with self._lock:
            self._payments.append(payment)
        logger.info(
            f"x402: ledger recorded {payment.amount} units for {payment.resource_id} "
            f"from {payment.payer} (tx={payment.tx_hash})"
        )
        return payment

    def attach_transaction(self, resource_id: str, payer: str, tx_hash: str) -> bool:
        """
        Attach ``tx_hash`` to the most recent matching record without one.

        A record matches when its resource id is equal and its payer is equal
        ignoring case. Each record receives a hash at most once.

        Returns:
            True if a record was updated, False if none matched.
        """
        wanted = payer.lower()
        with self._lock:
            for index in range(len(self._payments) - 1, -1, -1):
                payment = self._payments[index]
                if (
                    payment.resource_id == resource_id
                    and payment.payer.lower() == wanted
                    and payment.tx_hash is None
                ):
                    self._payments[index] = payment.model_copy(update={"tx_hash": tx_hash})
                    break
            else:
                logger.warning(f"x402: no unattached payment for {resource_id} from {payer}")
                return False

        logger.info(f"x402: attached {tx_hash} to payment for {resource_id} from {payer}")
        return True

    def flag_unresolved(
        self,
        resource_id: str,
        payer: str,
        pending_id: str,
        reason: str,
    ) -> UnresolvedSettlement:
        """Remember a settlement whose on-chain outcome is unknown."""
        entry = UnresolvedSettlement(
            resource_id=resource_id,
            payer=payer,
            pending_id=pending_id,
            reason=reason,
        )
        with self._lock:
            self._unresolved.append(entry)
        logger.error(f"x402: settlement {pending_id} for {resource_id} from {payer} flagged unresolved ({reason})")
        return entry

    def payments(self) -> List[Payment]:
        with self._lock:
            return list(self._payments)

    def unresolved(self) -> List[UnresolvedSettlement]:
        with self._lock:
            return list(self._unresolved)

    def stats(self, titles: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """
        Summarise the ledger.

        Args:
            titles: Optional resource id -> display title mapping

        Returns:
            Dict with totalPayments, totalRevenue (smallest units), recentPayments
            (newest first, at most 10), resources (views and revenue per resource,
            highest revenue first) and unresolved settlements.
        """
        titles = titles or {}
        with self._lock:
            payments = list(self._payments)
            unresolved = list(self._unresolved)

        per_resource: Dict[str, Dict[str, Any]] = {}
        for payment in payments:
            entry = per_resource.setdefault(
                payment.resource_id,
                {
                    "resourceId": payment.resource_id,
                    "title": titles.get(payment.resource_id, payment.resource_id),
                    "views": 0,
                    "revenue": 0,
                },
            )
            entry["views"] += 1
            entry["revenue"] += payment.amount

        return {
            "totalPayments": len(payments),
            "totalRevenue": sum(p.amount for p in payments),
            "recentPayments": [p.model_dump(by_alias=True) for p in reversed(payments[-RECENT_PAYMENTS_LIMIT:])],
            "resources": sorted(per_resource.values(), key=lambda r: r["revenue"], reverse=True),
            "unresolved": [u.model_dump(by_alias=True) for u in unresolved],
        }

    def reset(self) -> None:
        """Administrative reset: drop all records."""
        with self._lock:
            self._payments.clear()
            self._unresolved.clear()
        logger.warning("x402: ledger reset")
