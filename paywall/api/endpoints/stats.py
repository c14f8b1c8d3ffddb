# paywall/api/endpoints/stats.py
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
import logging

from paywall.api.models.stats import (
    AttachTransactionResponse,
    MerchantWallet,
    ResetResponse,
    StatsResponse,
)
from paywall.core.dependencies import get_ledger, get_wallet_cache
from paywall.data.articles import article_titles
from paywall.services.custody import SignerRejected
from paywall.x402 import audit
from paywall.x402.errors import PaymentError
from paywall.x402.ledger import PaymentLedger
from paywall.x402.wallet_cache import WalletCache

logger = logging.getLogger(__name__)

router = APIRouter()


def optional_wallet_cache() -> Optional[WalletCache]:
    try:
        return get_wallet_cache()
    except PaymentError as e:
        logger.warning(f"Merchant wallet cache unavailable: {e}")
        return None


@router.get("/stats", response_model=StatsResponse)
def get_stats(
    ledger: PaymentLedger = Depends(get_ledger),
    wallet_cache: Optional[WalletCache] = Depends(optional_wallet_cache),
) -> StatsResponse:
    """
    Merchant dashboard statistics.

    The on-chain balance comes from the merchant wallet cache. If the wallet
    service cannot be reached, the last cached values (possibly none) are
    returned instead of failing the request.
    """
    stats = ledger.stats(titles=article_titles())

    merchant_wallet = None
    balance = None
    if wallet_cache is not None:
        try:
            snapshot = wallet_cache.get(include_balance=True)
        except (PaymentError, SignerRejected) as e:
            logger.error(f"Failed to refresh merchant wallet: {e}")
            snapshot = wallet_cache.cached()
        if snapshot is not None:
            merchant_wallet = MerchantWallet(id=snapshot.wallet.id, address=snapshot.wallet.address)
            balance = snapshot.balance

    return StatsResponse(**stats, merchantWallet=merchant_wallet, onChainBalance=balance)


@router.post("/stats", response_model=AttachTransactionResponse)
def attach_transaction(
    body: dict = Body(...),
    ledger: PaymentLedger = Depends(get_ledger),
) -> AttachTransactionResponse:
    """
    Attach a settlement transaction hash to a recorded payment.

    Body: ``{"slug": ..., "payer": ..., "txHash": ...}``

    Raises:
        HTTPException: 400 if a field is missing, 404 if no unattached payment matches
    """
    slug = body.get("slug")
    payer = body.get("payer")
    tx_hash = body.get("txHash")
    if not slug or not payer or not tx_hash:
        raise HTTPException(status_code=400, detail="Missing required fields: slug, payer, txHash")

    if not ledger.attach_transaction(slug, payer, tx_hash):
        raise HTTPException(status_code=404, detail="No matching payment found to update")

    audit.log_transaction_attached(slug, payer, tx_hash)
    logger.info(f"Updated txHash for {slug}: {tx_hash}")
    return AttachTransactionResponse(success=True, txHash=tx_hash)


@router.post("/stats/reset", response_model=ResetResponse)
def reset_stats(
    ledger: PaymentLedger = Depends(get_ledger),
    wallet_cache: Optional[WalletCache] = Depends(optional_wallet_cache),
) -> ResetResponse:
    """Clear all payment statistics (administrative)."""
    ledger.reset()
    if wallet_cache is not None:
        wallet_cache.reset()
    return ResetResponse(success=True, message="Stats reset")
