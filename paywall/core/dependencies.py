# paywall/core/dependencies.py
"""
Process-wide collaborators, built lazily from settings.

Each getter is cached so the whole process shares one ledger, one wallet
cache and one gate. Endpoints receive them through FastAPI ``Depends``;
tests override the getters (``app.dependency_overrides``) or pass their own
gate to ``create_app``.
"""
import logging
from functools import lru_cache
from typing import Optional

from paywall.core.config import settings
from paywall.services.chain import JsonRpcChainReader
from paywall.services.circle import CircleWalletClient
from paywall.x402.facilitator import Facilitator, FacilitatorClient, PaymentFacilitator
from paywall.x402.gate import ResourceGate
from paywall.x402.ledger import PaymentLedger
from paywall.x402.pricing import PaymentRequirementsRegistry
from paywall.x402.settler import Settler
from paywall.x402.verifier import Verifier
from paywall.x402.wallet_cache import WalletCache

logger = logging.getLogger(__name__)


@lru_cache()
def get_ledger() -> PaymentLedger:
    return PaymentLedger()


@lru_cache()
def get_circle_client() -> CircleWalletClient:
    return CircleWalletClient()


@lru_cache()
def get_wallet_cache() -> Optional[WalletCache]:
    """Merchant wallet cache, or None when the payee address is pinned."""
    if not settings.X402_MERCHANT_WALLET_ID:
        return None
    return WalletCache(
        directory=get_circle_client(),
        wallet_id=settings.X402_MERCHANT_WALLET_ID,
        ttl_seconds=settings.X402_PAYEE_CACHE_TTL_SECONDS,
    )


def get_registry() -> PaymentRequirementsRegistry:
    return PaymentRequirementsRegistry(
        network=settings.X402_NETWORK,
        pay_to=settings.X402_PAY_TO_ADDRESS,
        wallet_cache=get_wallet_cache(),
        max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
    )


@lru_cache()
def get_local_facilitator() -> Facilitator:
    """Verifier + Settler in this process, backed by the RPC node and Circle."""
    verifier = Verifier(JsonRpcChainReader())
    settler = Settler(verifier, get_circle_client())
    return Facilitator(verifier, settler)


@lru_cache()
def get_facilitator() -> PaymentFacilitator:
    if settings.X402_FACILITATOR_URL:
        logger.info(f"x402: using remote facilitator at {settings.X402_FACILITATOR_URL}")
        return FacilitatorClient(settings.X402_FACILITATOR_URL)
    logger.info("x402: using in-process facilitator")
    return get_local_facilitator()


@lru_cache()
def get_gate() -> ResourceGate:
    return ResourceGate(
        registry=get_registry(),
        facilitator=get_facilitator(),
        ledger=get_ledger(),
        wallet_cache=get_wallet_cache(),
    )
