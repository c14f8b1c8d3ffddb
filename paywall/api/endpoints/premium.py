# paywall/api/endpoints/premium.py
import random
from datetime import datetime, timezone

from fastapi import APIRouter, Request
import logging

from paywall.api.models.premium import PremiumInsightResponse
from paywall.data.articles import PREMIUM_INSIGHTS

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/premium", response_model=PremiumInsightResponse)
async def premium_insight(request: Request) -> PremiumInsightResponse:
    """
    Return a premium insight. Paid through the x402 middleware, which puts
    the verified payer on ``request.state``.
    """
    payer = getattr(request.state, "payer", None) or "unknown"
    logger.info(f"Premium insight served to {payer}")
    return PremiumInsightResponse(
        success=True,
        payer=payer,
        insight=random.choice(PREMIUM_INSIGHTS),
        timestamp=datetime.now(timezone.utc).isoformat(),
        message="Thanks for your payment! Here's your premium insight.",
    )
