# paywall/main.py
from typing import Optional

from fastapi import FastAPI
from paywall.core.config import settings
from paywall.api.endpoints import articles, premium, stats, facilitator
from paywall.x402.gate import ResourceGate
from paywall.x402.middleware import X402Middleware
import logging

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(gate: Optional[ResourceGate] = None) -> FastAPI:
    """
    Build the resource server.

    Args:
        gate: Payment gate to use; built lazily from settings when omitted
    """
    application = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_PREFIX}/openapi.json"
    )

    # Paid routes are priced by the middleware; the routers stay payment-agnostic
    application.add_middleware(X402Middleware, gate=gate)

    application.include_router(articles.router, prefix=settings.API_PREFIX, tags=["articles"])
    application.include_router(premium.router, prefix=settings.API_PREFIX, tags=["premium"])
    application.include_router(stats.router, prefix=settings.API_PREFIX, tags=["stats"])
    application.include_router(facilitator.router, prefix="/facilitator", tags=["facilitator"])

    @application.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        logger.info("Root endpoint '/' accessed.")
        return {
            "status": "ok",
            "message": f"Welcome to {settings.PROJECT_NAME}",
            "x402Enabled": settings.X402_ENABLED,
            "network": settings.X402_NETWORK,
        }

    return application


app = create_app()
