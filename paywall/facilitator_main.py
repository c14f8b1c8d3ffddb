# paywall/facilitator_main.py
"""
Standalone settlement service.

Run with:
    uvicorn paywall.facilitator_main:app --port 4022

Resource servers point X402_FACILITATOR_URL at it.
"""
from fastapi import FastAPI
from paywall.core.config import settings
from paywall.api.endpoints import facilitator
import logging

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title=f"{settings.PROJECT_NAME} Facilitator")

app.include_router(facilitator.router, tags=["facilitator"])
