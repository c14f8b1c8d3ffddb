# paywall/api/models/premium.py
from pydantic import BaseModel


class PremiumInsightResponse(BaseModel):
    """
    Response model for the premium insight endpoint.
    """
    success: bool
    payer: str
    insight: str
    timestamp: str
    message: str
