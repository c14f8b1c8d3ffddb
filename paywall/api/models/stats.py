# paywall/api/models/stats.py
from typing import List, Optional

from pydantic import BaseModel


class RecentPayment(BaseModel):
    resourceId: str
    amount: int
    txHash: Optional[str] = None
    payer: str
    timestamp: float


class ResourceStats(BaseModel):
    resourceId: str
    title: str
    views: int
    revenue: int


class UnresolvedSettlementEntry(BaseModel):
    resourceId: str
    payer: str
    pendingId: str
    reason: str
    timestamp: float


class MerchantWallet(BaseModel):
    id: str
    address: str


class StatsResponse(BaseModel):
    """
    Response model for the merchant stats endpoint.

    Revenue is expressed in the settlement asset's smallest unit.
    """
    totalPayments: int
    totalRevenue: int
    recentPayments: List[RecentPayment]
    resources: List[ResourceStats]
    unresolved: List[UnresolvedSettlementEntry]
    merchantWallet: Optional[MerchantWallet] = None
    onChainBalance: Optional[str] = None


class AttachTransactionResponse(BaseModel):
    success: bool
    txHash: str


class ResetResponse(BaseModel):
    success: bool
    message: str
