from __future__ import annotations

from typing import Optional, Dict, Any, List
from pydantic import BaseModel


# -------------------------
# Payments
# -------------------------
class CreateSessionRequest(BaseModel):
    # all optional here so the engine can report every missing field at once
    athleteId: Optional[str] = None
    athleteName: Optional[str] = None
    clubId: Optional[str] = None
    clubName: Optional[str] = None
    seasonId: Optional[str] = None
    seasonYear: Optional[str] = None
    customerEmail: Optional[str] = None
    customerPhone: Optional[str] = None


class CreateSessionResponse(BaseModel):
    success: bool = True
    sessionId: str
    paymentUrl: str
    expiresAt: str  # ISO8601


class SessionSummary(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    customer_details: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class VerifySessionResponse(BaseModel):
    success: bool = True
    paymentStatus: str
    session: SessionSummary


class InsuranceStatusResponse(BaseModel):
    success: bool = True
    hasPaid: bool
    paymentDate: Optional[str] = None   # ISO8601 or None
    expiryDate: Optional[str] = None    # ISO8601 or None
    paymentId: Optional[str] = None


class PaymentHistoryItem(BaseModel):
    id: str
    amount: float
    currency: str
    status: Optional[str] = None
    created: Optional[int] = None
    seasonYear: str
    description: str


class PaymentHistoryResponse(BaseModel):
    success: bool = True
    payments: List[PaymentHistoryItem]


# -------------------------
# Admin
# -------------------------
class VerifyAccessRequest(BaseModel):
    accessCode: str = ""


class VerifyAccessResponse(BaseModel):
    success: bool = True
    token: str
    expiresAt: str


class InsuranceItem(BaseModel):
    id: str
    athleteId: str
    athleteName: Optional[str] = None
    clubId: Optional[str] = None
    clubName: Optional[str] = None
    seasonId: str
    seasonLabel: Optional[str] = None
    amount: float
    currency: str
    isPaid: bool
    paidAt: Optional[str] = None
    expiresAt: Optional[str] = None
    stripeSessionId: Optional[str] = None
    stripePaymentIntentId: Optional[str] = None


class InsuranceStatsResponse(BaseModel):
    total: int
    paid: int
    unpaid: int
    totalRevenue: float
