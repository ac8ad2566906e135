# insurepay/api/payments.py
from __future__ import annotations

from typing import Optional

import structlog
from fastapi import APIRouter, Request, Header, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from insurepay.core.deps import get_db, get_payment_provider
from insurepay.core.errors import AuthenticationError, PaymentProviderError, ValidationError
from insurepay.core.settings import settings
from insurepay.engine.engine import InsurancePaymentEngine, PaymentSessionRequest
from insurepay.engine.policy import InsurancePolicy
from insurepay.payments.types import to_dict
from insurepay.schemas.api_models import (
    CreateSessionRequest,
    CreateSessionResponse,
    InsuranceStatusResponse,
    PaymentHistoryItem,
    PaymentHistoryResponse,
    SessionSummary,
    VerifySessionResponse,
)

router = APIRouter(prefix="/payments", tags=["Payments"])
log = structlog.get_logger(__name__)

# engine field -> public request field
_API_FIELDS = {
    "insured_party_id": "athleteId",
    "insured_party_name": "athleteName",
    "organization_id": "clubId",
    "organization_name": "clubName",
    "period_id": "seasonId",
    "period_label": "seasonYear",
}


def _engine(db: AsyncSession, provider) -> InsurancePaymentEngine:
    return InsurancePaymentEngine(
        db=db,
        stripe=provider,
        policy=InsurancePolicy.from_settings(settings),
        base_url=settings.APP_BASE_URL,
    )


def _error(status_code: int, message: str, **extra) -> JSONResponse:
    return JSONResponse({"success": False, "error": message, **extra}, status_code=status_code)


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


@router.post("/create-session", response_model=CreateSessionResponse)
async def create_session(
    body: CreateSessionRequest,
    db: AsyncSession = Depends(get_db),
    provider = Depends(get_payment_provider),
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key"),
):
    request = PaymentSessionRequest(
        insured_party_id=body.athleteId or "",
        insured_party_name=body.athleteName or "",
        organization_id=body.clubId or "",
        organization_name=body.clubName or "",
        period_id=body.seasonId or "",
        period_label=body.seasonYear or "",
        contact_email=body.customerEmail,
        contact_phone=body.customerPhone,
    )
    try:
        session = await _engine(db, provider).create_insurance_payment_session(
            request, idempotency_key=idempotency_key
        )
    except ValidationError as e:
        missing = [_API_FIELDS.get(f, f) for f in e.missing_fields]
        return _error(400, f"Missing required fields: {', '.join(missing)}", missingFields=missing)
    except PaymentProviderError as e:
        log.error("payments.create_session.provider_error", error=e.provider_message)
        return _error(500, "Could not create the payment session, please try again")

    return CreateSessionResponse(
        sessionId=session.id,
        paymentUrl=session.redirect_url,
        expiresAt=session.expires_at.isoformat(),
    )


@router.get("/verify-session", response_model=VerifySessionResponse)
async def verify_session(
    session_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    provider = Depends(get_payment_provider),
):
    try:
        status, raw = await _engine(db, provider).verify_payment_session(session_id)
    except ValidationError:
        return _error(400, "Missing session_id")
    except PaymentProviderError as e:
        log.error("payments.verify_session.provider_error", session_id=session_id, error=e.provider_message)
        return _error(500, "Could not verify the payment session", paymentStatus="failed")

    customer_details = raw.get("customer_details")
    return VerifySessionResponse(
        paymentStatus=status.value,
        session=SessionSummary(
            id=raw.get("id"),
            status=raw.get("status"),
            payment_status=raw.get("payment_status"),
            amount_total=raw.get("amount_total"),
            currency=raw.get("currency"),
            customer_details=to_dict(customer_details) if customer_details else None,
            metadata=to_dict(raw.get("metadata")),
        ),
    )


@router.get("/insurance-status", response_model=InsuranceStatusResponse)
async def insurance_status(
    athlete_id: Optional[str] = Query(None),
    season_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    provider = Depends(get_payment_provider),
):
    if not athlete_id or not season_id:
        return _error(400, "athlete_id and season_id are required", hasPaid=False)

    # never raises: lookup failures come back as has_paid=False
    result = await _engine(db, provider).check_insurance_status(athlete_id, season_id)
    return InsuranceStatusResponse(
        hasPaid=result.has_paid,
        paymentDate=_iso(result.payment_date),
        expiryDate=_iso(result.expiry_date),
        paymentId=result.payment_id,
    )


@router.get("/history", response_model=PaymentHistoryResponse)
async def payment_history(
    athlete_id: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    provider = Depends(get_payment_provider),
):
    if not athlete_id:
        return _error(400, "athlete_id is required", payments=[])
    try:
        payments = await _engine(db, provider).get_payment_history(athlete_id)
    except PaymentProviderError as e:
        log.error("payments.history.provider_error", athlete_id=athlete_id, error=e.provider_message)
        return _error(500, "Could not load the payment history", payments=[])
    return PaymentHistoryResponse(payments=[PaymentHistoryItem(**p) for p in payments])


@router.post("/webhook")
async def webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    db: AsyncSession = Depends(get_db),
    provider = Depends(get_payment_provider),
):
    """
    Processor -> us. Any verified event is acknowledged with 2xx, actionable or not,
    so the sender stops retrying.
    """
    payload = await request.body()
    try:
        result = await _engine(db, provider).handle_webhook(payload, stripe_signature)
    except AuthenticationError:
        log.warning("payments.webhook.rejected", has_signature=bool(stripe_signature))
        return _error(400, "Invalid webhook signature")

    log.info("payments.webhook.processed", event_type=result.event.get("type"), action=result.action)
    return {"received": True}
