from __future__ import annotations
import asyncio
from typing import List, Optional
from datetime import datetime, timezone

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from insurepay.core.deps import get_db
from insurepay.core.security import check_access_code, mint_admin_token, require_admin
from insurepay.persistence.repo import InsuranceRepo
from insurepay.schemas.api_models import (
    InsuranceItem,
    InsuranceStatsResponse,
    VerifyAccessRequest,
    VerifyAccessResponse,
)

router = APIRouter(prefix="/admin", tags=["Admin"])
log = structlog.get_logger(__name__)

# slows down brute-forcing the access code
FAILED_ACCESS_DELAY_SECONDS = 1.0


def _iso(dt) -> Optional[str]:
    return dt.isoformat() if dt else None


@router.post("/verify-access", response_model=VerifyAccessResponse)
async def verify_access(body: VerifyAccessRequest):
    if not body.accessCode:
        raise HTTPException(status_code=400, detail={"type": "validation_error", "message": "accessCode required"})
    if not check_access_code(body.accessCode):
        log.warning("admin.access.denied")
        await asyncio.sleep(FAILED_ACCESS_DELAY_SECONDS)
        raise HTTPException(status_code=401, detail={"type": "unauthorized", "message": "Invalid access code"})

    token, exp = mint_admin_token()
    log.info("admin.access.granted")
    return VerifyAccessResponse(
        token=token,
        expiresAt=datetime.fromtimestamp(exp, tz=timezone.utc).isoformat(),
    )


@router.get("/insurances", response_model=List[InsuranceItem])
async def list_insurances(
    seasonId: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    rows = await InsuranceRepo(db).list_for_season(season_id=seasonId, limit=limit, offset=offset)
    return [
        InsuranceItem(
            id=str(r.id),
            athleteId=r.athlete_id,
            athleteName=r.athlete_name,
            clubId=r.club_id,
            clubName=r.club_name,
            seasonId=r.season_id,
            seasonLabel=r.season_label,
            amount=float(r.amount),
            currency=r.currency,
            isPaid=r.is_paid,
            paidAt=_iso(r.paid_at),
            expiresAt=_iso(r.expires_at),
            stripeSessionId=r.stripe_session_id,
            stripePaymentIntentId=r.stripe_payment_intent_id,
        )
        for r in rows
    ]


@router.get("/insurances/stats", response_model=InsuranceStatsResponse)
async def insurance_stats(
    db: AsyncSession = Depends(get_db),
    _admin: dict = Depends(require_admin),
):
    return InsuranceStatsResponse(**await InsuranceRepo(db).stats())
