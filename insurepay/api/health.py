# insurepay/api/health.py
from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from insurepay.core.deps import get_db
from insurepay.core.settings import settings

router = APIRouter(prefix="/health", tags=["Health"])
log = structlog.get_logger(__name__)


@router.get("")
async def health():
    return {"status": "ok", "app": settings.APP_NAME, "paymentsBackend": settings.PAYMENTS_BACKEND}


@router.get("/db")
async def health_db(db: AsyncSession = Depends(get_db)):
    try:
        await db.execute(text("SELECT 1"))
        return {"status": "ok", "database": "up"}
    except Exception as e:
        log.error("health.database.down", error=str(e))
        return {"status": "degraded", "database": "down"}
