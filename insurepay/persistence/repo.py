from __future__ import annotations
from typing import Optional, List, Tuple
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from insurepay.persistence.models import Insurance, PaymentEvent


# -------------------- Insurances --------------------

class InsuranceRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, *, athlete_id: str, season_id: str) -> Optional[Insurance]:
        res = await self.db.execute(
            select(Insurance).where(
                Insurance.athlete_id == athlete_id,
                Insurance.season_id == season_id,
            )
        )
        return res.scalar_one_or_none()

    async def mark_paid(
        self,
        *,
        athlete_id: str,
        season_id: str,
        amount: float,
        currency: str,
        paid_at: datetime,
        expires_at: datetime,
        stripe_session_id: Optional[str] = None,
        stripe_payment_intent_id: Optional[str] = None,
        club_id: Optional[str] = None,
        athlete_name: Optional[str] = None,
        club_name: Optional[str] = None,
        season_label: Optional[str] = None,
    ) -> Tuple[Insurance, bool]:
        """
        Idempotently record that (athlete, season) is paid.
        Returns (row, applied); applied is False when the row was already paid.
        A paid row is never modified again.
        """
        row = await self.get(athlete_id=athlete_id, season_id=season_id)
        if row:
            return row, False

        row = Insurance(
            athlete_id=athlete_id,
            season_id=season_id,
            club_id=club_id,
            athlete_name=athlete_name,
            club_name=club_name,
            season_label=season_label,
            amount=amount,
            currency=currency,
            is_paid=True,
            paid_at=paid_at,
            expires_at=expires_at,
            stripe_session_id=stripe_session_id,
            stripe_payment_intent_id=stripe_payment_intent_id,
        )
        try:
            # savepoint: a conflict must not undo the caller's earlier writes
            async with self.db.begin_nested():
                self.db.add(row)
                await self.db.flush()
        except IntegrityError:
            # a concurrent delivery inserted the same (athlete, season) first
            existing = await self.get(athlete_id=athlete_id, season_id=season_id)
            if existing is None:
                raise
            return existing, False
        await self.db.refresh(row)
        return row, True

    async def list_for_season(self, *, season_id: Optional[str] = None, limit: int = 100, offset: int = 0) -> List[Insurance]:
        stmt = select(Insurance)
        if season_id:
            stmt = stmt.where(Insurance.season_id == season_id)
        stmt = stmt.order_by(Insurance.created_at.desc()).offset(offset).limit(limit)
        res = await self.db.execute(stmt)
        return list(res.scalars().all())

    async def stats(self) -> dict:
        res = await self.db.execute(
            select(
                func.count(Insurance.id),
                func.count(Insurance.id).filter(Insurance.is_paid.is_(True)),
                func.coalesce(func.sum(Insurance.amount).filter(Insurance.is_paid.is_(True)), 0),
            )
        )
        total, paid, revenue = res.one()
        return {
            "total": int(total or 0),
            "paid": int(paid or 0),
            "unpaid": int(total or 0) - int(paid or 0),
            "totalRevenue": float(revenue or 0),
        }


# -------------------- Payment Events (idempotency/audit) --------------------

class EventRepo:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def record_if_new(
        self,
        *,
        provider: str,
        event_id: str,          # provider's event id (Stripe's 'id')
        event_type: str,
        payload: dict,
    ) -> bool:
        """
        Insert payment_event if not already recorded. Returns False for a redelivery.
        """
        res = await self.db.execute(
            select(PaymentEvent.id)
            .where(
                PaymentEvent.provider == provider,
                PaymentEvent.event_id == event_id,
            )
            .limit(1)
        )
        if res.scalar_one_or_none():
            return False

        try:
            async with self.db.begin_nested():
                self.db.add(
                    PaymentEvent(
                        provider=provider,
                        event_id=event_id,
                        event_type=event_type,
                        payload=payload,
                    )
                )
                await self.db.flush()
        except IntegrityError:
            return False
        return True
