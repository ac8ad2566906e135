from __future__ import annotations

import uuid
from sqlalchemy import (
    Column,
    Index,
    String,
    TIMESTAMP,
    JSON,
    Numeric,
    UniqueConstraint,
    Boolean,
    Uuid,
)
from sqlalchemy.sql import func
from .base import Base


# -------------------------
# Insurances (one row per athlete per season)
# -------------------------
class Insurance(Base):
    __tablename__ = "insurances"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)

    athlete_id = Column(String, nullable=False, index=True)
    season_id = Column(String, nullable=False, index=True)
    club_id = Column(String, nullable=True, index=True)

    # denormalised labels from checkout metadata, for admin listings
    athlete_name = Column(String, nullable=True)
    club_name = Column(String, nullable=True)
    season_label = Column(String, nullable=True)

    # money snapshot (major units)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False)

    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)

    stripe_session_id = Column(String, nullable=True, unique=True)
    stripe_payment_intent_id = Column(String, nullable=True)

    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("athlete_id", "season_id", name="uq_insurances_athlete_season"),
        Index("ix_insurances_season_paid", "season_id", "is_paid"),
    )


# -------------------------
# Payment Events (webhook dedupe/audit)
# -------------------------
class PaymentEvent(Base):
    __tablename__ = "payment_events"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(String, nullable=False, index=True)     # e.g. 'stripe'
    event_id = Column(String, nullable=False)                 # provider's event id
    event_type = Column(String, nullable=False, index=True)
    payload = Column(JSON, nullable=False)                    # raw provider payload
    received_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_events_provider_event"),
    )
