from __future__ import annotations
from typing import Optional, Dict, Any, List, Callable, Tuple
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from enum import Enum

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from insurepay.core.errors import PaymentProviderError, ValidationError
from insurepay.engine.policy import PAYMENT_TYPE, InsurancePolicy, to_epoch_ceil
from insurepay.payments.types import PaymentProvider, to_dict
from insurepay.persistence.repo import EventRepo, InsuranceRepo

log = structlog.get_logger(__name__)

# candidates fetched when looking up a paid insurance; the newest one governs
_STATUS_LOOKUP_LIMIT = 10
_HISTORY_LIMIT = 100


class PaymentStatus(str, Enum):
    pending = "pending"
    completed = "completed"
    failed = "failed"
    expired = "expired"


@dataclass(frozen=True)
class PaymentSessionRequest:
    insured_party_id: str
    insured_party_name: str
    organization_id: str
    organization_name: str
    period_id: str
    period_label: str
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None

    _OPTIONAL = ("contact_email", "contact_phone")

    def missing_fields(self) -> List[str]:
        return [
            f.name for f in fields(self)
            if f.name not in self._OPTIONAL and not str(getattr(self, f.name) or "").strip()
        ]


@dataclass(frozen=True)
class PaymentSession:
    id: str
    redirect_url: str
    expires_at: datetime


@dataclass(frozen=True)
class InsuranceStatus:
    has_paid: bool
    payment_date: Optional[datetime] = None
    expiry_date: Optional[datetime] = None
    payment_id: Optional[str] = None


@dataclass(frozen=True)
class WebhookResult:
    event: Dict[str, Any]
    action: str


def map_session_status(payment_status: Optional[str], session_status: Optional[str]) -> PaymentStatus:
    """
    Collapse the processor's (payment_status, status) pair into a PaymentStatus.
    Total: anything not listed is still pending.
    """
    if payment_status == "paid":
        return PaymentStatus.completed
    if payment_status == "unpaid" and session_status == "expired":
        return PaymentStatus.expired
    if payment_status == "unpaid" and session_status == "complete":
        return PaymentStatus.failed
    return PaymentStatus.pending


def _from_epoch(ts: Optional[int]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def _quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class InsurancePaymentEngine:
    """
    Orchestrates the annual insurance payment against the processor:

      create session -> hosted checkout -> webhook (authoritative) and/or
      redirect + verify (informational) -> status lookup by metadata search.

    The processor is the source of truth for sessions and payments. The only
    local writes are webhook audit rows and the idempotent insurance record.
    """

    def __init__(
        self,
        db: AsyncSession,
        stripe: PaymentProvider,
        *,
        policy: InsurancePolicy,
        base_url: str,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.stripe = stripe
        self.policy = policy
        self.base_url = base_url.rstrip("/")
        self.clock = clock

    # ---------------- session builder ----------------

    def _checkout_params(self, request: PaymentSessionRequest, now: datetime) -> Dict[str, Any]:
        order_id = f"INS_{request.period_label}_{request.insured_party_id}_{int(now.timestamp() * 1000)}"
        metadata = {
            "order_id": order_id,
            "insured_party_id": request.insured_party_id,
            "insured_party_name": request.insured_party_name,
            "organization_id": request.organization_id,
            "organization_name": request.organization_name,
            "period_id": request.period_id,
            "period_label": request.period_label,
            "payment_type": PAYMENT_TYPE,
        }
        if request.contact_phone:
            metadata["contact_phone"] = request.contact_phone

        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": [
                {
                    "price_data": {
                        "currency": self.policy.processor_currency,
                        "unit_amount": self.policy.unit_amount,
                        "product_data": {
                            "name": f"Annual insurance - season {request.period_label}",
                            "description": f"Annual insurance for {request.insured_party_name} ({request.organization_name})",
                            "metadata": {
                                "type": "insurance",
                                "insured_party_id": request.insured_party_id,
                                "organization_id": request.organization_id,
                                "period_id": request.period_id,
                            },
                        },
                    },
                    "quantity": 1,
                }
            ],
            "expires_at": to_epoch_ceil(self.policy.session_expiry(now)),
            "success_url": f"{self.base_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.base_url}/payment/cancel",
            "metadata": metadata,
            # payment intents are what the status lookup searches
            "payment_intent_data": {
                "description": f"Annual insurance {request.period_label} - {request.insured_party_name}",
                "metadata": {
                    "order_id": order_id,
                    "insured_party_id": request.insured_party_id,
                    "organization_id": request.organization_id,
                    "period_id": request.period_id,
                    "period_label": request.period_label,
                    "payment_type": PAYMENT_TYPE,
                },
            },
            "billing_address_collection": "auto",
        }
        if request.contact_email:
            params["customer_email"] = request.contact_email
        return params

    async def create_insurance_payment_session(
        self, request: PaymentSessionRequest, *, idempotency_key: Optional[str] = None
    ) -> PaymentSession:
        missing = request.missing_fields()
        if missing:
            raise ValidationError(missing)

        now = self.clock()
        params = self._checkout_params(request, now)
        # no retry here: a second create could leave the customer with two live sessions
        session = self.stripe.create_checkout_session(params=params, idempotency_key=idempotency_key)

        session_id = session.get("id")
        url = session.get("url")
        if not session_id or not url:
            raise PaymentProviderError("Processor returned a checkout session without id or url")

        expires_at = _from_epoch(session.get("expires_at")) or self.policy.session_expiry(now)
        log.info(
            "insurance.checkout_session.created",
            session_id=session_id,
            insured_party_id=request.insured_party_id,
            period_id=request.period_id,
            expires_at=expires_at.isoformat(),
        )
        return PaymentSession(id=session_id, redirect_url=url, expires_at=expires_at)

    # ---------------- session verifier ----------------

    async def verify_payment_session(self, session_id: Optional[str]) -> Tuple[PaymentStatus, Dict[str, Any]]:
        if not session_id or not session_id.strip():
            raise ValidationError(["session_id"])
        session = to_dict(
            self.stripe.retrieve_checkout_session(session_id, expand=["payment_intent", "customer"])
        )
        status = map_session_status(session.get("payment_status"), session.get("status"))
        log.info("insurance.checkout_session.verified", session_id=session_id, payment_status=status.value)
        return status, session

    # ---------------- webhook reconciler ----------------

    async def handle_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookResult:
        # verification runs on the untouched body and raises AuthenticationError
        try:
            event = to_dict(self.stripe.verify_signature(raw_body, signature_header or ""))
        except ValidationError:
            # authentic but unparseable: acknowledge so the sender stops retrying
            log.warning("webhook.malformed", reason="body is not a JSON object", size=len(raw_body))
            return WebhookResult(event={}, action="malformed")

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            log.warning("webhook.malformed", reason="missing id or type", event_id=event_id, event_type=event_type)
            return WebhookResult(event=event, action="malformed")
        obj = to_dict(to_dict(event.get("data")).get("object"))

        if not await EventRepo(self.db).record_if_new(
            provider="stripe",
            event_id=event_id,
            event_type=event_type,
            payload=event,
        ):
            log.info("webhook.deduplicated", event_id=event_id, event_type=event_type)
            return WebhookResult(event=event, action="deduplicated")

        if event_type == "checkout.session.completed":
            action = await self._on_session_completed(event, obj)
        elif event_type == "payment_intent.succeeded":
            # audit only; the completed session already carries the paid effect
            log.info(
                "webhook.payment_intent.succeeded",
                payment_intent_id=obj.get("id"),
                amount=obj.get("amount"),
                metadata=to_dict(obj.get("metadata")),
            )
            action = "audit_logged"
        elif event_type == "checkout.session.expired":
            log.info("webhook.checkout_session.expired", session_id=obj.get("id"))
            action = "session_expired"
        else:
            log.info("webhook.ignored", event_id=event_id, event_type=event_type)
            action = "ignored"

        await self.db.commit()
        return WebhookResult(event=event, action=action)

    async def _on_session_completed(self, event: Dict[str, Any], session: Dict[str, Any]) -> str:
        md = to_dict(session.get("metadata"))
        athlete_id = md.get("insured_party_id")
        season_id = md.get("period_id")
        if not athlete_id or not season_id:
            log.warning("webhook.checkout_session.missing_metadata", session_id=session.get("id"))
            return "skipped"
        if session.get("payment_status") == "unpaid":
            # delayed payment methods complete the session before the money arrives
            log.info("webhook.checkout_session.unpaid", session_id=session.get("id"))
            return "skipped"

        paid_at = _from_epoch(event.get("created")) or self.clock()
        amount_total = session.get("amount_total")
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        row, applied = await InsuranceRepo(self.db).mark_paid(
            athlete_id=athlete_id,
            season_id=season_id,
            club_id=md.get("organization_id"),
            athlete_name=md.get("insured_party_name"),
            club_name=md.get("organization_name"),
            season_label=md.get("period_label"),
            amount=(amount_total / 100.0) if amount_total is not None else self.policy.fee,
            currency=(session.get("currency") or self.policy.currency).upper(),
            paid_at=paid_at,
            expires_at=self.policy.coverage_end(paid_at),
            stripe_session_id=session.get("id"),
            stripe_payment_intent_id=payment_intent,
        )
        log.info(
            "webhook.checkout_session.completed",
            session_id=session.get("id"),
            insured_party_id=athlete_id,
            period_id=season_id,
            applied=applied,
        )
        return "insurance_marked_paid" if applied else "already_paid"

    # ---------------- status lookup ----------------

    async def check_insurance_status(self, insured_party_id: str, period_id: str) -> InsuranceStatus:
        """
        Fail-closed: any processor error, malformed record or missing match
        reports has_paid=False. An unreachable processor must never read as insured.
        """
        query = " AND ".join(
            [
                f"metadata['insured_party_id']:{_quote(insured_party_id)}",
                f"metadata['period_id']:{_quote(period_id)}",
                f"metadata['payment_type']:{_quote(PAYMENT_TYPE)}",
                "status:'succeeded'",
            ]
        )
        try:
            intents = self.stripe.search_payment_intents(query=query, limit=_STATUS_LOOKUP_LIMIT)
            if not intents:
                return InsuranceStatus(has_paid=False)
            latest = max((to_dict(pi) for pi in intents), key=lambda pi: int(pi.get("created") or 0))
            payment_date = _from_epoch(latest["created"])
            return InsuranceStatus(
                has_paid=True,
                payment_date=payment_date,
                expiry_date=self.policy.coverage_end(payment_date),
                payment_id=latest.get("id"),
            )
        except Exception:
            log.warning(
                "insurance.status_lookup.failed",
                insured_party_id=insured_party_id,
                period_id=period_id,
                exc_info=True,
            )
            return InsuranceStatus(has_paid=False)

    # ---------------- payment history ----------------

    async def get_payment_history(self, insured_party_id: str) -> List[Dict[str, Any]]:
        if not insured_party_id or not insured_party_id.strip():
            raise ValidationError(["insured_party_id"])
        query = (
            f"metadata['insured_party_id']:{_quote(insured_party_id)} "
            f"AND metadata['payment_type']:{_quote(PAYMENT_TYPE)}"
        )
        intents = [to_dict(pi) for pi in self.stripe.search_payment_intents(query=query, limit=_HISTORY_LIMIT)]
        intents.sort(key=lambda pi: int(pi.get("created") or 0), reverse=True)
        history = []
        for pi in intents:
            md = to_dict(pi.get("metadata"))
            label = md.get("period_label") or "Unknown"
            history.append(
                {
                    "id": pi.get("id"),
                    "amount": (pi.get("amount") or 0) / 100.0,
                    "currency": (pi.get("currency") or "").upper(),
                    "status": pi.get("status"),
                    "created": pi.get("created"),
                    "seasonYear": label,
                    "description": pi.get("description") or f"Annual insurance {label}",
                }
            )
        return history
