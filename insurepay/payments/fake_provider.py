# insurepay/payments/fake_provider.py
from __future__ import annotations
from typing import Tuple, Optional, Dict, Any, List
import copy
import json
import re
from datetime import datetime, timezone

from insurepay.core.errors import PaymentProviderError
from insurepay.payments.signature import verify_webhook_payload, sign_payload

FAKE_WEBHOOK_SECRET = "whsec_fake_local"

_CLAUSE = re.compile(r"^(?:metadata\['(?P<key>[^']+)'\]|(?P<field>[a-z_]+)):'(?P<value>(?:[^'\\]|\\.)*)'$")


class FakeStripeProvider:
    """
    In-memory, protocol-compliant fake for tests/local runs.
    Mirrors the signatures in insurepay.payments.types.PaymentProvider.

    - Checkout sessions: stored with Stripe-like fields; idempotency keys replay the first session.
    - Payment intents: created when a session is completed, searchable with the
      Stripe search syntax subset used by the engine (metadata and status clauses).
    - Webhooks: signatures ARE verified, with the same v1 scheme Stripe uses.
    - Outages: set `fail_with` to a message and every processor call raises.
    """

    def __init__(self, webhook_secret: str = FAKE_WEBHOOK_SECRET, tolerance: int = 300):
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        # session_id -> dict
        self.sessions: Dict[str, Dict[str, Any]] = {}
        # payment_intent_id -> dict
        self.payment_intents: Dict[str, Dict[str, Any]] = {}
        self._by_idempotency_key: Dict[str, str] = {}
        self._session_counter: int = 0
        self._intent_counter: int = 0
        self._event_counter: int = 0
        self.fail_with: Optional[str] = None
        self.calls: List[Tuple[str, Any]] = []

    # ----------------------- helpers -----------------------

    @staticmethod
    def _now_ts() -> int:
        return int(datetime.now(tz=timezone.utc).timestamp())

    def _maybe_fail(self, op: str, arg: Any = None) -> None:
        self.calls.append((op, arg))
        if self.fail_with:
            raise PaymentProviderError(self.fail_with)

    # ---------------- webhooks / signature -----------------

    def verify_signature(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        return verify_webhook_payload(payload, sig_header, self.webhook_secret, self.tolerance)

    def build_event(
        self, event_type: str, obj: Dict[str, Any], *, event_id: Optional[str] = None, timestamp: Optional[int] = None
    ) -> Tuple[bytes, str]:
        """
        Returns (raw body, Stripe-Signature header) for a deliverable event.
        """
        if event_id is None:
            self._event_counter += 1
            event_id = f"evt_test_{self._event_counter}"
        event = {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "created": self._now_ts(),
            "data": {"object": obj},
        }
        body = json.dumps(event).encode("utf-8")
        return body, sign_payload(body, self.webhook_secret, timestamp)

    # --------------------- checkout ------------------------

    def create_checkout_session(
        self, *, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        self._maybe_fail("create_checkout_session", params)
        if idempotency_key and idempotency_key in self._by_idempotency_key:
            return self._public(self.sessions[self._by_idempotency_key[idempotency_key]])

        self._session_counter += 1
        sid = f"cs_test_{self._session_counter}"
        items = params.get("line_items") or []
        amount_total = sum(
            int(li["price_data"]["unit_amount"]) * int(li.get("quantity", 1)) for li in items if "price_data" in li
        )
        currency = items[0]["price_data"]["currency"] if items and "price_data" in items[0] else None
        session = {
            "id": sid,
            "object": "checkout.session",
            "url": f"https://checkout.local/pay/{sid}",
            "status": "open",
            "payment_status": "unpaid",
            "mode": params.get("mode"),
            "expires_at": params.get("expires_at"),
            "created": self._now_ts(),
            "success_url": params.get("success_url"),
            "cancel_url": params.get("cancel_url"),
            "amount_total": amount_total,
            "currency": currency,
            "customer_email": params.get("customer_email"),
            "customer_details": {"email": params.get("customer_email")} if params.get("customer_email") else None,
            "metadata": dict(params.get("metadata") or {}),
            "payment_intent": None,
            "_intent_metadata": dict((params.get("payment_intent_data") or {}).get("metadata") or {}),
            "_intent_description": (params.get("payment_intent_data") or {}).get("description"),
        }
        self.sessions[sid] = session
        if idempotency_key:
            self._by_idempotency_key[idempotency_key] = sid
        return self._public(session)

    def retrieve_checkout_session(
        self, session_id: str, *, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        self._maybe_fail("retrieve_checkout_session", session_id)
        session = self.sessions.get(session_id)
        if not session:
            raise PaymentProviderError(f"No such checkout.session: '{session_id}'")
        out = self._public(session)
        if expand and "payment_intent" in expand and session.get("payment_intent"):
            out["payment_intent"] = copy.deepcopy(self.payment_intents[session["payment_intent"]])
        return out

    @staticmethod
    def _public(session: Dict[str, Any]) -> Dict[str, Any]:
        return {k: copy.deepcopy(v) for k, v in session.items() if not k.startswith("_")}

    # ------------- simulated customer actions --------------

    def complete_session(
        self, session_id: str, *, paid: bool = True, created: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        Simulate the customer finishing checkout. When paid, a succeeded
        payment intent carrying the session's intent metadata is recorded.
        """
        session = self.sessions[session_id]
        session["status"] = "complete"
        if paid:
            session["payment_status"] = "paid"
            intent = self.add_payment_intent(
                amount=session["amount_total"],
                currency=session["currency"],
                metadata=session["_intent_metadata"],
                description=session["_intent_description"],
                created=created,
            )
            session["payment_intent"] = intent["id"]
        return self._public(session)

    def expire_session(self, session_id: str) -> Dict[str, Any]:
        session = self.sessions[session_id]
        session["status"] = "expired"
        return self._public(session)

    def add_payment_intent(
        self,
        *,
        amount: int,
        currency: str,
        metadata: Dict[str, Any],
        status: str = "succeeded",
        description: Optional[str] = None,
        created: Optional[int] = None,
    ) -> Dict[str, Any]:
        self._intent_counter += 1
        pid = f"pi_test_{self._intent_counter}"
        intent = {
            "id": pid,
            "object": "payment_intent",
            "amount": amount,
            "currency": currency,
            "status": status,
            "created": created if created is not None else self._now_ts(),
            "description": description,
            "metadata": dict(metadata or {}),
        }
        self.payment_intents[pid] = intent
        return copy.deepcopy(intent)

    # ------------------- payment intents -------------------

    def search_payment_intents(self, *, query: str, limit: int) -> List[Dict[str, Any]]:
        self._maybe_fail("search_payment_intents", query)
        filters = [self._parse_clause(c) for c in query.split(" AND ")]
        hits = [
            pi for pi in self.payment_intents.values()
            if all(self._matches(pi, f) for f in filters)
        ]
        hits.sort(key=lambda pi: pi["created"], reverse=True)
        return [copy.deepcopy(pi) for pi in hits[:limit]]

    @staticmethod
    def _parse_clause(clause: str) -> Tuple[str, str, str]:
        m = _CLAUSE.match(clause.strip())
        if not m:
            raise PaymentProviderError(f"Unsupported search clause: {clause!r}")
        if m.group("key"):
            return ("metadata", m.group("key"), _unescape(m.group("value")))
        return ("field", m.group("field"), _unescape(m.group("value")))

    @staticmethod
    def _matches(pi: Dict[str, Any], flt: Tuple[str, str, str]) -> bool:
        kind, key, value = flt
        if kind == "metadata":
            return str((pi.get("metadata") or {}).get(key)) == value
        return str(pi.get(key)) == value


def _unescape(value: str) -> str:
    return re.sub(r"\\(.)", r"\1", value)
