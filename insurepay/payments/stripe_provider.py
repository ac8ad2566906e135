# insurepay/payments/stripe_provider.py
from __future__ import annotations
from typing import Optional, Dict, Any, List
import stripe
import structlog

from insurepay.core.errors import PaymentProviderError
from insurepay.payments.signature import verify_webhook_payload
from insurepay.payments.types import to_dict

log = structlog.get_logger(__name__)


class StripePaymentProvider:
    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance
        stripe.api_key = api_key

    # --- webhooks/signature ---
    def verify_signature(self, payload: bytes, sig_header: str) -> Dict[str, Any]:
        return verify_webhook_payload(payload, sig_header, self.webhook_secret, self.tolerance)

    # --- checkout ---
    def create_checkout_session(
        self, *, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.create(**params, idempotency_key=idempotency_key)
        except stripe.StripeError as e:
            log.warning("stripe.checkout_session.create_failed", error=str(e), code=getattr(e, "code", None))
            raise PaymentProviderError(getattr(e, "user_message", None) or str(e)) from e
        return to_dict(session)

    def retrieve_checkout_session(
        self, session_id: str, *, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        try:
            session = stripe.checkout.Session.retrieve(session_id, expand=expand or [])
        except stripe.StripeError as e:
            log.warning("stripe.checkout_session.retrieve_failed", session_id=session_id, error=str(e))
            raise PaymentProviderError(getattr(e, "user_message", None) or str(e)) from e
        return to_dict(session)

    # --- payment intents ---
    def search_payment_intents(self, *, query: str, limit: int) -> List[Dict[str, Any]]:
        try:
            res = stripe.PaymentIntent.search(query=query, limit=limit)
        except stripe.StripeError as e:
            log.warning("stripe.payment_intent.search_failed", error=str(e))
            raise PaymentProviderError(getattr(e, "user_message", None) or str(e)) from e
        return [to_dict(pi) for pi in (res.data or [])]
