# insurepay/payments/signature.py
from __future__ import annotations
import hashlib
import hmac
import json
import time
from typing import Optional, Dict, Any, Union

import stripe

from insurepay.core.errors import AuthenticationError, ValidationError


def verify_webhook_payload(
    payload: Union[bytes, str], sig_header: Optional[str], secret: str, tolerance: int
) -> Dict[str, Any]:
    """
    Check the Stripe-Signature header against the raw request body, then parse it.
    The body must be exactly what was received; re-serialised JSON will not verify.
    """
    if not sig_header:
        raise AuthenticationError("Missing webhook signature")
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    try:
        stripe.WebhookSignature.verify_header(payload, sig_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise AuthenticationError("Invalid webhook signature") from e

    try:
        event = json.loads(payload)
    except ValueError as e:
        raise ValidationError(["body"], "Malformed webhook payload") from e
    if not isinstance(event, dict):
        raise ValidationError(["body"], "Malformed webhook payload")
    return event


def sign_payload(payload: Union[bytes, str], secret: str, timestamp: Optional[int] = None) -> str:
    """
    Build a Stripe-Signature header value for a payload (v1 scheme).
    Used by the fake provider and by tests to emit deliverable events.
    """
    if isinstance(payload, (bytes, bytearray)):
        payload = payload.decode("utf-8")
    ts = int(timestamp if timestamp is not None else time.time())
    signed = f"{ts}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"
