# insurepay/payments/types.py
from __future__ import annotations
from typing import Protocol, Optional, Dict, Any, List


class PaymentProvider(Protocol):
    # --- webhooks ---
    def verify_signature(self, payload: bytes, sig_header: str) -> Dict[str, Any]: ...

    # --- checkout ---
    def create_checkout_session(
        self, *, params: Dict[str, Any], idempotency_key: Optional[str] = None
    ) -> Dict[str, Any]: ...

    def retrieve_checkout_session(
        self, session_id: str, *, expand: Optional[List[str]] = None
    ) -> Dict[str, Any]: ...

    # --- payment records ---
    def search_payment_intents(self, *, query: str, limit: int) -> List[Dict[str, Any]]: ...


def to_dict(obj: Any) -> Dict[str, Any]:
    """
    Normalize Stripe SDK objects and plain dicts to a plain dict.
    """
    if obj is None:
        return {}
    if isinstance(obj, dict) and type(obj) is dict:
        return obj
    # stripe < 13 exposes to_dict_recursive(); later releases fold it into to_dict()
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    as_dict = getattr(obj, "to_dict", None)
    if callable(as_dict):
        return as_dict()
    return dict(obj)
