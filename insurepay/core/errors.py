# insurepay/core/errors.py
from __future__ import annotations
from typing import Iterable, List


class PaymentError(Exception):
    """Base class for everything the payment engine raises on purpose."""


class ValidationError(PaymentError, ValueError):
    """Caller supplied incomplete or malformed input. Never retried."""

    def __init__(self, missing_fields: Iterable[str], message: str | None = None):
        self.missing_fields: List[str] = list(missing_fields)
        super().__init__(message or f"Missing required fields: {', '.join(self.missing_fields)}")


class AuthenticationError(PaymentError):
    """Webhook signature missing or invalid. The reason is never sent back to the caller."""


class PaymentProviderError(PaymentError):
    """The processor failed or returned an unexpected shape."""

    def __init__(self, message: str):
        self.provider_message = message
        super().__init__(message)
