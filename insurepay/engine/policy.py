# insurepay/engine/policy.py
from __future__ import annotations
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

PAYMENT_TYPE = "annual_insurance"


@dataclass(frozen=True)
class InsurancePolicy:
    """Fixed price and timing rules for the annual athlete insurance."""

    fee: float = 150
    currency: str = "MAD"
    session_ttl_minutes: int = 30
    validity_years: int = 1

    @classmethod
    def from_settings(cls, settings) -> "InsurancePolicy":
        return cls(
            fee=settings.ANNUAL_INSURANCE_FEE,
            currency=settings.INSURANCE_CURRENCY,
            session_ttl_minutes=settings.CHECKOUT_SESSION_TTL_MINUTES,
        )

    @property
    def unit_amount(self) -> int:
        # processor amounts are in the smallest currency unit (centimes for MAD)
        return int(round(self.fee * 100))

    @property
    def processor_currency(self) -> str:
        return self.currency.lower()

    def session_expiry(self, now: datetime) -> datetime:
        return now + timedelta(minutes=self.session_ttl_minutes)

    def coverage_end(self, paid_at: datetime) -> datetime:
        return add_years(paid_at, self.validity_years)


def add_years(dt: datetime, years: int) -> datetime:
    """
    Same month/day `years` later. Feb 29 overflows to Mar 1 when the target
    year is not a leap year.
    """
    try:
        return dt.replace(year=dt.year + years)
    except ValueError:
        return dt.replace(year=dt.year + years, month=3, day=1)


def to_epoch_ceil(dt: datetime) -> int:
    return int(math.ceil(dt.timestamp()))
