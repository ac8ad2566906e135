# insurepay/core/deps.py
from functools import lru_cache
from collections.abc import AsyncGenerator
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from insurepay.core.settings import Settings, settings
from insurepay.payments.stripe_provider import StripePaymentProvider
from insurepay.payments.fake_provider import FakeStripeProvider, FAKE_WEBHOOK_SECRET

engine = create_async_engine(settings.DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def build_payment_provider(cfg: Settings):
    # refuses the fake outside development and a half-configured stripe backend
    cfg.validate_payments()
    if cfg.PAYMENTS_BACKEND == "fake":
        return FakeStripeProvider(
            webhook_secret=cfg.STRIPE_WEBHOOK_SECRET or FAKE_WEBHOOK_SECRET,
            tolerance=cfg.WEBHOOK_TOLERANCE_SECONDS,
        )
    return StripePaymentProvider(
        api_key=cfg.STRIPE_SECRET_KEY,
        webhook_secret=cfg.STRIPE_WEBHOOK_SECRET,
        tolerance=cfg.WEBHOOK_TOLERANCE_SECONDS,
    )

@lru_cache(maxsize=1)
def _payments_singleton():
    return build_payment_provider(settings)

def get_payment_provider():
    # FastAPI will call this each request, but we return the cached singleton
    return _payments_singleton()
