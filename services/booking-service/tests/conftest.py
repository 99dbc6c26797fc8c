import os
import tempfile
from datetime import datetime, timedelta, timezone
from decimal import Decimal

_DB_DIR = tempfile.mkdtemp(prefix="booking-service-tests-")
os.environ["BOOKING_DB"] = f"sqlite+aiosqlite:///{os.path.join(_DB_DIR, 'booking.db')}"
os.environ.pop("RABBIT_URL", None)

import pytest  # noqa: E402

import shared.idempotency  # noqa: E402,F401
from shared.database import atomic  # noqa: E402

from app import catalog, wallet  # noqa: E402
from app.constants import PricingUnit  # noqa: E402
from app.db import Base, SessionLocal, engine  # noqa: E402

NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
CLIENT = "client-1"
WORKER = "worker-1"
HOURLY_PRICE = Decimal("100000")


@pytest.fixture(autouse=True)
async def schema():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
async def session(schema):
    async with SessionLocal() as s:
        yield s


@pytest.fixture
def fund():
    async def _fund(user_id: str, amount) -> None:
        async with SessionLocal() as s:
            async with atomic(s):
                await wallet.credit(s, user_id, Decimal(amount))

    return _fund


@pytest.fixture
def balance_of():
    async def _balance_of(user_id: str) -> Decimal:
        async with SessionLocal() as s:
            return await wallet.get_balance(s, user_id)

    return _balance_of


@pytest.fixture
async def worker_service(schema):
    async with SessionLocal() as s:
        return await catalog.create_worker_service(
            s,
            worker_id=WORKER,
            service_code="cleaning",
            prices=[
                {"unit": PricingUnit.HOURLY, "price": HOURLY_PRICE, "currency": "VND"},
                {"unit": PricingUnit.DAILY, "price": Decimal("700000"), "currency": "VND"},
            ],
        )


def slot(hours_ahead: float = 48, duration_hours: float = 2, now: datetime = NOW):
    start = now + timedelta(hours=hours_ahead)
    return start, start + timedelta(hours=duration_hours)
