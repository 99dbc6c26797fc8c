import logging
import uuid
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import atomic

from . import config
from .constants import PricingUnit
from .errors import NotAuthorized, NotFound
from .models import WorkerService, WorkerServicePrice
from .pricing import quantize_money

log = logging.getLogger(__name__)


def _price_rows(worker_service_id: str, prices) -> list[WorkerServicePrice]:
    rows = {}
    for p in prices:
        unit = PricingUnit(p["unit"])
        rows[unit] = WorkerServicePrice(
            worker_service_id=worker_service_id,
            unit=unit,
            price=quantize_money(Decimal(p["price"])),
            currency=(p.get("currency") or config.DEFAULT_CURRENCY).upper(),
        )
    return list(rows.values())


async def get_worker_service(session: AsyncSession, worker_service_id: str, for_update: bool = False) -> WorkerService:
    stmt = select(WorkerService).where(WorkerService.worker_service_id == worker_service_id)
    if for_update:
        stmt = stmt.with_for_update()
    ws = (await session.execute(stmt.execution_options(populate_existing=True))).scalar_one_or_none()
    if ws is None:
        raise NotFound("Worker service not found", worker_service_id=worker_service_id)
    return ws


async def create_worker_service(
    session: AsyncSession,
    worker_id: str,
    service_code: str,
    prices: list[dict],
    is_active: bool = True,
) -> WorkerService:
    worker_service_id = str(uuid.uuid4())
    async with atomic(session):
        ws = WorkerService(
            worker_service_id=worker_service_id,
            worker_id=worker_id,
            service_code=service_code,
            is_active=is_active,
            prices=_price_rows(worker_service_id, prices),
        )
        session.add(ws)
        await session.flush()
    log.info("worker service %s (%s) created for %s", worker_service_id, service_code, worker_id)
    return ws


async def update_worker_service(
    session: AsyncSession,
    worker_service_id: str,
    worker_id: str | None,
    is_active: bool | None = None,
    prices: list[dict] | None = None,
) -> WorkerService:
    """Toggle or re-price an offering. ``worker_id`` None skips the owner check (admin)."""
    async with atomic(session):
        ws = await get_worker_service(session, worker_service_id, for_update=True)
        if worker_id is not None and ws.worker_id != worker_id:
            raise NotAuthorized("Only the owning worker can change this service", worker_service_id=worker_service_id)
        if is_active is not None:
            ws.is_active = is_active
        if prices is not None:
            ws.prices.clear()
            await session.flush()
            ws.prices.extend(_price_rows(worker_service_id, prices))
        await session.flush()
    return await get_worker_service(session, worker_service_id)
