from sqlalchemy import Column, String, select
from sqlalchemy.ext.asyncio import AsyncSession

from .database import Base, UTCDateTime, utcnow


class ProcessedEvent(Base):
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    processed_at = Column(UTCDateTime(), nullable=False, default=utcnow)


async def is_processed(session: AsyncSession, event_id: str) -> bool:
    res = await session.execute(select(ProcessedEvent.event_id).where(ProcessedEvent.event_id == event_id))
    return res.scalar_one_or_none() is not None


async def mark_processed(session: AsyncSession, event_id: str, event_type: str):
    # Same transaction as the handler's writes; a redelivered event then hits the PK.
    session.add(ProcessedEvent(event_id=event_id, event_type=event_type))
    await session.flush()
