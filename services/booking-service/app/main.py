import asyncio
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import config
from .consumer import start_consumer
from .errors import BookingServiceError
from .expiry_worker import expiry_loop
from .publisher import publisher
from .routes import router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger(__name__)

app = FastAPI(title="Booking Service")
app.include_router(router)

_consumer_conn = None
_stop_event = asyncio.Event()
_expiry_task = None


@app.exception_handler(BookingServiceError)
async def booking_service_error_handler(request: Request, exc: BookingServiceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.get("/health")
async def health():
    return {"status": "ok", "service": "booking-service", "events_enabled": publisher.enabled}


@app.on_event("startup")
async def startup():
    global _consumer_conn, _expiry_task
    try:
        await publisher.connect()
    except Exception as e:
        log.warning("[booking-service] RabbitMQ connect failed at startup; continuing: %s", e)

    # payment consumer is optional; the API keeps serving without it
    try:
        if config.RABBIT_URL:
            _consumer_conn = await start_consumer()
    except Exception as e:
        _consumer_conn = None
        log.warning("[booking-service] payment consumer failed to start: %s", e)

    if config.BOOKING_EXPIRY_SWEEP_SECONDS > 0:
        _stop_event.clear()
        _expiry_task = asyncio.create_task(expiry_loop(_stop_event))


@app.on_event("shutdown")
async def shutdown():
    global _consumer_conn, _expiry_task
    _stop_event.set()
    if _expiry_task:
        await _expiry_task
        _expiry_task = None
    if _consumer_conn and not _consumer_conn.is_closed:
        await _consumer_conn.close()
    await publisher.close()
