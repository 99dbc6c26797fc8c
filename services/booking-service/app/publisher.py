from shared.rabbitmq import RabbitPublisher

from .config import RABBIT_URL
from .events import build_event, to_json

SERVICE_NAME = "booking-service"

publisher = RabbitPublisher(RABBIT_URL, SERVICE_NAME)


async def publish_event(event_type: str, data: dict):
    """Notify listeners after a commit; failures are logged, never raised."""
    await publisher.publish(event_type, to_json(build_event(event_type, data)))
