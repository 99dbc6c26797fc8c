import logging

import aio_pika

EXCHANGE_NAME = "domain_events"

log = logging.getLogger(__name__)


async def connect(rabbit_url: str) -> aio_pika.abc.AbstractRobustConnection:
    return await aio_pika.connect_robust(rabbit_url)


class RabbitPublisher:
    """Fire-and-forget topic publisher; a missing URL or a broker outage never fails the caller."""

    def __init__(self, rabbit_url: str | None, service_name: str):
        self.rabbit_url = rabbit_url
        self.service_name = service_name
        self.enabled = bool(rabbit_url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection = await connect(self.rabbit_url)
            self._channel = await self._connection.channel()
            self._exchange = await self._channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            log.warning("[%s] RabbitMQ connect failed: %s", self.service_name, e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            log.warning("[%s] RabbitMQ publish of %s failed: %s", self.service_name, routing_key, e)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
