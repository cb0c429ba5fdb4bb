import json

import aio_pika

EXCHANGE_NAME = "domain_events"


class RabbitPublisher:
    """
    Fire-and-forget publisher onto the platform's topic exchange.

    Connects lazily, so a broker outage at startup only costs the events
    published while it lasts. With no URL every call is a no-op.
    """

    def __init__(self, url: str | None, service_name: str):
        self.url = url
        self.service_name = service_name
        self.enabled = bool(url)
        self._connection: aio_pika.abc.AbstractRobustConnection | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    @property
    def connected(self) -> bool:
        return self._exchange is not None and self._connection is not None and not self._connection.is_closed

    def _reset(self):
        self._connection = None
        self._exchange = None

    async def connect(self):
        if not self.enabled or self.connected:
            return

        try:
            self._connection = await aio_pika.connect_robust(self.url)
            channel = await self._connection.channel()
            self._exchange = await channel.declare_exchange(
                EXCHANGE_NAME,
                aio_pika.ExchangeType.TOPIC,
                durable=True,
            )
        except Exception as e:
            print(f"[{self.service_name}] RabbitMQ connect failed: {e}")
            self._reset()
            raise

    def _message(self, message_body: str) -> aio_pika.Message:
        # surface the envelope id/type as AMQP properties when the body carries them
        try:
            envelope = json.loads(message_body)
        except ValueError:
            envelope = {}
        if not isinstance(envelope, dict):
            envelope = {}

        return aio_pika.Message(
            body=message_body.encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=envelope.get("event_id"),
            type=envelope.get("event_type"),
            app_id=self.service_name,
        )

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        try:
            await self._exchange.publish(self._message(message_body), routing_key=routing_key)
        except Exception as e:
            print(f"[{self.service_name}] RabbitMQ publish of {routing_key} failed: {e}")

    async def close(self):
        connection = self._connection
        self._reset()
        if connection and not connection.is_closed:
            await connection.close()
