from shared.rabbitmq import EXCHANGE_NAME, RabbitPublisher

from .config import RABBIT_URL, SERVICE_NAME

publisher = RabbitPublisher(RABBIT_URL, SERVICE_NAME)

__all__ = ["EXCHANGE_NAME", "RABBIT_URL", "publisher"]
