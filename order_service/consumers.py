import json
import logging
import threading
import time

import pika

from . import config
from .database import SessionLocal
from .errors import OrderServiceError
from .payment_service import PaymentService

logger = logging.getLogger(__name__)

WEBHOOK_QUEUE = "orders.payment.webhook"
WEBHOOK_ROUTING_KEY = "payment.webhook"


class PaymentWebhookConsumer:
    """Reconciles orders for webhook events queued on the bus.

    Messages look like ``{"provider": "paypal", "payment_id": "..."}``. The
    same reconciliation runs as for the HTTP webhook and verify endpoints.
    """

    def __init__(self, payment_service: PaymentService, host=None, session_factory=SessionLocal):
        self.payment_service = payment_service
        self.host = host or config.RABBITMQ_HOST
        self.session_factory = session_factory
        self.connection = None
        self.channel = None

    def connect(self):
        """Connects to RabbitMQ and binds the webhook queue, retrying until the broker is up."""
        while True:
            try:
                self.connection = pika.BlockingConnection(
                    pika.ConnectionParameters(host=self.host, heartbeat=600, blocked_connection_timeout=300))
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=config.EVENTS_EXCHANGE, exchange_type="topic", durable=True)
                self.channel.queue_declare(queue=WEBHOOK_QUEUE, durable=True)
                self.channel.queue_bind(
                    exchange=config.EVENTS_EXCHANGE, queue=WEBHOOK_QUEUE, routing_key=WEBHOOK_ROUTING_KEY
                )
                logger.info(" [*] Payment webhook consumer listening on %s", WEBHOOK_QUEUE)
                return
            except pika.exceptions.AMQPConnectionError as exc:
                logger.warning("RabbitMQ not ready, retrying in 5 seconds: %s", exc)
                time.sleep(5)

    def run(self):
        self.connect()
        self.channel.basic_qos(prefetch_count=1)
        self.channel.basic_consume(queue=WEBHOOK_QUEUE, on_message_callback=self.callback)
        self.channel.start_consuming()

    def callback(self, ch, method, properties, body):
        try:
            event = json.loads(body)
        except ValueError:
            logger.error("Dropping malformed webhook event: %r", body)
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return

        logger.info(" [x] Received %s -> %s", method.routing_key, event)
        provider = event.get("provider")
        payment_id = event.get("payment_id")
        if not provider or not payment_id:
            ch.basic_ack(delivery_tag=method.delivery_tag)
            return

        db = self.session_factory()
        try:
            self.payment_service.reconcile_payment(db, provider, payment_id)
        except OrderServiceError as exc:
            # Retryable failures go back on the queue; the rest cannot succeed later.
            logger.error("Reconciling %s payment %s failed: %s", provider, payment_id, exc.message)
            db.rollback()
            if exc.retryable:
                ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
                return
        finally:
            db.close()
        ch.basic_ack(delivery_tag=method.delivery_tag)


def start_consumer_thread(payment_service: PaymentService):
    consumer = PaymentWebhookConsumer(payment_service)
    t = threading.Thread(target=consumer.run, daemon=True)
    t.start()
    return t
