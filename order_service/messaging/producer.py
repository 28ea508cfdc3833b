import json
import logging
import threading
import time

import pika

from .. import config

logger = logging.getLogger(__name__)


class RabbitMQProducer:
    """
    Publishes order lifecycle events (order.created, order.confirmed, ...) to a
    topic exchange so kitchen displays and notifiers can follow along.

    Publishing is best effort: the order row is already committed when an event
    goes out, so a broker outage is logged and never fails the request.

    A pika BlockingConnection must stay on the thread that opened it, so each
    request worker and the consumer thread get their own connection.
    """

    def __init__(self, host=None, exchange_name=None, exchange_type="topic", connect_attempts=None):
        self.host = host or config.RABBITMQ_HOST
        self.exchange_name = exchange_name or config.EVENTS_EXCHANGE
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts or config.RABBITMQ_CONNECT_ATTEMPTS
        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()

    @property
    def connection(self):
        return getattr(self._local, "connection", None)

    @property
    def channel(self):
        return getattr(self._local, "channel", None)

    def connect(self):
        """Opens this thread's connection to RabbitMQ, retrying a bounded number of times."""
        for attempt in range(1, self.connect_attempts + 1):
            try:
                parameters = pika.ConnectionParameters(
                    host=self.host,
                    heartbeat=600,
                    blocked_connection_timeout=300,
                )
                connection = pika.BlockingConnection(parameters)
                channel = connection.channel()
                # Declare the exchange (durable ensures it survives restarts)
                channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True,
                )
                self._local.connection = connection
                self._local.channel = channel
                with self._lock:
                    self._connections.append(connection)
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready (attempt %d/%d)", attempt, self.connect_attempts)
                if attempt < self.connect_attempts:
                    time.sleep(1)
        raise pika.exceptions.AMQPConnectionError(f"Could not connect to RabbitMQ at {self.host}")

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created', 'order.confirmed').
            message (dict): The data payload to send.
        """
        try:
            # Reconnect if the connection was lost
            if not self.connection or self.connection.is_closed:
                self.connect()
            self.channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type="application/json",
                ),
            )
            logger.info(" [x] Sent event '%s': %s", routing_key, message)
        except Exception:
            logger.exception("Failed to publish event '%s'", routing_key)

    def close(self):
        """Closes every connection this producer opened."""
        with self._lock:
            connections, self._connections = self._connections, []
        for connection in connections:
            if not connection.is_closed:
                try:
                    connection.close()
                except pika.exceptions.AMQPError:
                    logger.warning("RabbitMQ connection did not close cleanly")


def order_event(order, **extra):
    """Payload shared by every order.* event."""
    payload = {
        "order_id": order.id,
        "store_id": order.store_id,
        "pickup_number": order.pickup_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "total_amount": order.total_amount,
    }
    payload.update(extra)
    return payload
