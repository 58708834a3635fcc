import json
import logging
import threading
import time

import pika

from ..config import EVENTS_EXCHANGE, RABBITMQ_HOST
from ..notifications import Notifier

logger = logging.getLogger(__name__)

ROUTING_PREFIX = "canteen."


class RabbitMQNotifier(Notifier):
    """
    Publishes canteen events to a RabbitMQ topic exchange.
    Every API worker runs a relay consumer that forwards them to its own
    WebSocket clients, so an event reaches all clients whichever worker
    produced it.
    """

    def __init__(self, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, exchange_type="topic",
                 connect_attempts=3, retry_delay=1.0):
        self.host = host
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; request threads publish concurrently.
        self._lock = threading.Lock()

    def connect(self, attempts=None):
        """Establishes a connection to RabbitMQ, retrying a bounded number of times."""
        attempts = attempts or self.connect_attempts
        for attempt in range(1, attempts + 1):
            try:
                credentials = pika.PlainCredentials('guest', 'guest')
                parameters = pika.ConnectionParameters(host=self.host, credentials=credentials)

                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                # Declare the exchange (durable ensures it survives restarts)
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready (attempt %d/%d)", attempt, attempts)
                if attempt < attempts:
                    time.sleep(self.retry_delay)
        raise pika.exceptions.AMQPConnectionError(f"Could not reach RabbitMQ at {self.host}")

    def _deliver(self, room, event, data):
        """
        Publishes one event. Routing key is 'canteen.<event>' (e.g. 'canteen.new-order').
        Errors propagate to Notifier.emit, which logs and drops them.
        """
        message = {"room": room, "event": event, "data": data}
        with self._lock:
            # Reconnect if the connection was lost; one try only, publishers must not stall.
            if not self.connection or self.connection.is_closed:
                self.connect(attempts=1)
            try:
                self.channel.basic_publish(
                    exchange=self.exchange_name,
                    routing_key=ROUTING_PREFIX + event,
                    body=json.dumps(message),
                    properties=pika.BasicProperties(
                        delivery_mode=2,  # Make message persistent
                        content_type='application/json'
                    )
                )
            except pika.exceptions.AMQPError:
                # Force a fresh connection on the next publish.
                self.connection = None
                raise
        logger.debug("Sent event %s to %s", event, room or "all clients")

    def close(self):
        """Closes the connection cleanly."""
        with self._lock:
            if self.connection and not self.connection.is_closed:
                self.connection.close()
            self.connection = None
