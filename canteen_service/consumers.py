import json
import logging
import threading
import time

import pika

from .config import EVENTS_EXCHANGE, RABBITMQ_HOST
from .messaging.bus import ROUTING_PREFIX

logger = logging.getLogger(__name__)


class RealtimeRelayConsumer:
    """
    Listens to every canteen event on the topic exchange and hands it to the
    local WebSocket hub. Each worker gets its own exclusive queue, so every
    worker sees every event.
    """

    def __init__(self, hub, host=RABBITMQ_HOST, exchange_name=EVENTS_EXCHANGE, retry_delay=5):
        self.hub = hub
        self.host = host
        self.exchange_name = exchange_name
        self.retry_delay = retry_delay
        self.connection = None
        self.channel = None
        self.queue_name = None

    def connect(self):
        """Connects to RabbitMQ and binds a private queue to all canteen events."""
        while True:
            try:
                credentials = pika.PlainCredentials('guest', 'guest')
                parameters = pika.ConnectionParameters(self.host, credentials=credentials)
                self.connection = pika.BlockingConnection(parameters)
                self.channel = self.connection.channel()

                # Declare the exchange (ensure it exists)
                self.channel.exchange_declare(exchange=self.exchange_name, exchange_type='topic', durable=True)

                # Exclusive queue, removed when this worker disconnects
                result = self.channel.queue_declare(queue='', exclusive=True)
                self.queue_name = result.method.queue
                self.channel.queue_bind(
                    exchange=self.exchange_name, queue=self.queue_name, routing_key=ROUTING_PREFIX + '#'
                )

                logger.info("Relay consumer connected to RabbitMQ")
                break
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready, retrying in %s seconds...", self.retry_delay)
                time.sleep(self.retry_delay)

    def on_event(self, ch, method, properties, body):
        """Received 'canteen.<event>'. Action: forward to local WebSocket clients."""
        try:
            message = json.loads(body)
            event = message["event"]
        except (ValueError, KeyError, TypeError):
            logger.warning("Ignoring malformed event on %s: %r", method.routing_key, body)
            return
        self.hub.emit(message.get("room"), event, message.get("data"))

    def start_listening(self):
        """Starts the consuming loop."""
        if not self.connection:
            self.connect()

        self.channel.basic_consume(queue=self.queue_name, on_message_callback=self.on_event, auto_ack=True)

        logger.info("Relay consumer waiting for events...")
        self.channel.start_consuming()


def start_consumer_thread(hub):
    """Helper to run the relay in a background thread."""
    consumer = RealtimeRelayConsumer(hub)
    thread = threading.Thread(target=consumer.start_listening, daemon=True)
    thread.start()
    return consumer
