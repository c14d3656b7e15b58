import enum
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Optional
from urllib.parse import urlsplit, urlunsplit

import pika

logger = logging.getLogger(__name__)

DEFAULT_CLIENT_NAME = "sequential-producer"

PERSISTENT_DELIVERY_MODE = 2
TRANSIENT_DELIVERY_MODE = 1


class MessageMiddlewareError(Exception):
    pass


class MessageMiddlewareDisconnectedError(MessageMiddlewareError):
    pass


class MessageMiddlewareDeclarationError(MessageMiddlewareError):
    pass


class MessageMiddlewareCapabilityError(MessageMiddlewareError):
    pass


class MessageMiddlewarePublishError(MessageMiddlewareError):
    pass


class MessageMiddlewareCloseError(MessageMiddlewareError):
    pass


class ConfirmationOutcome(enum.Enum):
    ACK = "ack"
    NACK = "nack"


@dataclass(frozen=True)
class Confirmation:
    outcome: ConfirmationOutcome
    delivery_tag: int

    @property
    def acked(self) -> bool:
        return self.outcome is ConfirmationOutcome.ACK


class DeferredConfirmation:
    """
    Pending broker acknowledgment for exactly one published message.

    Resolves once, to ACK or NACK. wait() blocks until then, without a
    timeout. BrokerSession.publish hands it back already resolved at
    submission, since pika's blocking channel waits for the Ack/Nack itself.
    """

    def __init__(self, delivery_tag: int):
        self.delivery_tag = delivery_tag
        self._outcome: Optional[ConfirmationOutcome] = None
        self._resolved = threading.Event()
        self._lock = threading.Lock()

    def resolve(self, outcome: ConfirmationOutcome) -> None:
        with self._lock:
            if self._resolved.is_set():
                raise RuntimeError(
                    f"Confirmation for delivery tag {self.delivery_tag} already resolved"
                )
            self._outcome = outcome
            self._resolved.set()

    def done(self) -> bool:
        return self._resolved.is_set()

    def wait(self) -> Confirmation:
        self._resolved.wait()
        return Confirmation(outcome=self._outcome, delivery_tag=self.delivery_tag)


@dataclass(frozen=True)
class OutboundMessage:
    routing_key: str
    body: bytes
    content_type: str = "text/plain"
    content_encoding: str = ""
    persistent: bool = True
    priority: int = 0
    app_id: str = DEFAULT_CLIENT_NAME
    headers: Dict[str, object] = field(default_factory=dict)

    def properties(self) -> pika.BasicProperties:
        return pika.BasicProperties(
            headers=dict(self.headers),
            content_type=self.content_type,
            content_encoding=self.content_encoding,
            delivery_mode=(
                PERSISTENT_DELIVERY_MODE if self.persistent else TRANSIENT_DELIVERY_MODE
            ),
            priority=self.priority,
            app_id=self.app_id,
        )


class BrokerSession:
    """
    One connection and one channel scoped to it.

    The session is opened explicitly and released through close() or the
    context manager, channel first and connection second. Nothing here
    reconnects: every broker failure surfaces as a MessageMiddlewareError.
    """

    def __init__(self, uri, vhost=None, client_name=DEFAULT_CLIENT_NAME):
        self._uri = uri
        self._vhost = vhost
        self._client_name = client_name
        self._connection = None
        self._channel = None
        self._confirming = False
        self._next_delivery_tag = 1
        self._send_lock = threading.Lock()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            self.close()
        except MessageMiddlewareCloseError:
            if exc_type is None:
                raise
            # keep the error that aborted the session
            logger.error(
                "Error closing session while handling %s", exc_type.__name__, exc_info=True
            )
        return False

    @property
    def confirming(self) -> bool:
        return self._confirming

    def _connection_parameters(self) -> pika.URLParameters:
        params = pika.URLParameters(self._uri)
        if self._vhost:
            params.virtual_host = self._vhost
        params.client_properties = {"connection_name": self._client_name}
        return params

    def open(self):
        try:
            self._connection = pika.BlockingConnection(self._connection_parameters())
            self._channel = self._connection.channel()
        except (pika.exceptions.AMQPError, OSError, ValueError) as e:
            raise MessageMiddlewareDisconnectedError(
                f"Could not connect to RabbitMQ at '{mask_uri(self._uri)}'"
            ) from e
        logger.info("Connected to RabbitMQ as '%s'", self._client_name)
        return self

    def declare_exchange(self, name, kind, durable=True):
        """Declare the exchange; the broker accepts repeats with identical arguments."""
        try:
            self._channel.exchange_declare(
                exchange=name,
                exchange_type=kind,
                durable=durable,
                auto_delete=False,
                internal=False,
            )
        except (pika.exceptions.AMQPError, AttributeError) as e:
            raise MessageMiddlewareDeclarationError(
                f"Error declaring exchange '{name}' ({kind})"
            ) from e
        logger.debug("Exchange '%s' (%s, durable=%s) declared", name, kind, durable)

    def enable_confirmations(self):
        try:
            self._channel.confirm_delivery()
        except (pika.exceptions.AMQPError, AttributeError) as e:
            raise MessageMiddlewareCapabilityError(
                "Channel could not be put into confirm mode"
            ) from e
        self._confirming = True
        self._next_delivery_tag = 1

    def publish(self, exchange, message: OutboundMessage) -> DeferredConfirmation:
        """
        Submit a message and hand back its confirmation.

        pika's blocking adapter processes Basic.Ack / Basic.Nack inside
        basic_publish, so the returned handle is already resolved.
        """
        if not self._confirming:
            raise MessageMiddlewareCapabilityError(
                "Publisher confirms must be enabled before publishing"
            )

        with self._send_lock:
            confirmation = DeferredConfirmation(self._next_delivery_tag)
            try:
                self._channel.basic_publish(
                    exchange=exchange,
                    routing_key=message.routing_key,
                    body=message.body,
                    properties=message.properties(),
                    mandatory=False,
                )
            except pika.exceptions.NackError:
                outcome = ConfirmationOutcome.NACK
            except pika.exceptions.AMQPError as e:
                raise MessageMiddlewarePublishError(
                    f"Error publishing to exchange '{exchange}' with key '{message.routing_key}'"
                ) from e
            else:
                outcome = ConfirmationOutcome.ACK
            self._next_delivery_tag += 1

        confirmation.resolve(outcome)
        return confirmation

    def close(self):
        channel, self._channel = self._channel, None
        connection, self._connection = self._connection, None
        self._confirming = False
        try:
            if channel is not None and channel.is_open:
                channel.close()
        except pika.exceptions.AMQPError as e:
            logger.error(f"Error closing channel: {e}")
            raise MessageMiddlewareCloseError("Error closing channel") from e
        finally:
            if connection is not None and connection.is_open:
                try:
                    connection.close()
                except pika.exceptions.AMQPError as e:
                    logger.error(f"Error closing connection: {e}")
                    raise MessageMiddlewareCloseError("Error closing connection") from e


def mask_uri(uri: str) -> str:
    """Hide the password of an AMQP URI before it reaches a log line."""
    parts = urlsplit(uri)
    if parts.password is None:
        return uri
    location = parts.netloc.rpartition("@")[2]
    netloc = f"{parts.username}:***@{location}"
    return urlunsplit(parts._replace(netloc=netloc))
