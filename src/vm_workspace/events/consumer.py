"""RabbitMQ consumer for workspace lifecycle events."""
from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import pika
from pika.adapters.blocking_connection import BlockingChannel

from ..config import AppConfig
from ..errors import ValidationError
from .models import EventType, WorkspaceEvent, WorkspaceIdentity, WorkspaceTransition

LOGGER = logging.getLogger(__name__)

_TRANSITIONS = {
    EventType.WORKSPACE_START_REQUESTED: WorkspaceTransition.START,
    EventType.WORKSPACE_STOP_REQUESTED: WorkspaceTransition.STOP,
}


def parse_event(body: bytes, headers: Optional[dict] = None) -> WorkspaceEvent:
    """Build a :class:`WorkspaceEvent` from a raw message."""

    payload = json.loads(body.decode("utf-8")) if body else {}
    if not isinstance(payload, dict):
        raise ValueError("Event payload must be a JSON object")
    event_type = payload.get("type") or (headers or {}).get("x-event-type")
    if not event_type:
        raise ValueError("Received message without event type")
    try:
        event_enum = EventType(event_type)
    except ValueError as exc:
        raise ValueError(f"Unsupported event type: {event_type}") from exc
    name = payload.get("workspace") or payload.get("workspace_name")
    if not name:
        raise ValueError("Event payload missing workspace")
    expected = _TRANSITIONS[event_enum]
    transition = payload.get("transition", expected.value)
    if transition != expected.value:
        raise ValueError(f"Transition {transition!r} contradicts event type {event_enum.value}")
    try:
        identity = WorkspaceIdentity(name=str(name), transition=expected)
    except ValidationError as exc:
        raise ValueError(str(exc)) from exc
    parameters = payload.get("parameters") or {}
    if not isinstance(parameters, dict):
        raise ValueError("Event parameters must be a JSON object")
    event = WorkspaceEvent(
        type=event_enum,
        identity=identity,
        parameters=parameters,
        message_id=(headers or {}).get("x-message-id"),
    )
    LOGGER.debug(
        "Parsed workspace event",
        extra={"event_type": event.type.value, "workspace": identity.name},
    )
    return event


RECONNECT_DELAY_SECONDS = 5.0
INACTIVITY_TIMEOUT_SECONDS = 1.0


class EventConsumer:
    """Consume lifecycle events on a daemon thread, one message at a time.

    A message is acknowledged once the handler returns. Messages that cannot
    be parsed are rejected without requeue, as are messages whose handler
    raised.
    """

    def __init__(self, config: AppConfig, handler: Callable[[WorkspaceEvent], object]) -> None:
        self._config = config
        self._handler = handler
        self._connection: Optional[pika.BlockingConnection] = None
        self._channel: Optional[BlockingChannel] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            LOGGER.debug("Event consumer already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="workspace-event-consumer", daemon=True)
        self._thread.start()
        LOGGER.info("Event consumer started", extra={"queue": self._config.rabbitmq.queue})

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        connection = self._connection
        if connection is not None and connection.is_open:
            connection.add_callback_threadsafe(connection.close)
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        LOGGER.info("Event consumer stopped")

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._connect()
                self._consume()
            except pika.exceptions.AMQPConnectionError:
                if self._stop_event.is_set():
                    break
                LOGGER.error(
                    "Lost connection to RabbitMQ; reconnecting",
                    exc_info=True,
                    extra={"delay": RECONNECT_DELAY_SECONDS},
                )
            except Exception:
                LOGGER.exception("Event consumer crashed; restarting")
            finally:
                self._cleanup()
            self._stop_event.wait(RECONNECT_DELAY_SECONDS)

    def _connect(self) -> None:
        rabbitmq = self._config.rabbitmq
        self._connection = pika.BlockingConnection(pika.URLParameters(rabbitmq.url))
        channel = self._connection.channel()
        channel.basic_qos(prefetch_count=rabbitmq.prefetch_count)
        channel.exchange_declare(exchange=rabbitmq.exchange, exchange_type="topic", durable=True)
        channel.queue_declare(queue=rabbitmq.queue, durable=True)
        for routing_key in self._config.event_bindings:
            channel.queue_bind(queue=rabbitmq.queue, exchange=rabbitmq.exchange, routing_key=routing_key)
        self._channel = channel
        LOGGER.info(
            "Subscribed to workspace events",
            extra={"queue": rabbitmq.queue, "exchange": rabbitmq.exchange, "bindings": self._config.event_bindings},
        )

    def _consume(self) -> None:
        assert self._channel is not None
        stream = self._channel.consume(self._config.rabbitmq.queue, inactivity_timeout=INACTIVITY_TIMEOUT_SECONDS)
        for method, properties, body in stream:
            if self._stop_event.is_set():
                break
            if method is None:
                continue
            self._on_message(method, properties, body)

    def _on_message(self, method, properties, body: bytes) -> None:
        assert self._channel is not None
        headers = properties.headers if properties is not None else None
        try:
            event = parse_event(body, headers)
        except ValueError as exc:
            LOGGER.warning(
                "Rejecting malformed workspace event",
                extra={"routing_key": method.routing_key, "error": str(exc)},
            )
            self._channel.basic_reject(method.delivery_tag, requeue=False)
            return
        try:
            self._handler(event)
        except Exception:
            LOGGER.exception("Workspace event handler failed", extra={"workspace": event.identity.name})
            self._channel.basic_nack(method.delivery_tag, requeue=False)
            return
        self._channel.basic_ack(method.delivery_tag)

    def _cleanup(self) -> None:
        for resource in (self._channel, self._connection):
            if resource is not None and resource.is_open:
                resource.close()
        self._channel = None
        self._connection = None


__all__ = ["EventConsumer", "parse_event"]
