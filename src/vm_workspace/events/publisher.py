"""RabbitMQ publishers for workspace status and audit events."""
from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional

import pika
from pika.adapters.blocking_connection import BlockingChannel

from ..config import AppConfig

LOGGER = logging.getLogger(__name__)

STATUS_UPDATED = "workspace.status.updated"
PROVISIONING_FAILED = "workspace.provisioning_failed"
DESTROY_FAILED = "workspace.destroy_failed"
AUDIT_ROUTING_KEY = "audit.workspace.event"


class RabbitMQPublisher:
    """Publish JSON messages to the workspace events exchange over a short-lived connection."""

    def __init__(self, config: AppConfig) -> None:
        self._exchange = config.rabbitmq.exchange
        self._app_id = config.service_name
        self._parameters = pika.URLParameters(config.rabbitmq.url)

    @contextmanager
    def _open_channel(self) -> Iterator[BlockingChannel]:
        connection = pika.BlockingConnection(self._parameters)
        try:
            yield connection.channel()
        finally:
            if connection.is_open:
                connection.close()

    def publish(
        self,
        routing_key: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, Any]] = None,
    ) -> None:
        properties = pika.BasicProperties(
            content_type="application/json",
            delivery_mode=pika.DeliveryMode.Persistent,
            message_id=uuid.uuid4().hex,
            timestamp=int(time.time()),
            app_id=self._app_id,
            headers=dict(headers or {}),
        )
        try:
            with self._open_channel() as channel:
                channel.basic_publish(
                    exchange=self._exchange,
                    routing_key=routing_key,
                    body=json.dumps(payload, sort_keys=True).encode("utf-8"),
                    properties=properties,
                )
        except pika.exceptions.AMQPError:
            LOGGER.exception(
                "Failed to publish workspace event",
                extra={"routing_key": routing_key, "message_id": properties.message_id},
            )
            raise
        LOGGER.debug(
            "Published workspace event",
            extra={"routing_key": routing_key, "message_id": properties.message_id},
        )


class AuditEventPublisher:
    """Send one audit record per lifecycle action. Delivery failures are logged, never raised."""

    def __init__(
        self,
        publisher: RabbitMQPublisher,
        service_name: str,
        routing_key: str = AUDIT_ROUTING_KEY,
    ) -> None:
        self._publisher = publisher
        self._service_name = service_name
        self._routing_key = routing_key

    def publish(
        self,
        workspace: str,
        action: str,
        outcome: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": self._service_name,
            "workspace": workspace,
            "action": action,
            "outcome": outcome,
            "details": {key: value for key, value in (details or {}).items() if value is not None},
        }
        try:
            self._publisher.publish(self._routing_key, record, headers={"x-audit-outcome": outcome})
        except Exception:
            LOGGER.warning(
                "Audit record not delivered",
                exc_info=True,
                extra={"workspace": workspace, "action": action, "outcome": outcome},
            )


__all__ = [
    "AUDIT_ROUTING_KEY",
    "DESTROY_FAILED",
    "PROVISIONING_FAILED",
    "STATUS_UPDATED",
    "AuditEventPublisher",
    "RabbitMQPublisher",
]
