"""Tests for the RabbitMQ status and audit publishers."""

from __future__ import annotations

import json

import pika
import pytest

from conftest import RecordingPublisher, make_config
from vm_workspace.events import publisher as publisher_module
from vm_workspace.events.publisher import AuditEventPublisher, RabbitMQPublisher


class FakeChannel:
    def __init__(self, error=None) -> None:
        self.published = []
        self.error = error

    def basic_publish(self, exchange, routing_key, body, properties):
        if self.error:
            raise self.error
        self.published.append((exchange, routing_key, json.loads(body), properties))


class FakeConnection:
    channel_factory = FakeChannel
    instances = []

    def __init__(self, parameters) -> None:
        self.is_open = True
        self._channel = FakeConnection.channel_factory()
        FakeConnection.instances.append(self)

    def channel(self):
        return self._channel

    def close(self) -> None:
        self.is_open = False


@pytest.fixture
def connections(monkeypatch):
    FakeConnection.instances = []
    FakeConnection.channel_factory = FakeChannel
    monkeypatch.setattr(publisher_module.pika, "BlockingConnection", FakeConnection)
    return FakeConnection


def test_publish_sends_persistent_json_to_the_exchange(connections) -> None:
    RabbitMQPublisher(make_config()).publish("workspace.status.updated", {"workspace": "ws1"}, {"x-trace": "t"})

    [connection] = connections.instances
    [(exchange, routing_key, payload, properties)] = connection.channel().published
    assert exchange == "workspace.events"
    assert routing_key == "workspace.status.updated"
    assert payload == {"workspace": "ws1"}
    assert properties.content_type == "application/json"
    assert properties.delivery_mode == 2
    assert properties.headers == {"x-trace": "t"}
    assert properties.app_id == "vm-workspace-service"
    assert properties.message_id
    assert connection.is_open is False


def test_publish_failure_is_raised_and_connection_closed(connections) -> None:
    connections.channel_factory = lambda: FakeChannel(error=pika.exceptions.AMQPChannelError("channel closed"))

    with pytest.raises(pika.exceptions.AMQPError):
        RabbitMQPublisher(make_config()).publish("workspace.status.updated", {})
    assert connections.instances[0].is_open is False


def test_audit_record_drops_empty_details() -> None:
    recorder = RecordingPublisher()

    AuditEventPublisher(recorder, "vm-workspace-service").publish(
        "ws1", "START_WORKSPACE", "FAILURE", {"step": None, "error": "boom"}
    )

    [(routing_key, record)] = recorder.messages
    assert routing_key == "audit.workspace.event"
    assert record["service"] == "vm-workspace-service"
    assert record["workspace"] == "ws1"
    assert record["details"] == {"error": "boom"}


def test_audit_delivery_failure_is_swallowed() -> None:
    class Broken(RecordingPublisher):
        def publish(self, routing_key, payload, headers=None):
            raise ConnectionError("broker down")

    AuditEventPublisher(Broken(), "svc").publish("ws1", "STOP_WORKSPACE", "SUCCESS")
