"""Tests for event handling and status publishing."""

from __future__ import annotations

import pytest

from conftest import RecordingAuditPublisher, RecordingPublisher
from vm_workspace.errors import ResourceOperationError
from vm_workspace.events.models import EventType, WorkspaceEvent, WorkspaceIdentity, WorkspaceTransition
from vm_workspace.orchestration.main import WorkspaceOrchestrator
from vm_workspace.orchestration.reconciler import WorkspaceState

PARAMS = {"cpu_cores": 4, "memory_gb": 2, "home_disk_gb": 10}


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def audit() -> RecordingAuditPublisher:
    return RecordingAuditPublisher()


@pytest.fixture
def orchestrator(app_config, reconciler, publisher, audit) -> WorkspaceOrchestrator:
    return WorkspaceOrchestrator(app_config, reconciler, publisher, audit)


def start_event(parameters=None) -> WorkspaceEvent:
    return WorkspaceEvent(
        type=EventType.WORKSPACE_START_REQUESTED,
        identity=WorkspaceIdentity("ws1", WorkspaceTransition.START),
        parameters=PARAMS if parameters is None else parameters,
    )


def stop_event() -> WorkspaceEvent:
    return WorkspaceEvent(
        type=EventType.WORKSPACE_STOP_REQUESTED,
        identity=WorkspaceIdentity("ws1", WorkspaceTransition.STOP),
    )


def test_successful_start_publishes_status_and_apps(orchestrator, publisher, audit, app_config) -> None:
    result = orchestrator.handle_event(start_event())

    assert result.state is WorkspaceState.PRESENT
    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.status.updated"
    assert payload == {
        "workspace": "ws1",
        "transition": "start",
        "state": "present",
        "changed": True,
        "parameters": PARAMS,
        "apps": [app_config.agent.app.as_metadata()],
    }
    assert audit.events == [
        {
            "workspace": "ws1",
            "action": "START_WORKSPACE",
            "outcome": "SUCCESS",
            "details": {"state": "present", "changed": True},
        }
    ]


def test_successful_stop_publishes_absent(orchestrator, publisher, audit) -> None:
    orchestrator.handle_event(start_event())
    publisher.messages.clear()

    orchestrator.handle_event(stop_event())

    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.status.updated"
    assert payload == {"workspace": "ws1", "transition": "stop", "state": "absent", "changed": True}
    assert audit.events[-1]["action"] == "STOP_WORKSPACE"


def test_validation_failure_publishes_provisioning_failed(orchestrator, publisher, audit, calls) -> None:
    assert orchestrator.handle_event(start_event({"home_disk_gb": 0})) is None

    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.provisioning_failed"
    assert payload["status"] == "PROVISIONING_FAILED"
    assert payload["step"] == "validate"
    assert payload["error"]["type"] == "ValidationError"
    assert audit.events[-1]["outcome"] == "FAILURE"
    assert audit.events[-1]["details"]["step"] == "validate"
    assert calls == []


def test_destroy_failure_publishes_destroy_failed(orchestrator, publisher, backend) -> None:
    orchestrator.handle_event(start_event())
    backend.fail("delete", "Secret", ResourceOperationError("delete rejected"))
    publisher.messages.clear()

    orchestrator.handle_event(stop_event())

    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.destroy_failed"
    assert payload["step"] == "remove_secret"
    assert payload["action"] == "STOP_WORKSPACE"


def test_unexpected_error_is_reported_without_step(orchestrator, publisher, backend) -> None:
    backend.fail("apply", "Secret", RuntimeError("boom"))

    assert orchestrator.handle_event(start_event()) is None

    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.provisioning_failed"
    assert "step" not in payload
    assert payload["error"] == {"message": "boom", "type": "RuntimeError"}


def test_shutdown_cancels_readiness_wait(orchestrator, publisher, probe) -> None:
    probe.never_ready = True
    orchestrator.shutdown()

    orchestrator.handle_event(start_event())

    [(routing_key, payload)] = publisher.messages
    assert routing_key == "workspace.provisioning_failed"
    assert payload["error"]["type"] == "ReconciliationCancelledError"
    assert payload["step"] == "vm"


def test_publisher_failure_does_not_propagate(app_config, reconciler, audit) -> None:
    class BrokenPublisher(RecordingPublisher):
        def publish(self, routing_key, payload, headers=None):
            raise ConnectionError("broker down")

    orchestrator = WorkspaceOrchestrator(app_config, reconciler, BrokenPublisher(), audit)

    assert orchestrator.handle_event(start_event()).state is WorkspaceState.PRESENT
    assert audit.events[-1]["outcome"] == "SUCCESS"
