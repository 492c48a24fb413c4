"""Workspace orchestration driven by lifecycle events."""
from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from ..config import AppConfig
from ..errors import WorkspaceError
from ..events.models import EventType, WorkspaceEvent, WorkspaceIdentity, WorkspaceTransition
from ..events.publisher import (
    DESTROY_FAILED,
    PROVISIONING_FAILED,
    STATUS_UPDATED,
    AuditEventPublisher,
    RabbitMQPublisher,
)
from ..services.state_manager import WorkspaceLifecycleStatus, WorkspaceStateManager
from .backends import KubeVirtReadinessProbe, PulumiResourceBackend, ReadinessProbe, ResourceBackend
from .credentials import GeneratedCredentialProvider, ReusableCredentialProvider
from .reconciler import ReconcileResult, WorkspaceReconciler
from .resources import SecretResourceManager, VMResourceManager

LOGGER = logging.getLogger(__name__)

ACTIONS = {
    WorkspaceTransition.START: "START_WORKSPACE",
    WorkspaceTransition.STOP: "STOP_WORKSPACE",
}


def build_reconciler(
    config: AppConfig,
    state_manager: WorkspaceStateManager,
    backend: Optional[ResourceBackend] = None,
    probe: Optional[ReadinessProbe] = None,
) -> WorkspaceReconciler:
    """Wire the reconciler with the Pulumi backend and KubeVirt probe unless others are given."""

    if backend is None:
        backend = PulumiResourceBackend(config)
    if probe is None:
        probe = KubeVirtReadinessProbe(config.kubernetes)
    namespace = config.kubernetes.namespace
    credentials = ReusableCredentialProvider(GeneratedCredentialProvider(config.agent), state_manager)
    return WorkspaceReconciler(
        state_manager=state_manager,
        credentials=credentials,
        secrets=SecretResourceManager(backend, namespace),
        vms=VMResourceManager(
            backend,
            probe,
            namespace,
            config.vm,
            config.agent.app,
            managed_by=config.service_name,
        ),
        agent_config=config.agent,
    )


class WorkspaceOrchestrator:
    """Primary entry point for orchestrating workspace lifecycles."""

    def __init__(
        self,
        config: AppConfig,
        reconciler: WorkspaceReconciler,
        event_publisher: RabbitMQPublisher,
        audit_publisher: AuditEventPublisher,
    ) -> None:
        self._config = config
        self._reconciler = reconciler
        self._event_publisher = event_publisher
        self._audit_publisher = audit_publisher
        self._shutdown = threading.Event()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def handle_event(self, event: WorkspaceEvent) -> Optional[ReconcileResult]:
        """Run one reconciliation pass for the workspace named in ``event``."""

        LOGGER.info(
            "Handling workspace event",
            extra={"event_type": event.type.value, "workspace": event.identity.name},
        )
        if event.type not in (EventType.WORKSPACE_START_REQUESTED, EventType.WORKSPACE_STOP_REQUESTED):
            LOGGER.warning("Received unsupported event", extra={"type": event.type})
            return None
        return self.reconcile(event.identity, event.parameters)

    def reconcile(
        self, identity: WorkspaceIdentity, parameters: Optional[Dict[str, Any]] = None
    ) -> Optional[ReconcileResult]:
        action = ACTIONS[identity.transition]
        try:
            result = self._reconciler.reconcile(identity, parameters, cancel=self._shutdown)
        except WorkspaceError as exc:
            LOGGER.exception(
                "Workspace reconciliation failed",
                extra={"workspace": identity.name, "step": exc.step, "error": exc.__class__.__name__},
            )
            self._handle_operation_failure(identity, action, exc)
            return None
        except Exception as exc:
            LOGGER.exception("Unexpected reconciliation failure", extra={"workspace": identity.name})
            self._handle_operation_failure(identity, action, exc)
            return None
        self._publish_success(identity, action, result)
        return result

    def shutdown(self) -> None:
        """Cancel in-flight readiness waits."""

        self._shutdown.set()

    # ------------------------------------------------------------------
    # Event publishing
    # ------------------------------------------------------------------
    def _publish_success(self, identity: WorkspaceIdentity, action: str, result: ReconcileResult) -> None:
        payload: Dict[str, Any] = {
            "workspace": identity.name,
            "transition": identity.transition.value,
            "state": result.state.value,
            "changed": result.changed,
        }
        if result.sizing is not None:
            payload["parameters"] = result.sizing.as_dict()
        if identity.is_start:
            payload["apps"] = [self._config.agent.app.as_metadata()]
        try:
            self._event_publisher.publish(STATUS_UPDATED, payload)
        except Exception:
            LOGGER.exception("Failed to publish workspace status event", extra={"workspace": identity.name})
        self._audit_publisher.publish(
            identity.name, action, "SUCCESS", {"state": result.state.value, "changed": result.changed}
        )

    def _handle_operation_failure(self, identity: WorkspaceIdentity, action: str, error: Exception) -> None:
        if identity.is_start:
            routing_key = PROVISIONING_FAILED
            status = WorkspaceLifecycleStatus.PROVISIONING_FAILED
        else:
            routing_key = DESTROY_FAILED
            status = WorkspaceLifecycleStatus.DESTROY_FAILED
        step = getattr(error, "step", None)
        failure_payload: Dict[str, Any] = {
            "workspace": identity.name,
            "action": action,
            "status": status.value,
            "error": {
                "message": str(error),
                "type": error.__class__.__name__,
            },
        }
        if step:
            failure_payload["step"] = step
        try:
            self._event_publisher.publish(routing_key, failure_payload)
        except Exception:
            LOGGER.exception(
                "Failed to publish workspace failure event",
                extra={"routing_key": routing_key, "workspace": identity.name},
            )
        self._audit_publisher.publish(
            identity.name, action, "FAILURE", {"status": status.value, "step": step, "error": str(error)}
        )


__all__ = ["WorkspaceOrchestrator", "build_reconciler"]
