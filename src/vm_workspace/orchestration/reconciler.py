"""Drive one workspace from its recorded state to the requested transition."""
from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Optional

from ..config import AgentConfig
from ..errors import (
    ProvisioningTimeoutError,
    ReconciliationCancelledError,
    ValidationError,
    WorkspaceError,
)
from ..events.models import WorkspaceIdentity
from ..services.state_manager import WorkspaceLifecycleStatus, WorkspaceStateManager
from .cloud_init import CloudInitDocument, load_template, render
from .credentials import BootstrapCredential, ReusableCredentialProvider
from .parameters import SizingParameters, validate_parameters
from .resources import SecretHandle, SecretResourceManager, VMHandle, VMResourceManager

LOGGER = logging.getLogger(__name__)


class WorkspaceState(str, Enum):
    ABSENT = "absent"
    PRESENT = "present"


class ReconcileStep(str, Enum):
    """Steps of a pass, reported on failures through ``WorkspaceError.step``."""

    VALIDATE = "validate"
    CREDENTIAL = "credential"
    RENDER = "render"
    SECRET = "secret"
    VM = "vm"
    REMOVE_VM = "remove_vm"
    REMOVE_SECRET = "remove_secret"


@dataclass(frozen=True)
class ReconcileResult:
    state: WorkspaceState
    changed: bool
    vm: Optional[VMHandle] = None
    sizing: Optional[SizingParameters] = None


class WorkspaceReconciler:
    """Two-state reconciler for a single workspace.

    A ``start`` pass runs validate, credential, render, secret and VM in
    that order; the VM always references the secret handle returned by the
    same pass. A ``stop`` pass removes the VM before the secret. Failures
    abort the pass without rolling back what was already applied; the next
    pass converges from there. A start on a workspace whose VM already
    exists only waits for readiness. The bootstrap credential lives for the
    whole generation and is released on stop.
    """

    def __init__(
        self,
        state_manager: WorkspaceStateManager,
        credentials: ReusableCredentialProvider,
        secrets: SecretResourceManager,
        vms: VMResourceManager,
        agent_config: AgentConfig,
        template: Optional[str] = None,
    ) -> None:
        self._state_manager = state_manager
        self._credentials = credentials
        self._secrets = secrets
        self._vms = vms
        self._agent_config = agent_config
        self._template = template if template is not None else load_template()

    def reconcile(
        self,
        identity: WorkspaceIdentity,
        raw_parameters: Optional[Mapping[str, Any]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> ReconcileResult:
        if identity.is_start:
            return self._start(identity, raw_parameters or {}, cancel)
        return self._stop(identity)

    # ------------------------------------------------------------------
    # start
    # ------------------------------------------------------------------
    def _start(
        self,
        identity: WorkspaceIdentity,
        raw_parameters: Mapping[str, Any],
        cancel: Optional[threading.Event],
    ) -> ReconcileResult:
        pass_id = uuid.uuid4().hex
        LOGGER.info("Starting workspace reconciliation", extra={"workspace": identity.name, "pass_id": pass_id})
        sizing = self._run_step(ReconcileStep.VALIDATE, identity, lambda: self._validate(identity, raw_parameters))

        if self._state_manager.get_status(identity.name) == WorkspaceLifecycleStatus.PRESENT:
            try:
                if self._run_step(ReconcileStep.VM, identity, lambda: self._vms.exists(identity)):
                    return self._await_present(identity, sizing, cancel)
            except Exception:
                self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.PROVISIONING_FAILED)
                raise

        self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.PROVISIONING)
        try:
            credential: BootstrapCredential = self._run_step(
                ReconcileStep.CREDENTIAL, identity, lambda: self._credentials.issue(identity)
            )
            document: CloudInitDocument = self._run_step(
                ReconcileStep.RENDER,
                identity,
                lambda: render(
                    self._template,
                    credential,
                    hostname=identity.name,
                    username=self._agent_config.username,
                ),
            )
            secret: SecretHandle = self._run_step(
                ReconcileStep.SECRET, identity, lambda: self._secrets.reconcile(identity, document, pass_id)
            )
            vm: VMHandle = self._run_step(
                ReconcileStep.VM, identity, lambda: self._vms.reconcile(identity, sizing, secret, cancel)
            )
        except (ProvisioningTimeoutError, ReconciliationCancelledError):
            # The VM was applied; only its readiness is outstanding.
            self._record_sizing(identity, sizing)
            self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.PROVISIONING_FAILED)
            raise
        except Exception:
            self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.PROVISIONING_FAILED)
            raise

        self._record_sizing(identity, sizing)
        self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.PRESENT)
        LOGGER.info(
            "Workspace present",
            extra={"workspace": identity.name, "pass_id": pass_id, "secret": secret.name},
        )
        return ReconcileResult(
            state=WorkspaceState.PRESENT,
            changed=secret.changed or vm.changed,
            vm=vm,
            sizing=sizing,
        )

    def _await_present(
        self, identity: WorkspaceIdentity, sizing: SizingParameters, cancel: Optional[threading.Event]
    ) -> ReconcileResult:
        """Converge a workspace whose VM already exists: no credential, no writes, only the readiness wait."""

        recorded = self._state_manager.get_sizing(identity.name)
        if recorded and recorded != sizing.as_dict():
            LOGGER.warning(
                "Sizing changed on a running workspace; it applies after the next stop/start",
                extra={"workspace": identity.name, "requested": sizing.as_dict(), "recorded": recorded},
            )
        self._run_step(ReconcileStep.VM, identity, lambda: self._vms.wait_until_ready(identity, cancel))
        LOGGER.info("Workspace already present; nothing to apply", extra={"workspace": identity.name})
        return ReconcileResult(state=WorkspaceState.PRESENT, changed=False, sizing=sizing)

    def _record_sizing(self, identity: WorkspaceIdentity, sizing: SizingParameters) -> None:
        if sizing.as_dict() != self._state_manager.get_sizing(identity.name):
            self._state_manager.set_sizing(identity.name, sizing.as_dict())

    def _validate(self, identity: WorkspaceIdentity, raw_parameters: Mapping[str, Any]) -> SizingParameters:
        sizing = validate_parameters(raw_parameters)
        recorded = self._state_manager.get_sizing(identity.name)
        if recorded and recorded.get("home_disk_gb") != sizing.home_disk_gb:
            raise ValidationError(
                f"Home disk of {identity.name!r} is fixed at {recorded.get('home_disk_gb')} GB;"
                f" got {sizing.home_disk_gb} GB"
            )
        return sizing

    # ------------------------------------------------------------------
    # stop
    # ------------------------------------------------------------------
    def _stop(self, identity: WorkspaceIdentity) -> ReconcileResult:
        LOGGER.info("Stopping workspace", extra={"workspace": identity.name})
        previous = self._state_manager.get_status(identity.name)
        if previous not in (None, WorkspaceLifecycleStatus.ABSENT):
            self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.STOPPING)
        try:
            vm_removed = self._run_step(ReconcileStep.REMOVE_VM, identity, lambda: self._vms.remove(identity))
            secret_removed = self._run_step(
                ReconcileStep.REMOVE_SECRET, identity, lambda: self._secrets.remove(identity)
            )
        except Exception:
            self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.DESTROY_FAILED)
            raise

        changed = vm_removed or secret_removed
        if changed or previous not in (None, WorkspaceLifecycleStatus.ABSENT):
            self._credentials.release(identity)
            self._state_manager.advance_generation(identity.name)
            self._state_manager.set_status(identity.name, WorkspaceLifecycleStatus.ABSENT)
        LOGGER.info("Workspace absent", extra={"workspace": identity.name, "changed": changed})
        return ReconcileResult(state=WorkspaceState.ABSENT, changed=changed)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _run_step(step: ReconcileStep, identity: WorkspaceIdentity, action):
        try:
            return action()
        except WorkspaceError as exc:
            exc.step = step.value
            LOGGER.error(
                "Reconciliation step failed",
                extra={"workspace": identity.name, "step": step.value, "error": exc.__class__.__name__},
            )
            raise


__all__ = ["ReconcileResult", "ReconcileStep", "WorkspaceReconciler", "WorkspaceState"]
