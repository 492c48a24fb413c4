"""Managers for the two external resources of a workspace.

The secret holds the rendered cloud-init document, the VirtualMachine
mounts it through a ``cloudInitNoCloud`` volume. Both managers only talk
to a :class:`ResourceBackend`; readiness is read through a separate probe.
"""
from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..config import AgentAppConfig, VMConfig
from ..errors import (
    ProvisioningTimeoutError,
    ReconciliationCancelledError,
    StaleSecretHandleError,
    ValidationError,
)
from ..events.models import WorkspaceIdentity
from .backends import ReadinessProbe, ResourceBackend
from .cloud_init import CloudInitDocument
from .parameters import SizingParameters

LOGGER = logging.getLogger(__name__)

SECRET_KIND = "Secret"
VM_KIND = "VirtualMachine"
VM_API_VERSION = "kubevirt.io/v1"
USERDATA_KEY = "userdata"
ANNOTATION_PREFIX = "vm-workspace.io"


def secret_name_for(identity: WorkspaceIdentity) -> str:
    return f"{identity.name}-userdata"


@dataclass(frozen=True)
class SecretHandle:
    """Reference to the user-data secret committed by one reconciliation pass."""

    name: str
    namespace: str
    pass_id: str
    changed: bool = False


@dataclass(frozen=True)
class VMHandle:
    name: str
    namespace: str
    secret_name: str
    ready: bool
    changed: bool = False


class SecretResourceManager:
    """Create, update and remove ``<workspace>-userdata`` secrets."""

    def __init__(self, backend: ResourceBackend, namespace: str) -> None:
        self._backend = backend
        self._namespace = namespace

    def build_manifest(self, identity: WorkspaceIdentity, document: CloudInitDocument) -> Dict[str, Any]:
        return {
            "apiVersion": "v1",
            "kind": SECRET_KIND,
            "type": "Opaque",
            "metadata": {
                "name": secret_name_for(identity),
                "namespace": self._namespace,
                "labels": {"app": identity.name, "app.kubernetes.io/component": "userdata"},
            },
            "stringData": {USERDATA_KEY: document.serialize()},
        }

    def reconcile(
        self, identity: WorkspaceIdentity, document: CloudInitDocument, pass_id: str
    ) -> Optional[SecretHandle]:
        """Converge the secret for ``identity``; no write at all when stopping."""

        if not identity.is_start:
            LOGGER.debug("Stop transition; secret not targeted for creation", extra={"workspace": identity.name})
            return None
        manifest = self.build_manifest(identity, document)
        result = self._backend.apply(identity.name, manifest)
        name = manifest["metadata"]["name"]
        LOGGER.info(
            "User-data secret reconciled",
            extra={"workspace": identity.name, "secret": name, "changed": result.changed},
        )
        return SecretHandle(name=name, namespace=self._namespace, pass_id=pass_id, changed=result.changed)

    def remove(self, identity: WorkspaceIdentity) -> bool:
        name = secret_name_for(identity)
        removed = self._backend.delete(identity.name, SECRET_KIND, self._namespace, name)
        LOGGER.info("User-data secret removal finished", extra={"secret": name, "removed": removed})
        return removed


def resource_requests(sizing: SizingParameters, swap_cpu_memory: bool = False) -> Dict[str, Any]:
    """CPU and memory requests for the VM domain.

    ``swap_cpu_memory`` reproduces the legacy template, which read the CPU
    request from the memory parameter and the memory request from the CPU one.
    """

    cpu, memory = sizing.cpu_cores, sizing.memory_gb
    if swap_cpu_memory:
        cpu, memory = memory, cpu
    return {"cpu": cpu, "memory": f"{memory}G"}


class VMResourceManager:
    """Create and remove workspace VirtualMachines and wait for readiness."""

    def __init__(
        self,
        backend: ResourceBackend,
        probe: ReadinessProbe,
        namespace: str,
        vm_config: VMConfig,
        app_config: AgentAppConfig,
        managed_by: str = "vm-workspace-service",
    ) -> None:
        self._backend = backend
        self._probe = probe
        self._namespace = namespace
        self._vm_config = vm_config
        self._app_config = app_config
        self._managed_by = managed_by

    def build_manifest(
        self, identity: WorkspaceIdentity, sizing: SizingParameters, secret_handle: SecretHandle
    ) -> Dict[str, Any]:
        requests = resource_requests(sizing, self._vm_config.swap_cpu_memory_requests)
        return {
            "apiVersion": VM_API_VERSION,
            "kind": VM_KIND,
            "metadata": {
                "name": identity.name,
                "namespace": self._namespace,
                "labels": {"app": identity.name, "app.kubernetes.io/managed-by": self._managed_by},
                "annotations": {
                    f"{ANNOTATION_PREFIX}/home-disk-size": f"{sizing.home_disk_gb}Gi",
                    f"{ANNOTATION_PREFIX}/apps": json.dumps([self._app_config.as_metadata()], sort_keys=True),
                },
            },
            "spec": {
                "runStrategy": self._vm_config.run_strategy,
                "template": {
                    "metadata": {"labels": {"kubevirt.io/domain": identity.name, "app": identity.name}},
                    "spec": {
                        "domain": {
                            "cpu": {"cores": requests["cpu"]},
                            "resources": {"requests": requests},
                            "devices": {
                                "disks": [
                                    {"name": "containerdisk", "disk": {"bus": "virtio"}},
                                    {"name": "cloudinitdisk", "disk": {"bus": "virtio"}},
                                ],
                                "interfaces": [{"name": "default", "masquerade": {}}],
                            },
                        },
                        "networks": [{"name": "default", "pod": {}}],
                        "volumes": [
                            {
                                "name": "containerdisk",
                                "containerDisk": {"image": self._vm_config.base_image},
                            },
                            {
                                "name": "cloudinitdisk",
                                "cloudInitNoCloud": {"secretRef": {"name": secret_handle.name}},
                            },
                        ],
                    },
                },
            },
        }

    def reconcile(
        self,
        identity: WorkspaceIdentity,
        sizing: Optional[SizingParameters],
        secret_handle: Optional[SecretHandle],
        cancel: Optional[threading.Event] = None,
    ) -> Optional[VMHandle]:
        """Converge the VM for ``identity`` and block until it reports ready.

        On a stop transition the VM is removed instead and ``None`` returned.
        """

        if not identity.is_start:
            self.remove(identity)
            return None
        if sizing is None:
            raise ValidationError(f"Starting VM {identity.name!r} requires sizing parameters")
        if secret_handle is None:
            raise StaleSecretHandleError(f"Starting VM {identity.name!r} requires the secret of the current pass")
        expected = secret_name_for(identity)
        if secret_handle.name != expected or secret_handle.namespace != self._namespace:
            raise StaleSecretHandleError(
                f"VM {identity.name!r} must reference secret {self._namespace}/{expected},"
                f" got {secret_handle.namespace}/{secret_handle.name}"
            )
        manifest = self.build_manifest(identity, sizing, secret_handle)
        result = self._backend.apply(identity.name, manifest)
        LOGGER.info(
            "VirtualMachine submitted",
            extra={"workspace": identity.name, "secret": secret_handle.name, "changed": result.changed},
        )
        self.wait_until_ready(identity, cancel)
        return VMHandle(
            name=identity.name,
            namespace=self._namespace,
            secret_name=secret_handle.name,
            ready=True,
            changed=result.changed,
        )

    def remove(self, identity: WorkspaceIdentity) -> bool:
        removed = self._backend.delete(identity.name, VM_KIND, self._namespace, identity.name)
        LOGGER.info("VirtualMachine removal finished", extra={"vm": identity.name, "removed": removed})
        return removed

    def exists(self, identity: WorkspaceIdentity) -> bool:
        return self._backend.exists(identity.name, VM_KIND, self._namespace, identity.name)

    def is_ready(self, identity: WorkspaceIdentity) -> bool:
        return self._probe.is_ready(self._namespace, identity.name)

    def wait_until_ready(self, identity: WorkspaceIdentity, cancel: Optional[threading.Event] = None) -> None:
        """Poll readiness until true, the timeout elapses, or ``cancel`` is set."""

        cancel = cancel or threading.Event()
        timeout = self._vm_config.readiness_timeout_seconds

        def _check() -> bool:
            if cancel.is_set():
                raise ReconciliationCancelledError(f"Readiness wait for {identity.name!r} cancelled")
            ready = self.is_ready(identity)
            LOGGER.debug("Polled VirtualMachine readiness", extra={"vm": identity.name, "ready": ready})
            return ready

        def _sleep(seconds: float) -> None:
            if cancel.wait(seconds):
                raise ReconciliationCancelledError(f"Readiness wait for {identity.name!r} cancelled")

        retrying = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(self._vm_config.readiness_poll_interval_seconds),
            retry=retry_if_result(lambda ready: not ready),
            sleep=_sleep,
        )
        try:
            retrying(_check)
        except RetryError as exc:
            raise ProvisioningTimeoutError(
                f"VirtualMachine {identity.name!r} not ready after {timeout:g}s"
            ) from exc
        LOGGER.info("VirtualMachine ready", extra={"vm": identity.name})


__all__ = [
    "SecretHandle",
    "SecretResourceManager",
    "VMHandle",
    "VMResourceManager",
    "resource_requests",
    "secret_name_for",
]
