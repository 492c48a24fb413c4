"""External stores behind the secret and VM managers."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from pulumi import automation as auto

from ..config import AppConfig, KubernetesConfig
from ..errors import ResourceConflictError, ResourceOperationError
from .pulumi_programs.userdata import build_userdata_secret
from .pulumi_programs.virtual_machine import build_virtual_machine

LOGGER = logging.getLogger(__name__)

KUBEVIRT_GROUP = "kubevirt.io"
KUBEVIRT_VERSION = "v1"
KUBEVIRT_VM_PLURAL = "virtualmachines"

_CONFLICT_MARKERS = ("AlreadyExists", "already exists", "409", "Conflict")


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of a create-or-update. ``changed`` is False when the store already matched."""

    changed: bool


class ResourceBackend(Protocol):
    """Create-or-update and delete for the resources owned by one workspace."""

    def apply(self, workspace: str, manifest: Dict[str, Any]) -> ApplyResult:
        ...

    def delete(self, workspace: str, kind: str, namespace: str, name: str) -> bool:
        ...

    def exists(self, workspace: str, kind: str, namespace: str, name: str) -> bool:
        ...


class ReadinessProbe(Protocol):
    def is_ready(self, namespace: str, name: str) -> bool:
        ...


ProgramBuilder = Callable[[Dict[str, Any]], Any]

PROGRAM_BUILDERS: Dict[str, ProgramBuilder] = {
    "Secret": build_userdata_secret,
    "VirtualMachine": build_virtual_machine,
}

STACK_SUFFIXES: Dict[str, str] = {
    "Secret": "userdata",
    "VirtualMachine": "vm",
}


def _translate_command_error(exc: auto.CommandError, action: str, kind: str, name: str) -> Exception:
    message = str(exc)
    if isinstance(exc, auto.ConcurrentUpdateError) or any(marker in message for marker in _CONFLICT_MARKERS):
        return ResourceConflictError(f"{action} of {kind} {name!r} was rejected: conflict")
    return ResourceOperationError(f"{action} of {kind} {name!r} failed")


class PulumiResourceBackend:
    """Apply manifests through one Pulumi stack per workspace resource."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    def apply(self, workspace: str, manifest: Dict[str, Any]) -> ApplyResult:
        kind = manifest["kind"]
        name = manifest["metadata"]["name"]
        stack_name = self._stack_name(kind, workspace)
        LOGGER.info("Applying resource stack", extra={"stack": stack_name, "kind": kind})
        try:
            stack = self._create_or_select_stack(stack_name, self._build_program(manifest))
            if self._config.pulumi.refresh_before_update:
                stack.refresh(on_output=lambda line: LOGGER.debug(line))
            result = stack.up(on_output=lambda line: LOGGER.info(line))
        except auto.CommandError as exc:
            LOGGER.exception("Pulumi stack update failed", extra={"stack": stack_name, "kind": kind})
            raise _translate_command_error(exc, "Apply", kind, name) from exc
        changes = result.summary.resource_changes or {}
        changed = any(count for operation, count in changes.items() if operation != "same")
        LOGGER.info("Pulumi stack applied", extra={"stack": stack_name, "changes": changes})
        return ApplyResult(changed=changed)

    def delete(self, workspace: str, kind: str, namespace: str, name: str) -> bool:
        stack_name = self._stack_name(kind, workspace)
        stack = self._select_stack(stack_name, kind, name)
        if stack is None:
            LOGGER.info("Stack not found; nothing to destroy", extra={"stack": stack_name})
            return False
        try:
            stack.destroy(on_output=lambda line: LOGGER.info(line))
            stack.workspace.remove_stack(stack_name)
        except auto.CommandError as exc:
            LOGGER.exception("Pulumi stack destroy failed", extra={"stack": stack_name, "kind": kind})
            raise _translate_command_error(exc, "Delete", kind, name) from exc
        LOGGER.info("Pulumi stack destroyed", extra={"stack": stack_name})
        return True

    def exists(self, workspace: str, kind: str, namespace: str, name: str) -> bool:
        return self._select_stack(self._stack_name(kind, workspace), kind, name) is not None

    def _build_program(self, manifest: Dict[str, Any]):
        builder = PROGRAM_BUILDERS[manifest["kind"]]

        def pulumi_program() -> None:
            builder(manifest)

        return pulumi_program

    def _create_or_select_stack(self, stack_name: str, program) -> auto.Stack:
        stack = auto.create_or_select_stack(
            stack_name=stack_name,
            project_name=self._config.pulumi.project_name,
            program=program,
        )
        stack.workspace.install_plugin("kubernetes", self._config.pulumi.kubernetes_plugin_version)
        if self._config.kubernetes.kubeconfig_context:
            stack.set_config(
                "kubernetes:context", auto.ConfigValue(value=self._config.kubernetes.kubeconfig_context)
            )
        return stack

    def _select_stack(self, stack_name: str, kind: str, name: str) -> Optional[auto.Stack]:
        try:
            return auto.select_stack(
                stack_name=stack_name,
                project_name=self._config.pulumi.project_name,
                program=lambda: None,
            )
        except auto.StackNotFoundError:
            return None
        except auto.CommandError as exc:
            LOGGER.exception("Pulumi stack lookup failed", extra={"stack": stack_name, "kind": kind})
            raise _translate_command_error(exc, "Lookup", kind, name) from exc

    def _stack_name(self, kind: str, workspace: str) -> str:
        base = f"{self._config.pulumi.stack_prefix}-{workspace}-{STACK_SUFFIXES[kind]}"
        if self._config.pulumi.organization:
            return f"{self._config.pulumi.organization}/{self._config.pulumi.project_name}/{base}"
        return base


class KubeVirtReadinessProbe:
    """Read ``status.ready`` of a KubeVirt VirtualMachine."""

    def __init__(self, config: KubernetesConfig, api: Optional[k8s_client.CustomObjectsApi] = None) -> None:
        self._config = config
        self._api = api

    def _custom_objects(self) -> k8s_client.CustomObjectsApi:
        if self._api is None:
            if self._config.in_cluster:
                k8s_config.load_incluster_config()
            else:
                k8s_config.load_kube_config(context=self._config.kubeconfig_context)
            self._api = k8s_client.CustomObjectsApi()
        return self._api

    def is_ready(self, namespace: str, name: str) -> bool:
        try:
            vm = self._custom_objects().get_namespaced_custom_object(
                group=KUBEVIRT_GROUP,
                version=KUBEVIRT_VERSION,
                namespace=namespace,
                plural=KUBEVIRT_VM_PLURAL,
                name=name,
            )
        except ApiException as exc:
            if exc.status == 404:
                LOGGER.debug("VirtualMachine not found yet", extra={"vm": name, "namespace": namespace})
                return False
            raise ResourceOperationError(
                f"Reading VirtualMachine {name!r} failed: {exc.status} {exc.reason}"
            ) from exc
        return bool((vm.get("status") or {}).get("ready", False))


__all__ = [
    "ApplyResult",
    "KubeVirtReadinessProbe",
    "PulumiResourceBackend",
    "ReadinessProbe",
    "ResourceBackend",
]
