"""Pulumi helper for KubeVirt VirtualMachine resources."""
from __future__ import annotations

from typing import Any, Dict

import pulumi
from pulumi_kubernetes.apiextensions import CustomResource


def build_virtual_machine(manifest: Dict[str, Any]) -> CustomResource:
    """Create the VirtualMachine custom resource described by ``manifest``."""

    metadata = manifest["metadata"]
    return CustomResource(
        resource_name=f"{metadata['name']}-vm",
        api_version=manifest["apiVersion"],
        kind=manifest["kind"],
        metadata=metadata,
        spec=manifest["spec"],
        opts=pulumi.ResourceOptions(delete_before_replace=True),
    )


__all__ = ["build_virtual_machine"]
