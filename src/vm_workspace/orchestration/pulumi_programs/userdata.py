"""Pulumi helper for the secret carrying a workspace's cloud-init user data."""
from __future__ import annotations

from typing import Any, Dict

import pulumi
from pulumi_kubernetes.core.v1 import Secret


def build_userdata_secret(manifest: Dict[str, Any]) -> Secret:
    """Create the Kubernetes secret described by ``manifest``."""

    metadata = manifest["metadata"]
    return Secret(
        resource_name=f"{metadata['name']}-secret",
        metadata=metadata,
        type=manifest.get("type", "Opaque"),
        string_data=manifest["stringData"],
        opts=pulumi.ResourceOptions(additional_secret_outputs=["data", "stringData"]),
    )


__all__ = ["build_userdata_secret"]
