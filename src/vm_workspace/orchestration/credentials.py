"""Bootstrap credentials for the in-VM workspace agent."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from typing import Protocol
from urllib.parse import quote

from ..config import AgentConfig
from ..events.models import WorkspaceIdentity
from ..services.state_manager import WorkspaceStateManager

LOGGER = logging.getLogger(__name__)

AGENT_INIT_SCRIPT_TEMPLATE = """#!/usr/bin/env sh
set -eu
BINARY_DIR=$(mktemp -d -t coder.XXXXXX)
BINARY_URL="{access_url}/bin/coder-linux-{arch}"
cd "$BINARY_DIR"
until curl -fsSL --compressed "$BINARY_URL" -o coder; do
  echo "Failed to download agent binary, retrying in 30s"
  sleep 30
done
chmod +x coder
export CODER_AGENT_AUTH="token"
export CODER_AGENT_URL="{access_url}/"
exec ./coder agent
"""


@dataclass(frozen=True)
class BootstrapCredential:
    """Single-use agent bootstrap material. ``init_script`` is URL-encoded."""

    init_script: str
    agent_token: str = field(repr=False)

    def __repr__(self) -> str:
        return f"BootstrapCredential(init_script=<{len(self.init_script)} chars>, agent_token=***)"

    def to_dict(self) -> dict:
        return {"init_script": self.init_script, "agent_token": self.agent_token}

    @classmethod
    def from_dict(cls, data: dict) -> "BootstrapCredential":
        return cls(init_script=data["init_script"], agent_token=data["agent_token"])


class CredentialProvider(Protocol):
    """Issue the bootstrap material for one workspace.

    ``init_script`` must come back URL-encoded (see :func:`encode_init_script`);
    the renderer embeds it as-is and rejects text that is not URL-safe.
    """

    def issue(self, identity: WorkspaceIdentity) -> BootstrapCredential:
        ...


def encode_init_script(script: str) -> str:
    """URL-encode an init script so it can travel in a single cloud-init field."""

    return quote(script, safe="")


class GeneratedCredentialProvider:
    """Mint a fresh agent token and build the matching init script."""

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    def issue(self, identity: WorkspaceIdentity) -> BootstrapCredential:
        script = AGENT_INIT_SCRIPT_TEMPLATE.format(
            access_url=self._config.access_url.rstrip("/"),
            arch=self._config.arch,
        )
        LOGGER.info("Issued agent bootstrap credential", extra={"workspace": identity.name})
        return BootstrapCredential(
            init_script=encode_init_script(script),
            agent_token=secrets.token_urlsafe(self._config.token_bytes),
        )


class ReusableCredentialProvider:
    """Hand out at most one credential per workspace generation.

    A retried pass of the same generation gets the credential that was
    issued first, so no additional valid token exists for one VM
    generation. ``release`` forgets the credential when the workspace is
    stopped, just before the generation advances.
    """

    def __init__(self, inner: CredentialProvider, state_manager: WorkspaceStateManager) -> None:
        self._inner = inner
        self._state_manager = state_manager

    def issue(self, identity: WorkspaceIdentity) -> BootstrapCredential:
        generation = self._state_manager.get_generation(identity.name)
        stored = self._state_manager.get_credential(identity.name, generation)
        if stored:
            LOGGER.info(
                "Reusing pending bootstrap credential",
                extra={"workspace": identity.name, "generation": generation},
            )
            return BootstrapCredential.from_dict(stored)
        credential = self._inner.issue(identity)
        self._state_manager.set_credential(identity.name, generation, credential.to_dict())
        return credential

    def release(self, identity: WorkspaceIdentity) -> None:
        generation = self._state_manager.get_generation(identity.name)
        self._state_manager.delete_credential(identity.name, generation)


__all__ = [
    "BootstrapCredential",
    "CredentialProvider",
    "GeneratedCredentialProvider",
    "ReusableCredentialProvider",
    "encode_init_script",
]
