"""Tests for bootstrap credential issuing and reuse."""

from __future__ import annotations

from urllib.parse import unquote

from vm_workspace.config import AgentConfig
from vm_workspace.events.models import WorkspaceIdentity, WorkspaceTransition
from vm_workspace.orchestration.credentials import (
    BootstrapCredential,
    GeneratedCredentialProvider,
    ReusableCredentialProvider,
)
from vm_workspace.services.state_manager import WorkspaceStateManager

WS1 = WorkspaceIdentity("ws1", WorkspaceTransition.START)


def test_generated_credential_embeds_access_url() -> None:
    provider = GeneratedCredentialProvider(AgentConfig(access_url="https://coder.example.test/", arch="arm64"))
    credential = provider.issue(WS1)

    script = unquote(credential.init_script)
    assert script.startswith("#!/usr/bin/env sh\n")
    assert 'BINARY_URL="https://coder.example.test/bin/coder-linux-arm64"' in script
    assert "\n" not in credential.init_script
    assert len(credential.agent_token) >= 32


def test_generated_tokens_are_unique() -> None:
    provider = GeneratedCredentialProvider(AgentConfig())
    assert provider.issue(WS1).agent_token != provider.issue(WS1).agent_token


def test_repr_masks_the_token() -> None:
    credential = BootstrapCredential(init_script="abc", agent_token="super-secret-token")
    assert "super-secret-token" not in repr(credential)
    assert "super-secret-token" not in str(credential)


def test_credential_is_reused_within_a_generation(state_manager: WorkspaceStateManager) -> None:
    provider = ReusableCredentialProvider(GeneratedCredentialProvider(AgentConfig()), state_manager)

    first = provider.issue(WS1)
    assert provider.issue(WS1) == first
    assert state_manager.get_credential("ws1", 0) == first.to_dict()


def test_release_forgets_the_pending_credential(state_manager: WorkspaceStateManager) -> None:
    provider = ReusableCredentialProvider(GeneratedCredentialProvider(AgentConfig()), state_manager)

    first = provider.issue(WS1)
    provider.release(WS1)

    assert state_manager.get_credential("ws1", 0) is None
    assert provider.issue(WS1).agent_token != first.agent_token


def test_new_generation_gets_a_new_credential(state_manager: WorkspaceStateManager) -> None:
    provider = ReusableCredentialProvider(GeneratedCredentialProvider(AgentConfig()), state_manager)

    first = provider.issue(WS1)
    state_manager.advance_generation("ws1")
    second = provider.issue(WS1)

    assert second.agent_token != first.agent_token
    assert state_manager.get_credential("ws1", 1) == second.to_dict()


def test_credentials_are_scoped_per_workspace(state_manager: WorkspaceStateManager) -> None:
    provider = ReusableCredentialProvider(GeneratedCredentialProvider(AgentConfig()), state_manager)
    other = WorkspaceIdentity("ws2", WorkspaceTransition.START)
    assert provider.issue(WS1).agent_token != provider.issue(other).agent_token
