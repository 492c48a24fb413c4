"""Domain models for workspace lifecycle events."""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from ..errors import ValidationError

# Leaves room for the "-userdata" suffix of the cloud-init secret.
_NAME_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]{0,52}[a-z0-9])?$")


class WorkspaceTransition(str, Enum):
    """Desired lifecycle direction for a workspace."""

    START = "start"
    STOP = "stop"


class EventType(str, Enum):
    """Event types consumed from the message bus."""

    WORKSPACE_START_REQUESTED = "workspace.start_requested"
    WORKSPACE_STOP_REQUESTED = "workspace.stop_requested"


@dataclass(frozen=True)
class WorkspaceIdentity:
    """Which workspace a pass acts on and in which direction."""

    name: str
    transition: WorkspaceTransition

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not _NAME_PATTERN.match(self.name):
            raise ValidationError(
                f"Workspace name {self.name!r} must be a lowercase DNS label of at most 54 characters"
            )
        if not isinstance(self.transition, WorkspaceTransition):
            try:
                object.__setattr__(self, "transition", WorkspaceTransition(self.transition))
            except ValueError as exc:
                raise ValidationError(f"Unsupported transition: {self.transition!r}") from exc

    @property
    def is_start(self) -> bool:
        return self.transition == WorkspaceTransition.START


@dataclass
class WorkspaceEvent:
    """Event payload as received from the message bus."""

    type: EventType
    identity: WorkspaceIdentity
    parameters: Dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None


__all__ = ["EventType", "WorkspaceEvent", "WorkspaceIdentity", "WorkspaceTransition"]
