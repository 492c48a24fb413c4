"""Error taxonomy for workspace reconciliation."""
from __future__ import annotations

from typing import Optional


class WorkspaceError(Exception):
    """Base class for every failure surfaced by a reconciliation pass.

    ``step`` names the pass step that failed. The reconciler fills it in
    before re-raising, so a caller always learns where the pass stopped.
    """

    def __init__(self, message: str, *, step: Optional[str] = None) -> None:
        super().__init__(message)
        self.step = step


class ValidationError(WorkspaceError):
    """Sizing parameters or workspace identity are invalid."""


class RenderError(WorkspaceError):
    """The cloud-init document could not be produced."""


class TemplateSubstitutionError(RenderError):
    """Substituting the bootstrap credential into the template failed."""


class DocumentParseError(RenderError):
    """The rendered template is not a valid cloud-init document."""


class ResourceConflictError(WorkspaceError):
    """The external store rejected a create or update, e.g. a name collision."""


class ResourceOperationError(WorkspaceError):
    """Any other failure reported by the external store."""


class ProvisioningTimeoutError(WorkspaceError):
    """The VM did not report ready before the wait was exhausted."""


class ReconciliationCancelledError(WorkspaceError):
    """The caller cancelled the pass while it was waiting."""


class StaleSecretHandleError(WorkspaceError):
    """A VM was about to reference a secret other than the one of its pass."""


__all__ = [
    "WorkspaceError",
    "ValidationError",
    "RenderError",
    "TemplateSubstitutionError",
    "DocumentParseError",
    "ResourceConflictError",
    "ResourceOperationError",
    "ProvisioningTimeoutError",
    "ReconciliationCancelledError",
    "StaleSecretHandleError",
]
