"""FastAPI routes for the VM workspace service."""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status

from ..config import AppConfig
from ..services.state_manager import WorkspaceStateManager

router = APIRouter()


def get_state_manager(request: Request) -> WorkspaceStateManager:
    manager = getattr(request.app.state, "state_manager", None)
    if manager is None:
        raise RuntimeError("WorkspaceStateManager dependency not configured")
    return manager


def get_config(request: Request) -> AppConfig:
    settings = getattr(request.app.state, "settings", None)
    if settings is None:
        raise RuntimeError("Application settings not configured")
    return settings


@router.get("/workspaces/{name}/status")
def workspace_status(
    name: str,
    state_manager: WorkspaceStateManager = Depends(get_state_manager),
) -> dict:
    status_value = state_manager.get_status(name)
    if status_value is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    return {
        "status": status_value.value,
        "generation": state_manager.get_generation(name),
        "parameters": state_manager.get_sizing(name),
        "history": state_manager.get_history(name),
    }


@router.get("/workspaces/{name}/apps")
def workspace_apps(
    name: str,
    state_manager: WorkspaceStateManager = Depends(get_state_manager),
    settings: AppConfig = Depends(get_config),
) -> dict:
    if state_manager.get_status(name) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    return {"apps": [settings.agent.app.as_metadata()]}


__all__ = ["router"]
