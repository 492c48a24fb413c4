"""Redis-backed workspace state management service."""
from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from redis import Redis

LOGGER = logging.getLogger(__name__)


class WorkspaceLifecycleStatus(str, Enum):
    """Recorded lifecycle status of a workspace."""

    ABSENT = "ABSENT"
    PROVISIONING = "PROVISIONING"
    PRESENT = "PRESENT"
    STOPPING = "STOPPING"
    PROVISIONING_FAILED = "PROVISIONING_FAILED"
    DESTROY_FAILED = "DESTROY_FAILED"


class WorkspaceStateManager:
    """Persist and retrieve workspace state using Redis."""

    STATUS_KEY_TEMPLATE = "workspace:{name}:status"
    HISTORY_KEY_TEMPLATE = "workspace:{name}:history"
    GENERATION_KEY_TEMPLATE = "workspace:{name}:generation"
    CREDENTIAL_KEY_TEMPLATE = "workspace:{name}:credential:{generation}"
    SIZING_KEY_TEMPLATE = "workspace:{name}:sizing"

    def __init__(self, redis_client: Redis) -> None:
        self._redis = redis_client

    @staticmethod
    def _status_key(name: str) -> str:
        return WorkspaceStateManager.STATUS_KEY_TEMPLATE.format(name=name)

    @staticmethod
    def _history_key(name: str) -> str:
        return WorkspaceStateManager.HISTORY_KEY_TEMPLATE.format(name=name)

    @staticmethod
    def _generation_key(name: str) -> str:
        return WorkspaceStateManager.GENERATION_KEY_TEMPLATE.format(name=name)

    @staticmethod
    def _credential_key(name: str, generation: int) -> str:
        return WorkspaceStateManager.CREDENTIAL_KEY_TEMPLATE.format(name=name, generation=generation)

    @staticmethod
    def _sizing_key(name: str) -> str:
        return WorkspaceStateManager.SIZING_KEY_TEMPLATE.format(name=name)

    def set_status(self, name: str, status: WorkspaceLifecycleStatus) -> None:
        """Persist the latest workspace status."""

        value = status.value
        LOGGER.debug("Setting workspace status", extra={"workspace": name, "status": value})
        self._redis.set(self._status_key(name), value)
        history_entry = json.dumps({"status": value, "timestamp": datetime.now(timezone.utc).isoformat()})
        self._redis.lpush(self._history_key(name), history_entry)

    def get_status(self, name: str) -> Optional[WorkspaceLifecycleStatus]:
        """Return the current status for the workspace, if any."""

        value = self._redis.get(self._status_key(name))
        LOGGER.debug("Fetched workspace status", extra={"workspace": name, "status": value})
        if value is None:
            return None
        try:
            return WorkspaceLifecycleStatus(value)
        except ValueError:
            LOGGER.warning("Unknown workspace status stored", extra={"workspace": name, "status": value})
            return None

    def get_history(self, name: str) -> List[Dict[str, Any]]:
        entries = []
        for raw in self._redis.lrange(self._history_key(name), 0, -1):
            try:
                entries.append(json.loads(raw))
            except json.JSONDecodeError:
                LOGGER.warning("Stored history entry is invalid JSON", extra={"workspace": name})
        return entries

    def get_generation(self, name: str) -> int:
        """Return the lifecycle generation; it advances every time the workspace is stopped."""

        raw = self._redis.get(self._generation_key(name))
        return int(raw) if raw is not None else 0

    def advance_generation(self, name: str) -> int:
        generation = int(self._redis.incr(self._generation_key(name)))
        LOGGER.debug("Advanced workspace generation", extra={"workspace": name, "generation": generation})
        return generation

    def set_credential(self, name: str, generation: int, credential: Dict[str, str]) -> None:
        # Deliberately not logged: the payload carries the agent token.
        self._redis.set(self._credential_key(name, generation), json.dumps(credential))

    def get_credential(self, name: str, generation: int) -> Optional[Dict[str, str]]:
        raw = self._redis.get(self._credential_key(name, generation))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning(
                "Stored credential payload is invalid JSON", extra={"workspace": name, "generation": generation}
            )
            return None

    def delete_credential(self, name: str, generation: int) -> None:
        LOGGER.debug("Deleting pending credential", extra={"workspace": name, "generation": generation})
        self._redis.delete(self._credential_key(name, generation))

    def set_sizing(self, name: str, sizing: Dict[str, int]) -> None:
        LOGGER.debug("Persisting workspace sizing", extra={"workspace": name, "sizing": sizing})
        self._redis.set(self._sizing_key(name), json.dumps(sizing))

    def get_sizing(self, name: str) -> Optional[Dict[str, int]]:
        raw = self._redis.get(self._sizing_key(name))
        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning("Stored sizing payload is invalid JSON", extra={"workspace": name})
            return None


__all__ = ["WorkspaceLifecycleStatus", "WorkspaceStateManager"]
