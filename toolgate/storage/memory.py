from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from toolgate.logging import get_logger
from toolgate.storage.errors import ConstraintViolation
from toolgate.storage.models import (
    TOOL_UPDATE_FIELDS,
    ToolDefinition,
    UserToolPreference,
)


class MemoryStore:
    """In-memory policy store with the same surface as ``PostgresStore``.

    Used for tests and single-process development setups. Data lives only as
    long as the process does.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        # tool_id -> definition
        self.tools: Dict[str, ToolDefinition] = {}
        # (user_id, tool_name) -> preference
        self.tool_prefs: Dict[tuple[str, str], UserToolPreference] = {}
        self._data_lock = threading.RLock()

    # tool registry
    def list_tools(self) -> List[ToolDefinition]:
        with self._data_lock:
            return list(self.tools.values())

    def get_tool_by_name(self, name: str) -> Optional[ToolDefinition]:
        with self._data_lock:
            for tool in self.tools.values():
                if tool.name == name:
                    return tool
        return None

    def create_tool(
        self,
        tool_id: str,
        name: str,
        description: str = "",
        *,
        is_enabled: bool = True,
        requires_auth: bool = False,
        rate_limit_per_minute: int = 60,
        rate_limit_per_day: int = 1000,
        allowed_roles: Sequence[str] = ("user",),
    ) -> ToolDefinition:
        with self._data_lock:
            if tool_id in self.tools:
                raise ConstraintViolation("tool id already exists", {"tool_id": tool_id})
            if self.get_tool_by_name(name) is not None:
                raise ConstraintViolation("tool name already exists", {"field": "tool_name"})
            tool = ToolDefinition(
                id=tool_id,
                name=name,
                description=description,
                is_enabled=is_enabled,
                requires_auth=requires_auth,
                rate_limit_per_minute=rate_limit_per_minute,
                rate_limit_per_day=rate_limit_per_day,
                allowed_roles=tuple(allowed_roles),
            )
            self.tools[tool_id] = tool
            return tool

    def update_tool(self, tool_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - set(TOOL_UPDATE_FIELDS)
        if unknown:
            raise ValueError(f"unknown tool fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False
        with self._data_lock:
            existing = self.tools.get(tool_id)
            if not existing:
                return False
            new_name = fields.get("name")
            if new_name is not None and new_name != existing.name:
                if self.get_tool_by_name(new_name) is not None:
                    raise ConstraintViolation("tool name already exists", {"field": "tool_name"})
            changes = dict(fields)
            if "allowed_roles" in changes:
                changes["allowed_roles"] = tuple(changes["allowed_roles"])
            self.tools[tool_id] = replace(existing, **changes)
            return True

    # user tool preferences
    def get_tool_preference(self, user_id: str, tool_name: str) -> Optional[bool]:
        with self._data_lock:
            pref = self.tool_prefs.get((user_id, tool_name))
        return pref.is_enabled if pref else None

    def list_tool_preferences(self, user_id: str) -> Dict[str, bool]:
        with self._data_lock:
            return {
                tool_name: pref.is_enabled
                for (owner, tool_name), pref in self.tool_prefs.items()
                if owner == user_id
            }

    def upsert_tool_preference(
        self, user_id: str, tool_name: str, is_enabled: bool
    ) -> UserToolPreference:
        with self._data_lock:
            pref = UserToolPreference(
                user_id=user_id,
                tool_name=tool_name,
                is_enabled=is_enabled,
                updated_at=datetime.utcnow(),
            )
            self.tool_prefs[(user_id, tool_name)] = pref
            return pref

    def delete_tool_preferences(self, user_id: str) -> int:
        with self._data_lock:
            doomed = [key for key in self.tool_prefs if key[0] == user_id]
            for key in doomed:
                del self.tool_prefs[key]
            return len(doomed)

    def close(self) -> None:
        """Nothing to release; present for parity with ``PostgresStore``."""
