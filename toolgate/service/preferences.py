from __future__ import annotations

from typing import TYPE_CHECKING, List

from toolgate.logging import get_logger
from toolgate.service.errors import NotFoundError, ValidationError
from toolgate.storage.models import EffectiveToolState, UserToolPreference

if TYPE_CHECKING:
    from toolgate.storage.memory import MemoryStore
    from toolgate.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _require(value: str, field_name: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required", detail={"field": field_name})


class ToolPreferenceService:
    """Per-user tool overrides as managed from the settings screen.

    Reads go straight to the store; the registry cache is not involved. Unlike
    ``ToolRegistry``, an override of True here reports a globally disabled tool
    as enabled for that user.
    """

    def __init__(self, store: "PostgresStore | MemoryStore") -> None:
        self.store = store

    def list_user_tools(self, user_id: str) -> List[EffectiveToolState]:
        _require(user_id, "user_id")
        tools = self.store.list_tools()
        overrides = self.store.list_tool_preferences(user_id)
        states = []
        for tool in sorted(tools, key=lambda t: t.name):
            has_override = tool.name in overrides
            states.append(
                EffectiveToolState(
                    id=tool.id,
                    name=tool.name,
                    description=tool.description,
                    is_enabled=overrides[tool.name] if has_override else tool.is_enabled,
                    requires_auth=tool.requires_auth,
                    rate_limit_per_minute=tool.rate_limit_per_minute,
                    rate_limit_per_day=tool.rate_limit_per_day,
                    allowed_roles=list(tool.allowed_roles),
                    user_has_override=has_override,
                    global_enabled=tool.is_enabled,
                )
            )
        return states

    def set_preference(
        self, user_id: str, tool_name: str, is_enabled: bool
    ) -> UserToolPreference:
        _require(user_id, "user_id")
        _require(tool_name, "tool_name")
        if not isinstance(is_enabled, bool):
            raise ValidationError(
                "is_enabled must be a boolean", detail={"field": "is_enabled"}
            )
        if self.store.get_tool_by_name(tool_name) is None:
            raise NotFoundError(
                "Tool not found in registry", detail={"tool_name": tool_name}
            )
        pref = self.store.upsert_tool_preference(user_id, tool_name, is_enabled)
        logger.info(
            "tool_preference_set",
            user_id=user_id,
            tool=tool_name,
            is_enabled=is_enabled,
        )
        return pref

    def reset_preferences(self, user_id: str) -> int:
        """Remove every override for the user; returns how many were removed."""
        _require(user_id, "user_id")
        removed = self.store.delete_tool_preferences(user_id)
        logger.info("tool_preferences_reset", user_id=user_id, removed=removed)
        return removed

    def is_tool_enabled(self, user_id: str, tool_name: str) -> bool:
        try:
            override = self.store.get_tool_preference(user_id, tool_name)
            if override is not None:
                return override
            tool = self.store.get_tool_by_name(tool_name)
        except Exception as exc:
            logger.error(
                "tool_enabled_check_failed",
                user_id=user_id,
                tool=tool_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return False
        return tool.is_enabled if tool is not None else False
