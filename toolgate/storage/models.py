from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


@dataclass(frozen=True)
class ToolDefinition:
    id: str
    name: str
    description: str = ""
    is_enabled: bool = True
    requires_auth: bool = False
    rate_limit_per_minute: int = 60
    rate_limit_per_day: int = 1000
    allowed_roles: tuple[str, ...] = ("user",)

    def limit_for(self, period: str) -> int:
        if period == "minute":
            return self.rate_limit_per_minute
        if period == "day":
            return self.rate_limit_per_day
        raise ValueError(f"unknown rate limit period: {period}")


@dataclass
class UserToolPreference:
    user_id: str
    tool_name: str
    is_enabled: bool
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class EffectiveToolState:
    """A tool definition as seen by one user, with their override applied."""

    id: str
    name: str
    description: str
    is_enabled: bool
    requires_auth: bool
    rate_limit_per_minute: int
    rate_limit_per_day: int
    allowed_roles: List[str]
    user_has_override: bool = False
    global_enabled: Optional[bool] = None


# Columns accepted by ``update_tool``; values are store-native Python types.
TOOL_UPDATE_FIELDS = (
    "name",
    "description",
    "is_enabled",
    "requires_auth",
    "rate_limit_per_minute",
    "rate_limit_per_day",
    "allowed_roles",
)
