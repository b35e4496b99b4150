"""Tool access control: cached tool policy, per-user overrides, roles and rate limits.

``ToolRegistry.can_use_with_reason()`` is the hot path. It serves tool
definitions from an in-memory snapshot that is reloaded wholesale from the
policy store once it is older than ``cache_ttl_seconds``. A failed reload keeps
the last good snapshot, so a store outage never changes policy decisions.
"""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Dict, Iterable, List, Optional, Sequence

from toolgate.logging import get_logger
from toolgate.service.errors import ValidationError
from toolgate.service.usage import DAY, MINUTE, PERIODS, RateLimitStatus, UsageCounters
from toolgate.storage.errors import ConstraintViolation, StoreUnavailable
from toolgate.storage.models import ToolDefinition

if TYPE_CHECKING:
    from toolgate.storage.memory import MemoryStore
    from toolgate.storage.postgres import PostgresStore

logger = get_logger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 60.0
DEFAULT_RATE_LIMIT_PER_MINUTE = 60
DEFAULT_RATE_LIMIT_PER_DAY = 1000


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    reason: str
    # Set when the denial came from a rate limit
    rate_limit: Optional[RateLimitStatus] = None


ACCESS_GRANTED = AccessDecision(allowed=True, reason="Access granted")


class ToolRegistry:
    """Decides whether a user may invoke a tool and tracks their usage."""

    def __init__(
        self,
        store: "PostgresStore | MemoryStore",
        *,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        counters: Optional[UsageCounters] = None,
        default_roles: Sequence[str] = ("user",),
        monotonic: Callable[[], float] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self.counters = counters or UsageCounters(clock=clock)
        self.default_roles = tuple(default_roles)
        self._monotonic = monotonic or time.monotonic
        self._tools: Dict[str, ToolDefinition] = {}
        self._cache_loaded_at: Optional[float] = None
        self._refresh_attempts = 0
        # Guards the snapshot swap only; store I/O happens outside it
        self._cache_lock = threading.Lock()
        # Serializes reloads so concurrent stale readers share one round-trip
        self._refresh_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------

    def is_cache_stale(self) -> bool:
        loaded_at = self._cache_loaded_at
        if loaded_at is None:
            return True
        return (self._monotonic() - loaded_at) > self.cache_ttl_seconds

    def refresh_cache(self) -> bool:
        """Reload every tool definition from the store.

        Returns False when the store could not be read; the previous snapshot
        stays in place.
        """
        with self._refresh_lock:
            return self._reload()

    def _reload(self) -> bool:
        self._refresh_attempts += 1
        try:
            tools = self.store.list_tools()
        except StoreUnavailable as exc:
            logger.warning(
                "tool_cache_refresh_failed",
                error=str(exc),
                cached_tools=len(self._tools),
            )
            return False
        except Exception as exc:
            logger.error(
                "tool_cache_refresh_failed",
                error=str(exc),
                error_type=type(exc).__name__,
                cached_tools=len(self._tools),
            )
            return False

        snapshot = {tool.name: tool for tool in tools}
        with self._cache_lock:
            self._tools = snapshot
            self._cache_loaded_at = self._monotonic()
        logger.debug("tool_cache_refreshed", tools=len(snapshot))
        return True

    def _ensure_fresh(self) -> None:
        if not self.is_cache_stale():
            return
        attempts_seen = self._refresh_attempts
        with self._refresh_lock:
            # Another thread reloaded (or tried to) while we waited
            if self._refresh_attempts != attempts_seen or not self.is_cache_stale():
                return
            self._reload()

    def get_tool(self, tool_name: str) -> Optional[ToolDefinition]:
        self._ensure_fresh()
        with self._cache_lock:
            return self._tools.get(tool_name)

    def list_tools(self) -> List[ToolDefinition]:
        self._ensure_fresh()
        with self._cache_lock:
            tools = list(self._tools.values())
        return sorted(tools, key=lambda tool: tool.name)

    # ------------------------------------------------------------------
    # Permission resolution
    # ------------------------------------------------------------------

    def _get_user_preference(self, user_id: str, tool_name: str) -> Optional[bool]:
        try:
            return self.store.get_tool_preference(user_id, tool_name)
        except Exception as exc:
            logger.warning(
                "tool_preference_lookup_failed",
                user_id=user_id,
                tool=tool_name,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return None

    def can_use_with_reason(
        self,
        tool_name: str,
        user_id: str,
        roles: Optional[Iterable[str]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> AccessDecision:
        """Evaluate registry, global flag, preference, role, then both rate limits.

        The first failing check decides. A user preference can only disable a
        globally enabled tool; it is not consulted for disabled tools.
        """
        if roles is None:
            roles = self.default_roles
        elif isinstance(roles, str):
            # A single role name, not an iterable of characters
            roles = (roles,)
        user_roles = set(roles)
        decision = self._resolve(tool_name, user_id, user_roles, now)
        if not decision.allowed:
            logger.info(
                "tool_access_denied",
                tool=tool_name,
                user_id=user_id,
                reason=decision.reason,
            )
        return decision

    def _resolve(
        self,
        tool_name: str,
        user_id: str,
        user_roles: set[str],
        now: Optional[datetime],
    ) -> AccessDecision:
        tool = self.get_tool(tool_name)
        if tool is None:
            return AccessDecision(False, "Tool not found in registry")

        if not tool.is_enabled:
            return AccessDecision(False, "Tool is disabled globally")

        preference = self._get_user_preference(user_id, tool_name)
        if preference is not None and not preference:
            return AccessDecision(False, "Tool is disabled by user preference")

        if not user_roles.intersection(tool.allowed_roles):
            return AccessDecision(False, "User does not have required role")

        when = now if now is not None else self.counters.now()
        for period in (MINUTE, DAY):
            status = self.counters.check(
                user_id, tool_name, period, tool.limit_for(period), now=when
            )
            if not status.allowed:
                return AccessDecision(False, status.reason, rate_limit=status)

        return ACCESS_GRANTED

    def can_use(
        self,
        tool_name: str,
        user_id: str,
        roles: Optional[Iterable[str]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> bool:
        return self.can_use_with_reason(tool_name, user_id, roles, now=now).allowed

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------

    def check_limit(
        self,
        user_id: str,
        tool_name: str,
        period: str,
        *,
        now: Optional[datetime] = None,
    ) -> RateLimitStatus:
        if period not in PERIODS:
            raise ValueError(f"unknown rate limit period: {period}")
        tool = self.get_tool(tool_name)
        if tool is None:
            return RateLimitStatus(allowed=False, reason="Tool not found", period=period)
        return self.counters.check(
            user_id, tool_name, period, tool.limit_for(period), now=now
        )

    def record_usage(
        self, user_id: str, tool_name: str, *, now: Optional[datetime] = None
    ) -> None:
        """Count one executed call. Not gated; callers check first."""
        self.counters.record(user_id, tool_name, now=now)

    # ------------------------------------------------------------------
    # Administrative mutations
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_limit(field_name: str, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(
                f"{field_name} must be a non-negative integer",
                detail={"field": field_name, "value": value},
            )

    @staticmethod
    def _validate_roles(roles: Iterable[str]) -> List[str]:
        if isinstance(roles, str):
            raise ValidationError(
                "allowed_roles must be a list of role names",
                detail={"field": "allowed_roles"},
            )
        normalized = list(roles)
        if not all(isinstance(role, str) and role.strip() for role in normalized):
            raise ValidationError(
                "allowed_roles must contain non-empty role names",
                detail={"field": "allowed_roles"},
            )
        return normalized

    @staticmethod
    def _validate_name(name: str) -> None:
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("tool name is required", detail={"field": "name"})

    def register_tool(
        self,
        name: str,
        description: str = "",
        *,
        is_enabled: bool = True,
        requires_auth: bool = False,
        rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        rate_limit_per_day: int = DEFAULT_RATE_LIMIT_PER_DAY,
        allowed_roles: Optional[Iterable[str]] = None,
    ) -> str:
        """Insert a new tool definition and reload the cache.

        Returns the generated tool id. Store failures propagate.
        """
        self._validate_name(name)
        self._validate_limit("rate_limit_per_minute", rate_limit_per_minute)
        self._validate_limit("rate_limit_per_day", rate_limit_per_day)
        roles = self._validate_roles(
            self.default_roles if allowed_roles is None else allowed_roles
        )

        tool_id = str(uuid.uuid4())
        try:
            self.store.create_tool(
                tool_id,
                name,
                description,
                is_enabled=is_enabled,
                requires_auth=requires_auth,
                rate_limit_per_minute=rate_limit_per_minute,
                rate_limit_per_day=rate_limit_per_day,
                allowed_roles=roles,
            )
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error("tool_register_failed", tool=name, error=str(exc))
            raise

        logger.info("tool_registered", tool=name, tool_id=tool_id)
        self.refresh_cache()
        return tool_id

    def update_tool(
        self,
        tool_id: str,
        *,
        name: Optional[str] = None,
        description: Optional[str] = None,
        is_enabled: Optional[bool] = None,
        requires_auth: Optional[bool] = None,
        rate_limit_per_minute: Optional[int] = None,
        rate_limit_per_day: Optional[int] = None,
        allowed_roles: Optional[Iterable[str]] = None,
    ) -> bool:
        """Apply the provided fields to a tool and reload the cache.

        Returns True when a row changed. With no fields set nothing is written
        and False is returned.
        """
        fields: Dict[str, object] = {}
        if name is not None:
            self._validate_name(name)
            fields["name"] = name
        if description is not None:
            fields["description"] = description
        if is_enabled is not None:
            fields["is_enabled"] = is_enabled
        if requires_auth is not None:
            fields["requires_auth"] = requires_auth
        if rate_limit_per_minute is not None:
            self._validate_limit("rate_limit_per_minute", rate_limit_per_minute)
            fields["rate_limit_per_minute"] = rate_limit_per_minute
        if rate_limit_per_day is not None:
            self._validate_limit("rate_limit_per_day", rate_limit_per_day)
            fields["rate_limit_per_day"] = rate_limit_per_day
        if allowed_roles is not None:
            fields["allowed_roles"] = self._validate_roles(allowed_roles)

        if not fields:
            return False

        try:
            updated = self.store.update_tool(tool_id, fields)
        except (ConstraintViolation, StoreUnavailable) as exc:
            logger.error("tool_update_failed", tool_id=tool_id, error=str(exc))
            raise

        logger.info(
            "tool_updated", tool_id=tool_id, fields=sorted(fields), updated=updated
        )
        self.refresh_cache()
        return updated
