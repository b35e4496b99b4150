from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from toolgate.logging import get_logger
from toolgate.storage.errors import ConstraintViolation, StoreUnavailable
from toolgate.storage.models import (
    TOOL_UPDATE_FIELDS,
    ToolDefinition,
    UserToolPreference,
)

# Python field -> telemetry.tool_registry column
_TOOL_COLUMNS = {
    "name": "tool_name",
    "description": "description",
    "is_enabled": "is_enabled",
    "requires_auth": "requires_auth",
    "rate_limit_per_minute": "rate_limit_per_minute",
    "rate_limit_per_day": "rate_limit_per_day",
    "allowed_roles": "allowed_roles",
}


class PostgresStore:
    """Postgres-backed policy store for tool definitions and user overrides."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(2, int(timeout_seconds)),
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
            open=True,
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable(
                "timed out waiting for a database connection",
                {"timeout_seconds": self.timeout_seconds},
            ) from exc
        except errors.IntegrityError:
            raise
        except psycopg.Error as exc:
            raise StoreUnavailable(
                f"database error: {type(exc).__name__}",
                {"error": str(exc)},
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the ``telemetry`` tool tables if they are missing."""

        with self._connect() as conn:
            conn.execute("CREATE SCHEMA IF NOT EXISTS telemetry")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS telemetry.tool_registry (
                    tool_id UUID PRIMARY KEY,
                    tool_name TEXT NOT NULL UNIQUE,
                    description TEXT NOT NULL DEFAULT '',
                    is_enabled BOOLEAN NOT NULL DEFAULT true,
                    requires_auth BOOLEAN NOT NULL DEFAULT false,
                    rate_limit_per_minute INTEGER NOT NULL DEFAULT 60 CHECK (rate_limit_per_minute >= 0),
                    rate_limit_per_day INTEGER NOT NULL DEFAULT 1000 CHECK (rate_limit_per_day >= 0),
                    allowed_roles JSONB NOT NULL DEFAULT '["user"]'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS telemetry.user_tool_prefs (
                    user_id TEXT NOT NULL,
                    tool_name TEXT NOT NULL,
                    is_enabled BOOLEAN NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (user_id, tool_name)
                )
                """
            )

    @staticmethod
    def _tool_from_row(row: Dict[str, Any]) -> ToolDefinition:
        roles = row.get("allowed_roles") or []
        if isinstance(roles, str):
            roles = json.loads(roles)
        return ToolDefinition(
            id=str(row["tool_id"]),
            name=row["tool_name"],
            description=row.get("description") or "",
            is_enabled=bool(row.get("is_enabled", True)),
            requires_auth=bool(row.get("requires_auth", False)),
            rate_limit_per_minute=int(row.get("rate_limit_per_minute") or 0),
            rate_limit_per_day=int(row.get("rate_limit_per_day") or 0),
            allowed_roles=tuple(roles),
        )

    # tool registry
    def list_tools(self) -> List[ToolDefinition]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT tool_id, tool_name, description, is_enabled,
                       requires_auth, rate_limit_per_minute, rate_limit_per_day, allowed_roles
                FROM telemetry.tool_registry
                """
            ).fetchall()
        return [self._tool_from_row(row) for row in rows]

    def get_tool_by_name(self, name: str) -> Optional[ToolDefinition]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM telemetry.tool_registry WHERE tool_name = %s", (name,)
            ).fetchone()
        if not row:
            return None
        return self._tool_from_row(row)

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO telemetry.tool_registry (
                        tool_id, tool_name, description, is_enabled,
                        requires_auth, rate_limit_per_minute, rate_limit_per_day, allowed_roles
                    ) VALUES (%s::uuid, %s, %s, %s, %s, %s, %s, %s::jsonb)
                    """,
                    (
                        tool_id,
                        name,
                        description,
                        is_enabled,
                        requires_auth,
                        rate_limit_per_minute,
                        rate_limit_per_day,
                        json.dumps(list(allowed_roles)),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("tool name already exists", {"field": "tool_name"})
        except errors.CheckViolation as exc:
            raise ConstraintViolation("rate limits must be non-negative", {"error": str(exc)})
        return ToolDefinition(
            id=tool_id,
            name=name,
            description=description,
            is_enabled=is_enabled,
            requires_auth=requires_auth,
            rate_limit_per_minute=rate_limit_per_minute,
            rate_limit_per_day=rate_limit_per_day,
            allowed_roles=tuple(allowed_roles),
        )

    def update_tool(self, tool_id: str, fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - set(TOOL_UPDATE_FIELDS)
        if unknown:
            raise ValueError(f"unknown tool fields: {', '.join(sorted(unknown))}")
        if not fields:
            return False
        try:
            uuid.UUID(str(tool_id))
        except ValueError:
            # No row can match an id that is not a UUID
            return False
        assignments = []
        params: list[Any] = []
        for field_name in TOOL_UPDATE_FIELDS:
            if field_name not in fields:
                continue
            value = fields[field_name]
            if field_name == "allowed_roles":
                assignments.append(f"{_TOOL_COLUMNS[field_name]} = %s::jsonb")
                params.append(json.dumps(list(value)))
            else:
                assignments.append(f"{_TOOL_COLUMNS[field_name]} = %s")
                params.append(value)
        assignments.append("updated_at = now()")
        params.append(tool_id)
        query = "UPDATE telemetry.tool_registry SET {} WHERE tool_id = %s::uuid".format(
            ", ".join(assignments)
        )
        try:
            with self._connect() as conn:
                cur = conn.execute(query, params)
                updated = cur.rowcount
        except errors.UniqueViolation:
            raise ConstraintViolation("tool name already exists", {"field": "tool_name"})
        except errors.CheckViolation as exc:
            raise ConstraintViolation("rate limits must be non-negative", {"error": str(exc)})
        return updated > 0

    # user tool preferences
    def get_tool_preference(self, user_id: str, tool_name: str) -> Optional[bool]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT is_enabled FROM telemetry.user_tool_prefs
                WHERE user_id = %s AND tool_name = %s
                """,
                (user_id, tool_name),
            ).fetchone()
        if not row:
            return None
        return bool(row["is_enabled"])

    def list_tool_preferences(self, user_id: str) -> Dict[str, bool]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, is_enabled FROM telemetry.user_tool_prefs WHERE user_id = %s",
                (user_id,),
            ).fetchall()
        return {row["tool_name"]: bool(row["is_enabled"]) for row in rows}

    def upsert_tool_preference(
        self, user_id: str, tool_name: str, is_enabled: bool
    ) -> UserToolPreference:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO telemetry.user_tool_prefs (user_id, tool_name, is_enabled)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id, tool_name)
                DO UPDATE SET is_enabled = EXCLUDED.is_enabled, updated_at = now()
                RETURNING user_id, tool_name, is_enabled, updated_at
                """,
                (user_id, tool_name, is_enabled),
            ).fetchone()
        return UserToolPreference(
            user_id=row["user_id"],
            tool_name=row["tool_name"],
            is_enabled=bool(row["is_enabled"]),
            updated_at=row["updated_at"],
        )

    def delete_tool_preferences(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM telemetry.user_tool_prefs WHERE user_id = %s", (user_id,)
            )
            return cur.rowcount

    def close(self) -> None:
        self.pool.close()
        self.logger.info("postgres_store_closed")
