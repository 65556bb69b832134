"""
Repository: persistence layer for the Flood Alert Worker.

Two narrow contracts backed by PostgreSQL through ``psycopg`` (v3, async):

    - ``UserDirectory``: reads every user eligible for evaluation.
    - ``DispatchLog``: append-only record of sent notifications, queried by
      (user_id, location_id) and time.

Key Design Decisions:
    - **Eligibility filter twice**: the SQL filters on notifications enabled,
      push token present and non-empty favourites; rows are validated again
      in Python so a malformed row is skipped instead of failing the sweep.
    - **Directory failure is fatal**: any error reading users is wrapped in
      ``UserDirectoryError`` and propagated. It is the only failure that
      aborts a sweep.
    - **Dispatch log errors propagate**: fail-open / swallow policy lives in
      ``DeduplicationStore``, not here.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime

import psycopg
from psycopg.rows import dict_row
from pydantic import ValidationError

from worker.alerts.models import DispatchRecord, User

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)


class UserDirectoryError(Exception):
    """Raised when the user directory cannot be read. Aborts the sweep."""

    pass


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class UserDirectory(ABC):
    """Source of users eligible for alert evaluation."""

    @abstractmethod
    async def fetch_eligible_users(self) -> list[User]:
        """Return users with notifications enabled, a push token and at
        least one favourite location.

        Raises
        ------
        UserDirectoryError
            If the directory is unreachable.
        """
        ...


class DispatchLog(ABC):
    """Keyed, time-queryable, append-only store of ``DispatchRecord``."""

    @abstractmethod
    async def latest_since(
        self, user_id: str, location_id: str, since: datetime
    ) -> DispatchRecord | None:
        """Most recent record for the pair with ``sent_at > since``, or None."""
        ...

    @abstractmethod
    async def append(self, record: DispatchRecord) -> None:
        """Persist ``record``."""
        ...


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

_FETCH_USERS_SQL = """\
SELECT
    id,
    enable_notifications,
    fcm_token,
    preferred_flow_unit,
    favorite_reach_ids,
    first_name
FROM users
WHERE enable_notifications = TRUE
  AND fcm_token IS NOT NULL
  AND fcm_token <> ''
  AND cardinality(favorite_reach_ids) > 0
ORDER BY id
"""

_LATEST_DISPATCH_SQL = """\
SELECT
    user_id,
    reach_id,
    sent_at,
    payload_summary
FROM notification_logs
WHERE user_id = %s
  AND reach_id = %s
  AND sent_at > %s
ORDER BY sent_at DESC
LIMIT 1
"""

_INSERT_DISPATCH_SQL = """\
INSERT INTO notification_logs (
    user_id,
    reach_id,
    sent_at,
    payload_summary
) VALUES (%s, %s, %s, %s)
"""


# ---------------------------------------------------------------------------
# Row -> Model Mapping Helpers
# ---------------------------------------------------------------------------


def _row_to_user(row: dict) -> User | None:
    """Convert a ``users`` row to a ``User``; None if the row is unusable."""
    try:
        favorites = row.get("favorite_reach_ids") or []
        if isinstance(favorites, str):
            favorites = json.loads(favorites)
        if not isinstance(favorites, list):
            raise TypeError(f"favorite_reach_ids is {type(favorites).__name__}")
        user = User(
            id=str(row["id"]),
            notifications_enabled=bool(row.get("enable_notifications")),
            push_token=row.get("fcm_token") or None,
            preferred_unit=row.get("preferred_flow_unit") or "cfs",
            favorite_location_ids=[str(f) for f in favorites],
            first_name=row.get("first_name") or "User",
        )
    except (KeyError, ValueError, TypeError, ValidationError):
        logger.warning("Skipping malformed user row id=%s", row.get("id"))
        return None

    return user if user.is_eligible else None


def _row_to_dispatch_record(row: dict) -> DispatchRecord:
    summary = row.get("payload_summary") or {}
    if isinstance(summary, str):
        summary = json.loads(summary)
    return DispatchRecord(
        user_id=row["user_id"],
        location_id=row["reach_id"],
        sent_at=row["sent_at"],
        payload_summary=summary,
    )


# ---------------------------------------------------------------------------
# Concrete Implementations
# ---------------------------------------------------------------------------


class _PostgresBase:
    """Shared connection handling.

    Connection pooling is handled externally by PgBouncer; each call opens
    a short-lived connection with ``row_factory=dict_row``.
    """

    def __init__(self, conninfo: str) -> None:
        self._conninfo = conninfo

    async def _connect(self) -> psycopg.AsyncConnection:
        return await psycopg.AsyncConnection.connect(
            self._conninfo,
            row_factory=dict_row,
        )


class PostgresUserDirectory(_PostgresBase, UserDirectory):
    """PostgreSQL-backed ``UserDirectory``."""

    async def fetch_eligible_users(self) -> list[User]:
        try:
            async with await self._connect() as conn:
                async with conn.cursor() as cur:
                    await cur.execute(_FETCH_USERS_SQL)
                    rows = await cur.fetchall()
        except psycopg.Error as exc:
            raise UserDirectoryError(f"Failed to read users: {exc}") from exc

        users = [u for u in (_row_to_user(row) for row in rows) if u is not None]
        logger.info(
            "Loaded %d eligible users (%d rows)", len(users), len(rows)
        )
        return users


class PostgresDispatchLog(_PostgresBase, DispatchLog):
    """PostgreSQL-backed ``DispatchLog`` over ``notification_logs``."""

    async def latest_since(
        self, user_id: str, location_id: str, since: datetime
    ) -> DispatchRecord | None:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(_LATEST_DISPATCH_SQL, (user_id, location_id, since))
                row = await cur.fetchone()

        return _row_to_dispatch_record(row) if row else None

    async def append(self, record: DispatchRecord) -> None:
        async with await self._connect() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    _INSERT_DISPATCH_SQL,
                    (
                        record.user_id,
                        record.location_id,
                        record.sent_at,
                        json.dumps(record.payload_summary),
                    ),
                )
            await conn.commit()

        logger.debug(
            "Recorded dispatch for user=%s location=%s",
            record.user_id,
            record.location_id,
        )
