import asyncio
import os
import sqlite3
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from functools import wraps
from typing import Any

from aiosqlite import Connection, connect as sqlite_connect
from opentelemetry.instrumentation.sqlite3 import SQLite3Instrumentor
from pydantic import ValidationError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from reminder_sync.helpers.config_models.database import SqliteModel
from reminder_sync.helpers.logging import logger
from reminder_sync.models.readiness import ReadinessEnum
from reminder_sync.models.reminder import ReminderFiltersModel, ReminderModel
from reminder_sync.persistence.istore import IStore, StoreError

# Instrument sqlite
SQLite3Instrumentor().instrument()

_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


def _to_micros(value: datetime) -> int:
    """
    Convert a datetime to an integer of microseconds since epoch.

    Integers keep the full precision and sort naturally in SQL.
    """
    return (value - _EPOCH) // timedelta(microseconds=1)


def _store_errors(func):
    """
    Decorator to expose SQLite failures as `StoreError`.
    """

    @wraps(func)
    async def _inner(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except sqlite3.Error as e:
            raise StoreError(f"SQLite request failed: {e}") from e

    return _inner


# Concurrent writers may lock the file for a short time
_retry_locked = retry(
    reraise=True,
    retry=retry_if_exception_type(sqlite3.OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_random_exponential(multiplier=0.1, max=1),
)


class SqliteStore(IStore):
    _config: SqliteModel
    _db_path: str
    _init_done: bool

    def __init__(self, config: SqliteModel):
        logger.info("Using SQLite database at %s with table %s", config.path, config.table)
        self._config = config
        self._init_done = False

        # Create folder if does not exist
        self._db_path = self._config.full_path()
        db_folder = os.path.dirname(self._db_path)
        if db_folder:
            os.makedirs(name=db_folder, exist_ok=True)

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the SQLite database.

        This checks if the database is reachable and can be queried.
        """
        try:
            async with self._use_db() as db:
                await db.execute("SELECT 1")
            return ReadinessEnum.OK
        except Exception:
            logger.exception("Unknown error while checking SQLite readiness")
        return ReadinessEnum.FAIL

    @_store_errors
    @_retry_locked
    async def reminder_get(
        self,
        user_id: str,
        reminder_id: str,
        include_deleted: bool = True,
    ) -> ReminderModel | None:
        logger.debug("Loading reminder %s", reminder_id)

        where_deleted = "" if include_deleted else "AND is_deleted = 0"
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.table} WHERE id = ? AND user_id = ? {where_deleted}",
                (
                    reminder_id,  # id
                    user_id,  # user_id
                ),
            )
            row = await cursor.fetchone()

        if not row:
            return None
        return self._parse(row[0])

    @_store_errors
    @_retry_locked
    async def reminder_create(
        self,
        reminder: ReminderModel,
    ) -> ReminderModel:
        logger.debug("Creating new reminder %s", reminder.id)

        # Server is the only one to decide when a record changed
        reminder = reminder.merge(
            {
                "updated_at": datetime.now(UTC),
                "version": 1,
            }
        )

        async with self._use_db() as db:
            await db.execute(
                f"INSERT INTO {self._config.table} (id, user_id, updated_at, scheduled_at, is_deleted, category, priority, status, data) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    reminder.id,  # id
                    *self._columns(reminder),
                ),
            )
            await db.commit()

        return reminder

    @_store_errors
    @_retry_locked
    async def reminder_save(
        self,
        reminder: ReminderModel,
        expected_updated_at: datetime,
    ) -> ReminderModel | None:
        saved = reminder.merge(
            {
                "updated_at": self._next_updated_at(expected_updated_at),
                "version": reminder.version + 1,
            }
        )
        logger.debug("Saving reminder %s, version %s", saved.id, saved.version)

        # Compare-and-swap on the last update time
        async with self._use_db() as db:
            cursor = await db.execute(
                f"UPDATE {self._config.table} SET user_id = ?, updated_at = ?, scheduled_at = ?, is_deleted = ?, category = ?, priority = ?, status = ?, data = ? WHERE id = ? AND user_id = ? AND updated_at = ?",
                (
                    *self._columns(saved),
                    saved.id,  # id
                    saved.owner,  # user_id
                    _to_micros(expected_updated_at),  # updated_at
                ),
            )
            await db.commit()
            updated = cursor.rowcount

        if not updated:
            logger.debug("Reminder %s changed since it was read, not saved", saved.id)
            return None
        return saved

    @_store_errors
    @_retry_locked
    async def reminder_changed_since(
        self,
        user_id: str,
        since: datetime,
    ) -> list[ReminderModel]:
        logger.debug("Loading reminders changed since %s", since)

        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.table} WHERE user_id = ? AND updated_at > ? ORDER BY updated_at ASC",
                (
                    user_id,  # user_id
                    _to_micros(since),  # updated_at
                ),
            )
            rows = await cursor.fetchall()

        return [
            reminder
            for reminder in (self._parse(row[0]) for row in rows)
            if reminder
        ]

    @_store_errors
    async def reminder_search_all(
        self,
        user_id: str,
        filters: ReminderFiltersModel,
        offset: int,
        limit: int,
    ) -> tuple[list[ReminderModel], int]:
        logger.debug("Searching reminders, with %s", filters)
        where_clause, params = self._where(user_id, filters)
        reminders, total = await asyncio.gather(
            self._reminder_search_all_worker(where_clause, params, offset, limit),
            self._reminder_search_all_total_worker(where_clause, params),
        )
        return reminders, total

    @_retry_locked
    async def _reminder_search_all_worker(
        self,
        where_clause: str,
        params: list[Any],
        offset: int,
        limit: int,
    ) -> list[ReminderModel]:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT data FROM {self._config.table} WHERE {where_clause} ORDER BY scheduled_at ASC, id ASC LIMIT ? OFFSET ?",
                (
                    *params,
                    limit,  # limit
                    offset,  # offset
                ),
            )
            rows = await cursor.fetchall()

        return [
            reminder
            for reminder in (self._parse(row[0]) for row in rows)
            if reminder
        ]

    @_retry_locked
    async def _reminder_search_all_total_worker(
        self,
        where_clause: str,
        params: list[Any],
    ) -> int:
        async with self._use_db() as db:
            cursor = await db.execute(
                f"SELECT COUNT(*) FROM {self._config.table} WHERE {where_clause}",
                params,
            )
            row = await cursor.fetchone()
        return int(row[0]) if row else 0

    def _where(
        self,
        user_id: str,
        filters: ReminderFiltersModel,
    ) -> tuple[str, list[Any]]:
        """
        Build the SQL filter of a search, with its parameters.
        """
        clauses = ["user_id = ?", "is_deleted = 0"]
        params: list[Any] = [user_id]

        if filters.scheduled_from:
            clauses.append("scheduled_at >= ?")
            params.append(_to_micros(filters.scheduled_from))
        if filters.scheduled_to:
            clauses.append("scheduled_at <= ?")
            params.append(_to_micros(filters.scheduled_to))
        if filters.category:
            clauses.append("category = ?")
            params.append(filters.category.lower())
        if filters.priority:
            clauses.append("priority = ?")
            params.append(filters.priority.value)
        if filters.status:
            clauses.append("status = ?")
            params.append(filters.status.value)
        if filters.tags:
            placeholders = ", ".join("?" for _ in filters.tags)
            clauses.append(
                f"EXISTS (SELECT 1 FROM JSON_EACH({self._config.table}.data, '$.tags') WHERE JSON_EACH.value IN ({placeholders}))"
            )
            params.extend(filters.tags)
        if filters.search:
            # Case-insensitive substring, over the free text fields
            clauses.append(
                "("
                + " OR ".join(
                    f"INSTR(LOWER(JSON_EXTRACT(data, '$.{field}')), ?) > 0"
                    for field in ("title", "description", "notes", "tags")
                )
                + ")"
            )
            params.extend([filters.search.lower()] * 4)

        return " AND ".join(clauses), params

    @staticmethod
    def _columns(reminder: ReminderModel) -> tuple[Any, ...]:
        """
        Indexed columns of a reminder, followed by its full JSON document.
        """
        return (
            reminder.owner,  # user_id
            _to_micros(reminder.updated_at),  # updated_at
            _to_micros(reminder.scheduled_at),  # scheduled_at
            int(reminder.is_deleted),  # is_deleted
            reminder.category,  # category
            reminder.priority.value,  # priority
            reminder.status.value,  # status
            reminder.model_dump_json(),  # data
        )

    @staticmethod
    def _parse(data: str) -> ReminderModel | None:
        try:
            return ReminderModel.model_validate_json(data)
        except ValidationError:
            logger.debug("Parsing error", exc_info=True)
        return None

    async def _init_db(self, db: Connection):
        """
        Initialize the database.

        See: https://sqlite.org/cgi/src/doc/wal2/doc/wal2.md
        """
        logger.info("First run, init database")
        # Optimize performance for concurrent writes
        await db.execute("PRAGMA journal_mode=WAL")
        # Create table
        await db.execute(
            f"CREATE TABLE IF NOT EXISTS {self._config.table} (id VARCHAR(36) PRIMARY KEY, user_id TEXT NOT NULL, updated_at INTEGER NOT NULL, scheduled_at INTEGER NOT NULL, is_deleted INTEGER NOT NULL DEFAULT 0, category TEXT, priority TEXT, status TEXT, data TEXT NOT NULL)"
        )
        # Create indexes
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.table}_user_id_updated_at ON {self._config.table} (user_id, updated_at)"
        )
        await db.execute(
            f"CREATE INDEX IF NOT EXISTS {self._config.table}_user_id_scheduled_at ON {self._config.table} (user_id, is_deleted, scheduled_at)"
        )

        # Write changes to disk
        await db.commit()
        self._init_done = True

    @asynccontextmanager
    async def _use_db(self) -> AsyncGenerator[Connection]:
        """
        Generate the SQLite client and close it after use.
        """
        async with sqlite_connect(
            database=self._db_path,
        ) as client:
            if not self._init_done:
                await self._init_db(client)
            yield client
