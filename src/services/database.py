import aiosqlite
import contextvars
import json
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, fields
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Type, TypeVar

from core.entities import (
    AITask,
    Content,
    ContentReview,
    ContentStatus,
    ContentTag,
    DailyDigest,
    ReviewAction,
    Source,
    SourceStatus,
    SourceType,
    SystemConfig,
    TaskStatus,
    UserActivity,
    utcnow,
)
from core.errors import DuplicateRowError, StoreError
from services.store import Filter, Increment, Store

logger = logging.getLogger(__name__)

T = TypeVar("T")

_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
}


def _encode_dt(value: datetime) -> str:
    # Fixed-width UTC text so lexical order matches chronological order.
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _decode_dt(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class EntityTable:
    """
    Maps an entity dataclass to its table and column codecs.
    """
    name: str
    entity: type
    json_fields: Tuple[str, ...] = ()
    datetime_fields: Tuple[str, ...] = ()
    date_fields: Tuple[str, ...] = ()
    enum_fields: Dict[str, Callable[[str], Enum]] = field(default_factory=dict)

    @property
    def columns(self) -> List[str]:
        return [f.name for f in fields(self.entity)]

    def encode(self, column: str, value: Any) -> Any:
        if value is None:
            return None
        if column in self.json_fields:
            return json.dumps(value, default=str)
        if isinstance(value, Enum):
            return value.value
        if column in self.datetime_fields:
            return _encode_dt(value)
        if column in self.date_fields:
            return value.isoformat()
        if isinstance(value, bool):
            return int(value)
        return value

    def decode(self, row: sqlite3.Row) -> Any:
        values: Dict[str, Any] = {}
        for column in self.columns:
            raw = row[column]
            if raw is None:
                values[column] = None
            elif column in self.json_fields:
                values[column] = json.loads(raw)
            elif column in self.enum_fields:
                values[column] = self.enum_fields[column](raw)
            elif column in self.datetime_fields:
                values[column] = _decode_dt(raw)
            elif column in self.date_fields:
                values[column] = date.fromisoformat(raw)
            else:
                values[column] = raw
        return self.entity(**values)


ENTITY_TABLES: Dict[type, EntityTable] = {
    Source: EntityTable(
        name="sources",
        entity=Source,
        json_fields=("config",),
        datetime_fields=("last_fetch_at", "fetch_lease_until", "created_at", "updated_at"),
        enum_fields={"type": SourceType, "status": SourceStatus},
    ),
    Content: EntityTable(
        name="content",
        entity=Content,
        json_fields=("tags", "metadata"),
        datetime_fields=("published_at", "created_at", "updated_at"),
        enum_fields={"status": ContentStatus},
    ),
    ContentTag: EntityTable(
        name="content_tags",
        entity=ContentTag,
        datetime_fields=("created_at",),
    ),
    ContentReview: EntityTable(
        name="content_reviews",
        entity=ContentReview,
        datetime_fields=("created_at",),
        enum_fields={"action": ReviewAction},
    ),
    DailyDigest: EntityTable(
        name="daily_digests",
        entity=DailyDigest,
        json_fields=("content_ids",),
        datetime_fields=("created_at", "updated_at"),
        date_fields=("date",),
    ),
    AITask: EntityTable(
        name="ai_tasks",
        entity=AITask,
        json_fields=("input", "output"),
        datetime_fields=("available_at", "started_at", "completed_at", "created_at", "updated_at"),
        enum_fields={"status": TaskStatus.parse},
    ),
    UserActivity: EntityTable(
        name="user_activities",
        entity=UserActivity,
        json_fields=("details",),
        datetime_fields=("created_at",),
    ),
    SystemConfig: EntityTable(
        name="system_config",
        entity=SystemConfig,
        json_fields=("value",),
        datetime_fields=("created_at", "updated_at"),
    ),
}


SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS sources (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        url TEXT,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        config TEXT NOT NULL DEFAULT '{}',
        last_fetch_at TEXT,
        fetch_count INTEGER NOT NULL DEFAULT 0,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        fetch_lease_until TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        source_id TEXT NOT NULL REFERENCES sources(id),
        url TEXT,
        description TEXT,
        content TEXT,
        image_url TEXT,
        category TEXT,
        tags TEXT NOT NULL DEFAULT '[]',
        status TEXT NOT NULL DEFAULT 'RAW',
        score REAL,
        priority INTEGER NOT NULL DEFAULT 0,
        source_url TEXT,
        published_at TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        content_hash TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_tags (
        id TEXT PRIMARY KEY,
        content_id TEXT NOT NULL REFERENCES content(id),
        tag TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE(content_id, tag)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_reviews (
        id TEXT PRIMARY KEY,
        content_id TEXT NOT NULL REFERENCES content(id),
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        comment TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS daily_digests (
        id TEXT PRIMARY KEY,
        date TEXT NOT NULL UNIQUE,
        title TEXT NOT NULL,
        summary TEXT NOT NULL DEFAULT '',
        content_ids TEXT NOT NULL DEFAULT '[]',
        total_items INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ai_tasks (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'queued',
        input TEXT NOT NULL DEFAULT '{}',
        output TEXT,
        error TEXT,
        attempts INTEGER NOT NULL DEFAULT 0,
        max_attempts INTEGER NOT NULL DEFAULT 3,
        available_at TEXT NOT NULL,
        dedup_key TEXT UNIQUE,
        started_at TEXT,
        completed_at TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_activities (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        action TEXT NOT NULL,
        details TEXT NOT NULL DEFAULT '{}',
        ip_address TEXT,
        user_agent TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS system_config (
        id TEXT PRIMARY KEY,
        key TEXT NOT NULL UNIQUE,
        value TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sources_status ON sources(status)",
    "CREATE INDEX IF NOT EXISTS idx_content_status ON content(status, published_at)",
    "CREATE INDEX IF NOT EXISTS idx_content_source_url ON content(source_id, url)",
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_content_source_hash ON content(source_id, content_hash)",
    "CREATE INDEX IF NOT EXISTS idx_content_reviews_content ON content_reviews(content_id)",
    "CREATE INDEX IF NOT EXISTS idx_ai_tasks_claim ON ai_tasks(status, available_at)",
]


class SqliteStore(Store):
    """
    Store backed by a SQLite file through aiosqlite.

    Each operation opens its own connection, except inside ``transaction()``
    where every call made from the same task reuses the transaction's
    connection. Transactions start with BEGIN IMMEDIATE so concurrent writers
    serialize on the database lock instead of failing at commit.
    """

    def __init__(self, path: str, busy_timeout: float = 30.0):
        self.path = path
        self.busy_timeout = busy_timeout
        self._tx_conn: contextvars.ContextVar[Optional[aiosqlite.Connection]] = contextvars.ContextVar(
            f"sqlite_tx_{id(self)}", default=None
        )

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = await aiosqlite.connect(self.path, timeout=self.busy_timeout, isolation_level=None)
        await conn.execute("PRAGMA journal_mode=WAL;")
        await conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = aiosqlite.Row
        try:
            yield conn
        finally:
            await conn.close()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[aiosqlite.Connection]:
        conn = self._tx_conn.get()
        if conn is not None:
            yield conn
            return
        async with self.connect() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["SqliteStore"]:
        if self._tx_conn.get() is not None:
            # Nested blocks join the outer transaction.
            yield self
            return

        async with self.connect() as conn:
            await conn.execute("BEGIN IMMEDIATE")
            token = self._tx_conn.set(conn)
            try:
                yield self
            except BaseException:
                await conn.execute("ROLLBACK")
                raise
            else:
                await conn.execute("COMMIT")
            finally:
                self._tx_conn.reset(token)

    async def init_tables(self) -> None:
        """Initialize database tables for the pipeline."""
        async with self.connect() as conn:
            for statement in SCHEMA:
                await conn.execute(statement)
            logger.info("Database tables initialized")

    # ----------------------------
    # SQL helpers
    # ----------------------------
    @staticmethod
    def _table(entity: type) -> EntityTable:
        try:
            return ENTITY_TABLES[entity]
        except KeyError:
            raise StoreError(f"No table registered for {entity.__name__}")

    def _compile_filter(self, table: EntityTable, filter: Optional[Filter]) -> Tuple[str, List[Any]]:
        if not filter:
            return "", []

        clauses: List[str] = []
        params: List[Any] = []

        for key, value in filter.items():
            if key == "$or":
                parts = []
                for sub in value:
                    sub_sql, sub_params = self._compile_filter(table, sub)
                    parts.append(f"({sub_sql or '1'})")
                    params.extend(sub_params)
                clauses.append("(" + " OR ".join(parts) + ")" if parts else "0")
                continue

            column, _, op = key.partition("__")
            op = op or "eq"
            if column not in table.columns:
                raise StoreError(f"Unknown field {column!r} on {table.name}")

            if op == "isnull":
                clauses.append(f"{column} IS NULL" if value else f"{column} IS NOT NULL")
            elif op == "in":
                values = list(value)
                if not values:
                    clauses.append("0")
                    continue
                clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
                params.extend(table.encode(column, v) for v in values)
            elif op in _OPERATORS:
                if value is None and op in ("eq", "ne"):
                    clauses.append(f"{column} IS NULL" if op == "eq" else f"{column} IS NOT NULL")
                    continue
                clauses.append(f"{column} {_OPERATORS[op]} ?")
                params.append(table.encode(column, value))
            else:
                raise StoreError(f"Unknown filter operator {op!r}")

        return " AND ".join(clauses), params

    def _compile_order(self, table: EntityTable, order_by: Optional[Sequence[str]]) -> str:
        if not order_by:
            return ""
        parts = []
        for item in order_by:
            column = item.lstrip("-")
            if column not in table.columns:
                raise StoreError(f"Unknown order field {column!r} on {table.name}")
            parts.append(f"{column} {'DESC' if item.startswith('-') else 'ASC'}")
        return " ORDER BY " + ", ".join(parts)

    async def _select_one(self, conn: aiosqlite.Connection, table: EntityTable, where: str, params: Sequence[Any]):
        cursor = await conn.execute(f"SELECT * FROM {table.name} WHERE {where} LIMIT 1", tuple(params))
        row = await cursor.fetchone()
        return table.decode(row) if row else None

    # ----------------------------
    # Store contract
    # ----------------------------
    async def create(self, row: T) -> T:
        table = self._table(type(row))
        columns = table.columns
        values = [table.encode(c, getattr(row, c)) for c in columns]
        query = (
            f"INSERT INTO {table.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )
        async with self._session() as conn:
            try:
                await conn.execute(query, tuple(values))
            except sqlite3.IntegrityError as e:
                raise DuplicateRowError(f"{table.name}: {e}") from e
        return row

    async def get_by_id(self, entity: Type[T], row_id: str) -> Optional[T]:
        table = self._table(entity)
        async with self._session() as conn:
            return await self._select_one(conn, table, "id = ?", (row_id,))

    async def update(
        self,
        entity: Type[T],
        row_id: str,
        changes: Dict[str, Any],
        expected: Optional[Filter] = None,
    ) -> Optional[T]:
        table = self._table(entity)
        changes = dict(changes)
        if "updated_at" in table.columns and "updated_at" not in changes:
            changes["updated_at"] = utcnow()

        set_parts: List[str] = []
        params: List[Any] = []
        for column, value in changes.items():
            if column not in table.columns or column == "id":
                raise StoreError(f"Cannot update field {column!r} on {table.name}")
            if isinstance(value, Increment):
                set_parts.append(f"{column} = {column} + ?")
                params.append(value.amount)
            else:
                set_parts.append(f"{column} = ?")
                params.append(table.encode(column, value))

        where_sql, where_params = self._compile_filter(table, expected)
        where = "id = ?" + (f" AND {where_sql}" if where_sql else "")
        params.append(row_id)
        params.extend(where_params)

        async with self._session() as conn:
            try:
                cursor = await conn.execute(
                    f"UPDATE {table.name} SET {', '.join(set_parts)} WHERE {where}",
                    tuple(params),
                )
            except sqlite3.IntegrityError as e:
                raise DuplicateRowError(f"{table.name}: {e}") from e
            if cursor.rowcount != 1:
                return None
            return await self._select_one(conn, table, "id = ?", (row_id,))

    async def find_many(
        self,
        entity: Type[T],
        filter: Optional[Filter] = None,
        order_by: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[T]:
        table = self._table(entity)
        where_sql, params = self._compile_filter(table, filter)
        query = f"SELECT * FROM {table.name}"
        if where_sql:
            query += f" WHERE {where_sql}"
        query += self._compile_order(table, order_by)
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))

        async with self._session() as conn:
            cursor = await conn.execute(query, tuple(params))
            rows = await cursor.fetchall()
        return [table.decode(row) for row in rows]

    async def upsert(self, entity: Type[T], key: Dict[str, Any], values: Dict[str, Any]) -> T:
        table = self._table(entity)
        row = entity(**key, **values)
        columns = table.columns
        update_columns = [c for c in values if c not in key]
        if "updated_at" in columns and "updated_at" not in update_columns:
            update_columns.append("updated_at")

        if update_columns:
            conflict = "DO UPDATE SET " + ", ".join(f"{c} = excluded.{c}" for c in update_columns)
        else:
            conflict = "DO NOTHING"

        query = (
            f"INSERT INTO {table.name} ({', '.join(columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)}) "
            f"ON CONFLICT({', '.join(key)}) {conflict}"
        )
        where_sql, where_params = self._compile_filter(table, key)

        async with self._session() as conn:
            try:
                await conn.execute(query, tuple(table.encode(c, getattr(row, c)) for c in columns))
            except sqlite3.IntegrityError as e:
                raise DuplicateRowError(f"{table.name}: {e}") from e
            return await self._select_one(conn, table, where_sql, where_params)

    async def count(self, entity: Type[T], filter: Optional[Filter] = None) -> int:
        table = self._table(entity)
        where_sql, params = self._compile_filter(table, filter)
        query = f"SELECT COUNT(*) FROM {table.name}"
        if where_sql:
            query += f" WHERE {where_sql}"
        async with self._session() as conn:
            cursor = await conn.execute(query, tuple(params))
            row = await cursor.fetchone()
        return int(row[0])

    async def delete_where(self, entity: Type[T], filter: Filter) -> int:
        table = self._table(entity)
        where_sql, params = self._compile_filter(table, filter)
        if not where_sql:
            raise StoreError("delete_where requires a filter")
        async with self._session() as conn:
            cursor = await conn.execute(f"DELETE FROM {table.name} WHERE {where_sql}", tuple(params))
            return cursor.rowcount

    def __repr__(self) -> str:
        return f"<SqliteStore path={self.path!r}>"
