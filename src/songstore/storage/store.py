"""Async SQLite store backing every songstore context."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from songstore.errors import FetchError, SaveError, StoreOpenError
from songstore.storage.models import ENTITIES, ManagedObject, ObjectID, entity_for_name
from songstore.storage.query import FetchRequest, to_sql_value

log = structlog.get_logger(__name__)

_SCHEMA = """\
CREATE TABLE IF NOT EXISTS user (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    unique_id TEXT NOT NULL UNIQUE,
    username TEXT NOT NULL,
    age INTEGER NOT NULL DEFAULT 18 CHECK (age >= 0)
);

CREATE INDEX IF NOT EXISTS ix_user_username ON user(username);

CREATE TABLE IF NOT EXISTS song (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    title TEXT NOT NULL,
    date_recorded TEXT NOT NULL,
    duration REAL NOT NULL CHECK (duration >= 0),
    is_favorite INTEGER NOT NULL DEFAULT 0,
    user_id TEXT NOT NULL REFERENCES user(unique_id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS ix_song_user_date ON song(user_id, date_recorded);
"""


@dataclass
class ChangeSet:
    """Pending changes of one context, ready to be committed atomically."""

    inserts: list[tuple[type[ManagedObject], dict[str, Any]]] = field(default_factory=list)
    updates: list[tuple[ObjectID, dict[str, Any]]] = field(default_factory=list)
    deletes: list[ObjectID] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.inserts or self.updates or self.deletes)


@dataclass
class CommitResult:
    """Identities touched by a commit.

    ``inserted`` is aligned with :attr:`ChangeSet.inserts`.  ``deleted``
    includes rows removed by cascading delete rules.
    """

    inserted: list[ObjectID] = field(default_factory=list)
    updated: list[ObjectID] = field(default_factory=list)
    deleted: list[ObjectID] = field(default_factory=list)


@dataclass(frozen=True)
class BatchDeleteResult:
    """Identities removed by a batch delete, including cascaded rows."""

    object_ids: tuple[ObjectID, ...] = ()

    def __len__(self) -> int:
        return len(self.object_ids)


class Store:
    """File-backed dataset shared by all contexts.

    Every statement goes through one ``aiosqlite`` connection and one lock,
    so physical reads and writes are serialized across contexts.
    """

    def __init__(self, path: Path, *, journal_mode: str = "wal") -> None:
        self.path = path
        self.journal_mode = journal_mode
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            msg = "Store not connected. Call connect() first."
            raise RuntimeError(msg)
        return self._conn

    @property
    def is_connected(self) -> bool:
        return self._conn is not None

    async def connect(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.path)
            self._conn.row_factory = aiosqlite.Row
            await self._conn.execute(f"PRAGMA journal_mode={self.journal_mode.upper()}")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()
        except (OSError, aiosqlite.Error) as exc:
            await self.close()
            log.error("store_open_failed", path=str(self.path), error=str(exc))
            msg = f"Could not open store at {self.path}: {exc}"
            raise StoreOpenError(msg) from exc
        log.info("store_opened", path=str(self.path), journal_mode=self.journal_mode)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    # -- reads ----------------------------------------------------------------

    async def fetch(self, request: FetchRequest) -> list[tuple[ObjectID, dict[str, Any]]]:
        """Run *request* and return ``(object_id, values)`` pairs in store order."""
        sql, params = request.to_sql()
        try:
            async with self._lock:
                cur = await self.conn.execute(sql, params)
                rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            msg = f"Fetch of {request.entity.entity_name} failed: {exc}"
            raise FetchError(msg) from exc
        return [self._split_row(request.entity, row) for row in rows]

    async def fetch_object(self, object_id: ObjectID) -> dict[str, Any] | None:
        entity = entity_for_name(object_id.entity)
        try:
            async with self._lock:
                cur = await self.conn.execute(
                    f'SELECT * FROM "{entity.table_name}" WHERE id = ?', (object_id.pk,)
                )
                row = await cur.fetchone()
        except aiosqlite.Error as exc:
            msg = f"Fetch of {object_id} failed: {exc}"
            raise FetchError(msg) from exc
        return self._split_row(entity, row)[1] if row else None

    # -- writes ---------------------------------------------------------------

    async def commit(self, changes: ChangeSet) -> CommitResult:
        """Apply *changes* in a single transaction.

        Rows referenced through a foreign key are inserted first.  Updates
        only touch the columns present in each change.  Deleting a row also
        deletes the rows of every cascading to-many relationship.
        """
        result = CommitResult()
        if changes.is_empty:
            return result
        order = sorted(range(len(changes.inserts)), key=lambda i: len(changes.inserts[i][0].to_one))
        inserted: dict[int, ObjectID] = {}
        async with self._lock:
            try:
                for index in order:
                    entity, values = changes.inserts[index]
                    inserted[index] = await self._insert(entity, values)
                for object_id, values in changes.updates:
                    if await self._update(object_id, values):
                        result.updated.append(object_id)
                    else:
                        log.warning("update_target_missing", object_id=str(object_id))
                deleted: dict[ObjectID, None] = {}
                for object_id in changes.deletes:
                    entity = entity_for_name(object_id.entity)
                    pk_sql = f'SELECT id FROM "{entity.table_name}" WHERE id = ?'
                    for removed in await self._delete_where(entity, pk_sql, [object_id.pk]):
                        deleted[removed] = None
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                log.error("commit_failed", error=str(exc))
                msg = f"Commit failed: {exc}"
                raise SaveError(msg) from exc
        result.inserted = [inserted[i] for i in range(len(changes.inserts))]
        result.deleted = list(deleted)
        return result

    async def batch_delete(self, request: FetchRequest) -> BatchDeleteResult:
        """Delete every row matching *request* without materializing objects."""
        sql, params = request.to_sql(columns="t.id")
        async with self._lock:
            try:
                removed = await self._delete_where(request.entity, sql, params)
                await self.conn.commit()
            except aiosqlite.Error as exc:
                await self.conn.rollback()
                log.error("batch_delete_failed", entity=request.entity.entity_name, error=str(exc))
                msg = f"Batch delete of {request.entity.entity_name} failed: {exc}"
                raise SaveError(msg) from exc
        log.info("batch_deleted", entity=request.entity.entity_name, count=len(removed))
        return BatchDeleteResult(tuple(removed))

    # -- statement helpers (caller holds the lock) -----------------------------

    async def _insert(self, entity: type[ManagedObject], values: dict[str, Any]) -> ObjectID:
        columns = list(values)
        column_list = ", ".join(f'"{c}"' for c in columns)
        placeholders = ", ".join("?" for _ in columns)
        sql = f'INSERT INTO "{entity.table_name}" ({column_list}) VALUES ({placeholders}) RETURNING id'
        cur = await self.conn.execute(sql, [to_sql_value(values[c]) for c in columns])
        row = await cur.fetchone()
        return ObjectID(entity.entity_name, row["id"])

    async def _update(self, object_id: ObjectID, values: dict[str, Any]) -> bool:
        entity = entity_for_name(object_id.entity)
        assignments = ", ".join(f'"{column}" = ?' for column in values)
        cur = await self.conn.execute(
            f'UPDATE "{entity.table_name}" SET {assignments} WHERE id = ?',
            [*(to_sql_value(v) for v in values.values()), object_id.pk],
        )
        return cur.rowcount > 0

    async def _delete_where(self, entity: type[ManagedObject], id_sql: str, params: list[Any]) -> list[ObjectID]:
        """Delete rows whose id is selected by *id_sql*, cascading first."""
        removed: list[ObjectID] = []
        for relationship in entity.to_many.values():
            child = ENTITIES[relationship.target]
            foreign_key = child.to_one[relationship.inverse].foreign_key
            key_sql = f'SELECT "{entity.natural_key}" FROM "{entity.table_name}" WHERE id IN ({id_sql})'
            child_ids = f'SELECT id FROM "{child.table_name}" WHERE "{foreign_key}" IN ({key_sql})'
            removed.extend(await self._delete_where(child, child_ids, params))
        cur = await self.conn.execute(
            f'DELETE FROM "{entity.table_name}" WHERE id IN ({id_sql}) RETURNING id',
            params,
        )
        removed.extend(ObjectID(entity.entity_name, row["id"]) for row in await cur.fetchall())
        return removed

    @staticmethod
    def _split_row(entity: type[ManagedObject], row: aiosqlite.Row) -> tuple[ObjectID, dict[str, Any]]:
        values = {key: row[key] for key in row.keys() if key in entity.model_fields}
        return ObjectID(entity.entity_name, row["id"]), values

