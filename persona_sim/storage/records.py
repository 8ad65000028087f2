"""Durable record store: composite-key items in SQLite, with one secondary index.

Items are dicts carrying PK and SK (and optionally GSI1PK / GSI1SK). The
whole item is stored as JSON; the key columns exist only for lookups and
ordering. Pagination cursors are opaque base64 tokens.
"""
from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import aiosqlite

from persona_sim.errors import StoreError

_log = logging.getLogger(__name__)

BATCH_SIZE = 25

_INDEX_COLUMNS = {
    None: ("pk", "sk"),
    "GSI1": ("gsi1pk", "gsi1sk"),
}


@dataclass
class QueryPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None


class RecordStore(Protocol):
    async def put(self, item: dict[str, Any]) -> None: ...

    async def get(self, pk: str, sk: str) -> dict[str, Any] | None: ...

    async def query(
        self,
        pk: str,
        *,
        sk_prefix: str | None = None,
        index: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        ascending: bool = True,
    ) -> QueryPage: ...

    async def batch_put(self, items: list[dict[str, Any]]) -> None: ...


def encode_cursor(values: tuple) -> str:
    return base64.urlsafe_b64encode(json.dumps(list(values)).encode()).decode()


def decode_cursor(cursor: str) -> tuple:
    try:
        values = json.loads(base64.urlsafe_b64decode(cursor.encode()))
    except (ValueError, TypeError) as exc:
        raise ValueError(f"invalid pagination token: {cursor!r}") from exc
    if not isinstance(values, list) or len(values) != 3:
        raise ValueError(f"invalid pagination token: {cursor!r}")
    return tuple(values)


def _row_params(item: dict[str, Any]) -> tuple:
    return (
        item["PK"],
        item["SK"],
        item.get("GSI1PK"),
        item.get("GSI1SK"),
        json.dumps(item, ensure_ascii=False),
    )


class SQLiteRecordStore:
    """RecordStore on a single SQLite table, one connection per operation."""

    def __init__(self, db_path: str) -> None:
        self._db_path = db_path

    async def init(self) -> None:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS items (
                        pk      TEXT NOT NULL,
                        sk      TEXT NOT NULL,
                        gsi1pk  TEXT,
                        gsi1sk  TEXT,
                        body    TEXT NOT NULL,
                        PRIMARY KEY (pk, sk)
                    )
                """)
                await db.execute("CREATE INDEX IF NOT EXISTS items_gsi1 ON items (gsi1pk, gsi1sk)")
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(f"failed to initialise record store: {exc}") from exc

    async def put(self, item: dict[str, Any]) -> None:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                await db.execute(
                    "INSERT OR REPLACE INTO items (pk, sk, gsi1pk, gsi1sk, body) VALUES (?, ?, ?, ?, ?)",
                    _row_params(item),
                )
                await db.commit()
        except aiosqlite.Error as exc:
            _log.error("put failed (PK=%s SK=%s): %s", item.get("PK"), item.get("SK"), exc)
            raise StoreError(f"put failed: {exc}") from exc
        _log.debug("put PK=%s SK=%s", item["PK"], item["SK"])

    async def get(self, pk: str, sk: str) -> dict[str, Any] | None:
        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute("SELECT body FROM items WHERE pk = ? AND sk = ?", (pk, sk)) as cursor:
                    row = await cursor.fetchone()
        except aiosqlite.Error as exc:
            _log.error("get failed (PK=%s SK=%s): %s", pk, sk, exc)
            raise StoreError(f"get failed: {exc}") from exc
        return json.loads(row[0]) if row else None

    async def query(
        self,
        pk: str,
        *,
        sk_prefix: str | None = None,
        index: str | None = None,
        limit: int | None = None,
        cursor: str | None = None,
        ascending: bool = True,
    ) -> QueryPage:
        """Items whose partition key equals pk, ordered by sort key.

        Ties on the index sort key are broken by the primary key, so cursors
        are stable even when the secondary sort key is not unique.
        """
        if index not in _INDEX_COLUMNS:
            raise ValueError(f"unknown index {index!r}")
        pk_col, sk_col = _INDEX_COLUMNS[index]
        order = "ASC" if ascending else "DESC"
        compare = ">" if ascending else "<"

        sql = f"SELECT {sk_col}, pk, sk, body FROM items WHERE {pk_col} = ?"
        params: list[Any] = [pk]
        if sk_prefix:
            sql += f" AND substr({sk_col}, 1, ?) = ?"
            params += [len(sk_prefix), sk_prefix]
        if cursor:
            sql += f" AND ({sk_col}, pk, sk) {compare} (?, ?, ?)"
            params += list(decode_cursor(cursor))
        sql += f" ORDER BY {sk_col} {order}, pk {order}, sk {order}"
        if limit:
            sql += " LIMIT ?"
            params.append(limit + 1)

        try:
            async with aiosqlite.connect(self._db_path) as db:
                async with db.execute(sql, params) as cur:
                    rows = await cur.fetchall()
        except aiosqlite.Error as exc:
            _log.error("query failed (pk=%s index=%s): %s", pk, index, exc)
            raise StoreError(f"query failed: {exc}") from exc

        next_cursor = None
        if limit and len(rows) > limit:
            rows = rows[:limit]
            last = rows[-1]
            next_cursor = encode_cursor((last[0], last[1], last[2]))

        _log.debug("query pk=%s index=%s -> %d items, more=%s", pk, index, len(rows), next_cursor is not None)
        return QueryPage(items=[json.loads(r[3]) for r in rows], next_cursor=next_cursor)

    async def batch_put(self, items: list[dict[str, Any]]) -> None:
        """Write items in chunks of BATCH_SIZE. Chunks are not atomic as a set."""
        for start in range(0, len(items), BATCH_SIZE):
            chunk = items[start:start + BATCH_SIZE]
            try:
                async with aiosqlite.connect(self._db_path) as db:
                    await db.executemany(
                        "INSERT OR REPLACE INTO items (pk, sk, gsi1pk, gsi1sk, body) VALUES (?, ?, ?, ?, ?)",
                        [_row_params(item) for item in chunk],
                    )
                    await db.commit()
            except aiosqlite.Error as exc:
                _log.error("batch_put failed at item %d: %s", start, exc)
                raise StoreError(f"batch_put failed: {exc}") from exc
            _log.debug("batch_put progress: %d/%d", start + len(chunk), len(items))
        _log.info("batch_put complete: %d items", len(items))
