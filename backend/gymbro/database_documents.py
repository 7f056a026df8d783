from __future__ import annotations

import json
from typing import Any

import asyncpg

from .documents import DocumentSnapshot, collection_name_of, doc_id_of, parent_of


def _decode_row(row: asyncpg.Record) -> DocumentSnapshot:
    raw_data = row["data"] or "{}"
    try:
        data = json.loads(raw_data)
        if not isinstance(data, dict):
            data = {}
    except Exception:
        data = {}
    return DocumentSnapshot(path=row["path"], data=data, version=int(row["version"]))


async def fetch_server_time_ms(conn: asyncpg.Connection) -> int:
    value = await conn.fetchval(
        "SELECT (EXTRACT(EPOCH FROM clock_timestamp()) * 1000)::BIGINT"
    )
    return int(value)


async def fetch_document(
    conn: asyncpg.Connection,
    path: str,
    *,
    for_update: bool = False,
) -> DocumentSnapshot:
    query = "SELECT path, data, version FROM documents WHERE path = $1"
    if for_update:
        query += " FOR UPDATE"
    row = await conn.fetchrow(query, path)
    if row is None:
        return DocumentSnapshot(path=path, data=None, version=0)
    return _decode_row(row)


async def fetch_children(conn: asyncpg.Connection, collection: str) -> list[DocumentSnapshot]:
    rows = await conn.fetch(
        """
        SELECT path, data, version
        FROM documents
        WHERE parent = $1
        ORDER BY seq ASC
        """,
        collection.strip("/"),
    )
    return [_decode_row(row) for row in rows]


async def fetch_collection_group(conn: asyncpg.Connection, name: str) -> list[DocumentSnapshot]:
    rows = await conn.fetch(
        """
        SELECT path, data, version
        FROM documents
        WHERE collection = $1
        ORDER BY seq ASC
        """,
        name,
    )
    return [_decode_row(row) for row in rows]


async def write_document(conn: asyncpg.Connection, path: str, data: dict[str, Any]) -> None:
    payload = json.dumps(data, ensure_ascii=False)
    await conn.execute(
        """
        INSERT INTO documents (path, parent, collection, doc_id, data)
        VALUES ($1, $2, $3, $4, $5)
        ON CONFLICT (path) DO UPDATE
        SET data = EXCLUDED.data,
            version = documents.version + 1,
            updated_at = NOW()
        """,
        path,
        parent_of(path),
        collection_name_of(path),
        doc_id_of(path),
        payload,
    )


async def delete_document(conn: asyncpg.Connection, path: str) -> None:
    await conn.execute("DELETE FROM documents WHERE path = $1", path)
