from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Iterable

import asyncpg

from .change_bus import LocalChangeBus
from .database_documents import (
    delete_document,
    fetch_children,
    fetch_collection_group,
    fetch_document,
    fetch_server_time_ms,
    write_document,
)
from .documents import (
    MAX_TRANSACTION_ATTEMPTS,
    DocumentSnapshot,
    ErrorCallback,
    Filter,
    OrderBy,
    QuerySnapshot,
    Snapshot,
    SnapshotCallback,
    T,
    TransactionAborted,
    Unsubscribe,
    WriteOp,
    apply_query,
    apply_write,
    child_path,
    diff_collection,
    is_document_path,
    parent_of,
)

logger = logging.getLogger(__name__)

_RETRYABLE_PG_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def normalized_database_url(url: str) -> str:
    url = url.strip()
    if url.startswith("postgresql+asyncpg://"):
        return "postgresql://" + url[len("postgresql+asyncpg://") :]
    return url


async def init_schema(pool: asyncpg.Pool) -> None:
    async with pool.acquire() as conn:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
              seq BIGSERIAL UNIQUE,
              path TEXT PRIMARY KEY,
              parent TEXT NOT NULL,
              collection VARCHAR(64) NOT NULL,
              doc_id VARCHAR(128) NOT NULL,
              data TEXT NOT NULL DEFAULT '{}',
              version BIGINT NOT NULL DEFAULT 1,
              created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
              updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_parent ON documents(parent)"
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)"
        )


class _PostgresTransaction:
    def __init__(self, conn: asyncpg.Connection) -> None:
        self._conn = conn
        self.writes: list[WriteOp] = []

    def _check_read_allowed(self) -> None:
        if self.writes:
            raise TransactionAborted("Transaction reads must happen before writes")

    async def get(self, path: str) -> DocumentSnapshot:
        self._check_read_allowed()
        return await fetch_document(self._conn, path, for_update=True)

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        self._check_read_allowed()
        return await fetch_children(self._conn, collection)

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        self.writes.append(WriteOp("set", path, dict(data), merge))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self.writes.append(WriteOp("update", path, dict(fields)))

    def delete(self, path: str) -> None:
        self.writes.append(WriteOp("delete", path))


class _PostgresBatch:
    def __init__(self, store: "PostgresDocumentStore") -> None:
        self._store = store
        self._writes: list[WriteOp] = []
        self._committed = False

    def create(self, path: str, data: dict[str, Any]) -> None:
        self._writes.append(WriteOp("create", path, dict(data)))

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        self._writes.append(WriteOp("set", path, dict(data), merge))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self._writes.append(WriteOp("update", path, dict(fields)))

    def delete(self, path: str) -> None:
        self._writes.append(WriteOp("delete", path))

    async def commit(self) -> None:
        if self._committed:
            raise TransactionAborted("Batch already committed")
        self._committed = True
        await self._store._commit_writes(self._writes)


class _PostgresSubscription:
    def __init__(
        self,
        store: "PostgresDocumentStore",
        path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> None:
        self.store = store
        self.path = path
        self.on_next = on_next
        self.on_error = on_error
        self.active = True
        self.dirty = False
        self.task: asyncio.Task[None] | None = None
        self.last_docs: dict[str, DocumentSnapshot] = {}
        self.stop_listening: Callable[[], None] = lambda: None

    def request_refresh(self, _path: str | None = None) -> None:
        if not self.active:
            return
        if self.task is not None and not self.task.done():
            self.dirty = True
            return
        self.task = asyncio.create_task(self._refresh_loop(), name=f"subscription:{self.path}")

    async def _refresh_loop(self) -> None:
        while self.active:
            self.dirty = False
            try:
                snapshot = await self._read()
            except Exception as exc:
                logger.warning("Subscription read failed for %s: %r", self.path, exc)
                self.cancel()
                self.store._subscriptions.discard(self)
                self.on_error(exc)
                return
            if not self.active:
                return
            try:
                self.on_next(snapshot)
            except Exception:
                logger.exception("Snapshot listener failed for %s", self.path)
            if not self.dirty:
                return

    async def _read(self) -> Snapshot:
        if is_document_path(self.path):
            return await self.store.get(self.path)
        docs = await self.store.list(self.path)
        changes = diff_collection(self.last_docs, docs)
        self.last_docs = {doc.path: doc for doc in docs}
        return QuerySnapshot(path=self.path, docs=docs, changes=changes)

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.stop_listening()


class PostgresDocumentStore:
    """Document store on a single ``documents`` table.

    Transactions run at SERIALIZABLE isolation and are retried on
    serialization failures; committed paths are announced on the change bus.
    """

    def __init__(self, pool: asyncpg.Pool, bus: LocalChangeBus) -> None:
        self._pool = pool
        self._bus = bus
        self._subscriptions: set[_PostgresSubscription] = set()

    @classmethod
    async def connect(cls, database_url: str, bus: LocalChangeBus) -> "PostgresDocumentStore":
        pool = await asyncpg.create_pool(
            dsn=normalized_database_url(database_url),
            min_size=1,
            max_size=10,
        )
        await init_schema(pool)
        return cls(pool, bus)

    async def ping(self) -> bool:
        try:
            async with self._pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
            return True
        except Exception:
            logger.exception("Database ping failed")
            return False

    async def _apply_writes(self, conn: asyncpg.Connection, writes: list[WriteOp]) -> list[str]:
        if not writes:
            return []
        server_time = await fetch_server_time_ms(conn)
        staged: dict[str, dict[str, Any] | None] = {}
        for op in writes:
            if op.path in staged:
                existing = staged[op.path]
            else:
                existing = (await fetch_document(conn, op.path, for_update=True)).data
            staged[op.path] = apply_write(existing, op, server_time)

        for path, data in staged.items():
            if data is None:
                await delete_document(conn, path)
            else:
                await write_document(conn, path, data)
        return list(staged)

    async def _publish(self, paths: list[str]) -> None:
        if not paths:
            return
        announced: list[str] = []
        for path in paths:
            announced.append(path)
            announced.append(parent_of(path))
        await self._bus.publish(announced)

    async def _commit_writes(self, writes: list[WriteOp]) -> None:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with self._pool.acquire() as conn:
                    async with conn.transaction(isolation="serializable"):
                        changed = await self._apply_writes(conn, writes)
            except _RETRYABLE_PG_ERRORS:
                logger.debug("Batch conflict attempt=%s", attempt)
                continue
            await self._publish(changed)
            return
        raise TransactionAborted("Batch contention exceeded retry budget")

    async def get(self, path: str) -> DocumentSnapshot:
        async with self._pool.acquire() as conn:
            return await fetch_document(conn, path)

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        await self._commit_writes([WriteOp("set", path, dict(data), merge)])

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._commit_writes([WriteOp("update", path, dict(fields))])

    async def delete(self, path: str) -> None:
        await self._commit_writes([WriteOp("delete", path)])

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await self._commit_writes([WriteOp("create", child_path(collection, doc_id), dict(data))])
        return doc_id

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        async with self._pool.acquire() as conn:
            return await fetch_children(conn, collection)

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        return apply_query(await self.list(collection), filters, order_by, limit)

    async def collection_group(
        self,
        name: str,
        filters: Iterable[Filter] = (),
    ) -> list[DocumentSnapshot]:
        async with self._pool.acquire() as conn:
            docs = await fetch_collection_group(conn, name)
        return apply_query(docs, filters)

    async def run_transaction(self, fn: Callable[[_PostgresTransaction], Awaitable[T]]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            try:
                async with self._pool.acquire() as conn:
                    async with conn.transaction(isolation="serializable"):
                        tx = _PostgresTransaction(conn)
                        result = await fn(tx)
                        changed = await self._apply_writes(conn, tx.writes)
            except _RETRYABLE_PG_ERRORS:
                logger.debug("Transaction conflict attempt=%s", attempt)
                continue
            await self._publish(changed)
            return result
        raise TransactionAborted("Transaction contention exceeded retry budget")

    def batch(self) -> _PostgresBatch:
        return _PostgresBatch(self)

    def subscribe(
        self,
        path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        sub = _PostgresSubscription(self, path.strip("/"), on_next, on_error)
        sub.stop_listening = self._bus.listen(sub.path, sub.request_refresh)
        self._subscriptions.add(sub)
        sub.request_refresh()

        def unsubscribe() -> None:
            sub.cancel()
            self._subscriptions.discard(sub)

        return unsubscribe

    async def close(self) -> None:
        for sub in list(self._subscriptions):
            sub.cancel()
        self._subscriptions.clear()
        await self._pool.close()
