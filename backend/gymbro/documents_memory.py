from __future__ import annotations

import asyncio
import copy
import itertools
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

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
    collection_name_of,
    diff_collection,
    is_document_path,
    now_ms,
    parent_of,
    split_path,
)

logger = logging.getLogger(__name__)


@dataclass
class _MemorySubscription:
    sub_id: int
    path: str
    on_next: SnapshotCallback
    on_error: ErrorCallback
    active: bool = True
    last_docs: dict[str, DocumentSnapshot] = field(default_factory=dict)


class _MemoryTransaction:
    def __init__(self, store: "MemoryDocumentStore") -> None:
        self._store = store
        self.reads: dict[str, int] = {}
        self.collection_reads: dict[str, int] = {}
        self.writes: list[WriteOp] = []

    def _check_read_allowed(self) -> None:
        if self.writes:
            raise TransactionAborted("Transaction reads must happen before writes")

    async def get(self, path: str) -> DocumentSnapshot:
        self._check_read_allowed()
        await asyncio.sleep(0)
        self.reads[path] = self._store._versions.get(path, 0)
        return self._store._snapshot(path)

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        self._check_read_allowed()
        await asyncio.sleep(0)
        self.collection_reads[collection] = self._store._collection_versions.get(collection, 0)
        return self._store._children(collection)

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        self.writes.append(WriteOp("set", path, dict(data), merge))

    def update(self, path: str, fields: dict[str, Any]) -> None:
        self.writes.append(WriteOp("update", path, dict(fields)))

    def delete(self, path: str) -> None:
        self.writes.append(WriteOp("delete", path))


class _MemoryBatch:
    def __init__(self, store: "MemoryDocumentStore") -> None:
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
        await asyncio.sleep(0)
        self._store._commit(self._writes)


class MemoryDocumentStore:
    """In-process document store with optimistic transactions and live snapshots.

    Snapshot pushes are scheduled on the running event loop after each commit,
    so subscribers never run inside the writer's call stack.
    """

    def __init__(self, clock: Callable[[], int] | None = None) -> None:
        self._clock = clock or now_ms
        self._last_time_ms = 0
        self._docs: dict[str, dict[str, Any]] = {}
        self._versions: dict[str, int] = {}
        self._collection_versions: dict[str, int] = {}
        self._version_counter = itertools.count(1)
        self._sub_counter = itertools.count(1)
        self._subscriptions: dict[int, _MemorySubscription] = {}
        self._pending_subscribe_failures: dict[str, list[Exception]] = {}
        self.commit_count = 0

    def _server_time(self) -> int:
        value = max(self._last_time_ms, int(self._clock()))
        self._last_time_ms = value
        return value

    def _snapshot(self, path: str) -> DocumentSnapshot:
        data = self._docs.get(path)
        return DocumentSnapshot(
            path=path,
            data=copy.deepcopy(data) if data is not None else None,
            version=self._versions.get(path, 0),
        )

    def _children(self, collection: str) -> list[DocumentSnapshot]:
        collection = collection.strip("/")
        return [
            self._snapshot(path)
            for path in self._docs
            if parent_of(path) == collection
        ]

    def _commit(self, writes: list[WriteOp]) -> None:
        if not writes:
            return
        server_time = self._server_time()
        staged: dict[str, dict[str, Any] | None] = {}
        for op in writes:
            split_path(op.path)
            existing = staged[op.path] if op.path in staged else self._docs.get(op.path)
            staged[op.path] = apply_write(existing, op, server_time)

        changed_collections: set[str] = set()
        for path, data in staged.items():
            version = next(self._version_counter)
            self._versions[path] = version
            if data is None:
                self._docs.pop(path, None)
            else:
                self._docs[path] = data
            collection = parent_of(path)
            self._collection_versions[collection] = version
            changed_collections.add(collection)

        self.commit_count += 1
        self._notify(set(staged), changed_collections)

    def _notify(self, changed_docs: set[str], changed_collections: set[str]) -> None:
        for sub in list(self._subscriptions.values()):
            if not sub.active:
                continue
            if sub.path in changed_docs or sub.path in changed_collections:
                self._schedule_push(sub)

    def _build_snapshot(self, sub: _MemorySubscription) -> Snapshot:
        if is_document_path(sub.path):
            return self._snapshot(sub.path)
        docs = self._children(sub.path)
        changes = diff_collection(sub.last_docs, docs)
        sub.last_docs = {doc.path: doc for doc in docs}
        return QuerySnapshot(path=sub.path, docs=docs, changes=changes)

    def _schedule_push(self, sub: _MemorySubscription) -> None:
        snapshot = self._build_snapshot(sub)
        loop = asyncio.get_running_loop()
        loop.call_soon(self._deliver, sub, snapshot)

    def _deliver(self, sub: _MemorySubscription, snapshot: Snapshot) -> None:
        if not sub.active:
            return
        try:
            sub.on_next(snapshot)
        except Exception:
            logger.exception("Snapshot listener failed for %s", sub.path)

    def _deliver_error(self, sub: _MemorySubscription, exc: Exception) -> None:
        try:
            sub.on_error(exc)
        except Exception:
            logger.exception("Snapshot error listener failed for %s", sub.path)

    async def get(self, path: str) -> DocumentSnapshot:
        await asyncio.sleep(0)
        return self._snapshot(path)

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None:
        await asyncio.sleep(0)
        self._commit([WriteOp("set", path, dict(data), merge)])

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await asyncio.sleep(0)
        self._commit([WriteOp("update", path, dict(fields))])

    async def delete(self, path: str) -> None:
        await asyncio.sleep(0)
        self._commit([WriteOp("delete", path)])

    async def add(self, collection: str, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        await asyncio.sleep(0)
        self._commit([WriteOp("create", child_path(collection, doc_id), dict(data))])
        return doc_id

    async def list(self, collection: str) -> list[DocumentSnapshot]:
        await asyncio.sleep(0)
        return self._children(collection)

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]:
        await asyncio.sleep(0)
        return apply_query(self._children(collection), filters, order_by, limit)

    async def collection_group(
        self,
        name: str,
        filters: Iterable[Filter] = (),
    ) -> list[DocumentSnapshot]:
        await asyncio.sleep(0)
        docs = [
            self._snapshot(path)
            for path in self._docs
            if collection_name_of(path) == name
        ]
        return apply_query(docs, filters)

    async def run_transaction(self, fn: Callable[[_MemoryTransaction], Awaitable[T]]) -> T:
        for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
            tx = _MemoryTransaction(self)
            result = await fn(tx)
            stale_docs = [
                path for path, version in tx.reads.items() if self._versions.get(path, 0) != version
            ]
            stale_collections = [
                path
                for path, version in tx.collection_reads.items()
                if self._collection_versions.get(path, 0) != version
            ]
            if not stale_docs and not stale_collections:
                self._commit(tx.writes)
                return result
            logger.debug(
                "Transaction conflict attempt=%s docs=%s collections=%s",
                attempt,
                stale_docs,
                stale_collections,
            )
        raise TransactionAborted("Transaction contention exceeded retry budget")

    def batch(self) -> _MemoryBatch:
        return _MemoryBatch(self)

    def subscribe(
        self,
        path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe:
        path = path.strip("/")
        sub = _MemorySubscription(
            sub_id=next(self._sub_counter),
            path=path,
            on_next=on_next,
            on_error=on_error,
        )
        pending_failures = self._pending_subscribe_failures.get(path)
        if pending_failures:
            exc = pending_failures.pop(0)
            if not pending_failures:
                self._pending_subscribe_failures.pop(path, None)
            sub.active = False
            asyncio.get_running_loop().call_soon(self._deliver_error, sub, exc)
            return lambda: None

        self._subscriptions[sub.sub_id] = sub
        self._schedule_push(sub)

        def unsubscribe() -> None:
            sub.active = False
            self._subscriptions.pop(sub.sub_id, None)

        return unsubscribe

    def fail_subscriptions(self, path: str, exc: Exception) -> int:
        """Terminate live subscriptions on ``path`` with ``exc``."""
        path = path.strip("/")
        failed = 0
        loop = asyncio.get_running_loop()
        for sub in list(self._subscriptions.values()):
            if sub.path != path or not sub.active:
                continue
            sub.active = False
            self._subscriptions.pop(sub.sub_id, None)
            loop.call_soon(self._deliver_error, sub, exc)
            failed += 1
        return failed

    def fail_next_subscribes(self, path: str, exc: Exception, times: int = 1) -> None:
        """Make the next ``times`` subscribe calls on ``path`` fail with ``exc``."""
        queue = self._pending_subscribe_failures.setdefault(path.strip("/"), [])
        queue.extend(exc for _ in range(max(0, times)))

    async def ping(self) -> bool:
        return True

    @property
    def subscription_count(self) -> int:
        return sum(1 for sub in self._subscriptions.values() if sub.active)

    async def close(self) -> None:
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()
