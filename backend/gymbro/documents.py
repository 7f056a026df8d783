from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Literal, Protocol, TypeVar, Union

T = TypeVar("T")

ChangeType = Literal["added", "modified", "removed"]
FilterOp = Literal["==", "in"]
Filter = tuple[str, FilterOp, Any]
OrderBy = tuple[str, Literal["asc", "desc"]]


class DocumentStoreError(Exception):
    """Base class for failures raised by a document store."""


class DocumentNotFound(DocumentStoreError):
    code = "not-found"


class DocumentAlreadyExists(DocumentStoreError):
    code = "already-exists"


class TransactionAborted(DocumentStoreError):
    code = "aborted"


class _ServerTimestamp:
    _instance: "_ServerTimestamp | None" = None

    def __new__(cls) -> "_ServerTimestamp":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()


@dataclass(frozen=True)
class Increment:
    amount: float


@dataclass(frozen=True)
class DocumentSnapshot:
    path: str
    data: dict[str, Any] | None
    version: int = 0

    @property
    def id(self) -> str:
        return doc_id_of(self.path)

    @property
    def exists(self) -> bool:
        return self.data is not None

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.data) if self.data is not None else {}

    def get(self, key: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        return self.data.get(key, default)


@dataclass(frozen=True)
class DocumentChange:
    type: ChangeType
    doc: DocumentSnapshot


@dataclass(frozen=True)
class QuerySnapshot:
    path: str
    docs: list[DocumentSnapshot] = field(default_factory=list)
    changes: list[DocumentChange] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.docs


Snapshot = Union[DocumentSnapshot, QuerySnapshot]
SnapshotCallback = Callable[[Snapshot], None]
ErrorCallback = Callable[[Exception], None]
Unsubscribe = Callable[[], None]


class Transaction(Protocol):
    async def get(self, path: str) -> DocumentSnapshot: ...

    async def list(self, collection: str) -> list[DocumentSnapshot]: ...

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None: ...

    def update(self, path: str, fields: dict[str, Any]) -> None: ...

    def delete(self, path: str) -> None: ...


class WriteBatch(Protocol):
    def create(self, path: str, data: dict[str, Any]) -> None: ...

    def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None: ...

    def update(self, path: str, fields: dict[str, Any]) -> None: ...

    def delete(self, path: str) -> None: ...

    async def commit(self) -> None: ...


class DocumentStore(Protocol):
    async def get(self, path: str) -> DocumentSnapshot: ...

    async def set(self, path: str, data: dict[str, Any], merge: bool = False) -> None: ...

    async def update(self, path: str, fields: dict[str, Any]) -> None: ...

    async def delete(self, path: str) -> None: ...

    async def add(self, collection: str, data: dict[str, Any]) -> str: ...

    async def list(self, collection: str) -> list[DocumentSnapshot]: ...

    async def query(
        self,
        collection: str,
        filters: Iterable[Filter] = (),
        order_by: OrderBy | None = None,
        limit: int | None = None,
    ) -> list[DocumentSnapshot]: ...

    async def collection_group(
        self,
        name: str,
        filters: Iterable[Filter] = (),
    ) -> list[DocumentSnapshot]: ...

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T: ...

    def batch(self) -> WriteBatch: ...

    def subscribe(
        self,
        path: str,
        on_next: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> Unsubscribe: ...

    async def close(self) -> None: ...


@dataclass(frozen=True)
class WriteOp:
    kind: Literal["create", "set", "update", "delete"]
    path: str
    data: dict[str, Any] | None = None
    merge: bool = False


MAX_TRANSACTION_ATTEMPTS = 5


def now_ms() -> int:
    return int(time.time() * 1000)


def split_path(path: str) -> list[str]:
    parts = [part for part in str(path or "").split("/") if part]
    if not parts:
        raise ValueError("Empty document path")
    return parts


def is_document_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 0


def parent_of(path: str) -> str:
    parts = split_path(path)
    return "/".join(parts[:-1])


def doc_id_of(path: str) -> str:
    return split_path(path)[-1]


def collection_name_of(path: str) -> str:
    parts = split_path(path)
    return parts[-2] if len(parts) >= 2 else parts[-1]


def child_path(collection: str, doc_id: str) -> str:
    return f"{collection.strip('/')}/{doc_id}"


def resolve_fields(
    existing: dict[str, Any] | None,
    fields: dict[str, Any],
    server_time_ms: int,
) -> dict[str, Any]:
    """Merge ``fields`` into ``existing`` resolving sentinels.

    ``SERVER_TIMESTAMP`` becomes ``server_time_ms`` and ``Increment`` adds to
    the current numeric value (missing or non-numeric values count as zero).
    """
    merged: dict[str, Any] = copy.deepcopy(existing) if existing else {}
    for key, value in fields.items():
        if value is SERVER_TIMESTAMP:
            merged[key] = server_time_ms
        elif isinstance(value, Increment):
            current = merged.get(key)
            if isinstance(current, bool) or not isinstance(current, (int, float)):
                current = 0
            merged[key] = current + value.amount
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_write(
    existing: dict[str, Any] | None,
    op: WriteOp,
    server_time_ms: int,
) -> dict[str, Any] | None:
    if op.kind == "delete":
        return None
    if op.kind == "create":
        if existing is not None:
            raise DocumentAlreadyExists(op.path)
        return resolve_fields(None, op.data or {}, server_time_ms)
    if op.kind == "update":
        if existing is None:
            raise DocumentNotFound(op.path)
        return resolve_fields(existing, op.data or {}, server_time_ms)
    base = existing if op.merge else None
    return resolve_fields(base, op.data or {}, server_time_ms)


def _matches(data: dict[str, Any], filters: Iterable[Filter]) -> bool:
    for field_name, op, value in filters:
        current = data.get(field_name)
        if op == "==":
            if current != value:
                return False
        elif op == "in":
            if current not in value:
                return False
        else:
            raise ValueError(f"Unsupported filter operator {op!r}")
    return True


def apply_query(
    docs: Iterable[DocumentSnapshot],
    filters: Iterable[Filter] = (),
    order_by: OrderBy | None = None,
    limit: int | None = None,
) -> list[DocumentSnapshot]:
    filter_list = list(filters)
    result = [doc for doc in docs if doc.data is not None and _matches(doc.data, filter_list)]
    if order_by is not None:
        field_name, direction = order_by
        present = [doc for doc in result if doc.get(field_name) is not None]
        missing = [doc for doc in result if doc.get(field_name) is None]
        present.sort(key=lambda doc: doc.get(field_name), reverse=direction == "desc")
        result = present + missing
    if limit is not None:
        result = result[: max(0, int(limit))]
    return result


def diff_collection(
    previous: dict[str, DocumentSnapshot],
    current: list[DocumentSnapshot],
) -> list[DocumentChange]:
    changes: list[DocumentChange] = []
    current_paths = set()
    for doc in current:
        current_paths.add(doc.path)
        before = previous.get(doc.path)
        if before is None:
            changes.append(DocumentChange("added", doc))
        elif before.version != doc.version or before.data != doc.data:
            changes.append(DocumentChange("modified", doc))
    for path, before in previous.items():
        if path not in current_paths:
            changes.append(DocumentChange("removed", before))
    return changes
