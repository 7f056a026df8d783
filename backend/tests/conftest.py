from __future__ import annotations

import pytest

from gymbro.documents_memory import MemoryDocumentStore
from gymbro.identity import CurrentUser, StaticIdentity
from gymbro.realtime_sync import RealtimeSync
from gymbro.retry_policy import RetryPolicy
from gymbro.room_store import RoomStore

from helpers import make_clock, make_codes, no_sleep


@pytest.fixture
def store() -> MemoryDocumentStore:
    return MemoryDocumentStore(clock=make_clock())


@pytest.fixture
def retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_ms=10, max_delay_ms=80, sleep=no_sleep)


@pytest.fixture
def users() -> dict[str, CurrentUser]:
    return {
        "alice": CurrentUser(uid="alice", display_name="Alice"),
        "bob": CurrentUser(uid="bob", display_name="Bob"),
        "carol": CurrentUser(uid="carol", display_name="Carol"),
        "dave": CurrentUser(uid="dave", display_name="Dave"),
    }


@pytest.fixture
def room_store_for(store: MemoryDocumentStore, retry: RetryPolicy, users: dict[str, CurrentUser]):
    codes = make_codes()

    def factory(name: str | None) -> RoomStore:
        identity = StaticIdentity(users[name] if name else None)
        return RoomStore(store, identity, retry=retry, code_generator=codes)

    return factory


@pytest.fixture
def sync_for(store: MemoryDocumentStore, users: dict[str, CurrentUser]):
    created: list[RealtimeSync] = []

    def factory(name: str | None, **kwargs) -> RealtimeSync:
        options = {
            "members_debounce_ms": 0,
            "metrics_debounce_ms": 0,
            "retry_delay_ms": 0,
            "max_retries": 3,
        }
        options.update(kwargs)
        sync = RealtimeSync(store, StaticIdentity(users[name] if name else None), **options)
        created.append(sync)
        return sync

    yield factory
    for sync in created:
        sync.cleanup()
