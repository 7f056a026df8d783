from __future__ import annotations

import pytest

from gymbro.documents import DocumentAlreadyExists, DocumentNotFound
from gymbro.room_errors import InvalidArgument, PermissionDenied, Transient
from gymbro.retry_policy import RetryPolicy, is_permanent_error


class CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def _recording_policy(**kwargs) -> tuple[RetryPolicy, list[float]]:
    sleeps: list[float] = []

    async def sleep(seconds: float) -> None:
        sleeps.append(seconds)

    return RetryPolicy(sleep=sleep, **kwargs), sleeps


def test_delay_doubles_and_caps() -> None:
    policy = RetryPolicy(max_attempts=6, base_delay_ms=1000, max_delay_ms=8000)
    assert [policy.delay_before_attempt(n) for n in range(1, 7)] == [0, 1000, 2000, 4000, 8000, 8000]


def test_permanent_error_classification() -> None:
    assert is_permanent_error(PermissionDenied("no"))
    assert is_permanent_error(InvalidArgument("bad"))
    assert is_permanent_error(CodedError("denied", "permission-denied"))
    assert is_permanent_error(RuntimeError("Document already exists"))
    assert is_permanent_error(RuntimeError("Room not found"))
    assert is_permanent_error(DocumentNotFound("gymbro_rooms/ABC123"))
    assert is_permanent_error(DocumentAlreadyExists("gymbro_rooms/ABC123"))
    assert not is_permanent_error(Transient("try later"))
    assert not is_permanent_error(ConnectionError("socket reset"))


@pytest.mark.asyncio
async def test_transient_failures_are_retried_with_backoff() -> None:
    policy, sleeps = _recording_policy(max_attempts=3, base_delay_ms=1000, max_delay_ms=8000)
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("network down")
        return "ok"

    assert await policy.run(flaky, name="flaky") == "ok"
    assert calls == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried() -> None:
    policy, sleeps = _recording_policy(max_attempts=3, base_delay_ms=10, max_delay_ms=10)
    calls = 0

    async def denied() -> None:
        nonlocal calls
        calls += 1
        raise PermissionDenied("Solo l'host")

    with pytest.raises(PermissionDenied):
        await policy.run(denied)
    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_last_error_is_raised_after_budget(caplog: pytest.LogCaptureFixture) -> None:
    policy, sleeps = _recording_policy(max_attempts=3, base_delay_ms=10, max_delay_ms=15)
    calls = 0

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise ConnectionError(f"down {calls}")

    with caplog.at_level("WARNING", logger="gymbro.retry_policy"):
        with pytest.raises(ConnectionError, match="down 3"):
            await policy.run(always_down, name="always_down")
    assert calls == 3
    assert sleeps == [0.01, 0.015]
    assert any("room.retry_exhausted" in record.getMessage() for record in caplog.records)


@pytest.mark.asyncio
async def test_single_attempt_policy_never_sleeps() -> None:
    policy, sleeps = _recording_policy(max_attempts=1, base_delay_ms=10, max_delay_ms=10)

    async def down() -> None:
        raise ConnectionError("down")

    with pytest.raises(ConnectionError):
        await policy.run(down)
    assert sleeps == []


@pytest.mark.asyncio
async def test_untranslated_store_errors_are_not_retried() -> None:
    policy, sleeps = _recording_policy(max_attempts=3, base_delay_ms=10, max_delay_ms=10)
    calls = 0

    async def missing() -> None:
        nonlocal calls
        calls += 1
        raise DocumentNotFound("gymbro_rooms/ABC123/members/alice")

    with pytest.raises(DocumentNotFound):
        await policy.run(missing)
    assert calls == 1
    assert sleeps == []
