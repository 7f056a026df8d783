from __future__ import annotations

import asyncio
import itertools
from typing import Callable


async def no_sleep(_seconds: float) -> None:
    return None


def make_clock(start: int = 1_700_000_000_000) -> Callable[[], int]:
    counter = itertools.count(start, 10)
    return lambda: next(counter)


def make_codes(*codes: str) -> Callable[[], str]:
    iterator = itertools.chain(codes, (f"ROOM{index}" for index in itertools.count(1)))
    return lambda: next(iterator)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.005)
