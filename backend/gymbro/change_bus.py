from __future__ import annotations

import asyncio
import logging
from typing import Callable, Iterable, Protocol

from redis.asyncio import Redis
from redis.asyncio import from_url as redis_from_url
from redis.asyncio.client import PubSub

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]
CHANNEL_PREFIX = "gymbro:changes:"


class ChangeBus(Protocol):
    async def publish(self, paths: Iterable[str]) -> None: ...

    def listen(self, path: str, listener: ChangeListener) -> Callable[[], None]: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


class LocalChangeBus:
    """Fan-out of changed document paths within one process."""

    def __init__(self) -> None:
        self._listeners: dict[str, list[ChangeListener]] = {}

    @property
    def kind(self) -> str:
        return "local"

    def _dispatch(self, path: str) -> None:
        for listener in list(self._listeners.get(path, ())):
            try:
                listener(path)
            except Exception:
                logger.exception("Change listener failed for %s", path)

    async def publish(self, paths: Iterable[str]) -> None:
        loop = asyncio.get_running_loop()
        for path in dict.fromkeys(paths):
            if path in self._listeners:
                loop.call_soon(self._dispatch, path)

    def listen(self, path: str, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.setdefault(path, []).append(listener)

        def stop() -> None:
            listeners = self._listeners.get(path)
            if not listeners:
                return
            try:
                listeners.remove(listener)
            except ValueError:
                return
            if not listeners:
                self._listeners.pop(path, None)

        return stop

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._listeners.clear()


class RedisChangeBus(LocalChangeBus):
    """Changed paths travel through redis pub/sub so every process sees them."""

    def __init__(self, client: Redis) -> None:
        super().__init__()
        self._client = client
        self._pubsub: PubSub = client.pubsub()
        self._reader: asyncio.Task[None] | None = None
        self._channel_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def kind(self) -> str:
        return "redis"

    @staticmethod
    def _channel(path: str) -> str:
        return f"{CHANNEL_PREFIX}{path}"

    def _track(self, task: asyncio.Task[None]) -> None:
        self._channel_tasks.add(task)
        task.add_done_callback(self._channel_tasks.discard)

    def _ensure_reader(self) -> None:
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="gymbro:change-bus")

    async def _read_loop(self) -> None:
        while not self._closed:
            if not self._pubsub.subscribed:
                await asyncio.sleep(0.05)
                continue
            try:
                message = await self._pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Redis change bus read failed")
                await asyncio.sleep(1.0)
                continue
            if not message:
                continue
            channel = message.get("channel")
            if isinstance(channel, bytes):
                channel = channel.decode("utf-8")
            if not isinstance(channel, str) or not channel.startswith(CHANNEL_PREFIX):
                continue
            self._dispatch(channel[len(CHANNEL_PREFIX) :])

    async def _subscribe_channel(self, path: str) -> None:
        try:
            await self._pubsub.subscribe(self._channel(path))
        except Exception:
            logger.exception("Redis subscribe failed for %s", path)

    async def _unsubscribe_channel(self, path: str) -> None:
        try:
            await self._pubsub.unsubscribe(self._channel(path))
        except Exception:
            logger.exception("Redis unsubscribe failed for %s", path)

    async def publish(self, paths: Iterable[str]) -> None:
        for path in dict.fromkeys(paths):
            try:
                await self._client.publish(self._channel(path), "1")
            except Exception:
                logger.exception("Redis publish failed for %s", path)

    def listen(self, path: str, listener: ChangeListener) -> Callable[[], None]:
        first = path not in self._listeners
        stop_local = super().listen(path, listener)
        if first:
            self._track(asyncio.create_task(self._subscribe_channel(path)))
        self._ensure_reader()

        def stop() -> None:
            stop_local()
            if path not in self._listeners and not self._closed:
                self._track(asyncio.create_task(self._unsubscribe_channel(path)))

        return stop

    async def ping(self) -> bool:
        try:
            await self._client.ping()
            return True
        except Exception:
            logger.exception("Redis ping failed")
            return False

    async def close(self) -> None:
        self._closed = True
        await super().close()
        if self._channel_tasks:
            await asyncio.gather(*list(self._channel_tasks), return_exceptions=True)
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        try:
            await self._pubsub.aclose()
        finally:
            await self._client.aclose()


async def create_change_bus(redis_url: str | None) -> LocalChangeBus:
    if not redis_url:
        logger.info("Redis URL is not configured, using in-process change bus")
        return LocalChangeBus()

    client = redis_from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
    )
    try:
        await client.ping()
    except Exception:
        logger.exception("Failed to connect to Redis %s, using in-process change bus", redis_url)
        try:
            await client.aclose()
        except Exception:
            logger.debug("Redis client close failed after ping error", exc_info=True)
        return LocalChangeBus()

    logger.info("Redis change bus connected")
    return RedisChangeBus(client)
