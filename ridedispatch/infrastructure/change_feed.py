"""
Change feeds -- the push channel behind store subscriptions.

A store publishes ``(collection, [record ids])`` after every commit; each
live ``Subscription`` listens on its collection and re-runs its query.

* ``LocalChangeFeed`` delivers in-process, synchronously after commit.
* ``RedisChangeFeed`` uses Redis pub/sub so API workers on different
  hosts see each other's commits.  Delivery is at-most-once; a
  subscription that misses a message catches up on the next change.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import suppress
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from ridedispatch.domain.exceptions import StoreError

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[list[str]], Awaitable[None]]
StopListening = Callable[[], Awaitable[None]]


class ChangeFeed(ABC):
    @abstractmethod
    async def publish(self, collection: str, record_ids: list[str]) -> None: ...

    @abstractmethod
    async def listen(self, collection: str, handler: ChangeHandler) -> StopListening:
        """Register *handler*; returns a coroutine function that removes it."""


class LocalChangeFeed(ChangeFeed):
    def __init__(self):
        self._handlers: dict[str, list[ChangeHandler]] = defaultdict(list)

    async def publish(self, collection: str, record_ids: list[str]) -> None:
        for handler in list(self._handlers[collection]):
            try:
                await handler(list(record_ids))
            except Exception:
                logger.exception("Change handler failed for %s", collection)

    async def listen(self, collection: str, handler: ChangeHandler) -> StopListening:
        self._handlers[collection].append(handler)

        async def stop() -> None:
            with suppress(ValueError):
                self._handlers[collection].remove(handler)

        return stop


class RedisChangeFeed(ChangeFeed):
    def __init__(self, client: aioredis.Redis, prefix: str = "ridedispatch:changes"):
        self.redis = client
        self.prefix = prefix

    def channel(self, collection: str) -> str:
        return f"{self.prefix}:{collection}"

    async def publish(self, collection: str, record_ids: list[str]) -> None:
        try:
            await self.redis.publish(self.channel(collection), json.dumps(record_ids))
        except RedisError:
            # The commit already succeeded; subscribers catch up on the next change
            logger.exception("Failed to publish change for %s", collection)

    async def listen(self, collection: str, handler: ChangeHandler) -> StopListening:
        channel = self.channel(collection)
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            raise StoreError(f"Cannot subscribe to {channel}: {exc}") from exc

        async def _reader() -> None:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                try:
                    await handler(json.loads(message["data"]))
                except Exception:
                    logger.exception("Change handler failed for %s", collection)

        task = asyncio.create_task(_reader())

        async def stop() -> None:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
            await pubsub.unsubscribe(channel)
            await pubsub.aclose()

        return stop
