"""Store capabilities the semaphore relies on.

The protocols mirror the subset of redis-py's ``Redis`` and
``redis.asyncio.Redis`` APIs used by :class:`~token_semaphore.Semaphore` and
:class:`~token_semaphore.AIOSemaphore`, so real clients satisfy them as-is
and the in-memory stores under ``tests`` can stand in for Redis.

Replies may be ``bytes`` (redis-py default) or ``str``
(``decode_responses=True``); callers decode.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Mapping, Protocol, Sequence, Union

Value = Union[str, bytes, int, float]
Reply = Union[str, bytes]


class StorePipeline(Protocol):
    """Commands queued for one ``MULTI``/``EXEC`` transaction.

    After ``watch()`` commands run immediately and return their replies,
    until ``multi()`` switches back to queuing.
    """

    def get(self, name: str) -> Any: ...

    def delete(self, *names: str) -> Any: ...

    def set(self, name: str, value: Value) -> Any: ...

    def expire(self, name: str, time: int) -> Any: ...

    def persist(self, name: str) -> Any: ...

    def rpush(self, name: str, *values: Value) -> Any: ...

    def lrange(self, name: str, start: int, end: int) -> Any: ...

    def hset(self, name: str, key: str, value: Value) -> Any: ...

    def hget(self, name: str, key: str) -> Any: ...

    def hdel(self, name: str, *keys: str) -> Any: ...

    def hkeys(self, name: str) -> Any: ...

    def execute(self) -> list[Any]: ...

    def watch(self, *names: str) -> Any: ...

    def multi(self) -> None: ...

    def __enter__(self) -> StorePipeline: ...

    def __exit__(self, exc_type, exc_val, exc_tb) -> None: ...


class SemaphoreStore(Protocol):
    """Synchronous store, shaped after ``redis.Redis``."""

    def get(self, name: str) -> Reply | None: ...

    def set(
        self,
        name: str,
        value: Value,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool | None: ...

    def exists(self, *names: str) -> int: ...

    def delete(self, *names: str) -> int: ...

    def expire(self, name: str, time: int) -> bool: ...

    def rpush(self, name: str, *values: Value) -> int: ...

    def lpop(self, name: str) -> Reply | None: ...

    def blpop(
        self, keys: Sequence[str], timeout: float | None = 0
    ) -> tuple[Reply, Reply] | None: ...

    def llen(self, name: str) -> int: ...

    def hset(
        self,
        name: str,
        key: str | None = None,
        value: Value | None = None,
        mapping: Mapping[str, Value] | None = None,
    ) -> int: ...

    def hgetall(self, name: str) -> Mapping[Reply, Reply]: ...

    def hexists(self, name: str, key: str) -> bool: ...

    def time(self) -> tuple[int, int]: ...

    def pipeline(self, transaction: bool = True) -> StorePipeline: ...

    def transaction(
        self,
        func: Callable[[StorePipeline], Any],
        *watches: str,
        value_from_callable: bool = False,
    ) -> Any: ...


class AIOStorePipeline(Protocol):
    """Awaitable twin of :class:`StorePipeline`; queuing stays synchronous."""

    def get(self, name: str) -> Any: ...

    def delete(self, *names: str) -> Any: ...

    def set(self, name: str, value: Value) -> Any: ...

    def expire(self, name: str, time: int) -> Any: ...

    def persist(self, name: str) -> Any: ...

    def rpush(self, name: str, *values: Value) -> Any: ...

    def lrange(self, name: str, start: int, end: int) -> Any: ...

    def hset(self, name: str, key: str, value: Value) -> Any: ...

    def hget(self, name: str, key: str) -> Any: ...

    def hdel(self, name: str, *keys: str) -> Any: ...

    def hkeys(self, name: str) -> Any: ...

    def execute(self) -> Awaitable[list[Any]]: ...

    def watch(self, *names: str) -> Awaitable[Any]: ...

    def multi(self) -> None: ...

    async def __aenter__(self) -> AIOStorePipeline: ...

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None: ...


class AIOSemaphoreStore(Protocol):
    """Asynchronous store, shaped after ``redis.asyncio.Redis``."""

    async def get(self, name: str) -> Reply | None: ...

    async def set(
        self,
        name: str,
        value: Value,
        ex: int | None = None,
        nx: bool = False,
    ) -> bool | None: ...

    async def exists(self, *names: str) -> int: ...

    async def delete(self, *names: str) -> int: ...

    async def expire(self, name: str, time: int) -> bool: ...

    async def rpush(self, name: str, *values: Value) -> int: ...

    async def lpop(self, name: str) -> Reply | None: ...

    async def blpop(
        self, keys: Sequence[str], timeout: float | None = 0
    ) -> tuple[Reply, Reply] | None: ...

    async def llen(self, name: str) -> int: ...

    async def hset(
        self,
        name: str,
        key: str | None = None,
        value: Value | None = None,
        mapping: Mapping[str, Value] | None = None,
    ) -> int: ...

    async def hgetall(self, name: str) -> Mapping[Reply, Reply]: ...

    async def hexists(self, name: str, key: str) -> bool: ...

    async def time(self) -> tuple[int, int]: ...

    def pipeline(self, transaction: bool = True) -> AIOStorePipeline: ...

    async def transaction(
        self,
        func: Callable[[AIOStorePipeline], Any],
        *watches: str,
        value_from_callable: bool = False,
    ) -> Any: ...


def decode(value: Reply) -> str:
    """Decode a store reply to text."""
    if isinstance(value, bytes):
        return value.decode()
    return value
