"""Async distributed token semaphore.

Same keys and protocol as :mod:`token_semaphore.semaphore`, so sync and
async handles can share one pool.
"""

from __future__ import annotations

import inspect
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, TypeVar, Union

from pottery import ContextTimer
from redis.exceptions import RedisError

from .exceptions import AcquireTimeoutError
from .keyspace import DEFAULT_PREFIX, Keyspace
from .mutex import aio_simple_mutex
from .semaphore import API_VERSION, EXISTS_TOKEN, missing_index_tokens, validate_options
from .store import decode
from .tokens import OpaqueToken, Token, mint_token, parse_token

if TYPE_CHECKING:
    from .store import AIOSemaphoreStore, AIOStorePipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AIOSemaphore:
    """Async distributed Redis-powered counting semaphore handing out tokens.

    A handle is meant to be used from a single event loop. Its private
    token stack is not shared with other threads.

    Usage:
        >>> import asyncio
        >>> from redis.asyncio import Redis
        >>> async def main():
        ...     sem = AIOSemaphore(name='db-slots', resources=3, redis=Redis())
        ...     token = await sem.acquire(timeout=5)
        ...     if token is not None:
        ...         try:
        ...             # At most 3 holders get here at once
        ...             pass
        ...         finally:
        ...             await sem.release(token)
        >>> asyncio.run(main())

        >>> # Or use as async context manager
        >>> async with sem.leased(timeout=5) as token:
        ...     pass

    Args:
        name: Identity of the pool shared by every handle using it
        resources: Number of slots in the pool (default: 1)
        expiration: TTL in seconds reapplied to every key after each change
        stale_client_timeout: Seconds after which a lease is presumed abandoned
        use_local_time: Use this host's clock instead of the Redis server's
        redis: Async Redis client (or compatible store) holding the pool
        prefix: Leading key segment; ``None`` for pre-namespaced clients
    """

    _CREATE_WINDOW = 10
    _RELEASE_LOCKS_EXPIRES = 10

    def __init__(
        self,
        *,
        name: str,
        resources: int = 1,
        expiration: int | None = None,
        stale_client_timeout: float | None = None,
        use_local_time: bool = False,
        redis: AIOSemaphoreStore | None = None,
        prefix: str | None = DEFAULT_PREFIX,
    ) -> None:
        validate_options(name, resources, expiration, stale_client_timeout)

        self._name = name
        self._resources = resources
        self._expiration = expiration
        self._stale_client_timeout = stale_client_timeout
        self._use_local_time = use_local_time
        self._keys = Keyspace(name, prefix=prefix)

        if redis is None:
            from redis.asyncio import Redis as AIORedisClient

            redis = AIORedisClient()
        self._redis: AIOSemaphoreStore = redis

        self._tokens: list[Token] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def resources(self) -> int:
        return self._resources

    @property
    def keys(self) -> Keyspace:
        return self._keys

    async def exists_or_create(self) -> bool:
        """Create the pool unless some handle already did."""
        if await self._redis.set(
            self._keys.exists, EXISTS_TOKEN, ex=self._CREATE_WINDOW, nx=True
        ):
            await self.create()
        elif await self._redis.get(self._keys.version) is None:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._keys.version, API_VERSION)
                self._queue_expiration(pipe)
                await pipe.execute()
        return True

    async def create(self) -> None:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            if self._resources:
                pipe.rpush(self._keys.available, *range(self._resources))
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._queue_expiration(pipe)
            await pipe.execute()
        logger.debug("created semaphore %r with %d tokens", self._name, self._resources)

    async def exists(self) -> bool:
        return bool(await self._redis.exists(self._keys.exists))

    async def available_count(self) -> int:
        if await self.exists():
            return await self._redis.llen(self._keys.available)
        return self._resources

    async def delete(self) -> None:
        await self._redis.delete(*self._keys.all())

    async def acquire(
        self,
        timeout: float | None = None,
        action: Callable[[Token], Union[Awaitable[T], T]] | None = None,
    ) -> Token | T | None:
        """Take a token from the pool.

        Args:
            timeout: None blocks until a token is free, a positive value
                blocks at most that many seconds, zero or less never blocks
            action: Called (and awaited, if it returns an awaitable) with
                the token, which is released afterwards no matter what

        Returns:
            The token (or ``action``'s result), None if no token was free
        """
        await self.exists_or_create()
        if self._stale_client_timeout is not None:
            await self.release_stale_locks()

        with ContextTimer() as timer:
            if timeout is None or timeout > 0:
                # BLPOP treats a timeout of 0 as "block forever"
                popped = await self._redis.blpop(
                    [self._keys.available], timeout=timeout or 0
                )
                raw = popped[1] if popped else None
            else:
                raw = await self._redis.lpop(self._keys.available)

        if raw is None:
            logger.debug("no token from %r after %dms", self._name, timer.elapsed())
            return None

        token = parse_token(raw)
        self._tokens.append(token)
        locked_at = await self.current_time()
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._keys.grabbed, str(token), locked_at)
            self._queue_expiration(pipe)
            await pipe.execute()
        logger.debug(
            "acquired token %s from %r after %dms", token, self._name, timer.elapsed()
        )

        if action is None:
            return token
        try:
            result = action(token)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            await self.release(token)

    wait = acquire

    @asynccontextmanager
    async def leased(self, timeout: float | None = None) -> AsyncIterator[Token]:
        """Hold a token for the duration of an ``async with`` block.

        Raises:
            AcquireTimeoutError: If no token became free within ``timeout``
        """
        token = await self.acquire(timeout)
        if token is None:
            raise AcquireTimeoutError(self._name, timeout)
        try:
            yield token
        finally:
            await self.release(token)

    async def release(self, token: Token | str | bytes | int | None = None) -> bool:
        """Return a token to the pool; see :meth:`Semaphore.release`."""
        if token is None:
            if not self._tokens:
                return False
            token = self._tokens.pop()
        else:
            token = parse_token(token)
            if token in self._tokens:
                self._tokens.remove(token)

        if not await self._signal_if_leased(token):
            logger.warning(
                "token %s of %r was reclaimed before it was released", token, self._name
            )
            return False

        logger.debug("released token %s to %r", token, self._name)
        return True

    async def signal(self, token: Token | str | bytes | int) -> None:
        token = parse_token(token)
        async with self._redis.pipeline(transaction=True) as pipe:
            self._queue_signal(pipe, token)
            await pipe.execute()

    async def _signal_if_leased(
        self, token: Token, locked_at: str | None = None
    ) -> bool:
        """Awaitable :meth:`Semaphore._signal_if_leased`."""

        async def move(pipe: AIOStorePipeline) -> bool:
            current = await pipe.hget(self._keys.grabbed, str(token))
            if current is None:
                return False
            if locked_at is not None and decode(current) != locked_at:
                return False
            pipe.multi()
            self._queue_signal(pipe, token)
            return True

        return await self._redis.transaction(
            move, self._keys.grabbed, value_from_callable=True
        )

    def _queue_signal(self, pipe: AIOStorePipeline, token: Token) -> None:
        pipe.hdel(self._keys.grabbed, str(token))
        pipe.rpush(self._keys.available, str(token))
        self._queue_expiration(pipe)

    async def release_reclaimed_slot(self) -> OpaqueToken:
        token = await self.generate_unique_token()
        await self.signal(token)
        return token

    async def locked(self, token: Token | str | bytes | int | None = None) -> bool:
        if token is not None:
            return bool(
                await self._redis.hexists(self._keys.grabbed, str(parse_token(token)))
            )

        for held_token in list(self._tokens):
            if await self.locked(held_token):
                return True
        return False

    async def all_tokens(self) -> list[Token]:
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrange(self._keys.available, 0, -1)
            pipe.hkeys(self._keys.grabbed)
            available, grabbed = await pipe.execute()
        return [parse_token(raw) for raw in [*available, *grabbed]]

    async def generate_unique_token(self) -> OpaqueToken:
        tokens = set(await self.all_tokens())
        token = mint_token()
        while token in tokens:
            token = mint_token()
        return token

    async def release_stale_locks(self) -> list[Token] | None:
        """Return abandoned leases to the pool and refill missing slots.

        Returns:
            The tokens pushed back to the pool, or None if another process
            is already sweeping
        """
        async with aio_simple_mutex(
            self._redis, self._keys.release_locks, expires=self._RELEASE_LOCKS_EXPIRES
        ) as entered:
            if not entered:
                return None

            with ContextTimer() as timer:
                released: list[Token] = await self._release_expired_leases()
                released += await self._restore_missing_slots()

        if released:
            logger.info(
                "returned %d tokens to %r in %dms: %s",
                len(released),
                self._name,
                timer.elapsed(),
                ", ".join(str(token) for token in released),
            )
        return released

    async def _release_expired_leases(self) -> list[Token]:
        if self._stale_client_timeout is None:
            return []

        now = await self.current_time()
        expired = []
        grabbed = await self._redis.hgetall(self._keys.grabbed)
        for raw, raw_locked_at in grabbed.items():
            locked_at = decode(raw_locked_at)
            if float(locked_at) + self._stale_client_timeout < now:
                token = parse_token(raw)
                if await self._signal_if_leased(token, locked_at):
                    expired.append(token)
        return expired

    async def _restore_missing_slots(self) -> list[Token]:
        missing = missing_index_tokens(await self.all_tokens(), self._resources)
        if missing:
            await self._redis.rpush(
                self._keys.available, *(str(token) for token in missing)
            )
        return list(missing)

    async def current_time(self) -> float:
        """Return seconds since the epoch, from Redis unless told otherwise."""
        if not self._use_local_time:
            try:
                seconds, microseconds = await self._redis.time()
                return int(seconds) + int(microseconds) / 1_000_000
            except RedisError:
                logger.warning(
                    "TIME failed for %r; using local clock from now on",
                    self._name,
                    exc_info=True,
                )
                self._use_local_time = True
        return time.time()

    def _queue_expiration(self, pipe: AIOStorePipeline) -> None:
        if self._expiration:
            for key in self._keys.all():
                pipe.expire(key, self._expiration)

    async def __aenter__(self) -> AIOSemaphore:
        """Enter async context manager, blocking until a token is acquired."""
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context manager, releasing the token taken on entry."""
        await self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self._name!r} "
            f"resources={self._resources}>"
        )
