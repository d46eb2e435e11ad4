"""Distributed token semaphore on top of plain Redis lists and hashes.

Free slots live in a Redis list, leased slots in a hash keyed by token with
the time they were taken. Acquiring pops a token off the list, releasing
moves it back, and a periodic sweep returns tokens whose holders vanished.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TYPE_CHECKING, TypeVar

from pottery import ContextTimer
from redis.exceptions import RedisError

from .exceptions import AcquireTimeoutError
from .keyspace import DEFAULT_PREFIX, Keyspace
from .mutex import simple_mutex
from .store import decode
from .tokens import IndexToken, OpaqueToken, Token, mint_token, parse_token

if TYPE_CHECKING:
    from .store import SemaphoreStore, StorePipeline

logger = logging.getLogger(__name__)

T = TypeVar("T")

EXISTS_TOKEN = "1"
API_VERSION = "1"


def validate_options(
    name: str,
    resources: int,
    expiration: int | None,
    stale_client_timeout: float | None,
) -> None:
    """Reject constructor options shared by the sync and async semaphores."""
    if not name:
        raise ValueError("Semaphore name must be a non-empty string")
    if resources < 0:
        raise ValueError("Semaphore resources must be non-negative")
    if expiration is not None and expiration <= 0:
        raise ValueError("expiration must be a positive number of seconds")
    if stale_client_timeout is not None and stale_client_timeout < 0:
        raise ValueError("stale_client_timeout must be non-negative")


def missing_index_tokens(tokens: list[Token], resources: int) -> list[IndexToken]:
    """Canonical slots to push back so the pool holds ``resources`` tokens.

    Opaque tokens count toward the total but never stand in for a specific
    index, and no more than the shortfall is ever returned.
    """
    shortfall = resources - len(tokens)
    if shortfall <= 0:
        return []
    present = {token.index for token in tokens if isinstance(token, IndexToken)}
    missing = [IndexToken(i) for i in range(resources) if i not in present]
    return missing[:shortfall]


class Semaphore:
    """Distributed Redis-powered counting semaphore handing out tokens.

    Every slot is a token. ``acquire()`` returns the token it took (or
    ``None`` on timeout) and ``release()`` hands the most recent one back.
    Holders that crash without releasing are detected through
    ``stale_client_timeout`` and their tokens are returned to the pool.

    The handle remembers the tokens it holds in a private stack. The stack
    is lock-protected, so one handle may be shared between threads, but
    ``release()`` without arguments then returns whichever token any thread
    took last.

    Usage:
        >>> from redis import Redis
        >>> sem = Semaphore(name='db-slots', resources=3, redis=Redis())
        >>> token = sem.acquire(timeout=5)
        >>> if token is not None:
        ...     try:
        ...         # At most 3 holders get here at once
        ...         pass
        ...     finally:
        ...         sem.release(token)

        >>> # Or let the semaphore release for you
        >>> with sem.leased(timeout=5) as token:
        ...     pass

    Args:
        name: Identity of the pool shared by every handle using it
        resources: Number of slots in the pool (default: 1)
        expiration: TTL in seconds reapplied to every key after each change
        stale_client_timeout: Seconds after which a lease is presumed abandoned
        use_local_time: Use this host's clock instead of the Redis server's
        redis: Redis client (or compatible store) holding the pool
        prefix: Leading key segment; ``None`` for pre-namespaced clients
    """

    _CREATE_WINDOW = 10  # seconds the existence flag may live before create commits
    _RELEASE_LOCKS_EXPIRES = 10  # seconds before a crashed sweeper's mutex lapses

    def __init__(
        self,
        *,
        name: str,
        resources: int = 1,
        expiration: int | None = None,
        stale_client_timeout: float | None = None,
        use_local_time: bool = False,
        redis: SemaphoreStore | None = None,
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
            from redis import Redis as RedisClient

            redis = RedisClient()
        self._redis: SemaphoreStore = redis

        self._tokens: list[Token] = []
        self._tokens_lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def resources(self) -> int:
        """Return the configured number of slots."""
        return self._resources

    @property
    def keys(self) -> Keyspace:
        return self._keys

    # -- lifecycle ---------------------------------------------------------

    def exists_or_create(self) -> bool:
        """Create the pool unless some handle already did.

        Pools written by older clients lack a version key; it is filled in
        here. Returns True once the pool is known to exist.
        """
        if self._redis.set(
            self._keys.exists, EXISTS_TOKEN, ex=self._CREATE_WINDOW, nx=True
        ):
            self.create()
        elif self._redis.get(self._keys.version) is None:
            with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._keys.version, API_VERSION)
                self._queue_expiration(pipe)
                pipe.execute()
        return True

    def create(self) -> None:
        """Reset the pool to tokens ``0..resources-1`` in one transaction."""
        with self._redis.pipeline(transaction=True) as pipe:
            pipe.delete(self._keys.grabbed, self._keys.available)
            if self._resources:
                pipe.rpush(self._keys.available, *range(self._resources))
            pipe.set(self._keys.version, API_VERSION)
            pipe.persist(self._keys.exists)
            self._queue_expiration(pipe)
            pipe.execute()
        logger.debug("created semaphore %r with %d tokens", self._name, self._resources)

    def exists(self) -> bool:
        return bool(self._redis.exists(self._keys.exists))

    def available_count(self) -> int:
        """Return the number of free tokens; a pool not yet created is full."""
        if self.exists():
            return self._redis.llen(self._keys.available)
        return self._resources

    def delete(self) -> None:
        """Remove every key of the pool. Outstanding leases are forgotten."""
        self._redis.delete(*self._keys.all())

    # -- leasing -----------------------------------------------------------

    def acquire(
        self,
        timeout: float | None = None,
        action: Callable[[Token], T] | None = None,
    ) -> Token | T | None:
        """Take a token from the pool.

        Args:
            timeout: None blocks until a token is free, a positive value
                blocks at most that many seconds, zero or less never blocks
            action: Called with the token, which is released afterwards
                whether or not the call raises

        Returns:
            The token (or ``action``'s result), None if no token was free
        """
        self.exists_or_create()
        if self._stale_client_timeout is not None:
            self.release_stale_locks()

        with ContextTimer() as timer:
            if timeout is None or timeout > 0:
                # BLPOP treats a timeout of 0 as "block forever"
                popped = self._redis.blpop([self._keys.available], timeout=timeout or 0)
                raw = popped[1] if popped else None
            else:
                raw = self._redis.lpop(self._keys.available)

        if raw is None:
            logger.debug(
                "no token from %r after %dms", self._name, timer.elapsed()
            )
            return None

        token = parse_token(raw)
        with self._tokens_lock:
            self._tokens.append(token)
        locked_at = self.current_time()
        with self._redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._keys.grabbed, str(token), locked_at)
            self._queue_expiration(pipe)
            pipe.execute()
        logger.debug(
            "acquired token %s from %r after %dms", token, self._name, timer.elapsed()
        )

        if action is None:
            return token
        try:
            return action(token)
        finally:
            self.release(token)

    wait = acquire

    @contextmanager
    def leased(self, timeout: float | None = None) -> Iterator[Token]:
        """Hold a token for the duration of a ``with`` block.

        Raises:
            AcquireTimeoutError: If no token became free within ``timeout``
        """
        token = self.acquire(timeout)
        if token is None:
            raise AcquireTimeoutError(self._name, timeout)
        try:
            yield token
        finally:
            self.release(token)

    def release(self, token: Token | str | bytes | int | None = None) -> bool:
        """Return a token to the pool.

        Without a token, the one this handle acquired last is released.

        Returns:
            False if this handle holds nothing, or if the token is no longer
            leased because a stale-lease sweep already returned it
        """
        with self._tokens_lock:
            if token is None:
                if not self._tokens:
                    return False
                token = self._tokens.pop()
            else:
                token = parse_token(token)
                if token in self._tokens:
                    self._tokens.remove(token)

        if not self._signal_if_leased(token):
            logger.warning(
                "token %s of %r was reclaimed before it was released", token, self._name
            )
            return False

        logger.debug("released token %s to %r", token, self._name)
        return True

    def signal(self, token: Token | str | bytes | int) -> None:
        """Move ``token`` from the leased hash to the tail of the free list."""
        token = parse_token(token)
        with self._redis.pipeline(transaction=True) as pipe:
            self._queue_signal(pipe, token)
            pipe.execute()

    def _signal_if_leased(self, token: Token, locked_at: str | None = None) -> bool:
        """Like :meth:`signal`, but only while ``token`` is still leased.

        With ``locked_at``, only while it is still the same lease. ``GRABBED``
        is watched between the check and the move, so when a holder and a
        sweeper return the same token only one of them pushes.
        """

        def move(pipe: StorePipeline) -> bool:
            current = pipe.hget(self._keys.grabbed, str(token))
            if current is None:
                return False
            if locked_at is not None and decode(current) != locked_at:
                return False
            pipe.multi()
            self._queue_signal(pipe, token)
            return True

        return self._redis.transaction(
            move, self._keys.grabbed, value_from_callable=True
        )

    def _queue_signal(self, pipe: StorePipeline, token: Token) -> None:
        pipe.hdel(self._keys.grabbed, str(token))
        pipe.rpush(self._keys.available, str(token))
        self._queue_expiration(pipe)

    def release_reclaimed_slot(self) -> OpaqueToken:
        """Add a freshly minted token to the free list and return it."""
        token = self.generate_unique_token()
        self.signal(token)
        return token

    def locked(self, token: Token | str | bytes | int | None = None) -> bool:
        """Return True if ``token`` is leased.

        Without a token, return True if any token this handle acquired is
        still leased.
        """
        if token is not None:
            return bool(
                self._redis.hexists(self._keys.grabbed, str(parse_token(token)))
            )

        with self._tokens_lock:
            held = list(self._tokens)
        return any(self.locked(held_token) for held_token in held)

    def all_tokens(self) -> list[Token]:
        """Return every free and leased token, read in one transaction."""
        with self._redis.pipeline(transaction=True) as pipe:
            pipe.lrange(self._keys.available, 0, -1)
            pipe.hkeys(self._keys.grabbed)
            available, grabbed = pipe.execute()
        return [parse_token(raw) for raw in [*available, *grabbed]]

    def generate_unique_token(self) -> OpaqueToken:
        """Mint a token not currently in the pool or the leased hash.

        Two handles minting at the same moment could in principle pick the
        same value; the check only covers tokens already stored.
        """
        tokens = set(self.all_tokens())
        token = mint_token()
        while token in tokens:
            token = mint_token()
        return token

    # -- reclamation -------------------------------------------------------

    def release_stale_locks(self) -> list[Token] | None:
        """Return abandoned leases to the pool and refill missing slots.

        Only one process sweeps at a time.

        Returns:
            The tokens pushed back to the pool, or None if another process
            is already sweeping
        """
        with simple_mutex(
            self._redis, self._keys.release_locks, expires=self._RELEASE_LOCKS_EXPIRES
        ) as entered:
            if not entered:
                return None

            with ContextTimer() as timer:
                released: list[Token] = self._release_expired_leases()
                released += self._restore_missing_slots()

        if released:
            logger.info(
                "returned %d tokens to %r in %dms: %s",
                len(released),
                self._name,
                timer.elapsed(),
                ", ".join(str(token) for token in released),
            )
        return released

    def _release_expired_leases(self) -> list[Token]:
        if self._stale_client_timeout is None:
            return []

        now = self.current_time()
        expired = []
        for raw, raw_locked_at in self._redis.hgetall(self._keys.grabbed).items():
            locked_at = decode(raw_locked_at)
            if float(locked_at) + self._stale_client_timeout < now:
                token = parse_token(raw)
                # the holder may have released it since the read
                if self._signal_if_leased(token, locked_at):
                    expired.append(token)
        return expired

    def _restore_missing_slots(self) -> list[Token]:
        # A token between another client's BLPOP and HSET is in neither
        # collection, so this can still overfill the pool in that window.
        missing = missing_index_tokens(self.all_tokens(), self._resources)
        if missing:
            self._redis.rpush(self._keys.available, *(str(token) for token in missing))
        return list(missing)

    # -- helpers -----------------------------------------------------------

    def current_time(self) -> float:
        """Return seconds since the epoch, from Redis unless told otherwise.

        If the server can't report its time, this handle switches to the
        local clock for good.
        """
        if not self._use_local_time:
            try:
                seconds, microseconds = self._redis.time()
                return int(seconds) + int(microseconds) / 1_000_000
            except RedisError:
                logger.warning(
                    "TIME failed for %r; using local clock from now on",
                    self._name,
                    exc_info=True,
                )
                self._use_local_time = True
        return time.time()

    def _queue_expiration(self, pipe: StorePipeline) -> None:
        if self._expiration:
            for key in self._keys.all():
                pipe.expire(key, self._expiration)

    def __enter__(self) -> Semaphore:
        """Enter context manager, blocking until a token is acquired."""
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit context manager, releasing the token taken on entry."""
        self.release()

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} "
            f"name={self._name!r} "
            f"available={self.available_count()}/{self._resources}>"
        )
