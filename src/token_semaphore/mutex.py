"""Test-and-set critical sections on a single Redis key.

Unlike a Redlock, a contended :func:`simple_mutex` never waits: the caller
learns immediately that somebody else is inside and moves on. The semaphore
uses it to make sure only one process at a time sweeps stale leases.

Each entry stores its own random value. On exit the key is deleted only if
it still holds that value, so a holder whose guard lapsed never removes the
key of whoever took the section next.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import TYPE_CHECKING

from .store import decode

if TYPE_CHECKING:
    from .store import (
        AIOSemaphoreStore,
        AIOStorePipeline,
        SemaphoreStore,
        StorePipeline,
    )

logger = logging.getLogger(__name__)


@contextmanager
def simple_mutex(
    redis: SemaphoreStore, key: str, expires: int | None = None
) -> Iterator[bool]:
    """Enter a critical section guarded by ``key``.

    Yields True if this caller now holds the section and False if another
    holder already does. ``expires`` bounds how long a crashed holder can
    keep the key. On exit the key is deleted only while it is still ours.

    Usage:
        >>> with simple_mutex(redis, 'jobs:sweep', expires=10) as entered:
        ...     if entered:
        ...         sweep()
    """
    owner = str(uuid.uuid4())
    # SET NX EX tests, sets and arms the expiry in one command
    if not redis.set(key, owner, ex=expires, nx=True):
        logger.debug("mutex %s is held elsewhere", key)
        yield False
        return

    def delete_if_owned(pipe: StorePipeline) -> bool:
        value = pipe.get(key)
        if value is None or decode(value) != owner:
            return False
        pipe.multi()
        pipe.delete(key)
        return True

    try:
        yield True
    finally:
        if not redis.transaction(delete_if_owned, key, value_from_callable=True):
            logger.warning("mutex %s lapsed before its holder left", key)


@asynccontextmanager
async def aio_simple_mutex(
    redis: AIOSemaphoreStore, key: str, expires: int | None = None
) -> AsyncIterator[bool]:
    """Async version of :func:`simple_mutex`."""
    owner = str(uuid.uuid4())
    if not await redis.set(key, owner, ex=expires, nx=True):
        logger.debug("mutex %s is held elsewhere", key)
        yield False
        return

    async def delete_if_owned(pipe: AIOStorePipeline) -> bool:
        value = await pipe.get(key)
        if value is None or decode(value) != owner:
            return False
        pipe.multi()
        pipe.delete(key)
        return True

    try:
        yield True
    finally:
        if not await redis.transaction(
            delete_if_owned, key, value_from_callable=True
        ):
            logger.warning("mutex %s lapsed before its holder left", key)
