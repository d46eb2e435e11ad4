"""Distributed counting semaphore leasing tokens out of a Redis list.

Free slots are tokens in a Redis list and leased slots are recorded with
the time they were taken, so a holder that dies without releasing can be
detected and its slot handed back to the pool.

Example usage (sync):

    >>> from redis import Redis
    >>> from token_semaphore import Semaphore
    >>>
    >>> sem = Semaphore(name='db-slots', resources=3, redis=Redis())
    >>>
    >>> with sem.leased(timeout=5) as token:
    ...     # Critical section with limited concurrency (max 3)
    ...     pass

Example usage (async):

    >>> import asyncio
    >>> from redis.asyncio import Redis
    >>> from token_semaphore import AIOSemaphore
    >>>
    >>> async def main():
    ...     sem = AIOSemaphore(name='db-slots', resources=3, redis=Redis())
    ...     async with sem.leased(timeout=5) as token:
    ...         # Critical section with limited concurrency
    ...         pass
    >>> asyncio.run(main())
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version
from typing import Final

from .aiosemaphore import AIOSemaphore
from .exceptions import AcquireTimeoutError, SemaphoreError
from .keyspace import Keyspace
from .mutex import aio_simple_mutex, simple_mutex
from .semaphore import Semaphore
from .store import AIOSemaphoreStore, SemaphoreStore
from .tokens import IndexToken, OpaqueToken, Token, parse_token

__all__: Final[tuple[str, ...]] = (
    "AIOSemaphore",
    "AIOSemaphoreStore",
    "AcquireTimeoutError",
    "IndexToken",
    "Keyspace",
    "OpaqueToken",
    "Semaphore",
    "SemaphoreError",
    "SemaphoreStore",
    "Token",
    "aio_simple_mutex",
    "parse_token",
    "simple_mutex",
)

try:
    __version__ = version("token-semaphore")
except PackageNotFoundError:
    __version__ = "unknown"
