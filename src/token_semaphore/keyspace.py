"""Redis key layout for one named semaphore."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_PREFIX = "SEMAPHORE"


@dataclass(frozen=True)
class Keyspace:
    """Names of the keys backing a semaphore.

    Usage:
        >>> keys = Keyspace("db-slots")
        >>> keys.available
        'SEMAPHORE:db-slots:AVAILABLE'
        >>> Keyspace("db-slots", prefix=None).grabbed
        'db-slots:GRABBED'

    Args:
        name: Identity of the pool
        prefix: Leading namespace segment. ``None`` drops it, for clients
            that already namespace every key they touch.
    """

    name: str
    prefix: str | None = DEFAULT_PREFIX

    def key(self, variable: str) -> str:
        if self.prefix:
            return f"{self.prefix}:{self.name}:{variable}"
        return f"{self.name}:{variable}"

    @property
    def available(self) -> str:
        return self.key("AVAILABLE")

    @property
    def grabbed(self) -> str:
        return self.key("GRABBED")

    @property
    def exists(self) -> str:
        return self.key("EXISTS")

    @property
    def version(self) -> str:
        return self.key("VERSION")

    @property
    def release_locks(self) -> str:
        """Key of the mutex serializing stale-lease reclamation."""
        return self.key("RELEASE_LOCKS")

    def all(self) -> tuple[str, str, str, str]:
        """The four keys that make up the pool's state."""
        return (self.available, self.grabbed, self.exists, self.version)
