"""Token types for the semaphore pool.

A pool is seeded with the canonical slot ids ``0..N-1`` (:class:`IndexToken`).
Tokens minted at runtime by :func:`mint_token` are opaque strings
(:class:`OpaqueToken`). Both travel through Redis as plain text; use
:func:`parse_token` to get the typed value back.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from typing import Union

_INDEX_RE = re.compile(r"0|[1-9][0-9]*")


@dataclass(frozen=True, order=True)
class IndexToken:
    """A canonical slot id created with the pool."""

    index: int

    def __str__(self) -> str:
        return str(self.index)


@dataclass(frozen=True)
class OpaqueToken:
    """A token minted after creation; never counted as a canonical slot."""

    value: str

    def __str__(self) -> str:
        return self.value


Token = Union[IndexToken, OpaqueToken]


def parse_token(raw: Token | str | bytes | int) -> Token:
    """Turn a stored token back into its typed form."""
    if isinstance(raw, (IndexToken, OpaqueToken)):
        return raw
    if isinstance(raw, int):
        return IndexToken(raw)
    if isinstance(raw, bytes):
        raw = raw.decode()
    if _INDEX_RE.fullmatch(raw):
        return IndexToken(int(raw))
    return OpaqueToken(raw)


def mint_token() -> OpaqueToken:
    # uuid4 text always contains "-", so it can't be mistaken for an index
    return OpaqueToken(str(uuid.uuid4()))
