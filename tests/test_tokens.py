"""Tests for token parsing and key layout."""

from __future__ import annotations

import pytest

from token_semaphore import IndexToken, Keyspace, OpaqueToken, parse_token
from token_semaphore.tokens import mint_token


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("0", IndexToken(0)),
        ("12", IndexToken(12)),
        (b"3", IndexToken(3)),
        (7, IndexToken(7)),
        ("007", OpaqueToken("007")),
        ("-1", OpaqueToken("-1")),
        ("0.42", OpaqueToken("0.42")),
        (b"abc", OpaqueToken("abc")),
    ],
)
def test_parse_token(raw, expected) -> None:
    assert parse_token(raw) == expected


def test_parse_token_keeps_typed_tokens() -> None:
    token = OpaqueToken("x")
    assert parse_token(token) is token


def test_tokens_render_as_stored_text() -> None:
    assert str(IndexToken(4)) == "4"
    assert str(OpaqueToken("abc")) == "abc"
    assert IndexToken(1) != OpaqueToken("1")


def test_minted_tokens_are_opaque() -> None:
    tokens = {mint_token() for _ in range(50)}
    assert len(tokens) == 50
    for token in tokens:
        assert isinstance(parse_token(str(token)), OpaqueToken)


def test_keyspace() -> None:
    keys = Keyspace("pool")
    assert keys.available == "SEMAPHORE:pool:AVAILABLE"
    assert keys.grabbed == "SEMAPHORE:pool:GRABBED"
    assert keys.exists == "SEMAPHORE:pool:EXISTS"
    assert keys.version == "SEMAPHORE:pool:VERSION"
    assert keys.release_locks == "SEMAPHORE:pool:RELEASE_LOCKS"
    assert keys.all() == (keys.available, keys.grabbed, keys.exists, keys.version)


def test_keyspace_without_prefix() -> None:
    assert Keyspace("pool", prefix=None).available == "pool:AVAILABLE"
    assert Keyspace("pool", prefix="app").exists == "app:pool:EXISTS"
