from __future__ import annotations

import pytest

from paddock_auth.apikeys import ApiKeyStore
from paddock_auth.errors import StoreError
from paddock_auth.kvstore import Delete, Put, Record
from paddock_auth.storage_lancedb import LanceStore


class FlakyTable:
    """Delegates to a LanceDB table but fails the next ``add`` call."""

    def __init__(self, table) -> None:
        self._table = table
        self.fail_next_add = True

    def add(self, rows):
        if self.fail_next_add:
            self.fail_next_add = False
            raise OSError("disk full")
        return self._table.add(rows)

    def __getattr__(self, name):
        return getattr(self._table, name)


@pytest.fixture
def lance_store(tmp_path, clock):
    store = LanceStore(tmp_path / "lancedb", clock=clock)
    try:
        yield store
    finally:
        store.close()


def test_put_get_query_and_take(lance_store) -> None:
    lance_store.put(Record("driver-7", "apikey#b", {"label": "b"}))
    lance_store.put(Record("driver-7", "apikey#a", {"label": "a", "nested": {"n": 1}}))
    lance_store.put(Record("driver-7", "apikey#a", {"label": "a2"}))
    lance_store.put(Record.self_keyed("oauth_code#1", {"user_id": "driver-7"}))

    assert lance_store.get("driver-7", "apikey#a").attributes == {"label": "a2"}
    assert [r.sk for r in lance_store.query("driver-7", "apikey#")] == ["apikey#a", "apikey#b"]
    assert [r.sk for r in lance_store.query("driver-7", "apikey#", descending=True, limit=1)] == ["apikey#b"]

    assert lance_store.take("oauth_code#1", "oauth_code#1").attributes == {"user_id": "driver-7"}
    assert lance_store.take("oauth_code#1", "oauth_code#1") is None


def test_keys_with_quotes_are_escaped(lance_store) -> None:
    lance_store.put(Record("o'brien", "apikey#x", {}))
    assert lance_store.get("o'brien", "apikey#x") is not None
    lance_store.delete("o'brien", "apikey#x")
    assert lance_store.get("o'brien", "apikey#x") is None


def test_expiry(lance_store, clock) -> None:
    lance_store.put(Record.self_keyed("oauth_session#1", {}, expires_at=int(clock()) + 5))
    clock.advance(5)
    assert lance_store.get("oauth_session#1", "oauth_session#1") is None
    assert lance_store.query("oauth_session#1") == []


def test_transact_write_and_persistence(tmp_path, clock) -> None:
    path = tmp_path / "lancedb"
    store = LanceStore(path, clock=clock)
    api_keys = ApiKeyStore(store)
    issued = api_keys.issue("driver-7", "Laptop")
    store.close()

    reopened = LanceStore(path, clock=clock)
    try:
        assert ApiKeyStore(reopened).resolve(issued.raw_key) == "driver-7"
        reopened.transact_write([Put(Record("driver-7", "note#1", {})), Delete("driver-7", f"apikey#{issued.key_id}")])
        assert [r.sk for r in reopened.query("driver-7")] == ["note#1"]
    finally:
        reopened.close()


def test_failed_add_restores_previous_rows(lance_store) -> None:
    lance_store.put(Record("driver-7", "apikey#a", {"label": "original"}))
    lance_store._table = FlakyTable(lance_store._table)

    with pytest.raises(StoreError):
        lance_store.transact_write([Put(Record("driver-7", "apikey#a", {"label": "new"})), Put(Record("x", "y", {}))])

    assert lance_store.get("driver-7", "apikey#a").attributes == {"label": "original"}
    assert lance_store.get("x", "y") is None


def test_closed_store_raises(tmp_path) -> None:
    store = LanceStore(tmp_path / "lancedb")
    store.close()
    with pytest.raises(StoreError):
        store.get("a", "b")
