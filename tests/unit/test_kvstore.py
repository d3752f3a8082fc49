from __future__ import annotations

import threading

import pytest

from paddock_auth.errors import STORE_FAILURE, StoreError
from paddock_auth.kvstore import Delete, MemoryStore, Put, Record


class FailingStore(MemoryStore):
    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.fail_commits = False

    def _apply(self, ops):
        if self.fail_commits:
            raise StoreError(STORE_FAILURE, "injected commit failure")
        super()._apply(ops)


def test_put_get_and_last_write_wins(store) -> None:
    store.put(Record("owner", "item#1", {"v": 1}))
    store.put(Record("owner", "item#1", {"v": 2}))

    record = store.get("owner", "item#1")
    assert record is not None
    assert record.attributes == {"v": 2}
    assert store.get("owner", "item#2") is None


def test_returned_records_are_copies(store) -> None:
    store.put(Record("owner", "item#1", {"tags": ["a"]}))
    record = store.get("owner", "item#1")
    record.attributes["tags"].append("b")

    assert store.get("owner", "item#1").attributes == {"tags": ["a"]}


def test_query_filters_by_prefix_and_orders(store) -> None:
    for sk in ("apikey#b", "apikey#a", "other#c", "apikey#c"):
        store.put(Record("owner", sk))
    store.put(Record("someone-else", "apikey#z"))

    ascending = [record.sk for record in store.query("owner", "apikey#")]
    descending = [record.sk for record in store.query("owner", "apikey#", descending=True, limit=2)]

    assert ascending == ["apikey#a", "apikey#b", "apikey#c"]
    assert descending == ["apikey#c", "apikey#b"]


def test_expired_records_are_absent(store, clock) -> None:
    store.put(Record.self_keyed("session#1", {}, expires_at=int(clock()) + 10))
    assert store.get("session#1", "session#1") is not None

    clock.advance(10)

    assert store.get("session#1", "session#1") is None
    assert store.take("session#1", "session#1") is None
    assert store.snapshot() == []


def test_transact_write_validates_operations(store) -> None:
    with pytest.raises(StoreError):
        store.transact_write([])
    with pytest.raises(StoreError):
        store.transact_write([Put(Record("a", "b")), Delete("a", "b")])


def test_transact_write_is_all_or_nothing(clock) -> None:
    store = FailingStore(clock=clock)
    store.put(Record("a", "1"))
    store.fail_commits = True

    with pytest.raises(StoreError):
        store.transact_write([Put(Record("b", "2")), Delete("a", "1")])

    assert [record.key for record in store.snapshot()] == [("a", "1")]


def test_take_returns_record_once(store) -> None:
    store.put(Record.self_keyed("code#1", {"user_id": "driver-7"}))

    first = store.take("code#1", "code#1")
    second = store.take("code#1", "code#1")

    assert first is not None and first.attributes == {"user_id": "driver-7"}
    assert second is None


def test_concurrent_take_has_single_winner(store) -> None:
    store.put(Record.self_keyed("code#race", {}))
    results = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        results.append(store.take("code#race", "code#race"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(result is not None for result in results) == 1


def test_delete_missing_key_is_not_an_error(store) -> None:
    store.delete("nobody", "nothing")
