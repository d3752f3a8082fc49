"""Key-value store boundary used by every credential component.

Records are addressed by a composite ``(pk, sk)`` key. Self-keyed records
repeat the same value in both parts. Records may carry an ``expires_at``
Unix timestamp; stores treat expired records as absent and drop them lazily.
"""

from __future__ import annotations

import abc
import copy
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from functools import wraps
from threading import RLock
from typing import Any, Union

from .errors import STORE_FAILURE, StoreError

__all__ = [
    "Record",
    "Put",
    "Delete",
    "WriteOp",
    "KeyValueStore",
    "MemoryStore",
    "synchronized",
]


@dataclass(slots=True)
class Record:
    pk: str
    sk: str
    attributes: dict[str, Any] = field(default_factory=dict)
    expires_at: int | None = None

    @classmethod
    def self_keyed(cls, key: str, attributes: dict[str, Any], *, expires_at: int | None = None) -> "Record":
        return cls(pk=key, sk=key, attributes=attributes, expires_at=expires_at)

    @property
    def key(self) -> tuple[str, str]:
        return (self.pk, self.sk)

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def copy(self) -> "Record":
        return Record(self.pk, self.sk, copy.deepcopy(self.attributes), self.expires_at)


@dataclass(frozen=True, slots=True)
class Put:
    record: Record

    @property
    def key(self) -> tuple[str, str]:
        return self.record.key


@dataclass(frozen=True, slots=True)
class Delete:
    pk: str
    sk: str

    @property
    def key(self) -> tuple[str, str]:
        return (self.pk, self.sk)


WriteOp = Union[Put, Delete]


def synchronized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)

    return wrapper


def validate_transaction(ops: Sequence[WriteOp]) -> None:
    if not ops:
        raise StoreError(STORE_FAILURE, "Transaction must contain at least one operation")
    seen: set[tuple[str, str]] = set()
    for op in ops:
        if op.key in seen:
            raise StoreError(
                STORE_FAILURE,
                "Transaction touches the same key twice",
                details={"pk": op.key[0], "sk": op.key[1]},
            )
        seen.add(op.key)


class KeyValueStore(abc.ABC):
    """Point reads/writes, prefix queries, atomic commits and conditional take."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock or time.time

    def now(self) -> float:
        return self._clock()

    @abc.abstractmethod
    def get(self, pk: str, sk: str) -> Record | None:
        """Return the live record at ``(pk, sk)`` or ``None``."""

    @abc.abstractmethod
    def put(self, record: Record) -> None:
        """Insert or replace a record (last write wins)."""

    @abc.abstractmethod
    def delete(self, pk: str, sk: str) -> None:
        """Remove a record; deleting a missing key is not an error."""

    @abc.abstractmethod
    def query(
        self,
        pk: str,
        sk_prefix: str = "",
        *,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[Record]:
        """Return live records under ``pk`` whose sort key starts with ``sk_prefix``."""

    @abc.abstractmethod
    def transact_write(self, ops: Sequence[WriteOp]) -> None:
        """Apply every put and delete, or none of them."""

    @abc.abstractmethod
    def take(self, pk: str, sk: str) -> Record | None:
        """Delete the record only if it is present and return what was deleted.

        Concurrent callers racing for the same key observe at most one
        non-``None`` result.
        """

    def close(self) -> None:
        return None


class MemoryStore(KeyValueStore):
    """Process-local store used for development and tests."""

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        super().__init__(clock=clock)
        self._lock = RLock()
        self._items: dict[tuple[str, str], Record] = {}

    @synchronized
    def get(self, pk: str, sk: str) -> Record | None:
        record = self._live((pk, sk))
        return record.copy() if record else None

    @synchronized
    def put(self, record: Record) -> None:
        self._apply([Put(record)])

    @synchronized
    def delete(self, pk: str, sk: str) -> None:
        self._apply([Delete(pk, sk)])

    @synchronized
    def query(
        self,
        pk: str,
        sk_prefix: str = "",
        *,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[Record]:
        keys = sorted(
            (key for key in self._items if key[0] == pk and key[1].startswith(sk_prefix)),
            key=lambda key: key[1],
            reverse=descending,
        )
        results: list[Record] = []
        for key in keys:
            record = self._live(key)
            if record is None:
                continue
            results.append(record.copy())
            if limit is not None and len(results) >= limit:
                break
        return results

    @synchronized
    def transact_write(self, ops: Sequence[WriteOp]) -> None:
        validate_transaction(ops)
        self._apply(ops)

    @synchronized
    def take(self, pk: str, sk: str) -> Record | None:
        record = self._live((pk, sk))
        if record is None:
            return None
        self._apply([Delete(pk, sk)])
        return record.copy()

    @synchronized
    def snapshot(self) -> list[Record]:
        """Every stored record, expired ones included, ordered by key."""

        return [self._items[key].copy() for key in sorted(self._items)]

    def _live(self, key: tuple[str, str]) -> Record | None:
        record = self._items.get(key)
        if record is None:
            return None
        if record.is_expired(self.now()):
            del self._items[key]
            return None
        return record

    def _apply(self, ops: Sequence[WriteOp]) -> None:
        for op in ops:
            if isinstance(op, Put):
                self._items[op.key] = op.record.copy()
            else:
                self._items.pop(op.key, None)
