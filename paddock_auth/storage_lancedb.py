"""LanceDB-backed key-value store for credential records."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterable, Mapping, Sequence
from pathlib import Path
from threading import RLock
from typing import Any

import lancedb
import pyarrow as pa

from .errors import CONFIG_ERROR, STORE_FAILURE, StoreError
from .kvstore import Delete, KeyValueStore, Put, Record, WriteOp, synchronized, validate_transaction
from .logging import get_logger

logger = get_logger(__name__)

_RECORDS_TABLE_NAME = "records"

_RECORDS_SCHEMA = pa.schema(
    [
        pa.field("pk", pa.string()),
        pa.field("sk", pa.string()),
        pa.field("attributes_json", pa.large_string()),
        pa.field("expires_at", pa.int64()),
    ]
)


def _quote_literal(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def _key_filter(pk: str, sk: str) -> str:
    return f"(pk = {_quote_literal(pk)} AND sk = {_quote_literal(sk)})"


def _keys_filter(keys: Iterable[tuple[str, str]]) -> str:
    return " OR ".join(_key_filter(pk, sk) for pk, sk in keys)


def _encode_json(payload: Any, *, context: str) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError) as exc:
        raise StoreError(STORE_FAILURE, f"Unable to serialize {context}") from exc


def _row_from_record(record: Record) -> dict[str, Any]:
    return {
        "pk": record.pk,
        "sk": record.sk,
        "attributes_json": _encode_json(record.attributes, context=f"record {record.pk}/{record.sk}"),
        "expires_at": record.expires_at,
    }


def _record_from_row(row: Mapping[str, Any]) -> Record:
    attributes_json = row.get("attributes_json")
    attributes = json.loads(attributes_json) if attributes_json else {}
    expires_at = row.get("expires_at")
    return Record(
        pk=str(row["pk"]),
        sk=str(row["sk"]),
        attributes=attributes,
        expires_at=int(expires_at) if expires_at is not None else None,
    )


class LanceStore(KeyValueStore):
    """Durable store keeping every record in a single LanceDB table.

    Commits are serialised by an in-process lock. A mixed commit deletes the
    touched keys in one call and then adds the new rows; when the add fails
    the deleted rows are restored before the error propagates. Atomicity is
    therefore guaranteed against other callers of the same instance only.
    """

    def __init__(self, storage_dir: Path, *, clock: Callable[[], float] | None = None) -> None:
        super().__init__(clock=clock)
        self._root = Path(storage_dir)
        self._root.mkdir(parents=True, exist_ok=True)
        self._lock = RLock()

        try:
            self._db = lancedb.connect(str(self._root))
        except Exception as exc:
            raise StoreError(CONFIG_ERROR, "Unable to open LanceDB database", details={"path": str(self._root)}) from exc

        self._table = self._ensure_table()

    # ------------------------------------------------------------------
    # Store interface
    # ------------------------------------------------------------------

    @synchronized
    def get(self, pk: str, sk: str) -> Record | None:
        return self._live((pk, sk))

    @synchronized
    def put(self, record: Record) -> None:
        self._commit([Put(record)])

    @synchronized
    def delete(self, pk: str, sk: str) -> None:
        self._commit([Delete(pk, sk)])

    @synchronized
    def query(
        self,
        pk: str,
        sk_prefix: str = "",
        *,
        limit: int | None = None,
        descending: bool = False,
    ) -> list[Record]:
        rows = [row for row in self._scan() if row.get("pk") == pk and str(row.get("sk", "")).startswith(sk_prefix)]
        rows.sort(key=lambda row: row["sk"], reverse=descending)

        now = self.now()
        expired: list[tuple[str, str]] = []
        results: list[Record] = []
        for row in rows:
            record = _record_from_row(row)
            if record.is_expired(now):
                expired.append(record.key)
                continue
            if limit is None or len(results) < limit:
                results.append(record)
        if expired:
            self._purge(expired)
        return results

    @synchronized
    def transact_write(self, ops: Sequence[WriteOp]) -> None:
        validate_transaction(ops)
        self._commit(ops)

    @synchronized
    def take(self, pk: str, sk: str) -> Record | None:
        record = self._live((pk, sk))
        if record is None:
            return None
        self._commit([Delete(pk, sk)])
        return record

    def close(self) -> None:
        # LanceDB connections hold no sockets; dropping the references is enough.
        self._table = None
        self._db = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _ensure_table(self):
        try:
            table_names = set(self._db.table_names())
            if _RECORDS_TABLE_NAME in table_names:
                table = self._db.open_table(_RECORDS_TABLE_NAME)
                missing = [field.name for field in _RECORDS_SCHEMA if field.name not in table.schema.names]
                if missing:
                    raise StoreError(CONFIG_ERROR, "Existing LanceDB table missing required columns", details={"missing": missing})
                return table
            return self._db.create_table(_RECORDS_TABLE_NAME, schema=_RECORDS_SCHEMA)
        except StoreError:
            raise
        except Exception as exc:
            raise StoreError(CONFIG_ERROR, "Unable to open credential table", details={"path": str(self._root)}) from exc

    def _scan(self) -> list[dict[str, Any]]:
        if self._table is None:
            raise StoreError(STORE_FAILURE, "Store is closed")
        try:
            return self._table.to_arrow().to_pylist()
        except Exception as exc:
            raise StoreError(STORE_FAILURE, "Unable to read credential table") from exc

    def _fetch_rows(self, keys: Iterable[tuple[str, str]]) -> list[dict[str, Any]]:
        wanted = set(keys)
        return [row for row in self._scan() if (row.get("pk"), row.get("sk")) in wanted]

    def _live(self, key: tuple[str, str]) -> Record | None:
        rows = self._fetch_rows([key])
        if not rows:
            return None
        record = _record_from_row(rows[0])
        if record.is_expired(self.now()):
            self._purge([key])
            return None
        return record

    def _purge(self, keys: Sequence[tuple[str, str]]) -> None:
        try:
            self._table.delete(where=_keys_filter(keys))
        except Exception:
            logger.warning("storage.expiry.purge_failed", extra={"count": len(keys)}, exc_info=True)

    def _commit(self, ops: Sequence[WriteOp]) -> None:
        keys = [op.key for op in ops]
        new_rows = [_row_from_record(op.record) for op in ops if isinstance(op, Put)]
        snapshot = self._fetch_rows(keys)

        try:
            self._table.delete(where=_keys_filter(keys))
        except Exception as exc:
            raise StoreError(STORE_FAILURE, "Commit failed", details={"keys": len(keys)}) from exc

        if not new_rows:
            return
        try:
            self._table.add(new_rows)
        except Exception as exc:
            self._restore(snapshot)
            raise StoreError(STORE_FAILURE, "Commit failed", details={"keys": len(keys)}) from exc

    def _restore(self, rows: list[dict[str, Any]]) -> None:
        if not rows:
            return
        try:
            self._table.add(rows)
        except Exception:
            logger.error("storage.commit.restore_failed", extra={"rows": len(rows)}, exc_info=True)
