"""API key lifecycle: issuance, listing, reverse lookup and revocation.

Each key is two records written and deleted together:

* ``<owner> / apikey#<key_id>`` holding the hash, label and creation time;
* ``apikey#<sha256(secret)>`` (self-keyed) pointing back at the owner.
"""

from __future__ import annotations

from .errors import StoreError
from .kvstore import Delete, KeyValueStore, Put, Record
from .logging import get_logger
from .models import APIKEY_PREFIX, ApiKeyInfo, IssuedKey, timestamp_from_epoch
from . import metrics, tokens

logger = get_logger(__name__)


def _owner_sort_key(key_id: str) -> str:
    return f"{APIKEY_PREFIX}{key_id}"


def _lookup_key(key_hash: str) -> str:
    return f"{APIKEY_PREFIX}{key_hash}"


class ApiKeyStore:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def issue(self, owner: str, label: str) -> IssuedKey:
        """Create a key for ``owner``; the raw secret is returned only here."""

        key_id = tokens.new_key_id()
        raw_key = tokens.new_secret()
        key_hash = tokens.hash_secret(raw_key)
        created_at = timestamp_from_epoch(self._store.now())
        lookup = _lookup_key(key_hash)

        try:
            self._store.transact_write(
                [
                    Put(
                        Record(
                            pk=owner,
                            sk=_owner_sort_key(key_id),
                            attributes={"key_hash": key_hash, "label": label, "created_at": created_at},
                        )
                    ),
                    Put(Record.self_keyed(lookup, {"owner": owner, "key_id": key_id})),
                ]
            )
        except StoreError:
            logger.error("apikey.issue.failed", extra={"owner": owner, "key_id": key_id}, exc_info=True)
            raise

        metrics.record_operation("key_issue")
        logger.info("apikey.issue.created", extra={"owner": owner, "key_id": key_id, "label": label})
        return IssuedKey(raw_key=raw_key, key_id=key_id)

    def list(self, owner: str) -> list[ApiKeyInfo]:
        records = self._store.query(owner, APIKEY_PREFIX)
        return [
            ApiKeyInfo(
                key_id=record.sk[len(APIKEY_PREFIX):],
                label=str(record.attributes.get("label", "")),
                created_at=str(record.attributes.get("created_at", "")),
            )
            for record in records
        ]

    def resolve(self, raw_key: str) -> str | None:
        """Return the owner of ``raw_key`` or ``None`` when the hash is unknown.

        Store failures propagate; they never read as "not found".
        """

        if not raw_key:
            return None
        lookup = _lookup_key(tokens.hash_secret(raw_key))
        record = self._store.get(lookup, lookup)
        if record is None:
            return None
        owner = record.attributes.get("owner")
        return str(owner) if owner else None

    def revoke(self, owner: str, key_id: str) -> bool:
        """Delete both records of a key. Unknown ids are a no-op returning ``False``."""

        sort_key = _owner_sort_key(key_id)
        record = self._store.get(owner, sort_key)
        if record is None:
            return False

        ops = [Delete(owner, sort_key)]
        key_hash = record.attributes.get("key_hash")
        if key_hash:
            lookup = _lookup_key(str(key_hash))
            ops.append(Delete(lookup, lookup))
        self._store.transact_write(ops)

        metrics.record_operation("key_revoke")
        logger.info("apikey.revoke.deleted", extra={"owner": owner, "key_id": key_id})
        return True

    def revoke_all(self, owner: str) -> int:
        """Revoke every key of ``owner``; not atomic across keys."""

        revoked = 0
        for info in self.list(owner):
            if self.revoke(owner, info.key_id):
                revoked += 1
        return revoked
