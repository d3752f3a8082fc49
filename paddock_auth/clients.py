"""Registry of dynamically registered OAuth clients (append-only)."""

from __future__ import annotations

from collections.abc import Sequence

from .errors import INVALID_REQUEST, BrokerError
from .kvstore import KeyValueStore, Record
from .logging import get_logger
from .models import CLIENT_PREFIX, SUPPORTED_GRANT_TYPES, OAuthClient, timestamp_from_epoch
from . import tokens

logger = get_logger(__name__)

DEFAULT_GRANT_TYPES = list(SUPPORTED_GRANT_TYPES)


def _client_key(client_id: str) -> str:
    return f"{CLIENT_PREFIX}{client_id}"


def _normalize_uris(redirect_uris: Sequence[str] | None) -> list[str]:
    if redirect_uris is None or isinstance(redirect_uris, str):
        raise BrokerError(INVALID_REQUEST, "redirect_uris must be a non-empty array of strings")
    normalized: list[str] = []
    for uri in redirect_uris:
        if not isinstance(uri, str) or not uri.strip():
            raise BrokerError(INVALID_REQUEST, "redirect_uris entries must be non-empty strings")
        if uri.strip() not in normalized:
            normalized.append(uri.strip())
    if not normalized:
        raise BrokerError(INVALID_REQUEST, "at least one redirect_uri is required")
    return normalized


def _normalize_grants(grant_types: Sequence[str] | None) -> list[str]:
    if not grant_types:
        return list(DEFAULT_GRANT_TYPES)
    if isinstance(grant_types, str):
        raise BrokerError(INVALID_REQUEST, "grant_types must be an array of strings")
    normalized: list[str] = []
    for grant in grant_types:
        if grant not in SUPPORTED_GRANT_TYPES:
            raise BrokerError(INVALID_REQUEST, f"unsupported grant type: {grant}", details={"grant_type": str(grant)})
        if grant not in normalized:
            normalized.append(grant)
    return normalized


class ClientRegistry:
    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    def register(
        self,
        client_name: str,
        redirect_uris: Sequence[str] | None,
        grant_types: Sequence[str] | None = None,
    ) -> OAuthClient:
        client = OAuthClient(
            client_id=tokens.new_identifier(),
            client_name=(client_name or "").strip(),
            redirect_uris=_normalize_uris(redirect_uris),
            grant_types=_normalize_grants(grant_types),
            created_at=timestamp_from_epoch(self._store.now()),
        )
        key = _client_key(client.client_id)
        self._store.put(Record.self_keyed(key, client.to_attributes()))
        logger.info("oauth.register.created", extra={"client_id": client.client_id, "client_name": client.client_name})
        return client

    def get(self, client_id: str) -> OAuthClient | None:
        if not client_id:
            return None
        key = _client_key(client_id)
        record = self._store.get(key, key)
        if record is None:
            return None
        return OAuthClient.from_attributes(client_id, record.attributes)
