"""Short-lived authorization sessions and one-time authorization codes."""

from __future__ import annotations

from datetime import timedelta

from .kvstore import KeyValueStore, Record
from .models import CODE_PREFIX, SESSION_PREFIX, AuthCode, AuthSession, UpstreamTokens, timestamp_from_epoch
from . import tokens

DEFAULT_SESSION_TTL = timedelta(minutes=10)
DEFAULT_CODE_TTL = timedelta(minutes=5)


def _session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def _code_key(code: str) -> str:
    return f"{CODE_PREFIX}{code}"


class AuthSessionStore:
    def __init__(self, store: KeyValueStore, *, ttl: timedelta = DEFAULT_SESSION_TTL) -> None:
        self._store = store
        self._ttl = int(ttl.total_seconds())

    def create(self, client_id: str, redirect_uri: str, code_challenge: str, state: str) -> AuthSession:
        now = self._store.now()
        session = AuthSession(
            session_id=tokens.new_identifier(),
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            state=state,
            created_at=timestamp_from_epoch(now),
            expires_at=int(now) + self._ttl,
        )
        key = _session_key(session.session_id)
        self._store.put(Record.self_keyed(key, session.to_attributes(), expires_at=session.expires_at))
        return session

    def get(self, session_id: str) -> AuthSession | None:
        if not session_id:
            return None
        key = _session_key(session_id)
        record = self._store.get(key, key)
        if record is None:
            return None
        return AuthSession.from_attributes(session_id, record.attributes, record.expires_at)


class AuthCodeStore:
    def __init__(self, store: KeyValueStore, *, ttl: timedelta = DEFAULT_CODE_TTL) -> None:
        self._store = store
        self._ttl = int(ttl.total_seconds())

    def create(self, session: AuthSession, user_id: str, upstream: UpstreamTokens) -> AuthCode:
        code = AuthCode(
            code=tokens.new_identifier(),
            session_id=session.session_id,
            user_id=user_id,
            upstream_access_token=upstream.access_token,
            upstream_refresh_token=upstream.refresh_token,
            code_challenge=session.code_challenge,
            client_id=session.client_id,
            redirect_uri=session.redirect_uri,
            expires_at=int(self._store.now()) + self._ttl,
        )
        key = _code_key(code.code)
        self._store.put(Record.self_keyed(key, code.to_attributes(), expires_at=code.expires_at))
        return code

    def consume(self, code: str) -> AuthCode | None:
        """Fetch and delete ``code`` in one conditional step.

        ``None`` covers unknown, expired and already redeemed codes alike.
        """

        if not code:
            return None
        key = _code_key(code)
        record = self._store.take(key, key)
        if record is None:
            return None
        return AuthCode.from_attributes(code, record.attributes, record.expires_at)
