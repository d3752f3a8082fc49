"""Domain models for API keys, OAuth clients, sessions and codes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Mapping

APIKEY_PREFIX = "apikey#"
CLIENT_PREFIX = "oauth_client#"
SESSION_PREFIX = "oauth_session#"
CODE_PREFIX = "oauth_code#"

GRANT_AUTHORIZATION_CODE = "authorization_code"
GRANT_REFRESH_TOKEN = "refresh_token"
SUPPORTED_GRANT_TYPES = (GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN)

VIA_API_KEY = "api_key"
VIA_FEDERATED = "federated"
VIA_DEV = "dev"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    """RFC 3339 UTC with second precision (``2024-01-01T00:00:00Z``)."""

    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def timestamp_from_epoch(seconds: float) -> str:
    return format_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))


def _string_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


@dataclass(slots=True)
class ApiKeyInfo:
    """Listing view of an API key; never carries the hash."""

    key_id: str
    label: str
    created_at: str

    def to_dict(self) -> dict[str, Any]:
        return {"key_id": self.key_id, "label": self.label, "created_at": self.created_at}


@dataclass(frozen=True, slots=True)
class IssuedKey:
    """Result of issuance; ``raw_key`` is never available again."""

    raw_key: str
    key_id: str

    def to_dict(self) -> dict[str, Any]:
        return {"api_key": self.raw_key, "key_id": self.key_id}


@dataclass(slots=True)
class OAuthClient:
    client_id: str
    client_name: str
    redirect_uris: list[str]
    grant_types: list[str]
    created_at: str

    def allows_grant(self, grant_type: str) -> bool:
        return grant_type in self.grant_types

    def to_attributes(self) -> dict[str, Any]:
        return {
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "created_at": self.created_at,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
        }

    @classmethod
    def from_attributes(cls, client_id: str, attributes: Mapping[str, Any]) -> "OAuthClient":
        return cls(
            client_id=client_id,
            client_name=str(attributes.get("client_name", "")),
            redirect_uris=_string_list(attributes.get("redirect_uris")),
            grant_types=_string_list(attributes.get("grant_types")),
            created_at=str(attributes.get("created_at", "")),
        )


@dataclass(slots=True)
class AuthSession:
    """Pending authorization request bound to its PKCE challenge."""

    session_id: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    state: str
    created_at: str
    expires_at: int

    def to_attributes(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "code_challenge": self.code_challenge,
            "state": self.state,
            "created_at": self.created_at,
        }

    @classmethod
    def from_attributes(cls, session_id: str, attributes: Mapping[str, Any], expires_at: int | None) -> "AuthSession":
        return cls(
            session_id=session_id,
            client_id=str(attributes["client_id"]),
            redirect_uri=str(attributes["redirect_uri"]),
            code_challenge=str(attributes["code_challenge"]),
            state=str(attributes.get("state", "")),
            created_at=str(attributes.get("created_at", "")),
            expires_at=int(expires_at or 0),
        )


@dataclass(slots=True)
class UpstreamTokens:
    access_token: str
    refresh_token: str | None = None
    id_token: str | None = None
    expires_in: int | None = None

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "UpstreamTokens":
        expires_in = payload.get("expires_in")
        return cls(
            access_token=str(payload["access_token"]),
            refresh_token=payload.get("refresh_token") or None,
            id_token=payload.get("id_token") or None,
            expires_in=int(expires_in) if expires_in is not None else None,
        )


@dataclass(slots=True)
class AuthCode:
    """One-time authorization code minted at the callback."""

    code: str
    session_id: str
    user_id: str
    upstream_access_token: str
    upstream_refresh_token: str | None
    code_challenge: str
    client_id: str
    redirect_uri: str
    expires_at: int

    def to_attributes(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "upstream_access_token": self.upstream_access_token,
            "upstream_refresh_token": self.upstream_refresh_token,
            "code_challenge": self.code_challenge,
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
        }

    @classmethod
    def from_attributes(cls, code: str, attributes: Mapping[str, Any], expires_at: int | None) -> "AuthCode":
        return cls(
            code=code,
            session_id=str(attributes.get("session_id", "")),
            user_id=str(attributes["user_id"]),
            upstream_access_token=str(attributes.get("upstream_access_token", "")),
            upstream_refresh_token=attributes.get("upstream_refresh_token"),
            code_challenge=str(attributes["code_challenge"]),
            client_id=str(attributes["client_id"]),
            redirect_uri=str(attributes["redirect_uri"]),
            expires_at=int(expires_at or 0),
        )


@dataclass(slots=True)
class UserIdentity:
    """Stable user identity; ``user_id`` is the IdP subject."""

    user_id: str
    email: str | None = None
    name: str | None = None
    picture: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"user_id": self.user_id}
        for key in ("email", "name", "picture"):
            value = getattr(self, key)
            if value:
                payload[key] = value
        return payload

    @classmethod
    def from_userinfo(cls, payload: Mapping[str, Any]) -> "UserIdentity":
        subject = payload.get("sub")
        if not subject:
            raise ValueError("userinfo response is missing 'sub'")
        return cls(
            user_id=str(subject),
            email=payload.get("email") or None,
            name=payload.get("name") or payload.get("username") or None,
            picture=payload.get("picture") or None,
        )


@dataclass(slots=True)
class Resolution:
    """Tagged result of bearer resolution."""

    identity: UserIdentity
    via: Literal["api_key", "federated", "dev"]
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.identity.user_id
