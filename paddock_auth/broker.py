"""OAuth2 + PKCE authorization broker federating to an external IdP.

Flow per authorization attempt::

    authorize -> (IdP login) -> callback -> token
                                              \\-> refresh (later)

The broker never hands the IdP's tokens to the client. Every successful
exchange mints a fresh API key which becomes the client's bearer credential.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .apikeys import ApiKeyStore
from .clients import ClientRegistry
from .errors import INVALID_REQUEST, UNAUTHENTICATED, UNAUTHORIZED, BrokerError, UpstreamError
from .idp import IdentityProviderClient
from .logging import get_logger
from .models import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, SUPPORTED_GRANT_TYPES, UserIdentity
from .sessions import AuthCodeStore, AuthSessionStore
from . import metrics, tokens

logger = get_logger(__name__)

DEFAULT_SCOPES = ("paddock",)
BROWSER_SESSION_LABEL = "Browser session"
REFRESH_LABEL = "OAuth: refresh"


def _client_label(client_id: str) -> str:
    return f"OAuth: {client_id}"


def _param(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if value is None:
        return ""
    return str(value).strip()


def _require(params: Mapping[str, Any], *names: str) -> dict[str, str]:
    values = {name: _param(params, name) for name in names}
    missing = [name for name, value in values.items() if not value]
    if missing:
        raise BrokerError(INVALID_REQUEST, f"missing required parameter(s): {', '.join(missing)}", details={"missing": missing})
    return values


def _append_query(url: str, extra: Mapping[str, str]) -> str:
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    query.extend(extra.items())
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


class OAuthBroker:
    def __init__(
        self,
        *,
        clients: ClientRegistry,
        sessions: AuthSessionStore,
        codes: AuthCodeStore,
        api_keys: ApiKeyStore,
        idp: IdentityProviderClient,
        base_url: str,
        resource_path: str = "/mcp",
        scopes: Sequence[str] = DEFAULT_SCOPES,
    ) -> None:
        self._clients = clients
        self._sessions = sessions
        self._codes = codes
        self._api_keys = api_keys
        self._idp = idp
        self.base_url = base_url.rstrip("/")
        self.resource_path = resource_path
        self.scopes = list(scopes)

    @property
    def callback_url(self) -> str:
        return f"{self.base_url}/oauth/callback"

    # ------------------------------------------------------------------
    # authorize / callback
    # ------------------------------------------------------------------

    def authorize(self, params: Mapping[str, Any]) -> str:
        """Validate the request, open a session and return the IdP redirect URL."""

        values = _require(params, "client_id", "redirect_uri", "code_challenge", "state")

        method = _param(params, "code_challenge_method")
        if method and method != tokens.PKCE_METHOD_S256:
            raise BrokerError(INVALID_REQUEST, "code_challenge_method must be S256")
        response_type = _param(params, "response_type")
        if response_type and response_type != "code":
            raise BrokerError(INVALID_REQUEST, "response_type must be code", oauth_error="unsupported_response_type")

        client = self._clients.get(values["client_id"])
        if client is None:
            raise BrokerError(INVALID_REQUEST, "unknown client", oauth_error="invalid_client")
        if values["redirect_uri"] not in client.redirect_uris:
            raise BrokerError(INVALID_REQUEST, "redirect_uri is not registered for this client")
        if not client.allows_grant(GRANT_AUTHORIZATION_CODE):
            raise BrokerError(INVALID_REQUEST, "client may not use the authorization code grant", oauth_error="unauthorized_client")

        session = self._sessions.create(
            client_id=client.client_id,
            redirect_uri=values["redirect_uri"],
            code_challenge=values["code_challenge"],
            state=values["state"],
        )
        metrics.record_operation("authorize")
        logger.info("oauth.authorize.session_created", extra={"client_id": client.client_id, "session_id": session.session_id})
        return self._idp.authorization_url(redirect_uri=self.callback_url, state=session.session_id)

    async def callback(self, params: Mapping[str, Any]) -> str:
        """Finish the IdP leg and return the client redirect carrying a fresh code."""

        upstream_error = _param(params, "error")
        if upstream_error:
            raise BrokerError(INVALID_REQUEST, f"identity provider returned error: {upstream_error}")

        values = _require(params, "code", "state")
        session = self._sessions.get(values["state"])
        if session is None:
            raise BrokerError(INVALID_REQUEST, "invalid or expired session")

        try:
            upstream = await self._idp.exchange_code(values["code"], self.callback_url)
            identity = await self._idp.userinfo(upstream.access_token)
        except UpstreamError:
            logger.warning("oauth.callback.upstream_failed", extra={"session_id": session.session_id}, exc_info=True)
            raise

        code = self._codes.create(session, identity.user_id, upstream)
        metrics.record_operation("callback")
        logger.info("oauth.callback.code_issued", extra={"client_id": session.client_id, "user_id": identity.user_id})
        return _append_query(session.redirect_uri, {"code": code.code, "state": session.state})

    # ------------------------------------------------------------------
    # token endpoint
    # ------------------------------------------------------------------

    async def token(self, form: Mapping[str, Any]) -> dict[str, Any]:
        grant_type = _param(form, "grant_type")
        if not grant_type:
            raise BrokerError(INVALID_REQUEST, "missing required parameter(s): grant_type", details={"missing": ["grant_type"]})
        if grant_type == GRANT_AUTHORIZATION_CODE:
            return self._exchange_code(form)
        if grant_type == GRANT_REFRESH_TOKEN:
            return await self._refresh(form)
        raise BrokerError(INVALID_REQUEST, f"unsupported grant_type: {grant_type}", oauth_error="unsupported_grant_type")

    def _exchange_code(self, form: Mapping[str, Any]) -> dict[str, Any]:
        # Parameters are checked before the code is taken so a malformed
        # request does not burn a valid code.
        values = _require(form, "code", "code_verifier", "client_id")
        redirect_uri = _param(form, "redirect_uri")

        code = self._codes.consume(values["code"])
        if code is None:
            raise BrokerError(INVALID_REQUEST, "invalid authorization code", oauth_error="invalid_grant")
        if not tokens.verify_pkce(values["code_verifier"], code.code_challenge):
            raise BrokerError(UNAUTHORIZED, "code_verifier does not match code_challenge")
        if code.client_id != values["client_id"]:
            raise BrokerError(UNAUTHORIZED, "client_id does not match the authorization code")
        if redirect_uri and redirect_uri != code.redirect_uri:
            raise BrokerError(UNAUTHORIZED, "redirect_uri does not match the authorization request")

        issued = self._api_keys.issue(code.user_id, _client_label(code.client_id))
        metrics.record_operation("token")
        logger.info("oauth.token.issued", extra={"client_id": code.client_id, "user_id": code.user_id, "key_id": issued.key_id})
        return {"access_token": issued.raw_key, "token_type": "Bearer"}

    async def _refresh(self, form: Mapping[str, Any]) -> dict[str, Any]:
        values = _require(form, "refresh_token")
        client_id = _param(form, "client_id")
        if client_id:
            client = self._clients.get(client_id)
            if client is None:
                raise BrokerError(INVALID_REQUEST, "unknown client", oauth_error="invalid_client")
            if not client.allows_grant(GRANT_REFRESH_TOKEN):
                raise BrokerError(INVALID_REQUEST, "client may not use the refresh_token grant", oauth_error="unauthorized_client")

        identity = await self._federate(lambda: self._idp.refresh(values["refresh_token"]))
        label = _client_label(client_id) if client_id else REFRESH_LABEL
        issued = self._api_keys.issue(identity.user_id, label)
        metrics.record_operation("refresh")
        logger.info("oauth.refresh.issued", extra={"client_id": client_id or None, "user_id": identity.user_id, "key_id": issued.key_id})
        return {"access_token": issued.raw_key, "token_type": "Bearer"}

    async def _federate(self, obtain_tokens) -> UserIdentity:
        """Run an IdP token call plus userinfo; explicit rejections become 401."""

        try:
            upstream = await obtain_tokens()
            return await self._idp.userinfo(upstream.access_token)
        except UpstreamError as exc:
            if exc.rejected:
                raise BrokerError(UNAUTHENTICATED, "identity provider rejected the grant", oauth_error="invalid_grant") from exc
            raise

    # ------------------------------------------------------------------
    # registration and discovery
    # ------------------------------------------------------------------

    def register(self, payload: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(payload, Mapping):
            raise BrokerError(INVALID_REQUEST, "registration body must be a JSON object")
        client = self._clients.register(
            client_name=str(payload.get("client_name") or ""),
            redirect_uris=payload.get("redirect_uris"),
            grant_types=payload.get("grant_types"),
        )
        metrics.record_operation("register")
        return client.to_dict()

    def authorization_server_metadata(self) -> dict[str, Any]:
        return {
            "issuer": self.base_url,
            "authorization_endpoint": f"{self.base_url}/oauth/authorize",
            "token_endpoint": f"{self.base_url}/oauth/token",
            "registration_endpoint": f"{self.base_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": list(SUPPORTED_GRANT_TYPES),
            "code_challenge_methods_supported": [tokens.PKCE_METHOD_S256],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": list(self.scopes),
        }

    def protected_resource_metadata(self) -> dict[str, Any]:
        return {
            "resource": f"{self.base_url}{self.resource_path}",
            "authorization_servers": [self.base_url],
            "bearer_methods_supported": ["header"],
            "scopes_supported": list(self.scopes),
        }

    # ------------------------------------------------------------------
    # first-party web login
    # ------------------------------------------------------------------

    async def browser_session(self, code: str, redirect_uri: str) -> dict[str, Any]:
        """Exchange a code obtained by the web UI for a session API key."""

        values = _require({"code": code, "redirect_uri": redirect_uri}, "code", "redirect_uri")
        identity = await self._federate(lambda: self._idp.exchange_code(values["code"], values["redirect_uri"]))
        issued = self._api_keys.issue(identity.user_id, BROWSER_SESSION_LABEL)
        logger.info("auth.session.issued", extra={"user_id": identity.user_id, "key_id": issued.key_id})
        return {"api_key": issued.raw_key, "key_id": issued.key_id, "user": identity.to_dict()}
