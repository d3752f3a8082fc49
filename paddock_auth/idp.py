"""Client for the external identity provider's OAuth endpoints."""

from __future__ import annotations

from typing import Any
from urllib.parse import urlencode

import httpx

from .config import Config
from .errors import CONFIG_ERROR, BrokerError, UpstreamError
from .logging import get_logger
from .models import GRANT_AUTHORIZATION_CODE, GRANT_REFRESH_TOKEN, UpstreamTokens, UserIdentity

logger = get_logger(__name__)


class IdentityProviderClient:
    """Talks to the IdP token and userinfo endpoints over ``httpx``.

    Every failure surfaces as :class:`UpstreamError`. ``rejected`` is set when
    the provider answered with a non-success status, and left unset for
    transport errors and malformed responses.
    """

    def __init__(
        self,
        *,
        authorize_url: str,
        token_url: str,
        userinfo_url: str,
        client_id: str,
        client_secret: str | None = None,
        scopes: str = "openid email profile",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.userinfo_url = userinfo_url
        self.client_id = client_id
        self._client_secret = client_secret
        self.scopes = scopes
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: Config, *, transport: httpx.AsyncBaseTransport | None = None) -> "IdentityProviderClient":
        if not config.idp_configured:
            raise BrokerError(
                CONFIG_ERROR,
                "Identity provider is not configured",
                details={"required": ["idp_authorize_url", "idp_token_url", "idp_userinfo_url", "idp_client_id"]},
            )
        return cls(
            authorize_url=config.idp_authorize_url,
            token_url=config.idp_token_url,
            userinfo_url=config.idp_userinfo_url,
            client_id=config.idp_client_id,
            client_secret=config.idp_client_secret,
            scopes=config.idp_scopes,
            timeout=config.idp_timeout.total_seconds(),
            transport=transport,
        )

    def authorization_url(self, *, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": self.scopes,
            "redirect_uri": redirect_uri,
            "state": state,
        }
        separator = "&" if "?" in self.authorize_url else "?"
        return f"{self.authorize_url}{separator}{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> UpstreamTokens:
        return await self._token_request(
            {
                "grant_type": GRANT_AUTHORIZATION_CODE,
                "code": code,
                "redirect_uri": redirect_uri,
            }
        )

    async def refresh(self, refresh_token: str) -> UpstreamTokens:
        return await self._token_request(
            {
                "grant_type": GRANT_REFRESH_TOKEN,
                "refresh_token": refresh_token,
            }
        )

    async def userinfo(self, access_token: str) -> UserIdentity:
        try:
            async with self._client() as http:
                response = await http.get(
                    self.userinfo_url,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
        except httpx.HTTPError as exc:
            logger.warning("idp.userinfo.transport_error", extra={"error": type(exc).__name__})
            raise UpstreamError("identity provider unreachable", rejected=False) from exc

        if response.status_code != 200:
            logger.info("idp.userinfo.rejected", extra={"status": response.status_code})
            raise UpstreamError(
                "identity provider rejected the access token",
                rejected=True,
                details={"status": response.status_code},
            )

        payload = self._decode(response, endpoint="userinfo")
        try:
            return UserIdentity.from_userinfo(payload)
        except ValueError as exc:
            raise UpstreamError("identity provider returned no subject", rejected=False) from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _token_request(self, form: dict[str, str]) -> UpstreamTokens:
        body = dict(form)
        body["client_id"] = self.client_id
        auth = httpx.BasicAuth(self.client_id, self._client_secret) if self._client_secret else None
        grant_type = form["grant_type"]

        try:
            async with self._client() as http:
                response = await http.post(self.token_url, data=body, auth=auth)
        except httpx.HTTPError as exc:
            logger.warning("idp.token.transport_error", extra={"grant_type": grant_type, "error": type(exc).__name__})
            raise UpstreamError("identity provider unreachable", rejected=False) from exc

        if response.status_code != 200:
            logger.info("idp.token.rejected", extra={"grant_type": grant_type, "status": response.status_code})
            raise UpstreamError(
                "identity provider rejected the token request",
                rejected=True,
                details={"status": response.status_code},
            )

        payload = self._decode(response, endpoint="token")
        if not payload.get("access_token"):
            raise UpstreamError("identity provider returned no access token", rejected=False)
        try:
            return UpstreamTokens.from_response(payload)
        except (TypeError, ValueError) as exc:
            raise UpstreamError("identity provider token response is malformed", rejected=False) from exc

    @staticmethod
    def _decode(response: httpx.Response, *, endpoint: str) -> dict[str, Any]:
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamError(f"identity provider {endpoint} response is not JSON", rejected=False) from exc
        if not isinstance(payload, dict):
            raise UpstreamError(f"identity provider {endpoint} response must be an object", rejected=False)
        return payload
