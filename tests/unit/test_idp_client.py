from __future__ import annotations

import base64
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from paddock_auth.errors import CONFIG_ERROR, UPSTREAM_FAILURE, BrokerError, UpstreamError
from paddock_auth.idp import IdentityProviderClient


def test_authorization_url_carries_broker_parameters(idp_client) -> None:
    url = idp_client.authorization_url(redirect_uri="https://auth.paddock.test/oauth/callback", state="session-1")

    parts = urlsplit(url)
    query = parse_qs(parts.query)
    assert f"{parts.scheme}://{parts.netloc}{parts.path}" == "https://idp.paddock.test/authorize"
    assert query["client_id"] == ["paddock-broker"]
    assert query["response_type"] == ["code"]
    assert query["scope"] == ["openid email profile"]
    assert query["state"] == ["session-1"]
    assert query["redirect_uri"] == ["https://auth.paddock.test/oauth/callback"]


@pytest.mark.asyncio
async def test_exchange_code_uses_basic_auth(idp_client, fake_idp) -> None:
    tokens = await idp_client.exchange_code("upstream-code", "https://auth.paddock.test/oauth/callback")

    assert tokens.access_token == "upstream-access"
    assert tokens.refresh_token == "upstream-refresh"
    assert tokens.expires_in == 3600

    request = fake_idp.requests[-1]
    expected = base64.b64encode(b"paddock-broker:broker-secret").decode()
    assert request.headers["authorization"] == f"Basic {expected}"
    assert fake_idp.token_forms[-1] == {
        "grant_type": "authorization_code",
        "code": "upstream-code",
        "redirect_uri": "https://auth.paddock.test/oauth/callback",
        "client_id": "paddock-broker",
    }


@pytest.mark.asyncio
async def test_rejected_grant_is_flagged(idp_client) -> None:
    with pytest.raises(UpstreamError) as exc:
        await idp_client.refresh("stale-refresh")
    assert exc.value.rejected is True
    assert exc.value.code == UPSTREAM_FAILURE
    assert exc.value.status_code == 502


@pytest.mark.asyncio
async def test_transport_failure_is_not_a_rejection(idp_client, fake_idp) -> None:
    fake_idp.offline = True
    with pytest.raises(UpstreamError) as exc:
        await idp_client.userinfo("upstream-access")
    assert exc.value.rejected is False


@pytest.mark.asyncio
async def test_userinfo_maps_identity(idp_client, fake_idp) -> None:
    identity = await idp_client.userinfo("upstream-access")
    assert identity.to_dict() == {"user_id": "driver-7", "email": "driver7@paddock.test", "name": "Driver Seven"}

    fake_idp.users["no-subject"] = {"email": "ghost@paddock.test"}
    with pytest.raises(UpstreamError) as exc:
        await idp_client.userinfo("no-subject")
    assert exc.value.rejected is False


@pytest.mark.asyncio
async def test_malformed_token_response_is_upstream_failure() -> None:
    def handle(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"access_token": "odd-access", "expires_in": "one hour"})

    client = IdentityProviderClient(
        authorize_url="https://idp.paddock.test/authorize",
        token_url="https://idp.paddock.test/token",
        userinfo_url="https://idp.paddock.test/userinfo",
        client_id="paddock-broker",
        transport=httpx.MockTransport(handle),
    )

    for call in (client.refresh("odd-refresh"), client.exchange_code("odd-code", "https://auth.paddock.test/oauth/callback")):
        with pytest.raises(UpstreamError) as exc:
            await call
        assert exc.value.rejected is False
        assert exc.value.status_code == 502


def test_from_config_requires_idp_settings(make_config) -> None:
    with pytest.raises(BrokerError) as exc:
        IdentityProviderClient.from_config(make_config())
    assert exc.value.code == CONFIG_ERROR


def test_from_config(make_config, idp_settings) -> None:
    client = IdentityProviderClient.from_config(make_config(**idp_settings, idp_timeout="3s"))
    assert client.token_url == "https://idp.paddock.test/token"
    assert client.client_id == "paddock-broker"
