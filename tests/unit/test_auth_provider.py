from __future__ import annotations

import json

import pytest

from paddock_auth.auth import BearerCheckFailed, BrokerAuthProvider, render_authentication_error
from paddock_auth.errors import STORE_FAILURE, UPSTREAM_FAILURE, StoreError
from paddock_auth.resolver import BearerResolver


@pytest.mark.asyncio
async def test_verify_token_for_api_key(api_keys) -> None:
    issued = api_keys.issue("driver-7", "Laptop")
    provider = BrokerAuthProvider(BearerResolver(api_keys, None), base_url="https://auth.paddock.test")

    token = await provider.verify_token(issued.raw_key)

    assert token is not None
    assert token.client_id == "driver-7"
    assert token.claims["user_id"] == "driver-7"
    assert token.claims["via"] == "api_key"


@pytest.mark.asyncio
async def test_verify_token_federated(api_keys, idp_client) -> None:
    provider = BrokerAuthProvider(BearerResolver(api_keys, idp_client))

    token = await provider.verify_token("upstream-access")

    assert token.claims["via"] == "federated"
    assert token.claims["email"] == "driver7@paddock.test"


@pytest.mark.asyncio
async def test_verify_token_unknown_returns_none(api_keys, idp_client) -> None:
    provider = BrokerAuthProvider(BearerResolver(api_keys, idp_client))
    assert await provider.verify_token("other") is None
    assert await provider.verify_token("") is None


@pytest.mark.asyncio
async def test_verify_token_store_failure_is_not_invalid_token(api_keys, store, monkeypatch) -> None:
    def broken_get(pk, sk):
        raise StoreError(STORE_FAILURE, "store offline")

    monkeypatch.setattr(store, "get", broken_get)
    provider = BrokerAuthProvider(BearerResolver(api_keys, None))

    with pytest.raises(BearerCheckFailed) as exc:
        await provider.verify_token("anything")
    assert exc.value.error.code == STORE_FAILURE

    response = render_authentication_error(None, exc.value)
    assert response.status_code == 500
    assert json.loads(response.body) == {"error": {"code": STORE_FAILURE, "message": "internal error"}}


@pytest.mark.asyncio
async def test_verify_token_idp_outage_is_bad_gateway(api_keys, idp_client, fake_idp) -> None:
    fake_idp.offline = True
    provider = BrokerAuthProvider(BearerResolver(api_keys, idp_client))

    with pytest.raises(BearerCheckFailed) as exc:
        await provider.verify_token("upstream-access")
    assert exc.value.error.code == UPSTREAM_FAILURE
    assert render_authentication_error(None, exc.value).status_code == 502


def test_get_routes_uses_builder(api_keys) -> None:
    seen = []

    def builder(*, mcp_path=None):
        seen.append(mcp_path)
        return []

    provider = BrokerAuthProvider(BearerResolver(api_keys, None), route_builder=builder)

    assert provider.get_routes(mcp_path="/mcp") == []
    assert seen == ["/mcp"]
    assert BrokerAuthProvider(BearerResolver(api_keys, None)).get_routes() == []
