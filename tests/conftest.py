from __future__ import annotations

from urllib.parse import parse_qsl

import httpx
import pytest

from paddock_auth import load_config, metrics
from paddock_auth.apikeys import ApiKeyStore
from paddock_auth.broker import OAuthBroker
from paddock_auth.clients import ClientRegistry
from paddock_auth.idp import IdentityProviderClient
from paddock_auth.kvstore import MemoryStore
from paddock_auth.sessions import AuthCodeStore, AuthSessionStore

IDP_AUTHORIZE_URL = "https://idp.paddock.test/authorize"
IDP_TOKEN_URL = "https://idp.paddock.test/token"
IDP_USERINFO_URL = "https://idp.paddock.test/userinfo"
BROKER_BASE_URL = "https://auth.paddock.test"

UPSTREAM_CODE = "upstream-code"
UPSTREAM_ACCESS = "upstream-access"
UPSTREAM_REFRESH = "upstream-refresh"
DRIVER = {"sub": "driver-7", "email": "driver7@paddock.test", "name": "Driver Seven"}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def __call__(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakeIdentityProvider:
    """In-process IdP answering the token and userinfo endpoints."""

    def __init__(self) -> None:
        self.codes = {UPSTREAM_CODE: UPSTREAM_ACCESS}
        self.refresh_tokens = {UPSTREAM_REFRESH: UPSTREAM_ACCESS}
        self.users = {UPSTREAM_ACCESS: dict(DRIVER)}
        self.requests: list[httpx.Request] = []
        self.token_forms: list[dict[str, str]] = []
        self.offline = False
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.offline:
            raise httpx.ConnectError("identity provider offline", request=request)

        if request.url.path == "/token":
            form = dict(parse_qsl(request.content.decode()))
            self.token_forms.append(form)
            if form.get("grant_type") == "authorization_code":
                access = self.codes.get(form.get("code", ""))
            else:
                access = self.refresh_tokens.get(form.get("refresh_token", ""))
            if access is None:
                return httpx.Response(400, json={"error": "invalid_grant"})
            return httpx.Response(
                200,
                json={
                    "access_token": access,
                    "refresh_token": UPSTREAM_REFRESH,
                    "token_type": "Bearer",
                    "expires_in": 3600,
                },
            )

        if request.url.path == "/userinfo":
            header = request.headers.get("authorization", "")
            info = self.users.get(header.removeprefix("Bearer "))
            if info is None:
                return httpx.Response(401, json={"error": "invalid_token"})
            return httpx.Response(200, json=info)

        return httpx.Response(404)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> MemoryStore:
    return MemoryStore(clock=clock)


@pytest.fixture
def fake_idp() -> FakeIdentityProvider:
    return FakeIdentityProvider()


@pytest.fixture
def idp_client(fake_idp) -> IdentityProviderClient:
    return IdentityProviderClient(
        authorize_url=IDP_AUTHORIZE_URL,
        token_url=IDP_TOKEN_URL,
        userinfo_url=IDP_USERINFO_URL,
        client_id="paddock-broker",
        client_secret="broker-secret",
        transport=fake_idp.transport,
    )


@pytest.fixture
def api_keys(store) -> ApiKeyStore:
    return ApiKeyStore(store)


@pytest.fixture
def clients(store) -> ClientRegistry:
    return ClientRegistry(store)


@pytest.fixture
def broker(store, clients, api_keys, idp_client) -> OAuthBroker:
    return OAuthBroker(
        clients=clients,
        sessions=AuthSessionStore(store),
        codes=AuthCodeStore(store),
        api_keys=api_keys,
        idp=idp_client,
        base_url=BROKER_BASE_URL,
    )


@pytest.fixture
def metrics_registry():
    registry = metrics.MetricsRegistry()
    metrics.install_registry(registry)
    try:
        yield registry
    finally:
        metrics.install_registry(None)


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        environ = {
            "PADDOCK_AUTH_STORAGE_DIR": str(tmp_path / "storage"),
            "PADDOCK_AUTH_ENABLE_STDIO": "false",
            "PADDOCK_AUTH_ENABLE_HTTP": "false",
            "PADDOCK_AUTH_ENABLE_METRICS": "false",
        }
        for key, value in overrides.items():
            environ[f"PADDOCK_AUTH_{key.upper()}"] = str(value)
        return load_config(argv=[], environ=environ)

    return _make


@pytest.fixture
def idp_settings() -> dict[str, str]:
    return {
        "idp_authorize_url": IDP_AUTHORIZE_URL,
        "idp_token_url": IDP_TOKEN_URL,
        "idp_userinfo_url": IDP_USERINFO_URL,
        "idp_client_id": "paddock-broker",
        "idp_client_secret": "broker-secret",
    }
