"""FastMCP server entrypoint for the paddock-auth broker."""

from __future__ import annotations

from dataclasses import dataclass
from functools import partial, wraps
from typing import Any, Mapping

import httpx
from fastmcp import Context, FastMCP
from mcp.server.auth.middleware.auth_context import (
    AuthenticatedUser,
    auth_context_var,
)
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

from . import metrics
from .apikeys import ApiKeyStore
from .auth import BrokerAuthProvider
from .broker import OAuthBroker
from .clients import ClientRegistry
from .config import Config, load_config
from .errors import CONFIG_ERROR, INVALID_REQUEST, UNAUTHENTICATED, BrokerError
from .idp import IdentityProviderClient
from .kvstore import KeyValueStore, MemoryStore
from .logging import configure_logging, get_logger
from .models import VIA_API_KEY, VIA_DEV
from .resolver import BearerResolver
from .routes import build_routes
from .sessions import AuthCodeStore, AuthSessionStore
from .storage_lancedb import LanceStore
from .transports import HttpTransportConfig, run_http, run_stdio

LOGGER = get_logger(__name__)
SERVER = FastMCP(name="paddock-auth")


@dataclass(slots=True)
class AppState:
    config: Config
    store: KeyValueStore
    api_keys: ApiKeyStore
    clients: ClientRegistry
    resolver: BearerResolver
    idp: IdentityProviderClient | None = None
    broker: OAuthBroker | None = None


APP_STATE: AppState | None = None
_METRICS_ROUTE_NAME = "__paddock_auth_metrics__"


def _build_store(config: Config) -> KeyValueStore:
    if config.storage_backend == "lancedb":
        return LanceStore(config.storage_dir)
    return MemoryStore()


def _normalise_metrics_path(path: str) -> str:
    if not path:
        return "/metrics"
    normalised = path if path.startswith("/") else f"/{path}"
    if len(normalised) > 1 and normalised.endswith("/"):
        normalised = normalised.rstrip("/")
    return normalised or "/metrics"


def _remove_metrics_route() -> None:
    routes = getattr(SERVER, "_additional_http_routes", None)
    if not routes:
        return
    routes[:] = [route for route in routes if getattr(route, "name", None) != _METRICS_ROUTE_NAME]


def _register_metrics_route(path: str) -> None:
    cleaned = _normalise_metrics_path(path)
    _remove_metrics_route()

    @SERVER.custom_route(cleaned, methods=["GET"], name=_METRICS_ROUTE_NAME, include_in_schema=False)
    async def metrics_endpoint(_request: Request) -> Response:
        registry = metrics.get_registry_optional()
        if registry is None:
            return PlainTextResponse("metrics unavailable\n", status_code=503)
        body = metrics.format_prometheus(registry.snapshot())
        return PlainTextResponse(body, media_type="text/plain; version=0.0.4")


def initialize_app(
    config: Config,
    *,
    store: KeyValueStore | None = None,
    idp_transport: httpx.AsyncBaseTransport | None = None,
) -> AppState:
    """Build the store, the credential components and the auth provider.

    ``store`` and ``idp_transport`` let tests substitute an in-memory store
    and a mocked identity provider.
    """

    global APP_STATE
    if APP_STATE is not None:
        shutdown_app()

    store = store if store is not None else _build_store(config)
    api_keys = ApiKeyStore(store)
    clients = ClientRegistry(store)

    idp: IdentityProviderClient | None = None
    broker: OAuthBroker | None = None
    if config.idp_configured:
        idp = IdentityProviderClient.from_config(config, transport=idp_transport)
        broker = OAuthBroker(
            clients=clients,
            sessions=AuthSessionStore(store, ttl=config.session_ttl),
            codes=AuthCodeStore(store, ttl=config.code_ttl),
            api_keys=api_keys,
            idp=idp,
            base_url=config.base_url,
            resource_path=config.http_path,
        )
    else:
        LOGGER.warning("Identity provider not configured; OAuth endpoints and federated bearers are disabled")

    if config.dev_user:
        LOGGER.warning("dev_user is set; every bearer token resolves to '%s'", config.dev_user)
    resolver = BearerResolver(api_keys, idp, dev_user=config.dev_user)

    metrics.install_registry(metrics.MetricsRegistry())

    route_builder = partial(build_routes, api_keys=api_keys, resolver=resolver, broker=broker)

    SERVER.auth = BrokerAuthProvider(resolver, base_url=config.base_url, route_builder=route_builder)

    if config.enable_metrics:
        _register_metrics_route(config.metrics_path)
    else:
        _remove_metrics_route()

    APP_STATE = AppState(
        config=config,
        store=store,
        api_keys=api_keys,
        clients=clients,
        resolver=resolver,
        idp=idp,
        broker=broker,
    )
    return APP_STATE


def shutdown_app() -> None:
    """Release the store and clear application state."""

    global APP_STATE
    if APP_STATE is None:
        return
    state = APP_STATE
    APP_STATE = None
    state.store.close()
    metrics.install_registry(None)
    _remove_metrics_route()
    SERVER.auth = None


def get_state() -> AppState:
    if APP_STATE is None:
        raise BrokerError(CONFIG_ERROR, "Server is not initialised")
    return APP_STATE


def _resolve_user_from_context(context: Context | None) -> tuple[str, str]:
    """Return ``(user_id, via)`` for the authenticated MCP caller."""

    try:
        user = auth_context_var.get()
    except LookupError:
        user = None
    if isinstance(user, AuthenticatedUser):
        claims = getattr(user.access_token, "claims", None) or {}
        user_id = claims.get("user_id") or user.access_token.client_id
        return str(user_id), str(claims.get("via") or VIA_API_KEY)

    state = get_state()
    if state.config.dev_user:
        return state.config.dev_user, VIA_DEV
    raise BrokerError(UNAUTHENTICATED, "authentication required")


def success(payload: Mapping[str, Any]) -> dict[str, Any]:
    return {"ok": True, **payload}


def failure(error: BrokerError) -> dict[str, Any]:
    metrics.record_error(error.code)
    if error.status_code >= 500:
        LOGGER.error("tool.failed", extra={"code": error.code, "details": dict(error.details or {})}, exc_info=error)
    return {"ok": False, "error": error.to_dict()}


def _broker_error_guard(func):
    """Convert BrokerError exceptions into structured failure responses."""

    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except BrokerError as exc:
            return failure(exc)

    return wrapper


@_broker_error_guard
async def _whoami_impl(*, context: Context | None = None) -> dict[str, Any]:
    user_id, via = _resolve_user_from_context(context)
    return success({"user_id": user_id, "via": via})


@_broker_error_guard
async def _api_key_list_impl(*, context: Context | None = None) -> dict[str, Any]:
    user_id, _ = _resolve_user_from_context(context)
    keys = get_state().api_keys.list(user_id)
    return success({"keys": [info.to_dict() for info in keys]})


@_broker_error_guard
async def _api_key_create_impl(label: str | None = None, *, context: Context | None = None) -> dict[str, Any]:
    user_id, _ = _resolve_user_from_context(context)
    if label is not None and not isinstance(label, str):
        raise BrokerError(INVALID_REQUEST, "label must be a string")
    issued = get_state().api_keys.issue(user_id, (label or "").strip() or "MCP")
    return success(issued.to_dict())


@_broker_error_guard
async def _api_key_revoke_impl(key_id: str, *, context: Context | None = None) -> dict[str, Any]:
    user_id, _ = _resolve_user_from_context(context)
    revoked = get_state().api_keys.revoke(user_id, key_id)
    return success({"key_id": key_id, "revoked": revoked})


whoami = SERVER.tool(
    name="whoami",
    description="Return the user id behind the current bearer credential and how it was resolved (api_key, federated or dev).",
)(_whoami_impl)

api_key_list = SERVER.tool(
    name="api_key_list",
    description="List the caller's API keys (id, label, creation time). Secrets are never returned.",
)(_api_key_list_impl)

api_key_create = SERVER.tool(
    name="api_key_create",
    description=(
        "Issue a new API key for the caller.\n\n"
        "The raw key is returned exactly once in `api_key`; store it immediately. "
        "Use `label` to record where the key will be used."
    ),
)(_api_key_create_impl)

api_key_revoke = SERVER.tool(
    name="api_key_revoke",
    description="Revoke one of the caller's API keys. Revoking an unknown id succeeds with revoked=false.",
)(_api_key_revoke_impl)

_SCHEMA_SUCCESS_CONSTRAINT = {
    "if": {"properties": {"ok": {"const": True}}},
    "else": {"required": ["error"]},
}

_ERROR_SCHEMA = {"type": ["object", "null"]}

whoami.parameters = {"type": "object", "additionalProperties": False}
whoami.output_schema = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "ok": {"type": "boolean"},
        "error": _ERROR_SCHEMA,
        "user_id": {"type": "string"},
        "via": {"type": "string", "enum": ["api_key", "federated", "dev"]},
    },
    "required": ["ok"],
    "allOf": [_SCHEMA_SUCCESS_CONSTRAINT],
}

api_key_list.parameters = {"type": "object", "additionalProperties": False}
api_key_list.output_schema = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "ok": {"type": "boolean"},
        "error": _ERROR_SCHEMA,
        "keys": {
            "type": "array",
            "items": {
                "type": "object",
                "additionalProperties": False,
                "properties": {
                    "key_id": {"type": "string"},
                    "label": {"type": "string"},
                    "created_at": {"type": "string"},
                },
                "required": ["key_id", "label", "created_at"],
            },
        },
    },
    "required": ["ok"],
    "allOf": [_SCHEMA_SUCCESS_CONSTRAINT],
}

api_key_create.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "label": {
            "type": "string",
            "description": "Human readable label for the key (defaults to 'MCP').",
        },
    },
}
api_key_create.output_schema = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "ok": {"type": "boolean"},
        "error": _ERROR_SCHEMA,
        "api_key": {"type": "string"},
        "key_id": {"type": "string"},
    },
    "required": ["ok"],
    "allOf": [_SCHEMA_SUCCESS_CONSTRAINT],
}

api_key_revoke.parameters = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "key_id": {"type": "string", "minLength": 1, "description": "Identifier returned by api_key_list."},
    },
    "required": ["key_id"],
}
api_key_revoke.output_schema = {
    "type": "object",
    "additionalProperties": False,
    "properties": {
        "ok": {"type": "boolean"},
        "error": _ERROR_SCHEMA,
        "key_id": {"type": "string"},
        "revoked": {"type": "boolean"},
    },
    "required": ["ok"],
    "allOf": [_SCHEMA_SUCCESS_CONSTRAINT],
}


def main(argv: list[str] | None = None) -> None:
    """CLI entrypoint for running the paddock-auth broker."""

    config = load_config(argv)
    configure_logging(config.log_level)
    LOGGER.info(
        "Configuration loaded",
        extra={
            "context": {
                "storage_backend": config.storage_backend,
                "storage_dir": str(config.storage_dir),
                "base_url": config.base_url,
                "enable_stdio": config.enable_stdio,
                "enable_http": config.enable_http,
                "enable_metrics": config.enable_metrics,
                "idp_configured": config.idp_configured,
            }
        },
    )

    try:
        initialize_app(config)
    except BrokerError as exc:
        LOGGER.error(
            "Failed to initialize broker",
            exc_info=exc,
            extra={"context": dict(exc.details or {})},
        )
        raise SystemExit(1) from exc

    try:
        if config.enable_stdio:
            run_stdio(SERVER)
        else:
            LOGGER.info("Stdio transport disabled")

        if config.enable_http:
            http_config = HttpTransportConfig(
                host=config.http_host,
                port=config.http_port,
                http_path=config.http_path,
                metrics_path=config.metrics_path,
                enable_metrics=config.enable_metrics,
            )
            run_http(SERVER, http_config)
        else:
            LOGGER.info("HTTP transport disabled")
    finally:
        shutdown_app()


if __name__ == "__main__":  # pragma: no cover - manual invocation only
    main()
