"""Starlette routes for the OAuth broker, discovery and key management."""

from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from mcp.server.auth.middleware.auth_context import AuthenticatedUser
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response
from starlette.routing import Route

from .apikeys import ApiKeyStore
from .broker import OAuthBroker
from .errors import INVALID_REQUEST, UNAUTHENTICATED, BrokerError
from .logging import get_logger
from .resolver import BearerResolver
from . import metrics

logger = get_logger(__name__)

DEFAULT_KEY_LABEL = "Web UI"
PROTECTED_RESOURCE_PATH = "/.well-known/oauth-protected-resource"
AUTHORIZATION_SERVER_PATH = "/.well-known/oauth-authorization-server"

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}

Handler = Callable[[Request], Awaitable[Response]]


def _log_failure(exc: BrokerError, route: str) -> None:
    metrics.record_error(exc.code)
    if exc.status_code >= 500:
        logger.error("http.%s.failed", route, extra={"code": exc.code, "details": dict(exc.details or {})}, exc_info=exc)
    else:
        logger.info("http.%s.rejected", route, extra={"code": exc.code})


def oauth_error_response(exc: BrokerError) -> JSONResponse:
    return JSONResponse(exc.to_oauth_dict(), status_code=exc.status_code, headers=_NO_STORE)


def api_error_response(exc: BrokerError, *, resource_metadata_url: str | None = None) -> JSONResponse:
    headers: dict[str, str] = {}
    if exc.code == UNAUTHENTICATED and resource_metadata_url:
        headers["WWW-Authenticate"] = f'Bearer resource_metadata="{resource_metadata_url}"'
    return JSONResponse({"error": exc.to_dict()}, status_code=exc.status_code, headers=headers)


async def _json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise BrokerError(INVALID_REQUEST, "request body is not valid JSON") from exc


async def _json_object(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    if not isinstance(payload, dict):
        raise BrokerError(INVALID_REQUEST, "request body must be a JSON object")
    return payload


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise BrokerError(UNAUTHENTICATED, "missing bearer token")
    return token.strip()


def build_routes(
    *,
    api_keys: ApiKeyStore,
    resolver: BearerResolver,
    broker: OAuthBroker | None = None,
    mcp_path: str | None = None,
) -> list[Route]:
    """Return the HTTP surface.

    Key management is always mounted. The OAuth, discovery and browser
    session routes need ``broker`` and are left out without it.

    OAuth endpoints answer errors as ``{"error", "error_description"}``.
    Key management endpoints answer ``{"error": {"code", "message"}}``.
    """

    resource_metadata_url = f"{broker.base_url}{PROTECTED_RESOURCE_PATH}" if broker is not None else None

    def oauth_endpoint(route: str, func: Handler) -> Handler:
        async def endpoint(request: Request) -> Response:
            try:
                return await func(request)
            except BrokerError as exc:
                _log_failure(exc, route)
                return oauth_error_response(exc)

        endpoint.__name__ = f"oauth_{route}"
        return endpoint

    def api_endpoint(route: str, func: Handler) -> Handler:
        async def endpoint(request: Request) -> Response:
            try:
                return await func(request)
            except BrokerError as exc:
                _log_failure(exc, route)
                return api_error_response(exc, resource_metadata_url=resource_metadata_url)

        endpoint.__name__ = f"api_{route}"
        return endpoint

    async def authenticated_user(request: Request) -> str:
        # AuthenticationMiddleware may already have resolved the bearer.
        user = request.scope.get("user")
        if isinstance(user, AuthenticatedUser):
            claims = getattr(user.access_token, "claims", None) or {}
            return str(claims.get("user_id") or user.access_token.client_id)
        resolution = await resolver.resolve(_bearer_token(request))
        return resolution.user_id

    # -- OAuth ---------------------------------------------------------

    async def authorize(request: Request) -> Response:
        location = broker.authorize(request.query_params)
        return RedirectResponse(location, status_code=302)

    async def callback(request: Request) -> Response:
        location = await broker.callback(request.query_params)
        return RedirectResponse(location, status_code=302)

    async def token(request: Request) -> Response:
        form = await request.form()
        payload = await broker.token(form)
        return JSONResponse(payload, headers=_NO_STORE)

    async def register(request: Request) -> Response:
        payload = await _json_object(request)
        return JSONResponse(broker.register(payload), status_code=201)

    async def authorization_server(_request: Request) -> Response:
        return JSONResponse(broker.authorization_server_metadata())

    async def protected_resource(_request: Request) -> Response:
        return JSONResponse(broker.protected_resource_metadata())

    # -- key management --------------------------------------------------

    async def create_key(request: Request) -> Response:
        owner = await authenticated_user(request)
        payload = await _json_object(request)
        label = payload.get("label")
        if label is not None and not isinstance(label, str):
            raise BrokerError(INVALID_REQUEST, "label must be a string")
        issued = api_keys.issue(owner, (label or "").strip() or DEFAULT_KEY_LABEL)
        return JSONResponse(issued.to_dict(), status_code=201, headers=_NO_STORE)

    async def list_keys(request: Request) -> Response:
        owner = await authenticated_user(request)
        return JSONResponse([info.to_dict() for info in api_keys.list(owner)])

    async def revoke_key(request: Request) -> Response:
        owner = await authenticated_user(request)
        api_keys.revoke(owner, request.path_params["key_id"])
        return Response(status_code=204)

    async def revoke_all_keys(request: Request) -> Response:
        owner = await authenticated_user(request)
        api_keys.revoke_all(owner)
        return Response(status_code=204)

    async def browser_session(request: Request) -> Response:
        payload = await _json_object(request)
        code = payload.get("code")
        redirect_uri = payload.get("redirect_uri")
        if not isinstance(code, str) or not isinstance(redirect_uri, str):
            raise BrokerError(INVALID_REQUEST, "code and redirect_uri are required strings")
        result = await broker.browser_session(code, redirect_uri)
        return JSONResponse(result, headers=_NO_STORE)

    routes = [
        Route("/keys", api_endpoint("keys_create", create_key), methods=["POST"]),
        Route("/keys", api_endpoint("keys_list", list_keys), methods=["GET"]),
        Route("/keys", api_endpoint("keys_revoke_all", revoke_all_keys), methods=["DELETE"]),
        Route("/keys/{key_id}", api_endpoint("keys_revoke", revoke_key), methods=["DELETE"]),
    ]
    if broker is None:
        return routes

    routes.extend(
        [
            Route("/oauth/authorize", oauth_endpoint("authorize", authorize), methods=["GET"]),
            Route("/oauth/callback", oauth_endpoint("callback", callback), methods=["GET"]),
            Route("/oauth/token", oauth_endpoint("token", token), methods=["POST"]),
            Route("/oauth/register", oauth_endpoint("register", register), methods=["POST"]),
            Route(AUTHORIZATION_SERVER_PATH, authorization_server, methods=["GET"]),
            Route(PROTECTED_RESOURCE_PATH, protected_resource, methods=["GET"]),
            Route("/auth/session", api_endpoint("session", browser_session), methods=["POST"]),
        ]
    )
    if mcp_path and mcp_path != "/":
        # Path-scoped discovery document advertised in WWW-Authenticate headers.
        routes.append(Route(f"{PROTECTED_RESOURCE_PATH}{mcp_path}", protected_resource, methods=["GET"]))
    return routes

