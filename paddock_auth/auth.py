from __future__ import annotations

from collections.abc import Callable, Sequence

from fastmcp.server.auth.auth import AccessToken, AuthProvider
from mcp.server.auth.middleware.auth_context import AuthContextMiddleware
from mcp.server.auth.middleware.bearer_auth import BearerAuthBackend
from starlette.authentication import AuthenticationError
from starlette.middleware import Middleware
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.requests import HTTPConnection
from starlette.responses import JSONResponse, Response
from starlette.routing import BaseRoute

from .errors import UNAUTHENTICATED, BrokerError, oauth_error_payload
from .logging import get_logger
from .resolver import BearerResolver
from . import metrics

logger = get_logger(__name__)

RouteBuilder = Callable[..., Sequence[BaseRoute]]


class BearerCheckFailed(AuthenticationError):
    """The bearer could not be checked because the store or the IdP failed."""

    def __init__(self, error: BrokerError) -> None:
        super().__init__(error.message)
        self.error = error


def render_authentication_error(_conn: HTTPConnection, exc: AuthenticationError) -> Response:
    if isinstance(exc, BearerCheckFailed):
        error = exc.error
        metrics.record_error(error.code)
        return JSONResponse({"error": error.to_dict()}, status_code=error.status_code)
    return JSONResponse(oauth_error_payload("invalid_token", str(exc)), status_code=401)


class BrokerAuthProvider(AuthProvider):
    """Bearer verifier backed by the API key store with IdP fallback.

    The provider also contributes the broker's HTTP routes so FastMCP mounts
    them next to the MCP endpoint.
    """

    def __init__(
        self,
        resolver: BearerResolver,
        *,
        base_url: str | None = None,
        required_scopes: list[str] | None = None,
        route_builder: RouteBuilder | None = None,
    ) -> None:
        super().__init__(base_url=base_url, required_scopes=required_scopes)
        self._resolver = resolver
        self._route_builder = route_builder

    async def verify_token(self, token: str) -> AccessToken | None:
        """Return an access token for resolvable bearers and ``None`` for unknown ones.

        Store and IdP failures raise :class:`BearerCheckFailed` so the request
        answers 500 or 502 instead of 401.
        """

        if not token:
            return None
        try:
            resolution = await self._resolver.resolve(token)
        except BrokerError as exc:
            if exc.code == UNAUTHENTICATED:
                return None
            logger.error("auth.verify.failed", extra={"code": exc.code}, exc_info=True)
            raise BearerCheckFailed(exc) from exc
        scopes = list(self.required_scopes) if self.required_scopes else []
        claims = {"user_id": resolution.user_id, "via": resolution.via, **resolution.identity.to_dict()}
        return AccessToken(
            token=token,
            client_id=resolution.user_id,
            scopes=scopes,
            claims=claims,
        )

    def get_middleware(self) -> list:
        return [
            Middleware(
                AuthenticationMiddleware,
                backend=BearerAuthBackend(self),
                on_error=render_authentication_error,
            ),
            Middleware(AuthContextMiddleware),
        ]

    def get_routes(self, mcp_path: str | None = None) -> list[BaseRoute]:
        if self._route_builder is None:
            return []
        return list(self._route_builder(mcp_path=mcp_path))
