"""Turn an inbound bearer token into a user identity."""

from __future__ import annotations

from .apikeys import ApiKeyStore
from .errors import UNAUTHENTICATED, BrokerError, UpstreamError
from .idp import IdentityProviderClient
from .logging import get_logger
from .models import VIA_API_KEY, VIA_DEV, VIA_FEDERATED, Resolution, UserIdentity
from . import metrics

logger = get_logger(__name__)


class BearerResolver:
    """Resolves bearer tokens through two strategies tried in a fixed order.

    1. The token is treated as an API key secret and looked up by hash.
    2. Only when the hash is unknown, the token is treated as an IdP access
       token and sent to the userinfo endpoint.

    Store failures in the first step propagate and never trigger the
    federated fallback. When ``dev_user`` is set every non-empty token
    resolves to that user, tagged ``dev``.
    """

    def __init__(
        self,
        api_keys: ApiKeyStore,
        idp: IdentityProviderClient | None,
        *,
        dev_user: str | None = None,
    ) -> None:
        self._api_keys = api_keys
        self._idp = idp
        self._dev_user = dev_user

    async def resolve(self, token: str | None) -> Resolution:
        token = (token or "").strip()
        if not token:
            raise BrokerError(UNAUTHENTICATED, "missing bearer token")

        if self._dev_user:
            return self._record(Resolution(identity=UserIdentity(user_id=self._dev_user), via=VIA_DEV, extra={"dev_user": True}))

        owner = self._api_keys.resolve(token)
        if owner is not None:
            return self._record(Resolution(identity=UserIdentity(user_id=owner), via=VIA_API_KEY))

        if self._idp is None:
            raise BrokerError(UNAUTHENTICATED, "invalid bearer token")

        try:
            identity = await self._idp.userinfo(token)
        except UpstreamError as exc:
            if exc.rejected:
                raise BrokerError(UNAUTHENTICATED, "invalid bearer token") from exc
            raise
        return self._record(Resolution(identity=identity, via=VIA_FEDERATED))

    def _record(self, resolution: Resolution) -> Resolution:
        metrics.record_resolution(resolution.via)
        logger.debug("auth.resolve.ok", extra={"user_id": resolution.user_id, "via": resolution.via})
        return resolution
