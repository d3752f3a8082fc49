"""Centralized error codes and helper utilities."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "INVALID_REQUEST",
    "UNAUTHORIZED",
    "UNAUTHENTICATED",
    "NOT_FOUND",
    "UPSTREAM_FAILURE",
    "STORE_FAILURE",
    "CONFIG_ERROR",
    "BrokerError",
    "StoreError",
    "UpstreamError",
    "error_payload",
    "oauth_error_payload",
    "http_status_for",
]

INVALID_REQUEST = "INVALID_REQUEST"
UNAUTHORIZED = "UNAUTHORIZED"
UNAUTHENTICATED = "UNAUTHENTICATED"
NOT_FOUND = "NOT_FOUND"
UPSTREAM_FAILURE = "UPSTREAM_FAILURE"
STORE_FAILURE = "STORE_FAILURE"
CONFIG_ERROR = "CONFIG_ERROR"

# PKCE, client and redirect mismatches answer 400 as OAuth clients expect.
_HTTP_STATUS = {
    INVALID_REQUEST: 400,
    UNAUTHORIZED: 400,
    NOT_FOUND: 400,
    UNAUTHENTICATED: 401,
    UPSTREAM_FAILURE: 502,
    STORE_FAILURE: 500,
    CONFIG_ERROR: 500,
}

_OAUTH_ERRORS = {
    INVALID_REQUEST: "invalid_request",
    UNAUTHORIZED: "invalid_grant",
    NOT_FOUND: "invalid_request",
    UNAUTHENTICATED: "invalid_token",
    UPSTREAM_FAILURE: "temporarily_unavailable",
    STORE_FAILURE: "server_error",
    CONFIG_ERROR: "server_error",
}

_INTERNAL_CODES = {STORE_FAILURE, CONFIG_ERROR}


@dataclass(slots=True)
class BrokerError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None
    oauth_error: str | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    @property
    def status_code(self) -> int:
        return http_status_for(self.code)

    def public_message(self) -> str:
        if self.code in _INTERNAL_CODES:
            return "internal error"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        details = None if self.code in _INTERNAL_CODES else self.details
        return error_payload(self.code, self.public_message(), details=details)

    def to_oauth_dict(self) -> dict[str, Any]:
        return oauth_error_payload(self.oauth_error or _OAUTH_ERRORS.get(self.code, "server_error"), self.public_message())


class StoreError(BrokerError):
    """Raised when the key-value store is unavailable or a commit fails."""


class UpstreamError(BrokerError):
    """Raised when the external identity provider call fails.

    ``rejected`` is true when the provider answered with an explicit
    non-success status and false for transport failures.
    """

    def __init__(
        self,
        message: str,
        *,
        rejected: bool,
        details: Mapping[str, Any] | None = None,
    ) -> None:
        super().__init__(UPSTREAM_FAILURE, message, details)
        self.rejected = rejected


def http_status_for(code: str) -> int:
    return _HTTP_STATUS.get(code, 500)


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload used in tool and API responses."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload


def oauth_error_payload(error: str, description: str) -> dict[str, Any]:
    """Build an RFC 6749 style error body."""

    return {"error": error, "error_description": description}
