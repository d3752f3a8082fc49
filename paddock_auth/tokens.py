"""Random identifiers, secret hashing and PKCE helpers."""

from __future__ import annotations

import base64
import hashlib
import secrets
import uuid

KEY_ID_BYTES = 4
SECRET_BYTES = 32

PKCE_METHOD_S256 = "S256"


def random_hex(n_bytes: int) -> str:
    """Return ``n_bytes`` of CSPRNG output, hex encoded (``2 * n_bytes`` chars)."""

    if n_bytes <= 0:
        raise ValueError("n_bytes must be positive")
    return secrets.token_bytes(n_bytes).hex()


def new_key_id() -> str:
    return random_hex(KEY_ID_BYTES)


def new_secret() -> str:
    return random_hex(SECRET_BYTES)


def new_identifier() -> str:
    """Opaque identifier for clients, sessions and authorization codes."""

    return str(uuid.uuid4())


def hash_secret(raw: str) -> str:
    """SHA-256 hex digest used as the reverse-lookup key for API secrets."""

    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def pkce_challenge(verifier: str) -> str:
    """Compute the S256 challenge: BASE64URL(SHA256(verifier)) without padding."""

    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def verify_pkce(verifier: str, challenge: str) -> bool:
    if not verifier or not challenge:
        return False
    return secrets.compare_digest(pkce_challenge(verifier), challenge)
