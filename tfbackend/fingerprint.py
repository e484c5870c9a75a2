"""Derive storage keys from request identity."""

from __future__ import annotations

import hashlib
from typing import Optional, Tuple

from aiohttp import BasicAuth, hdrs, web


def state_id(path: str, username: str = "", password: str = "") -> str:
    """Return the hex SHA-256 digest of ``path + username + password``.

    The three parts are joined without a separator, so a username/password
    boundary is not recoverable from the digest.
    """

    digest = hashlib.sha256()
    digest.update(f"{path}{username}{password}".encode("utf-8"))
    return digest.hexdigest()


def request_credentials(authorization: Optional[str]) -> Tuple[str, str]:
    """Decode HTTP Basic credentials, returning empty strings when absent."""

    if not authorization:
        return "", ""
    try:
        auth = BasicAuth.decode(authorization, encoding="utf-8")
    except ValueError:
        return "", ""
    return auth.login, auth.password


def request_state_id(request: web.Request) -> str:
    username, password = request_credentials(
        request.headers.get(hdrs.AUTHORIZATION)
    )
    return state_id(request.path, username, password)


__all__ = ["request_credentials", "request_state_id", "state_id"]
