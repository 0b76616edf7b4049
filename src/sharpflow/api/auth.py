"""Owner identity for HTTP and WebSocket requests.

The owner is the ``sub`` claim of an HS256 access token, taken from the
Authorization header, the ``sharpflow_access_token`` cookie or, for
WebSockets, the ``token`` query parameter. With ``disable_auth`` (development
only) an ``X-Owner-Id`` header is trusted instead.
"""

from typing import Any

import jwt
import structlog
from fastapi import Request
from starlette.requests import HTTPConnection

from sharpflow.api.errors import raise_auth_error
from sharpflow.config import Settings

log = structlog.get_logger()

ACCESS_TOKEN_COOKIE = "sharpflow_access_token"
OWNER_HEADER = "x-owner-id"


class JwtError(Exception):
    """Token missing, malformed, expired or badly signed."""


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization[7:].strip()
    return token or None


def select_access_token(
    *,
    authorization: str | None,
    cookie_token: str | None,
    query_token: str | None = None,
) -> str | None:
    """Pick the access token from Authorization header, cookie or query string."""
    bearer = extract_bearer_token(authorization)
    if bearer:
        return bearer
    for candidate in (cookie_token, query_token):
        if candidate and candidate.strip():
            return candidate.strip()
    return None


def verify_access_token(token: str, settings: Settings) -> dict[str, Any]:
    secret = settings.jwt_secret.get_secret_value()
    if not secret:
        raise JwtError("JWT secret is not configured")
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[settings.jwt_algorithm],
            options={"require": ["sub"]},
        )
    except jwt.PyJWTError as e:
        raise JwtError(str(e)) from e
    return claims


def create_access_token(owner_id: str, settings: Settings, **claims: Any) -> str:
    """Sign a token for ``owner_id``. Used by tests and local tooling."""
    return jwt.encode(
        {"sub": owner_id, **claims},
        settings.jwt_secret.get_secret_value(),
        algorithm=settings.jwt_algorithm,
    )


def resolve_owner(connection: HTTPConnection, settings: Settings) -> str | None:
    """Owner id for a request or WebSocket, or None if unauthenticated."""
    if settings.disable_auth:
        header_owner = connection.headers.get(OWNER_HEADER, "").strip()
        if header_owner:
            return header_owner

    token = select_access_token(
        authorization=connection.headers.get("authorization"),
        cookie_token=connection.cookies.get(ACCESS_TOKEN_COOKIE),
        query_token=connection.query_params.get("token"),
    )
    if token is None:
        return None
    try:
        claims = verify_access_token(token, settings)
    except JwtError as e:
        log.debug("invalid_access_token", error=str(e))
        return None
    owner_id = str(claims["sub"]).strip()
    return owner_id or None


def owner_from_websocket(websocket: HTTPConnection, settings: Settings) -> str | None:
    return resolve_owner(websocket, settings)


async def get_owner_id(request: Request) -> str:
    """FastAPI dependency: the authenticated owner, or 401."""
    owner_id = resolve_owner(request, request.app.state.settings)
    if owner_id is None:
        raise_auth_error()
    return owner_id
