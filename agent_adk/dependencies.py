from __future__ import annotations

from typing import Any, Dict, Optional

import jwt
from fastapi import Request
from jwt import PyJWKClient

from .config import get_settings
from .runtime import Runtime


class AuthError(RuntimeError):
    """Raised when a mutating request cannot be authenticated."""


def get_runtime(request: Request) -> Runtime:
    """
    Dependency returning the service runtime built in the app lifespan.

    Tests swap in a runtime with a fake provider through
    `app.dependency_overrides[get_runtime]`.
    """
    return request.app.state.runtime


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


_jwks_clients: Dict[str, PyJWKClient] = {}


def _jwks_client(jwks_url: str) -> PyJWKClient:
    client = _jwks_clients.get(jwks_url)
    if client is None:
        client = PyJWKClient(jwks_url)
        _jwks_clients[jwks_url] = client
    return client


def verify_clerk_token(token: str) -> Dict[str, Any]:
    """Verify a Clerk session JWT (RS256) with the configured PEM key or JWKS endpoint."""
    settings = get_settings()
    if not settings.clerk_jwt_key and not settings.clerk_jwks_url:
        raise AuthError("Clerk auth is not configured")

    try:
        header = jwt.get_unverified_header(token)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid session token") from exc
    if header.get("alg") != "RS256":
        raise AuthError("Unsupported token algorithm")

    kwargs: Dict[str, Any] = {
        "algorithms": ["RS256"],
        "options": {"verify_aud": bool(settings.clerk_audience)},
    }
    if settings.clerk_issuer:
        kwargs["issuer"] = settings.clerk_issuer
    if settings.clerk_audience:
        kwargs["audience"] = settings.clerk_audience

    try:
        if settings.clerk_jwt_key:
            key: Any = settings.clerk_jwt_key
        else:
            key = _jwks_client(settings.clerk_jwks_url or "").get_signing_key_from_jwt(token).key
        claims = jwt.decode(token, key, **kwargs)
    except jwt.PyJWTError as exc:
        raise AuthError("Invalid or expired session token") from exc

    parties = settings.clerk_authorized_parties
    if parties and claims.get("azp") not in parties:
        raise AuthError("Unauthorized token issuer")
    return claims


def enforce_auth(request: Request) -> Optional[str]:
    """
    Guard for mutating endpoints. Returns who is acting, when known.

    AUTH_TOKEN set: only that bearer token is accepted (actor unknown).
    Clerk configured: a valid session token is required; the actor is its `sub`.
    Neither configured: requests pass through (dev/tests).
    """
    settings = get_settings()
    if settings.auth_token:
        supplied = _bearer_token(request)
        if supplied is None:
            raise AuthError("Missing or invalid Authorization header")
        if supplied != settings.auth_token:
            raise AuthError("Invalid bearer token")
        return None

    if settings.clerk_jwt_key or settings.clerk_jwks_url:
        token = _bearer_token(request) or request.cookies.get("__session")
        if not token:
            raise AuthError("Missing session token")
        subject = verify_clerk_token(token).get("sub")
        if not subject:
            raise AuthError("Missing user id in token")
        return str(subject)

    return None
