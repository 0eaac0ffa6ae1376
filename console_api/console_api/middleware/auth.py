"""Authentication middleware that validates bearer session tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates it
with :class:`SessionTokenVerifier`, and populates ``request.state`` with
``tenant_id`` (the active organization), ``sub`` (user identity) and
``role``.

Session tokens are issued by the identity collaborator in the form
``tdsess.<base64url(json claims)>.<hex hmac-sha256(claims json)>``.

Endpoints explicitly listed in ``_PUBLIC_PATHS`` bypass authentication.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "tdsess."

# Paths that do not require authentication.
_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/ready",
        "/docs",
        "/openapi.json",
        "/redoc",
        "/favicon.ico",
        "/api/v1/billing/webhooks/stripe",
        "/metrics",
    }
)

# Prefixes that skip auth (e.g. static docs assets).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


@dataclass(frozen=True)
class SessionClaims:
    """Validated claims of a session token."""

    sub: str
    tenant_id: str | None
    role: str = "member"
    exp: float = 0.0
    extra: dict[str, Any] = field(default_factory=dict)


class SessionTokenVerifier:
    """Verify HMAC-signed session tokens.

    Raises :class:`PermissionError` for every invalid token; the message says
    whether the token is malformed, forged or expired.
    """

    def __init__(self, secret: str, *, clock_skew_seconds: float = 30.0) -> None:
        if not secret:
            raise ValueError("Session secret must not be empty")
        self._secret = secret.encode("utf-8")
        self._skew = clock_skew_seconds

    def verify(self, token: str) -> SessionClaims:
        if not token.startswith(TOKEN_PREFIX):
            raise PermissionError("unrecognised token format")
        try:
            encoded, signature = token[len(TOKEN_PREFIX) :].rsplit(".", 1)
            payload_json = base64.urlsafe_b64decode(encoded.encode("ascii")).decode("utf-8")
        except (ValueError, binascii.Error, UnicodeError):
            raise PermissionError("malformed token") from None

        expected = hmac.new(self._secret, payload_json.encode("utf-8"), hashlib.sha256).hexdigest()
        if not hmac.compare_digest(expected, signature):
            raise PermissionError("signature mismatch")

        try:
            payload = json.loads(payload_json)
        except ValueError:
            raise PermissionError("malformed token") from None
        if not isinstance(payload, dict) or not payload.get("sub"):
            raise PermissionError("missing subject claim")

        exp = float(payload.get("exp", 0))
        if exp + self._skew < time.time():
            raise PermissionError("token expired")

        known = {"sub", "tenant_id", "role", "exp"}
        return SessionClaims(
            sub=str(payload["sub"]),
            tenant_id=payload.get("tenant_id") or None,
            role=str(payload.get("role") or "member"),
            exp=exp,
            extra={k: v for k, v in payload.items() if k not in known},
        )


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public (health, docs, webhooks) and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`SessionTokenVerifier`.
    4. Stores ``tenant_id``, ``sub`` and ``role`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any, secret: str) -> None:
        super().__init__(app)
        self._verifier = SessionTokenVerifier(secret)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if _is_public_path(request.url.path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(status_code=401, content={"detail": "Missing Authorization header"})

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._verifier.verify(parts[1])
        except PermissionError as exc:
            # Expired tokens are 403, everything else 401.
            if "expired" in str(exc):
                return JSONResponse(status_code=403, content={"detail": "Token has expired"})
            return JSONResponse(status_code=401, content={"detail": f"Invalid token: {exc}"})

        request.state.tenant_id = claims.tenant_id
        request.state.sub = claims.sub
        request.state.role = claims.role

        return await call_next(request)
