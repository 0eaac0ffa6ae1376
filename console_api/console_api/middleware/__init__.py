"""Middleware components for the tenant billing console API."""

from __future__ import annotations

from console_api.middleware.auth import AuthenticationMiddleware, SessionTokenVerifier
from console_api.middleware.logging import RequestLoggingMiddleware
from console_api.middleware.prometheus import PrometheusMiddleware
from console_api.middleware.rbac import Role, get_user_role, require_role

__all__ = [
    "AuthenticationMiddleware",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
    "Role",
    "SessionTokenVerifier",
    "get_user_role",
    "require_role",
]
