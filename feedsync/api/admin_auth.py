"""Shared-key checks for the operator and export surfaces."""

import hmac

from fastapi import Request

from feedsync.config.settings import get_settings
from feedsync.services.errors import AuthenticationError

ADMIN_KEY_HEADER = "X-Admin-Key"
EXPORT_KEY_HEADER = "X-Export-Key"


def _check_key(provided: str | None, expected: str, header: str) -> None:
    # An unset key locks the surface rather than opening it
    if not expected:
        raise AuthenticationError(f"{header} is not configured on this server")
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        raise AuthenticationError(f"Invalid or missing {header}")


def require_admin_key(request: Request) -> None:
    """FastAPI dependency: validate the X-Admin-Key header."""
    _check_key(request.headers.get(ADMIN_KEY_HEADER), get_settings().admin_key, ADMIN_KEY_HEADER)


def require_export_key(request: Request) -> None:
    """FastAPI dependency: validate the X-Export-Key header."""
    _check_key(request.headers.get(EXPORT_KEY_HEADER), get_settings().export_key, EXPORT_KEY_HEADER)
