"""Security dependencies for API key validation and scope enforcement."""
from __future__ import annotations

import hmac
from enum import Enum
from typing import Callable, Set

from fastapi import Depends, Header, HTTPException, status

from p2pescrow.config import get_settings
from p2pescrow.schemas.trade import ActorIn
from p2pescrow.services.escrow import Actor, normalize_username
from p2pescrow.utils.errors import error_response


class ApiScope(str, Enum):
    bot = "bot"
    admin = "admin"


def _extract_key(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None, alias="X-API-Key"),
) -> str | None:
    """Read the key from ``Authorization: Bearer ...`` or ``X-API-Key``."""
    if x_api_key:
        return x_api_key.strip()
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return None


def _matches(token: str, expected: str | None) -> bool:
    return bool(expected) and hmac.compare_digest(token.encode(), expected.encode())


def require_api_key(token: str | None = Depends(_extract_key)) -> ApiScope:
    """Validate the caller's key and return the scope it grants."""
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("NO_API_KEY", "API key required."),
        )

    settings = get_settings()
    if _matches(token, settings.ADMIN_API_KEY):
        return ApiScope.admin
    if _matches(token, settings.API_KEY):
        return ApiScope.bot
    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=error_response("UNAUTHORIZED", "Invalid API key"),
    )


def require_scope(allowed: Set[ApiScope]) -> Callable:
    """Enforce that the key grants one of the allowed scopes (admin passes everywhere)."""

    if not allowed:
        raise RuntimeError("require_scope needs a non-empty set of ApiScope")

    def _dep(scope: ApiScope = Depends(require_api_key)) -> ApiScope:
        if scope == ApiScope.admin or scope in allowed:
            return scope
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=error_response(
                "INSUFFICIENT_SCOPE",
                f"Requires one of: {[s.value for s in allowed]}",
            ),
        )

    return _dep


def is_admin_identity(user_id: int, username: str | None) -> bool:
    settings = get_settings()
    if user_id in settings.ADMIN_USER_IDS:
        return True
    name = normalize_username(username)
    return bool(name) and name in settings.ADMIN_USERNAMES


def resolve_actor(actor: ActorIn, scope: ApiScope) -> Actor:
    """Build the service-level actor; admin keys always act as admin."""

    return Actor(
        user_id=actor.user_id,
        username=actor.username,
        is_admin=scope == ApiScope.admin or is_admin_identity(actor.user_id, actor.username),
    )


__all__ = ["ApiScope", "is_admin_identity", "require_api_key", "require_scope", "resolve_actor"]
