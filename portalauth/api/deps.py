from __future__ import annotations

import ipaddress
from typing import Awaitable, Callable, Iterable, Optional

from fastapi import Depends, Request, Response

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.auth import IssuedTokens, SessionManager
from portalauth.service.errors import RateLimitedError, SessionExpiredError
from portalauth.service.runtime import Runtime
from portalauth.storage.errors import CacheUnavailable
from portalauth.storage.models import Principal

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def _is_trusted_proxy(host: str, trusted: Iterable[str]) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    for entry in trusted:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            continue
    return False


def client_ip(request: Request) -> str:
    """Peer address, or the first ``X-Forwarded-For`` hop when the peer is a trusted proxy."""
    peer = request.client.host if request.client else "unknown"
    trusted = get_runtime(request).settings.trusted_proxy_ips
    if trusted and _is_trusted_proxy(peer, trusted):
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded and forwarded.split(",")[0].strip():
            return forwarded.split(",")[0].strip()
    return peer


def bearer_token(request: Request) -> Optional[str]:
    """Access token from ``Authorization: Bearer`` or the access cookie."""
    header = request.headers.get("Authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None
    return request.cookies.get(ACCESS_COOKIE)


def set_session_cookies(response: Response, tokens: IssuedTokens, settings: Settings) -> None:
    common = {
        "httponly": True,
        "secure": settings.secure_cookies,
        "samesite": "strict",
        "path": "/",
    }
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        max_age=settings.access_token_ttl_seconds,
        **common,
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        max_age=settings.refresh_token_ttl_seconds,
        **common,
    )


def clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.secure_cookies,
            httponly=True,
            samesite="strict",
        )


async def get_principal(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
) -> Principal:
    """Current principal, re-validated against the credential store.

    An absent or expired access token falls back to rotating the refresh
    cookie; the new cookies ride on the route's response.
    """
    outcome = runtime.auth.authenticate(bearer_token(request))
    if outcome.ok:
        return outcome.value
    if not isinstance(outcome.error, SessionExpiredError):
        raise outcome.error
    refresh_cookie = request.cookies.get(REFRESH_COOKIE)
    if not refresh_cookie:
        raise outcome.error
    refreshed = await runtime.auth.refresh_access_token(refresh_cookie)
    if refreshed is None:
        # cookies set on ``response`` are dropped once a dependency raises
        raise SessionExpiredError(clear_cookies=True)
    set_session_cookies(response, refreshed.tokens, runtime.settings)
    logger.info("access_refreshed_inline", user_id=refreshed.principal.id)
    return refreshed.principal


async def get_verified_principal(principal: Principal = Depends(get_principal)) -> Principal:
    return SessionManager.require_verified(principal).unwrap()


def require_roles(*roles: str) -> Callable[..., Awaitable[Principal]]:
    """Dependency factory admitting only verified principals holding one of ``roles``."""

    async def _dependency(principal: Principal = Depends(get_verified_principal)) -> Principal:
        return SessionManager.require_roles(principal, roles).unwrap()

    return _dependency


async def enforce_rate_limit(
    runtime: Runtime, operation: str, ip: str, email: Optional[str] = None
) -> None:
    key = f"auth:{operation}:{ip}:{(email or '').strip().lower()}"
    try:
        allowed = await runtime.cache.check_rate_limit(
            key, runtime.settings.auth_rate_limit_per_minute, 60
        )
    except CacheUnavailable as exc:
        logger.warning("rate_limit_unavailable", operation=operation, error=str(exc))
        return
    if not allowed:
        logger.info("rate_limit_exceeded", operation=operation, ip=ip)
        raise RateLimitedError("too many requests, please try again later")
