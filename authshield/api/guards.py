from __future__ import annotations

import math
from typing import Awaitable, Callable, Dict, List, Optional

from fastapi import Request, Response

from authshield.clock import now_utc
from authshield.logging import get_logger
from authshield.service.errors import RateLimitedError
from authshield.service.lockout import LockoutIdentifier, identifiers_for
from authshield.service.rate_limit import default_identity
from authshield.service.runtime import get_runtime
from authshield.storage.models import RateLimitResult, SessionRecord

logger = get_logger(__name__)

CSRF_HEADER = "X-CSRF-Token"
SESSION_COOKIE = "session_id"
SESSION_HEADER = "X-Session-ID"

_CSRF_SAFE_METHODS = {"GET", "HEAD", "OPTIONS", "TRACE"}


def client_ip(request: Request) -> str:
    """Best-effort caller IP, preferring proxy headers over the socket peer.

    Proxy headers are trusted as-is; deploy behind a proxy that overwrites them.
    """
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def session_id_from_request(request: Request) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE) or request.headers.get(SESSION_HEADER)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    @classmethod
    def from_result(cls, result: RateLimitResult, now) -> "RateLimitInfo":
        reset_seconds = max(0, math.ceil((result.reset_at - now).total_seconds()))
        return cls(result.limit, result.remaining, reset_seconds)

    def as_headers(self) -> Dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }

    def apply_headers(self, response: Response) -> None:
        response.headers.update(self.as_headers())


def rate_limit(
    rule_name: str, identity: Optional[Callable[[Request], str]] = None
) -> Callable[[Request, Response], Awaitable[RateLimitInfo]]:
    """Build a route dependency that consumes one request from ``rule_name``.

    The default identity is the client IP plus ``request.state.user_id``
    when an earlier dependency has authenticated the caller.
    """

    async def dependency(request: Request, response: Response) -> RateLimitInfo:
        runtime = get_runtime()
        if identity is not None:
            caller = identity(request)
        else:
            caller = default_identity(client_ip(request), getattr(request.state, "user_id", None))
        try:
            result = await runtime.rate_limiter.enforce(rule_name, caller)
        except RateLimitedError as exc:
            if exc.result is not None:
                exc.headers.update(RateLimitInfo.from_result(exc.result, now_utc(runtime.clock)).as_headers())
            raise
        info = RateLimitInfo.from_result(result, now_utc(runtime.clock))
        info.apply_headers(response)
        return info

    return dependency


def ip_identity(request: Request) -> str:
    return client_ip(request)


def lockout_identifiers(request: Request, email: Optional[str] = None) -> List[LockoutIdentifier]:
    """Identifiers for a credential attempt made through ``request``."""
    return identifiers_for(ip=client_ip(request), email=email)


async def require_session(request: Request) -> SessionRecord:
    """Resolve the caller's session or raise 401; exposes ``request.state.user_id``."""
    runtime = get_runtime()
    record = await runtime.sessions.require(session_id_from_request(request))
    request.state.user_id = record.user_id
    request.state.session_id = record.session_id
    return record


async def require_csrf(request: Request) -> None:
    """Reject unsafe requests whose CSRF header does not match the session's token."""
    if request.method.upper() in _CSRF_SAFE_METHODS:
        return
    runtime = get_runtime()
    runtime.csrf.enforce(session_id_from_request(request), request.headers.get(CSRF_HEADER))


def attach_csrf_token(response: Response, session_id: str) -> str:
    """Issue a fresh CSRF token for ``session_id`` and expose it as a response header."""
    token = get_runtime().csrf.issue(session_id)
    response.headers[CSRF_HEADER] = token
    return token
