"""
Web middleware applied to every request.

- InputSanitizerMiddleware: strips operator-injection keys and HTML from JSON
  bodies and query strings, and keeps only the last value of a repeated
  query parameter.
- SecurityHeadersMiddleware: hardening headers on every response.
- RateLimitMiddleware: fixed-window request cap per client IP.
"""

import json
import logging
import re
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from errors import envelope

logger = logging.getLogger(__name__)

_TAG = re.compile(r"<[^>]*>")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Opener-Policy": "same-origin",
    "Cross-Origin-Resource-Policy": "same-origin",
    "Strict-Transport-Security": "max-age=15552000; includeSubDomains",
    "Content-Security-Policy": "default-src 'self'; frame-ancestors 'self'; object-src 'none'",
}

# Swagger UI loads its bundle from a CDN and runs an inline bootstrap script
DOCS_CSP = (
    "default-src 'self'; img-src 'self' data: https://fastapi.tiangolo.com; "
    "script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
    "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; frame-ancestors 'self'"
)


def unsafe_key(key: str) -> bool:
    return key.startswith("$") or "." in key


def clean(value: Any) -> Any:
    """Recursively drop ``$``/dotted keys and strip HTML tags from strings."""
    if isinstance(value, dict):
        return {k: clean(v) for k, v in value.items() if not unsafe_key(k)}
    if isinstance(value, list):
        return [clean(v) for v in value]
    if isinstance(value, str):
        return _TAG.sub("", value)
    return value


def clean_query_string(raw: bytes) -> bytes:
    # dict() keeps the last value of a repeated key
    pairs = dict(parse_qsl(raw.decode("latin-1"), keep_blank_values=True))
    safe = {k: _TAG.sub("", v) for k, v in pairs.items() if not unsafe_key(k) and "$" not in k}
    return urlencode(safe).encode("latin-1")


class InputSanitizerMiddleware:
    """Pure ASGI so the rewritten body reaches the route handlers."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        scope = dict(scope)
        if scope.get("query_string"):
            scope["query_string"] = clean_query_string(scope["query_string"])

        headers = dict(scope.get("headers") or [])
        content_type = headers.get(b"content-type", b"").decode("latin-1")
        if "application/json" not in content_type:
            await self.app(scope, receive, send)
            return

        body = b""
        more = True
        while more:
            message = await receive()
            if message["type"] == "http.disconnect":
                await self.app(scope, receive, send)
                return
            body += message.get("body", b"")
            more = message.get("more_body", False)

        if body:
            try:
                body = json.dumps(clean(json.loads(body))).encode("utf-8")
            except ValueError:
                # malformed JSON is left for the request validator to report
                pass
            scope["headers"] = [
                (k, str(len(body)).encode("latin-1") if k == b"content-length" else v)
                for k, v in scope.get("headers") or []
            ]

        sent = False

        async def replay() -> Message:
            nonlocal sent
            if sent:
                return await receive()
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}

        await self.app(scope, replay, send)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, docs_path: str = "/api-docs", hsts: bool = True):
        super().__init__(app)
        self.docs_path = docs_path
        self.hsts = hsts

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        for header, value in SECURITY_HEADERS.items():
            if header == "Strict-Transport-Security" and not self.hsts:
                continue
            response.headers.setdefault(header, value)
        if request.url.path.startswith(self.docs_path):
            response.headers["Content-Security-Policy"] = DOCS_CSP
        return response


def get_client_ip(request: Request, trust_proxy: bool = False) -> str:
    # forwarded headers are client-controlled unless a proxy in front rewrites them
    if trust_proxy:
        forwarded_for = request.headers.get("X-Forwarded-For")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip()
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip
    return request.client.host if request.client else "unknown"


class RateLimiter:
    """In-process fixed window counter keyed by client identifier."""

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.clock = clock
        self._windows: Dict[str, Tuple[float, int]] = {}
        self._lock = threading.Lock()

    def hit(self, identifier: str) -> Tuple[bool, int, float]:
        """Count a request. Returns (allowed, remaining, seconds until reset)."""
        now = self.clock()
        with self._lock:
            start, count = self._windows.get(identifier, (now, 0))
            if now - start >= self.window_seconds:
                start, count = now, 0
            count += 1
            self._windows[identifier] = (start, count)
            if len(self._windows) > 10000:
                self._evict(now)
        reset = max(0.0, self.window_seconds - (now - start))
        return count <= self.max_requests, max(0, self.max_requests - count), reset

    def _evict(self, now: float) -> None:
        expired = [k for k, (start, _) in self._windows.items() if now - start >= self.window_seconds]
        for k in expired:
            del self._windows[k]


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        limiter: RateLimiter,
        enabled: bool = True,
        exclude_paths: Optional[list] = None,
        trust_proxy: bool = False,
    ):
        super().__init__(app)
        self.limiter = limiter
        self.enabled = enabled
        self.exclude_paths = exclude_paths or ["/health"]
        self.trust_proxy = trust_proxy

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or any(request.url.path.startswith(p) for p in self.exclude_paths):
            return await call_next(request)

        client_ip = get_client_ip(request, self.trust_proxy)
        allowed, remaining, reset = self.limiter.hit(client_ip)
        if not allowed:
            logger.warning("Rate limit exceeded for %s on %s", client_ip, request.url.path)
            return JSONResponse(
                status_code=429,
                content=envelope("Too many requests, please try again later."),
                headers={
                    "Retry-After": str(max(1, int(reset + 0.999))),
                    "X-RateLimit-Limit": str(self.limiter.max_requests),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(self.limiter.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        return response
