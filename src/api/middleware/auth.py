"""Optional API-key auth for the /api/ surface.

FULFILLMENT_API_KEY holds one key, or several comma-separated keys while
a key is being rotated. When it is unset, auth is off. A key says the
caller may use the API at all; which tenant's data it touches still
comes from the X-Tenant-ID header.

Repeated failures from one client address are throttled with a sliding
window so the key cannot be brute-forced through the ingestion webhooks.
"""

from __future__ import annotations

import hmac
import logging
import os
import threading
import time

from fastapi import Request
from fastapi.responses import JSONResponse, Response

logger = logging.getLogger(__name__)

API_KEY_HEADER = "X-API-Key"

_PUBLIC_PATH_PREFIXES = (
    "/health",
    "/readyz",
    "/docs",
    "/redoc",
    "/openapi.json",
)

_MIN_API_KEY_LENGTH = 32
_AUTH_FAIL_MAX = 10
_AUTH_FAIL_WINDOW_SECONDS = 300


class FailureWindow:
    """Per-client failure timestamps inside a sliding window."""

    def __init__(self, limit: int, window_seconds: float) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._failures: dict[str, list[float]] = {}
        self._lock = threading.Lock()

    def is_blocked(self, client: str) -> bool:
        with self._lock:
            recent = self._prune(client, time.monotonic())
            return len(recent) >= self.limit

    def record(self, client: str) -> int:
        """Record one failure; returns the count inside the window."""
        with self._lock:
            now = time.monotonic()
            recent = self._prune(client, now)
            recent.append(now)
            return len(recent)

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()

    def _prune(self, client: str, now: float) -> list[float]:
        recent = [
            t for t in self._failures.get(client, []) if now - t < self.window_seconds
        ]
        self._failures[client] = recent
        return recent


_limiter = FailureWindow(_AUTH_FAIL_MAX, _AUTH_FAIL_WINDOW_SECONDS)


def reset_rate_limiter() -> None:
    """Forget all recorded failures. Used by tests."""
    _limiter.clear()


def accepted_api_keys() -> list[str]:
    """Keys currently accepted; an empty list means auth is disabled."""
    raw = os.environ.get("FULFILLMENT_API_KEY", "")
    return [key.strip() for key in raw.split(",") if key.strip()]


def validate_api_key_strength() -> None:
    """Reject weak keys at startup.

    Raises:
        ValueError: If any configured key is shorter than 32 characters.
    """
    for index, key in enumerate(accepted_api_keys(), start=1):
        if len(key) < _MIN_API_KEY_LENGTH:
            raise ValueError(
                f"FULFILLMENT_API_KEY entry {index} is too short ({len(key)} chars). "
                f"Minimum length is {_MIN_API_KEY_LENGTH} characters."
            )


def _trust_proxy() -> bool:
    return os.environ.get("FULFILLMENT_TRUST_PROXY", "").strip().lower() in ("1", "true")


def _get_client_ip(request: Request) -> str:
    """Client address used for throttling.

    X-Forwarded-For is honoured only behind a trusted proxy
    (FULFILLMENT_TRUST_PROXY), otherwise any caller could rotate it.
    """
    if _trust_proxy():
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def should_authenticate(path: str) -> bool:
    """True for /api/ paths; probes and docs stay public."""
    if path.startswith(_PUBLIC_PATH_PREFIXES):
        return False
    return path.startswith("/api/")


def _key_matches(provided: str, accepted: list[str]) -> bool:
    # Compare against every key so timing does not reveal which one matched.
    matched = False
    for key in accepted:
        matched |= hmac.compare_digest(provided.encode(), key.encode())
    return matched


async def maybe_require_api_key(request: Request, call_next) -> Response:
    """HTTP middleware: enforce X-API-Key on /api/ when keys are configured."""
    if request.method.upper() == "OPTIONS":
        return await call_next(request)

    accepted = accepted_api_keys()
    if not accepted or not should_authenticate(request.url.path):
        return await call_next(request)

    client_ip = _get_client_ip(request)
    if _limiter.is_blocked(client_ip):
        logger.warning("auth_throttled client=%s path=%s", client_ip, request.url.path)
        return JSONResponse(
            status_code=429,
            content={"detail": "Too many authentication failures. Try again later."},
        )

    provided = request.headers.get(API_KEY_HEADER, "")
    if not provided or not _key_matches(provided, accepted):
        failures = _limiter.record(client_ip)
        logger.info(
            "auth_rejected client=%s path=%s tenant=%s failures=%d",
            client_ip,
            request.url.path,
            request.headers.get("X-Tenant-ID", "-"),
            failures,
        )
        return JSONResponse(
            status_code=401,
            content={"detail": "Invalid or missing API key"},
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return await call_next(request)
