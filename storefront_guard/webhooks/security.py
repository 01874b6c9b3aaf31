"""Inbound webhook request checks that run before signature verification.

Security contract:
- Per-IP rate limit, stricter for production than sandbox -> 429 + Retry-After
- Bodies over max_body_bytes (1 MiB) are rejected from Content-Length
- Requests without a Square signature header are rejected
- User agent, content type and source IP range are observed and logged only
- Failure bodies carry a short reason, never request contents
"""

from __future__ import annotations

import ipaddress
import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi.util import get_remote_address

from storefront_guard.security.rate_limit import EnvironmentRateLimiter, RateLimitResult
from storefront_guard.webhooks.verification import (
    SHA1_SIGNATURE_HEADER,
    SHA256_SIGNATURE_HEADER,
    SquareEnvironment,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BODY_BYTES = 1024 * 1024
SUSPICIOUS_ALERT_THRESHOLD = 5
SUSPICIOUS_RETENTION_SECONDS = 7 * 24 * 3600

_LOCAL_ADDRESSES = {"127.0.0.1", "::1", "localhost"}


def get_client_ip(request: Request) -> str:
    """Client IP from proxy headers, falling back to the socket peer.

    Order: first hop of X-Forwarded-For, X-Real-IP, CF-Connecting-IP.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value and value.strip():
            return value.strip()
    return get_remote_address(request)


class SecurityMonitor:
    """Tracks IPs that triggered security checks."""

    def __init__(self, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock
        self._suspicious: dict[str, dict[str, Any]] = {}

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def report(
        self,
        client_ip: str,
        reason: str,
        severity: str = "low",
        details: dict[str, Any] | None = None,
    ) -> int:
        """Record suspicious activity. Returns the IP's running count."""
        entry = self._suspicious.setdefault(client_ip, {"count": 0, "last_seen": 0.0, "last_reason": ""})
        entry["count"] += 1
        entry["last_seen"] = self._now()
        entry["last_reason"] = reason

        if entry["count"] >= SUSPICIOUS_ALERT_THRESHOLD:
            logger.error(
                "SECURITY_ALERT severity=high ip=%s count=%d reason=%s details=%s",
                client_ip,
                entry["count"],
                reason,
                details or {},
            )
        else:
            logger.warning(
                "SECURITY_ALERT severity=%s ip=%s reason=%s details=%s",
                severity,
                client_ip,
                reason,
                details or {},
            )
        return entry["count"]

    def stats(self) -> list[dict[str, Any]]:
        """Suspicious IPs, most active first."""
        rows = [
            {
                "ip": ip,
                "count": data["count"],
                "last_seen": data["last_seen"],
                "last_reason": data["last_reason"],
            }
            for ip, data in self._suspicious.items()
        ]
        return sorted(rows, key=lambda row: row["count"], reverse=True)

    def cleanup(self, max_age: float = SUSPICIOUS_RETENTION_SECONDS) -> int:
        """Forget IPs not seen within max_age seconds. Returns the number removed."""
        cutoff = self._now() - max_age
        stale = [ip for ip, data in self._suspicious.items() if data["last_seen"] < cutoff]
        for ip in stale:
            del self._suspicious[ip]
        return len(stale)

    def __contains__(self, client_ip: str) -> bool:
        return client_ip in self._suspicious


@dataclass
class SecurityCheck:
    """Outcome of the pre-signature request checks."""

    valid: bool
    client_ip: str
    user_agent: str = "unknown"
    error: str | None = None
    rate_limit: RateLimitResult | None = None
    rate_limited: bool = False
    ip_allowed: bool | None = None


class WebhookSecurity:
    """Runs the inbound checks for Square webhook requests."""

    def __init__(
        self,
        rate_limiter: EnvironmentRateLimiter,
        max_body_bytes: int = DEFAULT_MAX_BODY_BYTES,
        ip_ranges: Iterable[str] = (),
        monitor: SecurityMonitor | None = None,
    ) -> None:
        self.rate_limiter = rate_limiter
        self.max_body_bytes = max_body_bytes
        self.ip_networks = [ipaddress.ip_network(cidr.strip(), strict=False) for cidr in ip_ranges if cidr.strip()]
        self.monitor = monitor or SecurityMonitor()

    def ip_in_known_ranges(self, client_ip: str) -> bool | None:
        """Whether client_ip is inside a configured range (None when no ranges)."""
        if not self.ip_networks:
            return None
        if client_ip in _LOCAL_ADDRESSES:
            return True
        try:
            address = ipaddress.ip_address(client_ip)
        except ValueError:
            return False
        return any(address in network for network in self.ip_networks)

    def validate(self, request: Request, environment: SquareEnvironment) -> SecurityCheck:
        """Check rate limit, size and headers of an inbound Square webhook.

        Args:
            request: Incoming request (body not yet read)
            environment: Environment reported by the delivery

        Returns:
            SecurityCheck; valid=False carries the rejection reason
        """
        client_ip = get_client_ip(request)
        user_agent = request.headers.get("user-agent") or "unknown"
        check = SecurityCheck(valid=False, client_ip=client_ip, user_agent=user_agent)

        # 1. Rate limit
        result = self.rate_limiter.check(client_ip, environment)
        check.rate_limit = result
        if not result.allowed:
            check.rate_limited = True
            check.error = result.message or "Rate limit exceeded"
            self.monitor.report(
                client_ip,
                f"Rate limit exceeded for {environment.value} webhooks",
                "medium",
                {"environment": environment.value},
            )
            return check

        # 2. Body size
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                length = int(content_length)
            except ValueError:
                check.error = f"Invalid Content-Length: {content_length[:20]}"
                return check
            if length > self.max_body_bytes:
                logger.warning("Webhook body too large from %s: %d bytes", client_ip, length)
                check.error = f"Request body too large: {length} bytes > {self.max_body_bytes} bytes"
                return check

        # 3. Observations, never rejected on
        lowered_agent = user_agent.lower()
        if "square" not in lowered_agent and "webhook" not in lowered_agent:
            logger.warning("Unexpected webhook user agent from %s: %s", client_ip, user_agent[:100])

        content_type = request.headers.get("content-type")
        if content_type and "application/json" not in content_type:
            logger.warning("Unexpected webhook content type from %s: %s", client_ip, content_type[:100])

        check.ip_allowed = self.ip_in_known_ranges(client_ip)
        if check.ip_allowed is False:
            logger.warning("Webhook from IP outside known Square ranges: %s", client_ip)
            self.monitor.report(client_ip, "Webhook from IP outside known Square ranges")

        # 4. Signature header present
        if SHA256_SIGNATURE_HEADER not in request.headers and SHA1_SIGNATURE_HEADER not in request.headers:
            check.error = "Missing required signature headers"
            return check

        check.valid = True
        return check

    def stats(self) -> dict[str, Any]:
        return {
            "suspicious_ips": self.monitor.stats(),
            "rate_limits": self.rate_limiter.stats(),
        }


def security_failure_response(check: SecurityCheck, now: float | None = None) -> JSONResponse:
    """JSON error response for a failed SecurityCheck.

    400 with {error, details, timestamp}; 429 with Retry-After when the
    client is rate limited.
    """
    now = time.time() if now is None else now
    headers = {
        "X-Rate-Limit-Remaining": str(check.rate_limit.remaining if check.rate_limit else 0),
        "X-Rate-Limit-Reset": str(int(check.rate_limit.reset_time) if check.rate_limit else 0),
    }
    status_code = 400
    if check.rate_limited and check.rate_limit is not None:
        status_code = 429
        headers["Retry-After"] = str(check.rate_limit.retry_after(now))

    return JSONResponse(
        {
            "error": "Security validation failed",
            "details": check.error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
        status_code=status_code,
        headers=headers,
    )
