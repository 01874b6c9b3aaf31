"""Webhook error taxonomy: typed upstream failures with a static retry policy.

Every failure coming back from Square or Shippo is turned into one of a closed
set of WebhookError kinds at the boundary where it enters the system
(coerce_upstream_error). Downstream code only asks the kind whether it should
be retried.

| Kind                  | should_retry | HTTP |
|-----------------------|--------------|------|
| MerchantMismatchError | no           | 403  |
| UnauthorizedError     | no           | 401  |
| BadRequestError       | no           | 400  |
| ResourceNotFoundError | no           | 404  |
| RateLimitError        | yes          | 429  |
| ServerError           | yes          | 5xx  |

Anything that cannot be classified is treated as non-retryable so an unknown
failure mode never turns into an endless retry loop.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 60.0

# Some SDK failures only arrive as plain strings
NON_RETRYABLE_PHRASES = (
    "merchant mismatch",
    "different merchant",
    "forbidden",
)

_STATUS_ATTRIBUTES = ("status_code", "statusCode", "status", "http_status_code", "httpStatusCode")

_TRANSIENT_PHRASES = (
    "connection",
    "econnreset",
    "econnrefused",
    "etimedout",
    "can't reach database server",
    "engine is not yet connected",
)


class WebhookError(Exception):
    """Base class for classified upstream failures."""

    should_retry: bool = False
    http_status_code: int = 500
    error_code: str = "WEBHOOK_ERROR"

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Response body for the webhook sender."""
        return {
            "error": self.error_code,
            "message": self.message,
            "retry": self.should_retry,
        }


class MerchantMismatchError(WebhookError):
    """The order belongs to a different Square account or environment."""

    should_retry = False
    http_status_code = 403
    error_code = "MERCHANT_MISMATCH"

    def __init__(
        self,
        order_id: str,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.order_id = order_id
        super().__init__(
            message or f"Order {order_id} belongs to a different merchant or environment",
            cause,
        )


class UnauthorizedError(WebhookError):
    """Credentials for the upstream API are invalid or expired."""

    should_retry = False
    http_status_code = 401
    error_code = "UNAUTHORIZED"

    def __init__(
        self,
        service: str,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.service = service
        super().__init__(message or f"Unauthorized request to {service}", cause)


class BadRequestError(WebhookError):
    """We sent the upstream API a malformed request."""

    should_retry = False
    http_status_code = 400
    error_code = "BAD_REQUEST"

    def __init__(
        self,
        operation: str,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.operation = operation
        super().__init__(message or f"Bad request during {operation}", cause)


class ResourceNotFoundError(WebhookError):
    """The referenced resource does not exist upstream."""

    should_retry = False
    http_status_code = 404
    error_code = "RESOURCE_NOT_FOUND"

    def __init__(
        self,
        resource: str,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.resource = resource
        super().__init__(message or f"Resource not found: {resource}", cause)


class RateLimitError(WebhookError):
    """The upstream API is throttling us."""

    should_retry = True
    http_status_code = 429
    error_code = "RATE_LIMITED"

    def __init__(
        self,
        retry_after: float = DEFAULT_RETRY_AFTER_SECONDS,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message or f"Rate limited, retry after {retry_after:g}s", cause)


class ServerError(WebhookError):
    """Transient 5xx failure upstream."""

    should_retry = True
    http_status_code = 500
    error_code = "SERVER_ERROR"

    def __init__(
        self,
        status_code: int = 500,
        message: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.http_status_code = status_code if 500 <= status_code <= 599 else 500
        super().__init__(message or f"Upstream server error ({status_code})", cause)


def _probe_status(error: object) -> int | None:
    """Find an HTTP status code on an SDK error, response error or plain dict."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code

    for name in _STATUS_ATTRIBUTES:
        if isinstance(error, Mapping):
            value = error.get(name)
        else:
            value = getattr(error, name, None)
        if isinstance(value, bool):
            continue
        if isinstance(value, int):
            return value
        if isinstance(value, str) and value.isdigit():
            return int(value)
    return None


def _probe_message(error: object) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        return str(error.get("message") or "")
    if isinstance(error, BaseException):
        return str(error)
    return str(getattr(error, "message", "") or "")


def _probe_retry_after(error: object) -> float:
    value: Any = None
    if isinstance(error, httpx.HTTPStatusError):
        value = error.response.headers.get("Retry-After")
    elif isinstance(error, Mapping):
        value = error.get("retry_after")
    else:
        value = getattr(error, "retry_after", None)

    try:
        return float(value) if value is not None else DEFAULT_RETRY_AFTER_SECONDS
    except (TypeError, ValueError):
        return DEFAULT_RETRY_AFTER_SECONDS


def coerce_upstream_error(error: object, resource: str = "upstream") -> WebhookError | None:
    """Map a raw upstream failure onto the WebhookError taxonomy.

    This is the only place that probes error shapes (status attributes,
    mapping keys, httpx responses, message phrases). Everything downstream
    works on the typed result.

    Args:
        error: Exception, SDK error object, dict or plain string.
        resource: Name used in messages of the produced error (order id,
            service or operation).

    Returns:
        The classified WebhookError, or None if the failure is not an
        upstream API failure we recognise.
    """
    if isinstance(error, WebhookError):
        return error
    if error is None:
        return None

    message = _probe_message(error)
    cause = error if isinstance(error, BaseException) else None
    lowered = message.lower()

    status = _probe_status(error)
    # 429 and 5xx outrank message phrases.
    if status == 429:
        return RateLimitError(_probe_retry_after(error), message or None, cause)
    if status is not None and status >= 500:
        return ServerError(status, message or None, cause)

    if any(phrase in lowered for phrase in NON_RETRYABLE_PHRASES):
        return MerchantMismatchError(resource, message, cause)

    if status is None:
        return None
    if status == 401:
        return UnauthorizedError(resource, message or None, cause)
    if status == 403:
        return MerchantMismatchError(resource, message or None, cause)
    if status == 404:
        return ResourceNotFoundError(resource, message or None, cause)
    if 400 <= status < 500:
        return BadRequestError(resource, message or None, cause)
    return None


def is_non_retryable_error(error: object) -> bool:
    """True for failures that must not be retried (typed or 4xx other than 429)."""
    classified = coerce_upstream_error(error)
    return classified is not None and not classified.should_retry


def is_retryable_error(error: object) -> bool:
    """True only for failures known to be transient (429, 5xx)."""
    classified = coerce_upstream_error(error)
    return classified is not None and classified.should_retry


def should_retry_webhook(error: object, event_type: str) -> bool:
    """Decide whether the webhook sender should redeliver after a handler failure.

    Typed upstream failures follow their static policy. On top of that,
    timeouts and dropped database/network connections are transient, while
    validation failures and anything unrecognised are not.
    """
    if error is None:
        return False

    classified = coerce_upstream_error(error)
    if classified is not None:
        logger.info(
            "Retry decision for %s: %s (should_retry=%s)",
            event_type,
            classified.error_code,
            classified.should_retry,
        )
        return classified.should_retry

    message = _probe_message(error).lower()
    code = error.get("code") if isinstance(error, Mapping) else getattr(error, "code", None)

    if isinstance(error, (TimeoutError, httpx.TimeoutException)) or code == "TIMEOUT":
        return True
    if "timeout" in message or "timed out" in message:
        return True
    if isinstance(error, (ConnectionError, httpx.TransportError)):
        return True
    if any(phrase in message for phrase in _TRANSIENT_PHRASES):
        return True
    if "validation" in message:
        return False

    logger.info("Retry decision for %s: unclassified error, not retrying", event_type)
    return False
