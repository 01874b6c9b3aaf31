"""Webhook signature verification: constant-time HMAC for Square and Shippo.

Security contract:
- All comparisons use hmac.compare_digest() (constant-time, no timing attacks)
- Verification failure -> 401 immediately, no payload processing
- Missing secret -> verification always fails (fail-closed)
- Sandbox deliveries prefer the sandbox secret and fall back to production
- Diagnostics never expose a full secret, only a short fingerprint

Square signs each delivery with base64 HMAC. The SHA-256 scheme covers
notification_url + body (the URL the subscription was registered with), the
legacy SHA-1 scheme covers the body alone.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

SHA256_SIGNATURE_HEADER = "x-square-hmacsha256-signature"
SHA1_SIGNATURE_HEADER = "x-square-signature"
TIMESTAMP_HEADER = "x-square-hmacsha256-timestamp"
ENVIRONMENT_HEADER = "square-environment"
SHIPPO_SIGNATURE_HEADER = "x-shippo-signature"

_PREVIEW_CHARS = 10
_BODY_PREVIEW_CHARS = 100


class SquareEnvironment(str, Enum):
    SANDBOX = "sandbox"
    PRODUCTION = "production"


class SignatureAlgorithm(str, Enum):
    SHA256 = "sha256"
    SHA1 = "sha1"


_DIGESTS = {
    SignatureAlgorithm.SHA256: hashlib.sha256,
    SignatureAlgorithm.SHA1: hashlib.sha1,
}


def _lower(headers: Mapping[str, str]) -> dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


def _as_bytes(body: bytes | str) -> bytes:
    return body.encode("utf-8") if isinstance(body, str) else body


def _preview(value: str | None, length: int = _PREVIEW_CHARS) -> str | None:
    if value is None:
        return None
    return value[:length] + "..." if len(value) > length else value


def _constant_time_equal(expected: str, received: str) -> bool:
    return hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def detect_environment(headers: Mapping[str, str]) -> SquareEnvironment:
    """Read the square-environment header; anything but "sandbox" is production."""
    value = _lower(headers).get(ENVIRONMENT_HEADER, "")
    if value.strip().lower() == SquareEnvironment.SANDBOX.value:
        return SquareEnvironment.SANDBOX
    return SquareEnvironment.PRODUCTION


def extract_signature(
    headers: Mapping[str, str],
) -> tuple[str | None, SignatureAlgorithm | None]:
    """Pick the signature header to verify against.

    The SHA-256 header takes precedence when both are present.

    Returns:
        (signature, algorithm), or (None, None) when neither header is set
    """
    lowered = _lower(headers)
    sha256 = lowered.get(SHA256_SIGNATURE_HEADER)
    if sha256:
        return sha256, SignatureAlgorithm.SHA256
    sha1 = lowered.get(SHA1_SIGNATURE_HEADER)
    if sha1:
        return sha1, SignatureAlgorithm.SHA1
    return None, None


def compute_signature(secret: str, payload: bytes | str, algorithm: SignatureAlgorithm) -> str:
    """Base64 HMAC digest of payload under secret."""
    digest = hmac.new(
        secret.encode("utf-8"),
        _as_bytes(payload),
        _DIGESTS[SignatureAlgorithm(algorithm)],
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


def secret_fingerprint(secret: str) -> str:
    """Short, non-reversible identifier for a secret (safe to log)."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()[:8]


@dataclass(frozen=True)
class WebhookSecrets:
    """Production and sandbox signing keys, trimmed on construction."""

    production: str = ""
    sandbox: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "production", (self.production or "").strip())
        object.__setattr__(self, "sandbox", (self.sandbox or "").strip())

    @classmethod
    def from_settings(cls, settings: Any) -> WebhookSecrets:
        return cls(
            production=settings.square_webhook_secret,
            sandbox=settings.square_webhook_secret_sandbox,
        )

    def source(self, environment: SquareEnvironment) -> str | None:
        """Name of the secret select() would return ("sandbox", "production" or None)."""
        if environment is SquareEnvironment.SANDBOX and self.sandbox:
            return "sandbox"
        if self.production:
            return "production"
        return None

    def select(self, environment: SquareEnvironment) -> str | None:
        """Secret for the delivery's environment, or None (fail closed).

        Args:
            environment: Environment reported by the delivery

        Returns:
            The signing key to verify with, None if nothing is configured
        """
        if environment is SquareEnvironment.SANDBOX:
            if self.sandbox:
                return self.sandbox
            if self.production:
                logger.warning("No sandbox webhook secret configured, falling back to production secret")
                return self.production
            logger.error("No webhook secrets configured, rejecting sandbox webhook")
            return None

        if self.production:
            return self.production
        logger.error("SQUARE_WEBHOOK_SECRET not set, rejecting production webhook")
        return None


@dataclass
class SignatureDiagnostics:
    """Outcome of a diagnostic verification. Contains no full secrets."""

    valid: bool
    environment: SquareEnvironment
    algorithm: SignatureAlgorithm | None = None
    signature_header: str | None = None
    secret_used: str | None = None
    secret_fingerprint: str | None = None
    matched_scheme: str | None = None
    expected_preview: str | None = None
    received_preview: str | None = None
    body_length: int = 0
    body_preview: str = ""
    attempts: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["environment"] = self.environment.value
        data["algorithm"] = self.algorithm.value if self.algorithm else None
        return data


class SignatureVerifier:
    """Verifies Square webhook deliveries against the configured secrets."""

    def __init__(self, secrets: WebhookSecrets, notification_url: str = "") -> None:
        self.secrets = secrets
        self.notification_url = notification_url

    def signed_payload(self, body: bytes | str, algorithm: SignatureAlgorithm) -> bytes:
        """The exact byte string Square signs for the given algorithm."""
        raw = _as_bytes(body)
        if algorithm is SignatureAlgorithm.SHA256 and self.notification_url:
            return self.notification_url.encode("utf-8") + raw
        return raw

    def verify(self, body: bytes | str, headers: Mapping[str, str]) -> bool:
        """Check a delivery's signature. Never raises.

        Args:
            body: Raw request body exactly as received
            headers: Request headers (any case)

        Returns:
            True only if a signature header is present, a secret is
            configured and the signature matches
        """
        try:
            signature, algorithm = extract_signature(headers)
            if signature is None or algorithm is None:
                logger.warning("No Square signature header found in webhook request")
                return False

            environment = detect_environment(headers)
            secret = self.secrets.select(environment)
            if not secret:
                return False

            expected = compute_signature(secret, self.signed_payload(body, algorithm), algorithm)
            if _constant_time_equal(expected, signature):
                return True

            logger.warning(
                "Square webhook signature mismatch (%s, %s): expected %s received %s",
                environment.value,
                algorithm.value,
                _preview(expected),
                _preview(signature),
            )
            return False
        except Exception:
            logger.exception("Unexpected error verifying Square webhook signature")
            return False

    def diagnose(
        self,
        body: bytes | str,
        headers: Mapping[str, str],
        request_url: str | None = None,
    ) -> SignatureDiagnostics:
        """Try every known signing scheme and report what matched.

        Debug path only. Tries the body alone, the signature timestamp +
        body, the configured notification URL + body and (when given) the
        actual request URL + body, with the
        selected secret and, for sandbox deliveries, the production secret.
        """
        raw = _as_bytes(body)
        environment = detect_environment(headers)
        signature, algorithm = extract_signature(headers)
        text = raw.decode("utf-8", errors="replace")

        diagnostics = SignatureDiagnostics(
            valid=False,
            environment=environment,
            algorithm=algorithm,
            body_length=len(raw),
            body_preview=_preview(text, _BODY_PREVIEW_CHARS) or "",
            received_preview=_preview(signature),
        )
        if algorithm is SignatureAlgorithm.SHA256:
            diagnostics.signature_header = SHA256_SIGNATURE_HEADER
        elif algorithm is SignatureAlgorithm.SHA1:
            diagnostics.signature_header = SHA1_SIGNATURE_HEADER

        if signature is None or algorithm is None:
            diagnostics.error = "No signature header found"
            diagnostics.recommendations.append(
                f"Square must send {SHA256_SIGNATURE_HEADER} or {SHA1_SIGNATURE_HEADER}"
            )
            return diagnostics

        secret = self.secrets.select(environment)
        if not secret:
            diagnostics.error = f"No {environment.value} webhook secret available"
            diagnostics.recommendations.append(
                "Set SQUARE_WEBHOOK_SECRET_SANDBOX in the environment"
                if environment is SquareEnvironment.SANDBOX
                else "Set SQUARE_WEBHOOK_SECRET in the environment"
            )
            return diagnostics

        diagnostics.secret_used = self.secrets.source(environment)
        diagnostics.secret_fingerprint = secret_fingerprint(secret)

        candidates: list[tuple[str, str]] = [(diagnostics.secret_used or "production", secret)]
        if (
            environment is SquareEnvironment.SANDBOX
            and self.secrets.production
            and self.secrets.production != secret
        ):
            candidates.append(("production", self.secrets.production))

        schemes: list[tuple[str, bytes]] = [("body", raw)]
        timestamp = _lower(headers).get(TIMESTAMP_HEADER)
        if timestamp:
            schemes.append(("timestamp+body", timestamp.encode("utf-8") + raw))
        if self.notification_url:
            schemes.append(("notification_url+body", self.notification_url.encode("utf-8") + raw))
        if request_url and request_url != self.notification_url:
            schemes.append(("request_url+body", request_url.encode("utf-8") + raw))

        for secret_name, candidate in candidates:
            for scheme, payload in schemes:
                expected = compute_signature(candidate, payload, algorithm)
                matched = _constant_time_equal(expected, signature)
                diagnostics.attempts.append(
                    {
                        "secret": secret_name,
                        "fingerprint": secret_fingerprint(candidate),
                        "scheme": scheme,
                        "expected_preview": _preview(expected),
                        "matched": matched,
                    }
                )
                if diagnostics.expected_preview is None:
                    diagnostics.expected_preview = _preview(expected)
                if matched and not diagnostics.valid:
                    diagnostics.valid = True
                    diagnostics.matched_scheme = scheme
                    diagnostics.secret_used = secret_name
                    diagnostics.secret_fingerprint = secret_fingerprint(candidate)
                    diagnostics.expected_preview = _preview(expected)

        if not diagnostics.valid:
            diagnostics.error = "Signature did not match any known scheme"
            diagnostics.recommendations.extend(
                [
                    "Check the secret matches the subscription's signature key in the Square dashboard",
                    "Check SQUARE_WEBHOOK_NOTIFICATION_URL matches the registered notification URL exactly",
                    "Make sure the raw body is verified before any JSON re-serialisation",
                ]
            )
        elif diagnostics.matched_scheme != "notification_url+body" and algorithm is SignatureAlgorithm.SHA256:
            diagnostics.recommendations.append(
                f"Signature matched scheme '{diagnostics.matched_scheme}'; "
                "update SQUARE_WEBHOOK_NOTIFICATION_URL so verify() uses it"
            )
        return diagnostics


def verify_shippo(secret: str, body: bytes | str, signature: str | None) -> bool:
    """Verify a Shippo webhook signature (hex HMAC-SHA256 over the body).

    Args:
        secret: SHIPPO_WEBHOOK_SECRET
        body: Raw request body
        signature: Value of X-Shippo-Signature header

    Returns:
        True if signature is valid
    """
    if not secret:
        logger.warning("SHIPPO_WEBHOOK_SECRET not set, rejecting webhook")
        return False
    if not signature:
        return False

    computed = hmac.new(
        secret.encode("utf-8"),
        _as_bytes(body),
        hashlib.sha256,
    ).hexdigest()
    return _constant_time_equal(computed, signature.strip().lower())
