"""Typed error taxonomy for the P2P exchange API and the automation engine.

Every failure surfaced by the request clients is one of the classes below, so
callers can decide per class whether to skip an account, abort one creation
attempt or simply wait for the next scheduled tick.
"""
from typing import Any, Dict, Optional


class P2PError(Exception):
    """Base class for exchange and engine failures."""

    def __init__(self, message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.code is None:
            return self.message
        return f"[{self.code}] {self.message}"


class AuthenticationError(P2PError):
    """Invalid API key, bad signature or expired credentials."""
    pass


class AuthorizationError(P2PError):
    """Key is valid but lacks the P2P trading permission or KYC level."""
    pass


class NotFoundError(P2PError):
    pass


class RateLimitError(P2PError):
    """Exchange rejected the call for exceeding its quota.

    ``retry_at`` is the epoch-millisecond reset time reported by the exchange,
    when it provides one.
    """

    def __init__(self, message: str, code: Optional[int] = None, details: Optional[Dict[str, Any]] = None, retry_at: Optional[int] = None):
        super().__init__(message, code=code, details=details)
        self.retry_at = retry_at


class ValidationError(P2PError):
    """Price/amount out of range, unknown payment method and similar."""
    pass


class PriceCollisionError(ValidationError):
    """No collision-free price was found within the attempt bound."""
    pass


class TransientNetworkError(P2PError):
    """Timeouts, connection resets and 5xx responses. Left to the next tick."""
    pass


class ClockSkewError(TransientNetworkError):
    """Request timestamp fell outside the exchange's recv window."""
    pass


class ReconciliationAmbiguity(P2PError):
    """An order could not be resolved to a single advertisement/transaction."""
    pass


AUTHENTICATION_CODES = frozenset({10003, 10004, 10007})
AUTHORIZATION_CODES = frozenset({10005, 10010, 10024})
RATE_LIMIT_CODES = frozenset({10006, 10018})
VALIDATION_CODES = frozenset({10001})
CLOCK_SKEW_CODES = frozenset({10002})
TRANSIENT_CODES = frozenset({10016})


def classify_error(code: Optional[int], message: str, http_status: Optional[int] = None, *, retry_at: Optional[int] = None, details: Optional[Dict[str, Any]] = None) -> P2PError:
    """Build the typed exception for an exchange return code or HTTP status.

    Exchange return codes win over the HTTP status when both are present.
    """
    if code in AUTHENTICATION_CODES or (code is None and http_status == 401):
        return AuthenticationError(message, code=code or http_status, details=details)
    if code in AUTHORIZATION_CODES or (code is None and http_status == 403):
        return AuthorizationError(message, code=code or http_status, details=details)
    if code in RATE_LIMIT_CODES or (code is None and http_status == 429):
        return RateLimitError(message, code=code or http_status, details=details, retry_at=retry_at)
    if code in VALIDATION_CODES:
        return ValidationError(message, code=code, details=details)
    if code in CLOCK_SKEW_CODES:
        return ClockSkewError(message, code=code, details=details)
    if code in TRANSIENT_CODES or (code is None and http_status is not None and http_status >= 500):
        return TransientNetworkError(message, code=code or http_status, details=details)
    if code is None and http_status == 404:
        return NotFoundError(message, code=http_status, details=details)
    return P2PError(message, code=code if code is not None else http_status, details=details)


def envelope_code(payload: Dict[str, Any]) -> Optional[int]:
    """Return the status code of a response envelope, accepting both spellings."""
    raw = payload.get("retCode", payload.get("ret_code"))
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def envelope_message(payload: Dict[str, Any]) -> str:
    return str(payload.get("retMsg", payload.get("ret_msg", "")) or "")


def raise_for_envelope(payload: Any, http_status: int = 200, *, retry_at: Optional[int] = None) -> Dict[str, Any]:
    """Validate a decoded response and return it, or raise the typed error.

    A return code of 0 is success. An envelope without a code is accepted
    only with a 2xx HTTP status.
    """
    if not isinstance(payload, dict):
        if 200 <= http_status < 300:
            raise P2PError(f"Unexpected response body: {payload!r}", code=http_status)
        raise classify_error(None, f"HTTP {http_status}: {payload!r}", http_status, retry_at=retry_at)

    code = envelope_code(payload)
    if code == 0 or (code is None and 200 <= http_status < 300):
        return payload

    message = envelope_message(payload) or f"HTTP {http_status}"
    raise classify_error(code, message, None if code is not None else http_status, retry_at=retry_at, details=payload)
