"""Request signing for the exchange's V5 API.

The signed payload is ``timestamp + api_key + recv_window + canonical`` where
``canonical`` is the sorted query string for GET requests and the exact JSON
body for POST requests. Absent (``None``) and empty-string values are dropped
before either form is built, so the signed text always matches what is sent.
"""
import hashlib
import hmac
import json
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlencode

DEFAULT_RECV_WINDOW = 20000
SIGN_TYPE_HMAC = "2"


def clean_params(params: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Drop absent/empty values and return a dict sorted by key."""
    if not params:
        return {}
    return {k: params[k] for k in sorted(params) if params[k] is not None and params[k] != ""}


def canonical_query(params: Optional[Mapping[str, Any]]) -> str:
    cleaned = clean_params(params)
    return urlencode([(k, _format_value(v)) for k, v in cleaned.items()])


def canonical_body(params: Optional[Mapping[str, Any]]) -> str:
    cleaned = clean_params(params)
    if not cleaned:
        return ""
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def sign(secret: str, timestamp: int, api_key: str, recv_window: int, payload: str) -> str:
    """HMAC-SHA256 hex digest of the canonical message."""
    message = f"{timestamp}{api_key}{recv_window}{payload}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


def auth_headers(api_key: str, secret: str, timestamp: int, payload: str, recv_window: int = DEFAULT_RECV_WINDOW) -> Dict[str, str]:
    """Build the authentication headers for one request."""
    return {
        "X-BAPI-API-KEY": api_key,
        "X-BAPI-TIMESTAMP": str(timestamp),
        "X-BAPI-RECV-WINDOW": str(recv_window),
        "X-BAPI-SIGN": sign(secret, timestamp, api_key, recv_window, payload),
        "X-BAPI-SIGN-TYPE": SIGN_TYPE_HMAC,
        "Content-Type": "application/json",
    }
