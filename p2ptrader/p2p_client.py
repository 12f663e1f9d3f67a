"""Synchronous P2P client for operator scripts.

The engine itself runs on :class:`~p2ptrader.async_p2p_client.AsyncP2PClient`;
this requests-based client backs the admin CLI, where blocking calls are fine.
"""
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .async_p2p_client import SERVER_TIME_PATH, parse_server_time
from .errors import P2PError, TransientNetworkError, raise_for_envelope
from .logging_setup import logger
from .schemas import AdItem, OrderItem, OrderPage, PaymentMethodItem, extract_list, parse, parse_list
from .secrets import AccountCredentials
from .signature import DEFAULT_RECV_WINDOW, auth_headers, canonical_body, canonical_query


class P2PClient:
    """Blocking P2P client with request signing and transport retries.

    Notes:
    - Only idempotent GETs are retried by urllib3 (5xx, connection errors);
      POSTs are never replayed.
    - The clock offset is measured once, lazily, on the first signed call.
    """

    def __init__(self, api_key: str, api_secret: str, *, base_url: str = "https://api.bybit.com", recv_window: int = DEFAULT_RECV_WINDOW, timeout: int = 30, max_retries: int = 3):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout = timeout
        self.offset_ms: Optional[int] = None

        self.session = requests.Session()
        retries = Retry(total=max_retries, backoff_factor=0.5, status_forcelist=(500, 502, 503, 504), allowed_methods=frozenset(["GET"]))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))
        self.session.mount("http://", HTTPAdapter(max_retries=retries))

    @classmethod
    def from_credentials(cls, credentials: AccountCredentials, **kwargs) -> "P2PClient":
        """Create a client from AccountCredentials (loaded via secrets module)."""
        return cls(api_key=credentials.api_key, api_secret=credentials.api_secret, **kwargs)

    def _timestamp(self) -> int:
        if self.offset_ms is None:
            try:
                self.sync_time()
            except P2PError as e:
                logger.warning(f"Clock not synchronized | using local time error={e}")
                self.offset_ms = 0
        return int(time.time() * 1000) + self.offset_ms

    def sync_time(self) -> int:
        """Measure and store the server clock offset in ms."""
        before = int(time.time() * 1000)
        server_ms = self.get_server_time()
        after = int(time.time() * 1000)
        self.offset_ms = server_ms - (before + after) // 2
        return self.offset_ms

    def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = True) -> Any:
        method = method.upper()
        if method == "GET":
            payload = canonical_query(params)
            url = f"{self.base_url}{path}" + (f"?{payload}" if payload else "")
            data = None
        else:
            payload = canonical_body(params) or "{}"
            url = f"{self.base_url}{path}"
            data = payload.encode("utf-8")

        headers = {"Content-Type": "application/json"}
        if signed:
            headers = auth_headers(self.api_key, self.api_secret, self._timestamp(), payload, self.recv_window)

        try:
            resp = self.session.request(method, url, headers=headers, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientNetworkError(f"Request failed: {e}") from e

        try:
            body = resp.json() if resp.text else None
        except ValueError:
            body = resp.text
        reset = resp.headers.get("X-Bapi-Limit-Reset-Timestamp")
        envelope = raise_for_envelope(body, resp.status_code, retry_at=int(reset) if reset and reset.isdigit() else None)
        return envelope.get("result")

    def get_server_time(self) -> int:
        return parse_server_time(self._request("GET", SERVER_TIME_PATH, signed=False) or {})

    def list_orders(self, status: Optional[int] = None, page: int = 1, size: int = 30) -> OrderPage:
        return parse(OrderPage, self._request("POST", "/v5/p2p/order/simplifyList", {"page": page, "size": size, "status": status}) or {})

    def list_pending_orders(self, page: int = 1, size: int = 30) -> OrderPage:
        return parse(OrderPage, self._request("POST", "/v5/p2p/order/pending/simplifyList", {"page": page, "size": size}) or {})

    def get_order(self, order_id: str) -> OrderItem:
        return parse(OrderItem, self._request("POST", "/v5/p2p/order/info", {"orderId": order_id}) or {})

    def send_message(self, order_id: str, text: str) -> None:
        self._request("POST", "/v5/p2p/order/message/send", {
            "orderId": order_id,
            "message": text,
            "contentType": "str",
            "msgUuid": uuid.uuid4().hex,
        })

    def list_my_ads(self) -> List[AdItem]:
        result = self._request("POST", "/v5/p2p/item/personal/list", {"status": "2"})
        return parse_list(AdItem, extract_list(result, "items", "list"))

    def cancel_ad(self, item_id: str) -> None:
        self._request("POST", "/v5/p2p/item/cancel", {"itemId": item_id})

    def list_payment_methods(self) -> List[PaymentMethodItem]:
        result = self._request("POST", "/v5/p2p/user/payment/list", {})
        return parse_list(PaymentMethodItem, extract_list(result, "list", "items"))

    def get_coin_balance(self, coin: str) -> Decimal:
        result = self._request("GET", "/v5/asset/transfer/query-account-coins-balance", {"accountType": "FUND", "coin": coin})
        for entry in extract_list(result, "balance"):
            if entry.get("coin") == coin:
                return Decimal(str(entry.get("transferBalance") or entry.get("walletBalance") or "0"))
        return Decimal("0")

    def close(self) -> None:
        self.session.close()
