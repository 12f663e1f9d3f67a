import asyncio
import json
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import ClockSkewError, P2PError, RateLimitError, TransientNetworkError, raise_for_envelope
from .exchange import P2PExchange
from .logging_setup import logger
from .rate_limit_policy import RateLimitManager
from .schemas import AccountInfo, AdItem, ChatItem, OrderItem, OrderPage, PaymentMethodItem, extract_list, parse, parse_list
from .signature import DEFAULT_RECV_WINDOW, auth_headers, canonical_body, canonical_query
from .time_sync import ClockSynchronizer

SERVER_TIME_PATH = "/v5/market/time"


def parse_server_time(result: Dict[str, Any]) -> int:
    """Server time in ms from a ``/v5/market/time`` result."""
    if result.get("timeNano"):
        return int(result["timeNano"]) // 1_000_000
    return int(result["timeSecond"]) * 1000


class AsyncP2PClient(P2PExchange):
    """Async P2P exchange client using aiohttp.

    Features:
    - Signed requests (X-BAPI-* headers) stamped with exchange-synchronized time.
    - Response envelope validation mapped to the typed error taxonomy.
    - Optional client-side rate limiting per endpoint.
    - No in-place retries: failures surface to the caller's next scheduled tick.

    Usage:
        async with AsyncP2PClient(api_key, api_secret) as client:
            page = await client.list_pending_orders()
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = "https://api.bybit.com",
        recv_window: int = DEFAULT_RECV_WINDOW,
        timeout: int = 30,
        clock: Optional[ClockSynchronizer] = None,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window
        self.timeout = timeout
        self.clock = clock or ClockSynchronizer(self.get_server_time)
        self.rate_limiter = rate_limiter
        self.session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def start(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout))

    async def close(self) -> None:
        if self.session is not None and not self.session.closed:
            await self.session.close()

    @staticmethod
    def _get_rate_limit_reset(headers) -> Optional[int]:
        """Extract X-Bapi-Limit-Reset-Timestamp (epoch ms)."""
        raw = headers.get("X-Bapi-Limit-Reset-Timestamp")
        if raw is None:
            return None
        try:
            return int(raw)
        except (ValueError, TypeError):
            return None

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, *, signed: bool = True) -> Any:
        """Execute one request and return the envelope's ``result``."""
        if self.session is None:
            raise P2PError("Session not initialized; use 'async with' or start()")

        if self.rate_limiter is not None and not await self.rate_limiter.acquire(path):
            raise RateLimitError(f"Client-side quota exhausted for {path}")

        method = method.upper()
        if method == "GET":
            payload = canonical_query(params)
            url = f"{self.base_url}{path}" + (f"?{payload}" if payload else "")
            data = None
        else:
            payload = canonical_body(params)
            url = f"{self.base_url}{path}"
            data = payload.encode("utf-8") if payload else b"{}"
            payload = payload or "{}"

        headers = {"Content-Type": "application/json"}
        if signed:
            await self._ensure_clock()
            headers = auth_headers(self.api_key, self.api_secret, self.clock.get_timestamp(), payload, self.recv_window)

        try:
            async with self.session.request(method, url, headers=headers, data=data) as resp:
                text = await resp.text()
                try:
                    body = json.loads(text) if text else None
                except ValueError:
                    body = text
                envelope = raise_for_envelope(body, resp.status, retry_at=self._get_rate_limit_reset(resp.headers))
        except ClockSkewError as e:
            self.clock.invalidate()
            logger.warning(f"Request rejected for clock skew | path={path} error={e}")
            raise
        except P2PError as e:
            logger.warning(f"Request failed | path={path} error_type={type(e).__name__} error={e}")
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"Request timeout | path={path}")
            raise TransientNetworkError(f"Request timeout: {path}") from e
        except aiohttp.ClientError as e:
            logger.warning(f"Request transport failure | path={path} error={e}")
            raise TransientNetworkError(f"Request failed: {e}") from e

        return envelope.get("result")

    async def _ensure_clock(self) -> None:
        try:
            await self.clock.ensure_synced()
        except P2PError as e:
            # get_timestamp() falls back to local time and warns
            logger.warning(f"Clock sync unavailable | error={e}")

    async def get_server_time(self) -> int:
        result = await self._request("GET", SERVER_TIME_PATH, signed=False)
        return parse_server_time(result or {})

    async def get_account_info(self) -> AccountInfo:
        result = await self._request("POST", "/v5/p2p/user/personal/info", {})
        return parse(AccountInfo, result or {})

    async def list_orders(self, *, status: Optional[int] = None, page: int = 1, size: int = 30) -> OrderPage:
        result = await self._request("POST", "/v5/p2p/order/simplifyList", {"page": page, "size": size, "status": status})
        return parse(OrderPage, result or {})

    async def list_pending_orders(self, *, page: int = 1, size: int = 30) -> OrderPage:
        result = await self._request("POST", "/v5/p2p/order/pending/simplifyList", {"page": page, "size": size})
        return parse(OrderPage, result or {})

    async def get_order(self, order_id: str) -> OrderItem:
        result = await self._request("POST", "/v5/p2p/order/info", {"orderId": order_id})
        return parse(OrderItem, result or {})

    async def list_messages(self, order_id: str, *, size: int = 50) -> List[ChatItem]:
        result = await self._request("POST", "/v5/p2p/order/message/listpage", {"orderId": order_id, "size": str(size)})
        return parse_list(ChatItem, extract_list(result, "result", "list"))

    async def send_message(self, order_id: str, text: str) -> None:
        await self._request("POST", "/v5/p2p/order/message/send", {
            "orderId": order_id,
            "message": text,
            "contentType": "str",
            "msgUuid": uuid.uuid4().hex,
        })

    async def create_ad(self, params: Dict[str, Any]) -> str:
        result = await self._request("POST", "/v5/p2p/item/create", params)
        item_id = (result or {}).get("itemId")
        if not item_id:
            raise P2PError(f"Advertisement created without item id: {result!r}")
        return str(item_id)

    async def cancel_ad(self, item_id: str) -> None:
        await self._request("POST", "/v5/p2p/item/cancel", {"itemId": item_id})

    async def list_my_ads(self) -> List[AdItem]:
        result = await self._request("POST", "/v5/p2p/item/personal/list", {"status": "2"})
        return parse_list(AdItem, extract_list(result, "items", "list"))

    async def list_online_ads(self, *, token_id: str, currency_id: str, side: str) -> List[AdItem]:
        result = await self._request("POST", "/v5/p2p/item/online", {
            "tokenId": token_id,
            "currencyId": currency_id,
            "side": side,
            "page": "1",
            "size": "50",
        })
        return parse_list(AdItem, extract_list(result, "items", "list"))

    async def list_payment_methods(self) -> List[PaymentMethodItem]:
        result = await self._request("POST", "/v5/p2p/user/payment/list", {})
        return parse_list(PaymentMethodItem, extract_list(result, "list", "items"))

    async def get_coin_balance(self, coin: str) -> Decimal:
        result = await self._request("GET", "/v5/asset/transfer/query-account-coins-balance", {
            "accountType": "FUND",
            "coin": coin,
        })
        for entry in extract_list(result, "balance"):
            if entry.get("coin") == coin:
                return Decimal(str(entry.get("transferBalance") or entry.get("walletBalance") or "0"))
        return Decimal("0")

    async def release_order(self, order_id: str) -> None:
        await self._request("POST", "/v5/p2p/order/finish", {"orderId": order_id})
