"""Rate-limit policy: client-side request quotas per endpoint with sliding window."""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional


@dataclass
class RateLimitQuota:
    """Per-endpoint rate-limit quota."""
    requests_per_window: int  # max requests allowed in the window
    window_seconds: float     # time window in seconds


@dataclass
class RateLimitState:
    """Track request history for a single endpoint."""
    quota: RateLimitQuota
    clock: Callable[[], float] = time.monotonic
    request_times: List[float] = field(default_factory=list)

    def _prune(self, now: float) -> None:
        cutoff = now - self.quota.window_seconds
        self.request_times = [t for t in self.request_times if t > cutoff]

    def is_allowed(self) -> bool:
        """Check if a new request is allowed under the quota."""
        self._prune(self.clock())
        return len(self.request_times) < self.quota.requests_per_window

    def record_request(self) -> None:
        self.request_times.append(self.clock())

    def time_until_allowed(self) -> float:
        """Return seconds until next request is allowed. 0 if allowed now."""
        if self.is_allowed():
            return 0.0
        oldest = min(self.request_times)
        return max(0.0, oldest + self.quota.window_seconds - self.clock())


class RateLimitManager:
    """Enforce rate-limit quotas per endpoint."""

    ORDER_ENDPOINTS = (
        "/v5/p2p/order/simplifyList",
        "/v5/p2p/order/pending/simplifyList",
        "/v5/p2p/order/info",
    )
    CHAT_ENDPOINTS = (
        "/v5/p2p/order/message/listpage",
        "/v5/p2p/order/message/send",
    )

    def __init__(self, quotas: Optional[Dict[str, RateLimitQuota]] = None, *, clock: Callable[[], float] = time.monotonic):
        self.quotas = quotas or self.default_quotas()
        self.clock = clock
        self.states: Dict[str, RateLimitState] = {}

    @classmethod
    def default_quotas(cls, orders_per_second: int = 10, chat_per_second: int = 10, default_per_second: int = 10) -> Dict[str, RateLimitQuota]:
        quotas = {"default": RateLimitQuota(requests_per_window=default_per_second, window_seconds=1)}
        for path in cls.ORDER_ENDPOINTS:
            quotas[path] = RateLimitQuota(requests_per_window=orders_per_second, window_seconds=1)
        for path in cls.CHAT_ENDPOINTS:
            quotas[path] = RateLimitQuota(requests_per_window=chat_per_second, window_seconds=1)
        return quotas

    def _get_state(self, endpoint: str) -> RateLimitState:
        """Get or create rate-limit state for endpoint."""
        if endpoint not in self.states:
            quota = self.quotas.get(endpoint, self.quotas["default"])
            self.states[endpoint] = RateLimitState(quota=quota, clock=self.clock)
        return self.states[endpoint]

    def is_allowed(self, endpoint: str) -> bool:
        return self._get_state(endpoint).is_allowed()

    def record_request(self, endpoint: str) -> None:
        self._get_state(endpoint).record_request()

    def time_until_allowed(self, endpoint: str) -> float:
        return self._get_state(endpoint).time_until_allowed()

    async def acquire(self, endpoint: str, max_wait: float = 60.0) -> bool:
        """Wait until a request is allowed and record it.

        Returns False without recording when the wait would exceed ``max_wait``.
        """
        start = self.clock()
        while not self.is_allowed(endpoint):
            wait_time = self.time_until_allowed(endpoint)
            elapsed = self.clock() - start
            if elapsed + wait_time > max_wait:
                return False
            await asyncio.sleep(wait_time)

        self.record_request(endpoint)
        return True
