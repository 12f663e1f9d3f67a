"""Base price source for new advertisements."""
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

from .events import EventBus, RateChanged
from .exchange import P2PExchange
from .logging_setup import logger

SELL_SIDE_DISCOUNT = Decimal("0.995")
_CENT = Decimal("0.01")


class RateMode(str, Enum):
    CONSTANT = "constant"
    AUTOMATIC = "automatic"


class ExchangeRateService:
    """Holds the current fiat-per-asset rate.

    In constant mode the configured rate is returned as-is. In automatic mode
    :meth:`refresh` derives the rate from the market's online advertisements:
    their average price discounted by 0.5% and clamped to the observed
    min/max. Invalid (non-positive) rates fall back to ``default_rate``.
    """

    def __init__(self, default_rate: Decimal = Decimal("85.00"), *, mode: RateMode = RateMode.CONSTANT, events: Optional[EventBus] = None, asset: str = "USDT", fiat: str = "RUB"):
        self.default_rate = Decimal(default_rate)
        self.mode = RateMode(mode)
        self.events = events
        self.asset = asset
        self.fiat = fiat
        self._rate = self.default_rate

    async def get_rate(self) -> Decimal:
        return self._rate

    async def set_rate(self, rate: Decimal) -> Decimal:
        """Set the rate explicitly; invalid values fall back to the default."""
        rate = Decimal(rate)
        if rate <= 0:
            logger.warning(f"Invalid exchange rate | rate={rate} fallback={self.default_rate}")
            rate = self.default_rate
        old = self._rate
        self._rate = rate.quantize(_CENT, rounding=ROUND_HALF_UP)
        if self._rate != old:
            logger.info(f"Exchange rate changed | old={old} new={self._rate} mode={self.mode.value}")
            if self.events is not None:
                await self.events.publish(RateChanged(old_rate=old, new_rate=self._rate))
        return self._rate

    async def set_mode(self, mode: RateMode) -> None:
        self.mode = RateMode(mode)
        if self.mode == RateMode.CONSTANT:
            await self.set_rate(self.default_rate)

    async def refresh(self, exchange: P2PExchange) -> Decimal:
        """Recompute the rate from the market in automatic mode."""
        if self.mode != RateMode.AUTOMATIC:
            return self._rate
        ads = await exchange.list_online_ads(token_id=self.asset, currency_id=self.fiat, side="1")
        prices = [ad.price for ad in ads if ad.price and ad.price > 0]
        if not prices:
            logger.warning("No market prices available | keeping current rate")
            return self._rate
        average = sum(prices) / len(prices)
        candidate = min(max(average * SELL_SIDE_DISCOUNT, min(prices)), max(prices))
        return await self.set_rate(candidate)
