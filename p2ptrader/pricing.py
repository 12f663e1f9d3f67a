"""Advertisement price allocation with collision avoidance.

Two of our own advertisements priced within ``tolerance_pct`` of each other
compete for the same buyers, so a new price is moved away from every active
price before posting.
"""
import random
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence

from .errors import PriceCollisionError, ValidationError
from .logging_setup import logger

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def compute_quantity(amount: Decimal, price: Decimal, buffer: Decimal = Decimal("5")) -> Decimal:
    """Asset quantity covering ``amount`` of fiat at ``price`` plus a fixed buffer."""
    if price <= 0:
        raise ValidationError(f"Price must be positive, got {price}")
    if amount <= 0:
        raise ValidationError(f"Amount must be positive, got {amount}")
    return (Decimal(amount) / Decimal(price) + Decimal(buffer)).quantize(CENT, rounding=ROUND_HALF_UP)


class PriceAllocator:
    """Find a price near the base rate that clears every active price.

    The search tries ``fixed_deltas`` in order, then uniformly random deltas
    in ``[-random_delta_span, random_delta_span]``, each clamped to
    ``[min_price, max_price]``. It stops after ``max_attempts`` candidates
    and raises :class:`PriceCollisionError` instead of returning a colliding
    price.
    """

    def __init__(
        self,
        *,
        tolerance_pct: Decimal = Decimal("5"),
        min_price: Decimal = Decimal("71.19"),
        max_price: Decimal = Decimal("90.97"),
        fixed_deltas: Optional[Sequence[Decimal]] = None,
        random_delta_span: Decimal = Decimal("6.0"),
        max_attempts: int = 40,
        rng: Optional[random.Random] = None,
    ):
        if min_price > max_price:
            raise ValueError("min_price must not exceed max_price")
        self.tolerance_pct = Decimal(tolerance_pct)
        self.min_price = Decimal(min_price)
        self.max_price = Decimal(max_price)
        self.fixed_deltas: List[Decimal] = [Decimal(d) for d in (fixed_deltas if fixed_deltas is not None else [Decimal("0")])]
        self.random_delta_span = Decimal(random_delta_span)
        self.max_attempts = max_attempts
        self.rng = rng or random.Random()

    def distance_pct(self, price: Decimal, existing: Decimal) -> Decimal:
        return abs(Decimal(price) - existing) / existing * HUNDRED

    def has_collision(self, price: Decimal, existing_prices: Iterable[Decimal]) -> bool:
        """True when ``price`` is strictly within the tolerance of any existing price."""
        return any(p > 0 and self.distance_pct(price, p) < self.tolerance_pct for p in existing_prices)

    def clamp(self, price: Decimal) -> Decimal:
        return min(max(Decimal(price), self.min_price), self.max_price)

    def _delta(self, attempt: int) -> Decimal:
        if attempt < len(self.fixed_deltas):
            return self.fixed_deltas[attempt]
        span = float(self.random_delta_span)
        return Decimal(str(self.rng.uniform(-span, span))).quantize(CENT)

    def allocate_price(self, base_price: Decimal, existing_prices: Iterable[Decimal]) -> Decimal:
        existing = [Decimal(p) for p in existing_prices]
        base = Decimal(base_price)
        for attempt in range(self.max_attempts):
            candidate = self.clamp(base + self._delta(attempt)).quantize(CENT, rounding=ROUND_HALF_UP)
            if not self.has_collision(candidate, existing):
                if attempt:
                    logger.info(f"Price adjusted to avoid collision | base={base} price={candidate} attempts={attempt + 1}")
                return candidate
        raise PriceCollisionError(
            f"No collision-free price within {self.max_attempts} attempts "
            f"(base={base}, active={[str(p) for p in existing]})"
        )
