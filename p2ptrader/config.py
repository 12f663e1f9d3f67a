"""Configuration loader for the P2P trader.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import asdict, dataclass, field, fields
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

MAINNET_URL = "https://api.bybit.com"
TESTNET_URL = "https://api-testnet.bybit.com"


def _default_deltas() -> List[Decimal]:
    deltas = [Decimal("0")]
    step = Decimal("0.5")
    value = step
    while value <= Decimal("6.0"):
        deltas.extend([value, -value])
        value += step
    return deltas


@dataclass
class ExchangeConfig:
    """Exchange endpoint and request-signing settings."""
    base_url: str = MAINNET_URL
    testnet: bool = False
    recv_window: int = 20000
    timeout: int = 30
    time_sync_ttl: int = 3600
    time_sync_interval: int = 600

    @property
    def url(self) -> str:
        return TESTNET_URL if self.testnet else self.base_url


@dataclass
class PoolConfig:
    """Account pool capacity and payment methods."""
    max_ads_per_account: int = 2
    payment_methods: List[str] = field(default_factory=lambda: ["SBP", "Tinkoff"])
    payment_methods_cache_ttl: int = 3600


@dataclass
class PricingConfig:
    """Advertisement pricing and collision avoidance."""
    asset: str = "USDT"
    fiat: str = "RUB"
    tolerance_pct: Decimal = Decimal("5")
    min_price: Decimal = Decimal("71.19")
    max_price: Decimal = Decimal("90.97")
    quantity_buffer: Decimal = Decimal("5")
    max_attempts: int = 40
    fixed_deltas: List[Decimal] = field(default_factory=_default_deltas)
    random_delta_span: Decimal = Decimal("6.0")
    default_rate: Decimal = Decimal("85.00")
    rate_mode: str = "constant"
    payment_period_minutes: int = 15
    remark: str = ""


@dataclass
class SchedulerConfig:
    """Task intervals in seconds and the operating mode."""
    payout_intake: float = 300.0
    ad_creator: float = 10.0
    order_discovery: float = 10.0
    chat_sync: float = 1.0
    conversation: float = 1.0
    release: float = 10.0
    rate_refresh: float = 300.0
    shutdown_grace: float = 5.0
    mode: str = "automatic"


@dataclass
class RateLimitConfig:
    """Client-side rate-limit settings (disabled by default)."""
    enabled: bool = False
    orders_per_second: int = 10
    chat_per_second: int = 10
    default_per_second: int = 10


@dataclass
class PersistenceConfig:
    """Database and logging settings."""
    db_path: str = "p2ptrader.db"
    encryption_password: Optional[str] = None
    log_file: str = "p2ptrader.log"
    log_level: str = "INFO"


@dataclass
class ConversationConfig:
    """Overrides for the verification script; empty means built-in defaults."""
    steps: List[Dict[str, Any]] = field(default_factory=list)
    negative_answers: List[str] = field(default_factory=list)
    payment_template: Optional[str] = None
    receipt_email: str = ""


_DECIMAL_FIELDS = {f.name for f in fields(PricingConfig) if f.type is Decimal}


def _pricing_from_dict(raw: Dict[str, Any]) -> PricingConfig:
    values: Dict[str, Any] = {}
    for key, value in raw.items():
        if key in _DECIMAL_FIELDS:
            values[key] = Decimal(str(value))
        elif key == "fixed_deltas":
            values[key] = [Decimal(str(v)) for v in value]
        else:
            values[key] = value
    return PricingConfig(**values)


def _to_plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, list):
        return [_to_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _to_plain(v) for k, v in value.items()}
    return value


@dataclass
class TraderConfig:
    """Complete trader configuration."""
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    pool: PoolConfig = field(default_factory=PoolConfig)
    pricing: PricingConfig = field(default_factory=PricingConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TraderConfig":
        data = data or {}
        return cls(
            exchange=ExchangeConfig(**data.get("exchange", {})),
            pool=PoolConfig(**data.get("pool", {})),
            pricing=_pricing_from_dict(data.get("pricing", {})),
            scheduler=SchedulerConfig(**data.get("scheduler", {})),
            rate_limit=RateLimitConfig(**data.get("rate_limit", {})),
            persistence=PersistenceConfig(**data.get("persistence", {})),
            conversation=ConversationConfig(**data.get("conversation", {})),
        )

    @classmethod
    def from_yaml(cls, config_path: str) -> "TraderConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            TraderConfig instance

        Example YAML:
            exchange:
              testnet: true
            pricing:
              tolerance_pct: 5
              min_price: 71.19
            scheduler:
              mode: manual
            persistence:
              db_path: "${STATE_DIR}/p2ptrader.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        return cls.from_dict(yaml.safe_load(raw))

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {name: _to_plain(asdict(getattr(self, name))) for name in (
            "exchange", "pool", "pricing", "scheduler", "rate_limit", "persistence", "conversation",
        )}

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
