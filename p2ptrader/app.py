"""Application wiring: builds every service and registers the scheduled tasks."""
import random
from pathlib import Path
from typing import Iterable, List, Optional

from .account_pool import AccountPool
from .ad_creator import AdvertisementService
from .async_p2p_client import AsyncP2PClient
from .chat_sync import ChatSynchronizer
from .config import TraderConfig
from .conversation import ConversationScript, ConversationService
from .errors import NotFoundError, P2PError
from .events import EventBus
from .exchange import ExchangeFactory, P2PExchange
from .exchange_rate import ExchangeRateService, RateMode
from .logging_setup import logger
from .order_discovery import OrderReconciler
from .orchestrator import ConfirmCallback, Mode, OperatorGate, TaskOrchestrator
from .payouts import PayoutIntakeService, PayoutSource
from .persistence_sqlite import SQLiteStore
from .pricing import PriceAllocator
from .rate_limit_policy import RateLimitManager
from .release import ReleaseService
from .secrets import AccountCredentials, SecretBox
from .time_sync import ClockSynchronizer

MODE_SETTING = "mode"


class TraderApp:
    """Owns the lifecycle of every service object.

    Args:
        config: full trader configuration
        store: ledger; opened from ``config.persistence`` when omitted
        client_factory: builds one exchange client per account; defaults to
            signed aiohttp clients sharing this app's clock
        payout_source: external payout feed; intake is disabled without one
        confirm: operator confirmation callback used in manual mode
    """

    def __init__(
        self,
        config: TraderConfig,
        *,
        store: Optional[SQLiteStore] = None,
        client_factory: Optional[ExchangeFactory] = None,
        payout_source: Optional[PayoutSource] = None,
        confirm: Optional[ConfirmCallback] = None,
        rng: Optional[random.Random] = None,
    ):
        self.config = config
        self.store = store or SQLiteStore(
            Path(config.persistence.db_path),
            password=config.persistence.encryption_password,
            secret_box=SecretBox.from_env(),
        )
        self.events = EventBus()
        self.clock = ClockSynchronizer(self._fetch_server_time, ttl_seconds=config.exchange.time_sync_ttl)
        self.pool = AccountPool(
            self.store,
            client_factory or self._build_client,
            payment_methods=config.pool.payment_methods,
            payment_cache_ttl=config.pool.payment_methods_cache_ttl,
        )
        self.gate = OperatorGate(Mode(config.scheduler.mode), confirm)

        pricing = config.pricing
        self.rates = ExchangeRateService(pricing.default_rate, mode=RateMode(pricing.rate_mode), events=self.events, asset=pricing.asset, fiat=pricing.fiat)
        self.allocator = PriceAllocator(
            tolerance_pct=pricing.tolerance_pct,
            min_price=pricing.min_price,
            max_price=pricing.max_price,
            fixed_deltas=pricing.fixed_deltas,
            random_delta_span=pricing.random_delta_span,
            max_attempts=pricing.max_attempts,
            rng=rng,
        )
        self.ads = AdvertisementService(
            self.store,
            self.pool,
            self.allocator,
            self.rates,
            self.gate,
            events=self.events,
            asset=pricing.asset,
            fiat=pricing.fiat,
            quantity_buffer=pricing.quantity_buffer,
            payment_period_minutes=pricing.payment_period_minutes,
            remark=pricing.remark,
        )
        self.discovery = OrderReconciler(self.store, self.pool, events=self.events, asset=pricing.asset, fiat=pricing.fiat)
        self.chat = ChatSynchronizer(self.store, self.pool, events=self.events)
        self.conversation = ConversationService(
            self.store,
            self.pool,
            ConversationScript.from_config(config.conversation.steps, config.conversation.negative_answers),
            events=self.events,
            payment_template=config.conversation.payment_template,
            receipt_email=config.conversation.receipt_email,
        )
        self.release = ReleaseService(self.store, self.pool, self.gate)
        self.intake = PayoutIntakeService(self.store, payout_source, self.gate) if payout_source is not None else None

        self.orchestrator = TaskOrchestrator(shutdown_grace=config.scheduler.shutdown_grace)
        self._register_tasks()

    def _build_client(self, account_id: str, api_key: str, api_secret: str) -> P2PExchange:
        limits = self.config.rate_limit
        limiter = None
        if limits.enabled:
            limiter = RateLimitManager(RateLimitManager.default_quotas(
                orders_per_second=limits.orders_per_second,
                chat_per_second=limits.chat_per_second,
                default_per_second=limits.default_per_second,
            ))
        return AsyncP2PClient(
            api_key,
            api_secret,
            base_url=self.config.exchange.url,
            recv_window=self.config.exchange.recv_window,
            timeout=self.config.exchange.timeout,
            clock=self.clock,
            rate_limiter=limiter,
        )

    async def _fetch_server_time(self) -> int:
        if not self.pool.accounts:
            raise NotFoundError("No pooled account to query server time with")
        return await self.pool.accounts[0].client.get_server_time()

    def register_accounts(self, credentials: Iterable[AccountCredentials]) -> List[str]:
        ids = []
        for cred in credentials:
            self.store.upsert_account(cred.account_id, cred.api_key, cred.api_secret, max_ads=self.config.pool.max_ads_per_account)
            ids.append(cred.account_id)
        return ids

    def set_mode(self, mode: Mode) -> None:
        """Switch manual/automatic gating and persist it for the next start."""
        self.gate.mode = Mode(mode)
        self.store.set_setting(MODE_SETTING, self.gate.mode.value)
        logger.info(f"Mode changed | mode={self.gate.mode.value}")

    def _register_tasks(self) -> None:
        sched = self.config.scheduler
        orch = self.orchestrator
        orch.add_one_time("init", self.initialize)
        if self.intake is not None:
            orch.add_task("payout_intake", self.intake.intake, sched.payout_intake, run_immediately=True)
        if self.rates.mode == RateMode.AUTOMATIC:
            orch.add_task("rate_refresh", self._refresh_rate, sched.rate_refresh, run_immediately=True)
        orch.add_task("ad_creator", self.ads.create_pending, sched.ad_creator)
        orch.add_task("order_discovery", self._discover, sched.order_discovery)
        orch.add_task("chat_sync", self.chat.sync_all, sched.chat_sync)
        orch.add_task("conversation", self._converse, sched.conversation)
        orch.add_task("release", self.release.release_confirmed, sched.release)
        orch.add_shutdown_hook("clock", self.clock.stop)
        orch.add_shutdown_hook("account_pool", self.pool.close)
        orch.add_shutdown_hook("store", self.store.close)

    async def initialize(self) -> None:
        """Bootstrap accounts and clients, then run the first reconciliation pass."""
        stored_mode = self.store.get_setting(MODE_SETTING)
        if stored_mode:
            self.gate.mode = Mode(stored_mode)
        joined = await self.pool.initialize()
        if not joined:
            logger.error("No usable trading accounts; tasks will idle until accounts are added")
            return
        try:
            await self.clock.sync()
        except P2PError as e:
            logger.warning(f"Initial clock sync failed | error={e}")
        self.clock.start_background(self.config.exchange.time_sync_interval)
        for name in ("order_discovery", "chat_sync", "conversation"):
            await self.orchestrator.run_now(name)
        logger.info(f"Trader initialized | accounts={joined} mode={self.gate.mode.value}")

    async def _refresh_rate(self) -> None:
        if self.pool.accounts:
            await self.rates.refresh(self.pool.accounts[0].client)

    async def _discover(self) -> None:
        await self.discovery.discover_all()
        await self.discovery.refresh_tracked()

    async def _converse(self) -> None:
        await self.conversation.process_pending_messages()
        await self.conversation.start_pending_conversations()

    async def start(self) -> None:
        await self.orchestrator.start()

    async def run(self) -> None:
        """Start, then block until :meth:`stop`."""
        await self.orchestrator.start()
        await self.orchestrator.wait()

    async def stop(self) -> None:
        await self.orchestrator.stop()
