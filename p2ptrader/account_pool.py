"""Multi-account client pool with advertisement capacity tracking."""
import time
from dataclasses import dataclass, field
from typing import Callable, Collection, Dict, List, Optional, Sequence

from .errors import AuthenticationError, AuthorizationError, NotFoundError, P2PError, ValidationError
from .exchange import ExchangeFactory, P2PExchange
from .logging_setup import logger
from .models import TradingAccount
from .schemas import AdItem
from .persistence_sqlite import SQLiteStore

# Exchange payment-type codes, used when the account's method carries no usable name
KNOWN_PAYMENT_TYPES = {
    "sbp": "75",
    "tinkoff": "64",
}


@dataclass
class PooledAccount:
    account: TradingAccount
    client: P2PExchange
    user_id: Optional[str] = None
    payment_ids: Dict[str, str] = field(default_factory=dict)
    payment_ids_at: Optional[float] = None

    @property
    def account_id(self) -> str:
        return self.account.account_id


@dataclass
class AccountSlot:
    """An account with room for one more advertisement."""
    entry: PooledAccount
    active_ads: int


class AccountPool:
    """Holds one authenticated client per trading account.

    Args:
        store: ledger providing accounts and local advertisement counts
        client_factory: ``(account_id, api_key, api_secret) -> P2PExchange``
        payment_methods: configured method names, in preference order
        payment_cache_ttl: seconds a resolved payment-method id stays cached
    """

    def __init__(
        self,
        store: SQLiteStore,
        client_factory: ExchangeFactory,
        *,
        payment_methods: Sequence[str] = ("SBP", "Tinkoff"),
        payment_cache_ttl: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.client_factory = client_factory
        self.payment_methods = list(payment_methods)
        self.payment_cache_ttl = payment_cache_ttl
        self._clock = clock
        self._accounts: Dict[str, PooledAccount] = {}

    @property
    def accounts(self) -> List[PooledAccount]:
        return list(self._accounts.values())

    def __len__(self) -> int:
        return len(self._accounts)

    async def initialize(self) -> List[str]:
        """Build clients for every active stored account.

        Accounts whose credentials are rejected are skipped and logged; the
        remaining accounts still join the pool. Returns the joined ids.
        """
        for account in self.store.list_active_accounts():
            if account.account_id in self._accounts:
                continue
            client = self.client_factory(account.account_id, account.api_key, account.api_secret)
            await client.start()
            user_id = account.user_id
            try:
                info = await client.get_account_info()
                user_id = info.user_id
                self.store.record_account_sync(account.account_id, user_id)
            except (AuthenticationError, AuthorizationError) as e:
                logger.error(f"Account rejected by exchange | account_id={account.account_id} error={e}")
                await client.close()
                continue
            except P2PError as e:
                logger.warning(f"Account info unavailable | account_id={account.account_id} error={e}")
            self._accounts[account.account_id] = PooledAccount(account=account, client=client, user_id=user_id)
            logger.info(f"Account joined pool | account_id={account.account_id} user_id={user_id}")
        return list(self._accounts)

    def get(self, account_id: str) -> PooledAccount:
        try:
            return self._accounts[account_id]
        except KeyError:
            raise NotFoundError(f"Account {account_id} is not in the pool")

    def client(self, account_id: str) -> P2PExchange:
        return self.get(account_id).client

    async def _remote_ads(self, entry: PooledAccount) -> Optional[List[AdItem]]:
        try:
            return await entry.client.list_my_ads()
        except P2PError as e:
            logger.warning(f"Remote ads unavailable | account_id={entry.account_id} error={e}")
            return None

    async def active_ad_count(self, entry: PooledAccount) -> int:
        """``max(local, remote)`` count; the remote count falls back to local on error."""
        local = self.store.count_active_advertisements(entry.account_id)
        remote = await self._remote_ads(entry)
        return max(local, len(remote)) if remote is not None else local

    async def select_account_with_capacity(self, exclude: Collection[str] = ()) -> Optional[AccountSlot]:
        """Return the least-loaded account under capacity, or None when all are full.

        Ties go to the account that joined the pool first. Accounts in
        ``exclude`` are not considered.
        """
        best: Optional[AccountSlot] = None
        for entry in self._accounts.values():
            if entry.account_id in exclude:
                continue
            count = await self.active_ad_count(entry)
            if count >= entry.account.max_ads:
                logger.debug(f"Account at capacity | account_id={entry.account_id} active_ads={count}")
                continue
            if best is None or count < best.active_ads:
                best = AccountSlot(entry=entry, active_ads=count)
        if best is None:
            logger.info(f"All accounts at capacity | accounts={len(self._accounts)}")
        else:
            logger.info(f"Account selected | account_id={best.entry.account_id} active_ads={best.active_ads}")
        return best

    async def choose_payment_method(self, account_id: str) -> str:
        """Pick the payment method for the next ad on ``account_id``.

        With one active ad the method must differ from the existing ad's.
        Ads the exchange reports but the ledger does not know (posted by
        hand, or before a crash) count too; their payment ids are compared
        against the configured methods' resolved ids.
        """
        entry = self.get(account_id)
        active = self.store.list_active_advertisements(account_id)
        remote = await self._remote_ads(entry)
        if remote is not None and len(remote) > len(active):
            if len(remote) != 1:
                return self.payment_methods[0]
            taken = set(remote[0].payments)
            for method in self.payment_methods:
                try:
                    payment_id = await self.resolve_payment_id(account_id, method)
                except ValidationError:
                    continue
                if payment_id not in taken:
                    return method
            raise ValidationError(f"No alternative payment method to remote ad {remote[0].id}")
        if len(active) == 1:
            taken = active[0].payment_method.lower()
            for method in self.payment_methods:
                if method.lower() != taken:
                    return method
            raise ValidationError(f"No alternative payment method to {active[0].payment_method}")
        return self.payment_methods[0]

    async def resolve_payment_id(self, account_id: str, method: str) -> str:
        """Map a configured method name to the account's exchange payment id."""
        entry = self.get(account_id)
        now = self._clock()
        if entry.payment_ids_at is None or now - entry.payment_ids_at >= self.payment_cache_ttl:
            entry.payment_ids = await self._load_payment_ids(entry)
            entry.payment_ids_at = now
        payment_id = entry.payment_ids.get(method.lower())
        if payment_id is None:
            raise ValidationError(f"Payment method {method} is not configured on account {account_id}")
        return payment_id

    async def _load_payment_ids(self, entry: PooledAccount) -> Dict[str, str]:
        ids: Dict[str, str] = {}
        methods = [pm for pm in await entry.client.list_payment_methods() if str(pm.online) != "0"]
        for pm in methods:
            for label in (pm.name, pm.bank_name):
                if label:
                    ids.setdefault(label.lower(), pm.id)
        for name, type_code in KNOWN_PAYMENT_TYPES.items():
            if name not in ids:
                match = next((pm for pm in methods if pm.payment_type == type_code), None)
                if match is not None:
                    ids[name] = match.id
        logger.debug(f"Payment methods cached | account_id={entry.account_id} methods={sorted(ids)}")
        return ids

    async def close(self) -> None:
        for entry in self._accounts.values():
            try:
                await entry.client.close()
            except P2PError as e:
                logger.warning(f"Client close failed | account_id={entry.account_id} error={e}")
        self._accounts.clear()
