"""
P2P Trader: synchronization and conversational automation for exchange P2P desks.

Turns incoming fiat payout requests into sell advertisements on the exchange's
P2P marketplace and drives each resulting order to completion:
- Multi-account pool with per-account advertisement capacity
- Collision-free advertisement pricing within a configurable tolerance band
- Order discovery and reconciliation against local transactions
- Idempotent chat synchronization (one stored row per exchange message)
- Scripted buyer conversation with blacklisting on negative answers
- Clock synchronization with the exchange for signed requests
- Atomic persistence with SQLite, optional encryption at rest via sqlcipher
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    signature: HMAC request signing and canonical payloads
    time_sync: Exchange clock offset tracking
    async_p2p_client: Signed asyncio client for the P2P endpoints
    p2p_client: Synchronous client used by operator scripts
    account_pool: Trading accounts, capacity and payment methods
    pricing: Price allocation and quantity computation
    ad_creator: Advertisement creation for pending payouts
    order_discovery: Order discovery and transaction reconciliation
    chat_sync: Chat message synchronization
    conversation: Conversation state machine
    orchestrator: Periodic task scheduling and operator gating
    persistence_sqlite: Transactional ledger
    config: Configuration loading and validation
    secrets: Credential management

Example:
    >>> from p2ptrader.app import TraderApp
    >>> from p2ptrader.config import TraderConfig
    >>> from p2ptrader.secrets import load_accounts
    >>>
    >>> app = TraderApp(TraderConfig.from_yaml("config.yaml"))
    >>> app.register_accounts(load_accounts())
    >>> asyncio.run(app.run())
"""

__version__ = "0.1.0"
__all__ = [
    "errors",
    "signature",
    "time_sync",
    "async_p2p_client",
    "p2p_client",
    "exchange",
    "account_pool",
    "pricing",
    "exchange_rate",
    "payouts",
    "ad_creator",
    "order_discovery",
    "chat_sync",
    "conversation",
    "release",
    "orchestrator",
    "events",
    "persistence_sqlite",
    "db_migrations",
    "config",
    "secrets",
    "app",
]
