"""Run the P2P trader.

With ``--dry-run`` the engine is wired to an in-memory exchange and payout
source and a scripted buyer walks one payout through the whole flow:
advertisement, order, three-question chat, payment details. Without it the
engine connects to the exchange with the configured accounts and runs until
interrupted.
"""
import argparse
import asyncio
import signal
import sys
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import the p2ptrader package
sys.path.insert(0, str(Path(__file__).parent.parent))

from p2ptrader.app import TraderApp
from p2ptrader.config import TraderConfig
from p2ptrader.exchange import InMemoryExchange
from p2ptrader.logging_setup import logger, setup_logging
from p2ptrader.payouts import InMemoryPayoutSource, PayoutRecord
from p2ptrader.persistence_sqlite import SQLiteStore
from p2ptrader.secrets import AccountCredentials, load_accounts


def console_confirm(message: str) -> bool:
    """Operator confirmation for manual mode; runs in a worker thread."""
    return input(f"{message} [y/N] ").strip().lower() in ("y", "yes")


def load_config(path: Path) -> TraderConfig:
    if path.exists():
        logger.info(f"Loaded config from {path}")
        return TraderConfig.from_yaml(str(path))
    logger.info("Using default configuration")
    return TraderConfig()


async def dry_run(config: TraderConfig) -> None:
    exchange = InMemoryExchange(user_id="demo-seller")
    payouts = InMemoryPayoutSource([PayoutRecord("demo-1", Decimal("15000"), "+79990000000", "Tinkoff")])
    app = TraderApp(
        config,
        store=SQLiteStore(Path(":memory:")),
        client_factory=lambda account_id, key, secret: exchange,
        payout_source=payouts,
    )
    app.register_accounts([AccountCredentials("demo", "demo-key", "demo-secret")])
    await app.initialize()

    await app.intake.intake()
    await app.ads.create_pending()
    ad_id = next(iter(exchange.ads))
    logger.info(f"Advertisement posted | item_id={ad_id} price={exchange.ads[ad_id]['price']}")

    order_id = exchange.add_order(ad_id, amount="15000")
    await app.discovery.discover_all()
    await app.conversation.start_pending_conversations()

    for answer in ("да", "смогу", "подтверждаю"):
        exchange.add_counterparty_message(order_id, answer)
        await app.chat.sync_all()
        await app.conversation.process_pending_messages()

    for text in exchange.sent_messages(order_id):
        logger.info(f"Sent to buyer:\n{text}")
    tx = app.store.get_transaction_by_order_id(order_id)
    logger.info(f"Transaction finished dry run | status={tx.status.value} step={tx.chat_step}")
    await app.clock.stop()
    await app.pool.close()
    app.store.close()


async def live(config: TraderConfig) -> None:
    try:
        accounts = load_accounts()
    except ValueError as e:
        logger.error(f"Failed to load credentials: {e}")
        logger.info("Set P2P_API_KEY and P2P_API_SECRET, or create ~/.p2ptrader_accounts.json")
        return

    app = TraderApp(config, confirm=console_confirm)
    app.register_accounts(accounts)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: asyncio.ensure_future(app.stop()))

    logger.info(f"Starting trader | accounts={len(accounts)} mode={config.scheduler.mode}")
    await app.run()
    logger.info("Trader stopped")


def main():
    parser = argparse.ArgumentParser(description="P2P trader")
    parser.add_argument("--config", default=str(Path(__file__).parent.parent / "config.yaml"))
    parser.add_argument("--dry-run", action="store_true", help="Use the in-memory exchange")
    args = parser.parse_args()

    config = load_config(Path(args.config))
    setup_logging(log_file=config.persistence.log_file, level=config.persistence.log_level, enable_console=True)
    asyncio.run(dry_run(config) if args.dry_run else live(config))


if __name__ == "__main__":
    main()
