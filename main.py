"""Main entry point for BTC Bridge."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from config import BridgeConfig
from core.errors import ConfigurationError, NotFoundError
from core.types import StatusSnapshot
from database import SqliteLedgerStore
from intake import format_status
from ledger import TransactionLedger


def setup_logging(level: str = "INFO") -> None:
    """Setup logging configuration.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
    """
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler("btc-bridge.log"),
        ],
    )


def load_config(config_file: Optional[str]) -> BridgeConfig:
    """Load configuration from a TOML file, or from the environment (.env if present)."""
    if config_file:
        return BridgeConfig.from_file(Path(config_file))

    env_path = Path(".env")
    if env_path.exists():
        load_dotenv(env_path)
    return BridgeConfig.from_env()


async def run_service(config: BridgeConfig) -> int:
    """Run the bridge together with its HTTP API.

    Returns:
        Exit code
    """
    import uvicorn

    from api.main import create_app
    from bridge import BridgeService
    from transport import LogTransport, WebhookTransport

    logger = logging.getLogger(__name__)

    transport = WebhookTransport(config.chat_webhook_url) if config.chat_webhook_url else LogTransport()
    if not config.chat_webhook_url:
        logger.warning("CHAT_WEBHOOK_URL not set, outbound chat messages are only logged")

    service = BridgeService.from_config(config, transport)
    server = uvicorn.Server(uvicorn.Config(
        create_app(service),
        host=config.api_host,
        port=config.api_port,
        log_level="info",
    ))
    await server.serve()
    return 0


async def show_status(database_path: str, tx_id: str) -> int:
    """Print the status of one transaction without modifying it.

    Returns:
        Exit code (1 if the transaction is unknown)
    """
    if not Path(database_path).exists():
        print(f"❌ Ledger database not found: {database_path}")
        return 1

    store = SqliteLedgerStore(database_path)
    await store.start()
    try:
        tx = await TransactionLedger(store).get(tx_id)
    except NotFoundError as e:
        print(f"❌ {e}")
        return 1
    finally:
        await store.stop()

    print(format_status(StatusSnapshot.from_transaction(tx)))
    return 0


def resolve_database_path(args: argparse.Namespace) -> str:
    """Database for read-only commands, which do not need chain settings."""
    if args.database:
        return args.database
    try:
        return load_config(args.config).database_path
    except ConfigurationError:
        return os.getenv("DATABASE_PATH", "bridge.db")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="btc-bridge", description="BTC to EVM bridge")
    parser.add_argument("--config", help="TOML configuration file (default: environment)")
    subparsers = parser.add_subparsers(dest="command")

    subparsers.add_parser("run", help="Run the bridge and its API")

    status = subparsers.add_parser("status", help="Show a transaction's status")
    status.add_argument("transaction_id")
    status.add_argument("--database", help="Ledger database path (default: from configuration)")

    return parser


async def async_main(argv: Optional[List[str]] = None) -> int:
    """Async main function.

    Returns:
        Exit code
    """
    logger = logging.getLogger(__name__)
    args = build_parser().parse_args(argv)

    if args.command == "status":
        return await show_status(resolve_database_path(args), args.transaction_id)

    try:
        config = load_config(args.config)
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    try:
        return await run_service(config)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        return 1


def main() -> None:
    """Main entry point."""
    log_level = os.getenv("LOG_LEVEL", "INFO")
    setup_logging(log_level)

    logger = logging.getLogger(__name__)
    logger.info("Starting BTC Bridge...")

    exit_code = asyncio.run(async_main())
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
