"""Main entry point - runs the swap coordinator and its status API."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

import uvicorn

from swapresolver.api.app import create_app
from swapresolver.chains.registry import ChainRegistry
from swapresolver.chains.simulated import SimulatedChainClient, SimulatedOrderFiller, derive_address
from swapresolver.config import Settings, get_settings
from swapresolver.coordinator import Coordinator
from swapresolver.errors import LeaseHeldError
from swapresolver.indexer.http import HttpSwapIndex
from swapresolver.indexer.memory import InMemorySwapIndex
from swapresolver.ledger.database import Database
from swapresolver.ledger.secret_store import SecretStore
from swapresolver.ledger.swap_ledger import SwapLedger
from swapresolver.orders.intake import OrderIntake
from swapresolver.orders.profitability import ProfitabilityPolicy
from swapresolver.orders.queue import PendingOrderQueue
from swapresolver.utils.locks import ResolverLock
from swapresolver.withdrawal.engine import WithdrawalEngine

logger = logging.getLogger(__name__)


def build_coordinator(settings: Settings, db: Database) -> Coordinator:
    """Wire every component from settings.

    Only dry-run wiring exists: chains are simulated and nothing is broadcast.
    """
    resolver = (settings.resolver_address or derive_address("resolver")).lower()

    filler = SimulatedOrderFiller(resolver)
    registry = ChainRegistry(SimulatedChainClient(chain_id, resolver) for chain_id in settings.chain_ids)

    if settings.indexer_url:
        index = HttpSwapIndex(
            settings.indexer_url, timeout=settings.indexer_timeout, order_hasher=filler.order_hash
        )
    else:
        index = InMemorySwapIndex()

    ledger = SwapLedger(db)
    secrets = SecretStore(db, settings.secrets_dir)
    queue = PendingOrderQueue(
        settings.pending_orders_dir, settings.completed_orders_dir, order_hasher=filler.order_hash
    )
    intake = OrderIntake(
        ledger,
        registry,
        filler,
        resolver,
        queue=queue,
        index=index,
        policy=ProfitabilityPolicy(settings.min_profit_bps),
        max_retries=settings.max_retries,
        auto_approve=settings.auto_approve,
    )
    withdrawals = WithdrawalEngine(
        ledger,
        secrets,
        registry,
        filler,
        resolver,
        max_retries=settings.max_retries,
        retry_backoff_seconds=settings.retry_backoff_seconds,
    )
    lease = ResolverLock(db, resolver, settings.instance_id, settings.lease_ttl_seconds)

    return Coordinator(
        ledger,
        secrets,
        intake,
        withdrawals,
        resolver,
        index=index,
        lease=lease,
        polling_interval=settings.polling_interval,
        auto_create_dst_escrow=settings.auto_create_dst_escrow,
        auto_withdraw_on_reveal=settings.auto_withdraw_on_reveal,
        swap_timeout_seconds=settings.swap_timeout_seconds,
        stuck_swap_seconds=settings.stuck_swap_seconds,
        archive_after_seconds=settings.archive_after_seconds,
        archive_every_ticks=settings.archive_every_ticks,
    )


class Application:
    """Runs the coordinator loop and, optionally, the status API."""

    def __init__(self, settings: Settings, once: bool = False, api: bool = True):
        self.settings = settings
        self.once = once
        self.api = api
        self.db: Optional[Database] = None
        self.coordinator: Optional[Coordinator] = None
        self.api_server: Optional[uvicorn.Server] = None

    async def start(self) -> int:
        """Start all services. Returns the process exit code."""
        logger.info("Starting swap resolver...")
        logger.info(f"Environment: {self.settings.environment}")

        if not self.settings.dry_run:
            logger.error("Only dry-run mode is available; set DRY_RUN=true")
            return 1

        self.db = Database(self.settings.database_url)
        await self.db.init()
        logger.info("Database initialized")

        self.coordinator = build_coordinator(self.settings, self.db)
        try:
            if self.once:
                await self.coordinator.run_once()
                await self.coordinator.shutdown()
                return 0

            tasks = [asyncio.create_task(self.coordinator.run())]
            if self.api:
                tasks.append(asyncio.create_task(self._run_api()))
            try:
                await tasks[0]
            finally:
                if self.api_server is not None:
                    self.api_server.should_exit = True
                await asyncio.gather(*tasks[1:], return_exceptions=True)
            return 0
        except LeaseHeldError as e:
            logger.error(f"Refusing to start: {e}")
            return 1
        finally:
            await self._cleanup()

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(self.coordinator, self.settings)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            self.api_server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await self.api_server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")
        except Exception as e:
            logger.error(f"API error: {e}")
            raise

    async def _cleanup(self):
        """Cleanup resources."""
        logger.info("Cleaning up...")
        if self.db is not None:
            await self.db.close()
        logger.info("Cleanup complete")

    def shutdown(self):
        """Signal shutdown; the in-flight tick finishes first."""
        logger.info("Shutdown requested")
        if self.coordinator is not None:
            self.coordinator.stop()


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Cross-chain swap resolver")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--no-api", action="store_true", help="Do not serve the status API")
    parser.add_argument("--interval", type=float, help="Override the polling interval (seconds)")
    return parser.parse_args(argv)


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    settings = get_settings()
    if args.interval is not None:
        settings = settings.model_copy(update={"polling_interval": args.interval})

    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Application(settings, once=args.once, api=not args.no_api)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        return loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
        return 130
    finally:
        loop.close()


if __name__ == "__main__":
    sys.exit(main())
