"""
Periodic retry worker.

Every scan interval (with jitter), runs a retry scan for each tenant
with an active QuickBooks connection. One tenant failing does not stop
the others. SIGTERM/SIGINT finish the current scan and exit.
"""

import asyncio
import logging
import random
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from .config import load_config
from .services import build_services
from .store import PayrollStore
from .sync_engine import BatchResult, SyncEngine

logger = logging.getLogger(__name__)


def apply_jitter(base_value: float, jitter_pct: float = 0.1) -> float:
    """
    Apply random jitter to a value.

    Args:
        base_value: Base value in seconds
        jitter_pct: Jitter fraction (default 10%)

    Returns:
        Value with +/- jitter_pct random variation
    """
    jitter = base_value * jitter_pct
    return base_value + random.uniform(-jitter, jitter)


class SyncWorker:
    """Runs SyncEngine.scan_tenant for every active tenant on a timer."""

    def __init__(
        self,
        engine: SyncEngine,
        store: PayrollStore,
        interval_seconds: int = 900,
        error_backoff_seconds: int = 60,
    ):
        self.engine = engine
        self.store = store
        self.interval_seconds = interval_seconds
        self.error_backoff_seconds = error_backoff_seconds

        self.running = False
        self.shutdown_event = asyncio.Event()
        self.last_scan_at: Optional[datetime] = None

        self.stats = {
            "scans_completed": 0,
            "tenants_scanned": 0,
            "tenant_errors": 0,
            "shifts_synced": 0,
            "shifts_failed": 0,
            "shifts_dead_lettered": 0,
            "batches_rate_limited": 0,
        }

    async def run_once(self) -> Dict[str, BatchResult]:
        """
        Scan every tenant with an active connection once.

        Returns:
            BatchResult per tenant that scanned successfully
        """
        results: Dict[str, BatchResult] = {}
        tenants: List[str] = await self.store.list_active_tenants()

        for tenant_id in tenants:
            try:
                batch = await self.engine.scan_tenant(tenant_id)
            except Exception as e:
                self.stats["tenant_errors"] += 1
                logger.error(f"Scan failed tenant={tenant_id}: {e}", exc_info=True)
                continue

            results[tenant_id] = batch
            summary = batch.summary()
            self.stats["tenants_scanned"] += 1
            self.stats["shifts_synced"] += summary["synced"]
            self.stats["shifts_failed"] += summary["failed"]
            self.stats["shifts_dead_lettered"] += summary["dead_letter"]
            if batch.halted == "rate_limited":
                self.stats["batches_rate_limited"] += 1

        self.stats["scans_completed"] += 1
        self.last_scan_at = datetime.now(timezone.utc)
        logger.info(f"Scan complete tenants={len(tenants)} scanned={len(results)}")
        return results

    async def start(self, install_signal_handlers: bool = True):
        """Run scans until shutdown is requested."""
        if self.running:
            logger.warning("Worker already running")
            return

        self.running = True
        logger.info(f"Starting sync worker (scan interval: {self.interval_seconds}s)")

        if install_signal_handlers:
            self._setup_signal_handlers()

        try:
            await self._run_loop()
        finally:
            self.running = False
            logger.info(f"Sync worker stopped stats={self.stats}")

    def stop(self):
        self.running = False
        self.shutdown_event.set()

    async def _run_loop(self):
        while self.running and not self.shutdown_event.is_set():
            try:
                await self.run_once()
                wait_time = apply_jitter(float(self.interval_seconds))
            except Exception as e:
                logger.error(f"Error in scan loop: {e}", exc_info=True)
                wait_time = float(self.error_backoff_seconds)

            logger.debug(f"Waiting {wait_time:.1f}s until next scan")

            try:
                await asyncio.wait_for(self.shutdown_event.wait(), timeout=wait_time)
                break  # Shutdown signaled
            except asyncio.TimeoutError:
                continue

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger.info(f"Received signal {signum}, initiating shutdown...")
            self.stop()

        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")


async def main(argv: Optional[List[str]] = None):
    """Main entry point for running the worker as a standalone process."""
    import argparse

    parser = argparse.ArgumentParser(description="QuickBooks payroll sync worker")
    parser.add_argument(
        "--env-file",
        type=str,
        help="Path to a .env file (uses environment variables if not specified)"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (defaults to QBO_LOG_LEVEL)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single scan and exit"
    )

    args = parser.parse_args(argv)

    config = load_config(Path(args.env_file) if args.env_file else None)

    # Setup logging
    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    services = build_services(config)
    worker = SyncWorker(
        services.engine,
        services.store,
        interval_seconds=config.scan_interval_seconds,
    )

    if args.once:
        await worker.run_once()
        return

    await worker.start()


def run():
    """Console script entry point."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
