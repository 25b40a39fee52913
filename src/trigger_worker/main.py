"""
Trigger Worker - Main Entry Point

Watches oracle prices and drives on-chain triggers through execution.

Usage:
    python -m trigger_worker.main                 # Run the worker
    python -m trigger_worker.main --once          # Run a single cycle and exit
    python -m trigger_worker.main --check-rpc     # Ping the RPC endpoint and exit

Configuration:
    The worker reads configuration from:
    1. Environment variables
    2. A .env file in the working directory (does not override the environment)
    3. Command line arguments

Environment Variables:
    PRIVATE_KEY                       Executor signing key (required)
    TRIGGER_CONTRACT_ADDRESS          Trigger registry contract (required)
    ORACLE_CONTRACT_ADDRESS           Price oracle contract (required)
    NETWORK                           testnet or mainnet (default: testnet)
    RPC_URL                           Override the network's default RPC URL
    MONITORED_FEEDS                   SYMBOL:INDEX list (default: BTC:3,ETH:4,HYPE:150)
    EXECUTION_TIMEOUT_SECONDS         Executing -> Failed deadline (default: 3600)
    CYCLE_INTERVAL_SECONDS            Monitoring period (default: 30)
    MAX_RETRIES                       Attempts per remote operation (default: 3)
    RETRY_DELAY_SECONDS               Delay between attempts (default: 2)
    RECOVERY_PROBE_INTERVAL_SECONDS   Probe period while halted (default: 15)
    PRICE_DECIMALS                    Fixed-point decimals of prices (default: 6)
    SETTLEMENT_HOLDER_ADDRESS         Address receiving trade proceeds (default: signer)
    TX_RECEIPT_TIMEOUT_SECONDS        Wait for a transition to be mined (default: 60)
    STALE_INTENT_SECONDS              Re-evaluate unconfirmed starts after (default: 300)
    MAX_CONCURRENT_READS              Parallel ledger reads per cycle (default: 8)
    HEALTH_CHECK_INTERVAL_SECONDS     Health check period (default: 60)
    TELEGRAM_BOT_TOKEN                Telegram bot token for alerts
    TELEGRAM_CHAT_ID                  Telegram chat ID for alerts
    LOG_LEVEL                         Logging level (DEBUG/INFO/WARNING/ERROR)
"""

from __future__ import annotations

import argparse
import asyncio
import atexit
import fcntl
import logging
import os
import signal
import sys
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator, List, Optional

from trigger_worker import __version__
from trigger_worker.core import (
    BalanceSettlementProbe,
    CoordinatorConfig,
    ExecutionCoordinator,
    InFlightRegistry,
    MonitoredFeed,
    MonitoringCycle,
    MonitorScheduler,
    OracleReader,
    RegistryScanner,
    SchedulerConfig,
)
from trigger_worker.ledger import (
    LedgerClient,
    LedgerError,
    ResilienceLayer,
    ResilientLedgerClient,
    RetryPolicy,
    TransportDegradedError,
    Web3LedgerClient,
    check_endpoint,
)
from trigger_worker.monitoring import (
    AlertManager,
    HealthChecker,
    HealthStatus,
    get_worker_status,
)

# Configure logging before imports
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = "/tmp/trigger-worker.pid"

NETWORK_RPC_URLS = {
    "testnet": "https://rpc.hyperliquid-testnet.xyz/evm",
    "mainnet": "https://rpc.hyperliquid.xyz/evm",
}


class ConfigurationError(Exception):
    """Raised at startup when required configuration is missing or invalid."""
    pass


class SingletonWorkerError(Exception):
    """Raised when another worker instance is already running."""
    pass


@contextmanager
def singleton_lock(pid_file: str = DEFAULT_PID_FILE) -> Generator[None, None, None]:
    """
    Ensure only one worker signs with this key on this host.

    Uses a non-blocking exclusive flock on the PID file.

    Raises:
        SingletonWorkerError: If another instance holds the lock
    """
    pid_path = Path(pid_file)

    existing_pid = None
    try:
        existing_pid = pid_path.read_text().strip()
    except FileNotFoundError:
        pass

    # "a+" so we don't truncate before holding the lock
    fp = open(pid_path, "a+")

    try:
        fcntl.flock(fp.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError:
        fp.close()
        if existing_pid:
            raise SingletonWorkerError(
                f"Another worker instance is already running (PID: {existing_pid})"
            )
        raise SingletonWorkerError("Another worker instance is already running")

    fp.seek(0)
    fp.truncate()
    fp.write(str(os.getpid()))
    fp.flush()

    def cleanup():
        try:
            fcntl.flock(fp.fileno(), fcntl.LOCK_UN)
            fp.close()
            pid_path.unlink(missing_ok=True)
        except OSError:
            pass

    atexit.register(cleanup)

    try:
        logger.info(f"Acquired singleton lock (PID: {os.getpid()}, file: {pid_file})")
        yield
    finally:
        cleanup()
        atexit.unregister(cleanup)


@dataclass
class WorkerConfig:
    """Complete worker configuration."""

    # Credentials and endpoints
    private_key: str = ""
    network: str = "testnet"
    rpc_url: str = ""
    trigger_contract_address: str = ""
    oracle_contract_address: str = ""

    # Monitoring
    monitored_feeds: List[MonitoredFeed] = field(default_factory=list)
    price_decimals: int = 6
    cycle_interval_seconds: float = 30
    max_concurrent_reads: int = 8
    market_status_interval_seconds: float = 120

    # Execution
    execution_timeout_seconds: float = 3600
    stale_intent_seconds: float = 300
    settlement_holder_address: Optional[str] = None
    tx_receipt_timeout_seconds: float = 60

    # Resilience
    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    recovery_probe_interval_seconds: float = 15
    request_timeout_seconds: float = 10.0

    # Monitoring
    health_check_interval_seconds: float = 60

    # Alerts
    telegram_bot_token: Optional[str] = None
    telegram_chat_id: Optional[str] = None

    @classmethod
    def from_env(cls) -> "WorkerConfig":
        """
        Load configuration from environment variables.

        Raises:
            ConfigurationError: If a value cannot be parsed
        """
        network = os.environ.get("NETWORK", "testnet").lower()
        try:
            return cls(
                private_key=os.environ.get("PRIVATE_KEY", ""),
                network=network,
                rpc_url=os.environ.get("RPC_URL") or NETWORK_RPC_URLS.get(network, ""),
                trigger_contract_address=os.environ.get("TRIGGER_CONTRACT_ADDRESS", ""),
                oracle_contract_address=os.environ.get("ORACLE_CONTRACT_ADDRESS", ""),
                monitored_feeds=MonitoredFeed.parse_list(
                    os.environ.get("MONITORED_FEEDS", "BTC:3,ETH:4,HYPE:150")
                ),
                price_decimals=int(os.environ.get("PRICE_DECIMALS", "6")),
                cycle_interval_seconds=float(os.environ.get("CYCLE_INTERVAL_SECONDS", "30")),
                max_concurrent_reads=int(os.environ.get("MAX_CONCURRENT_READS", "8")),
                market_status_interval_seconds=float(
                    os.environ.get("MARKET_STATUS_INTERVAL_SECONDS", "120")
                ),
                execution_timeout_seconds=float(
                    os.environ.get("EXECUTION_TIMEOUT_SECONDS", "3600")
                ),
                stale_intent_seconds=float(os.environ.get("STALE_INTENT_SECONDS", "300")),
                settlement_holder_address=os.environ.get("SETTLEMENT_HOLDER_ADDRESS") or None,
                tx_receipt_timeout_seconds=float(
                    os.environ.get("TX_RECEIPT_TIMEOUT_SECONDS", "60")
                ),
                max_retries=int(os.environ.get("MAX_RETRIES", "3")),
                retry_delay_seconds=float(os.environ.get("RETRY_DELAY_SECONDS", "2")),
                recovery_probe_interval_seconds=float(
                    os.environ.get("RECOVERY_PROBE_INTERVAL_SECONDS", "15")
                ),
                health_check_interval_seconds=float(
                    os.environ.get("HEALTH_CHECK_INTERVAL_SECONDS", "60")
                ),
                telegram_bot_token=os.environ.get("TELEGRAM_BOT_TOKEN"),
                telegram_chat_id=os.environ.get("TELEGRAM_CHAT_ID"),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    def validate(self) -> None:
        """
        Fail fast on configuration the worker cannot start without.

        Raises:
            ConfigurationError: Listing every problem found
        """
        problems = []

        if not self.private_key or self.private_key == "your_private_key_here":
            problems.append("PRIVATE_KEY is required")
        if not self.rpc_url:
            problems.append(f"RPC_URL is required (unknown NETWORK '{self.network}')")
        if not self.trigger_contract_address:
            problems.append("TRIGGER_CONTRACT_ADDRESS is required")
        if not self.oracle_contract_address:
            problems.append("ORACLE_CONTRACT_ADDRESS is required")
        if not self.monitored_feeds:
            problems.append("MONITORED_FEEDS must list at least one SYMBOL:INDEX")
        if self.cycle_interval_seconds <= 0:
            problems.append("CYCLE_INTERVAL_SECONDS must be positive")
        if self.execution_timeout_seconds <= 0:
            problems.append("EXECUTION_TIMEOUT_SECONDS must be positive")
        if self.max_retries < 1:
            problems.append("MAX_RETRIES must be at least 1")

        if problems:
            raise ConfigurationError("; ".join(problems))


class TriggerWorker:
    """
    Worker process orchestrator.

    Manages the lifecycle of all components:
    - Ledger client (web3) behind the resilience layer
    - Monitoring cycle (scanner, oracle, coordinator) and its scheduler
    - Health checks and alerts
    """

    def __init__(self, config: WorkerConfig, ledger: Optional[LedgerClient] = None):
        """
        Args:
            config: Worker configuration
            ledger: Pre-built raw ledger client (built from config if None)
        """
        self.config = config
        self._raw_ledger = ledger
        self._running = False
        self._stopped = True
        self._shutdown_event = asyncio.Event()
        self._started_at: Optional[datetime] = None

        # Components (initialized on start)
        self._ledger: Optional[ResilientLedgerClient] = None
        self._resilience: Optional[ResilienceLayer] = None
        self._cycle: Optional[MonitoringCycle] = None
        self._scheduler: Optional[MonitorScheduler] = None
        self._health_checker: Optional[HealthChecker] = None
        self._alert_manager: Optional[AlertManager] = None

    @property
    def scheduler(self) -> Optional[MonitorScheduler]:
        return self._scheduler

    @property
    def cycle(self) -> Optional[MonitoringCycle]:
        return self._cycle

    def build(self) -> None:
        """
        Construct every component from config.

        Raises:
            ConfigurationError: If the configuration is invalid
        """
        self.config.validate()
        config = self.config

        if self._raw_ledger is None:
            self._raw_ledger = Web3LedgerClient(
                rpc_url=config.rpc_url,
                trigger_contract_address=config.trigger_contract_address,
                oracle_contract_address=config.oracle_contract_address,
                private_key=config.private_key,
                price_decimals=config.price_decimals,
                request_timeout=config.request_timeout_seconds,
                receipt_timeout=config.tx_receipt_timeout_seconds,
            )

        self._alert_manager = AlertManager(
            telegram_bot_token=config.telegram_bot_token,
            telegram_chat_id=config.telegram_chat_id,
        )

        self._resilience = ResilienceLayer(
            RetryPolicy(
                max_retries=config.max_retries,
                retry_delay_seconds=config.retry_delay_seconds,
            )
        )
        self._ledger = ResilientLedgerClient(self._raw_ledger, self._resilience)

        coordinator = ExecutionCoordinator(
            ledger=self._ledger,
            settlement_probe=BalanceSettlementProbe(
                self._ledger, holder=config.settlement_holder_address
            ),
            config=CoordinatorConfig(
                execution_timeout_seconds=config.execution_timeout_seconds,
                stale_intent_seconds=config.stale_intent_seconds,
            ),
            guard=InFlightRegistry(),
            alert_manager=self._alert_manager,
        )
        self._cycle = MonitoringCycle(
            scanner=RegistryScanner(self._ledger, config.max_concurrent_reads),
            oracle=OracleReader(self._ledger, config.monitored_feeds, config.max_concurrent_reads),
            coordinator=coordinator,
        )
        self._scheduler = MonitorScheduler(
            cycle=self._cycle,
            probe=self._ledger.probe,
            reset=self._resilience.reset,
            config=SchedulerConfig(
                cycle_interval_seconds=config.cycle_interval_seconds,
                recovery_probe_interval_seconds=config.recovery_probe_interval_seconds,
                market_status_interval_seconds=config.market_status_interval_seconds,
            ),
            alert_manager=self._alert_manager,
        )
        self._health_checker = HealthChecker(
            ledger=self._raw_ledger,
            scheduler=self._scheduler,
            guard=coordinator.guard,
            cycle_staleness_threshold=max(3 * config.cycle_interval_seconds, 60),
            intent_age_threshold=2 * config.execution_timeout_seconds,
        )

    async def start(self) -> None:
        """Build, verify connectivity, and run until shutdown."""
        logger.info("=" * 60)
        logger.info(f"TRIGGER WORKER v{__version__}")
        logger.info("=" * 60)
        logger.info(f"Network: {self.config.network} ({self.config.rpc_url})")
        logger.info(f"Registry: {self.config.trigger_contract_address}")
        logger.info(f"Feeds: {', '.join(f.symbol for f in self.config.monitored_feeds)}")
        logger.info("=" * 60)

        self._running = True
        self._stopped = False
        self._started_at = datetime.now(timezone.utc)
        self._shutdown_event.clear()

        self._setup_signal_handlers()

        try:
            self.build()
            await self._verify_startup()

            if self._shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return

            await self._scheduler.start()

            logger.info("Worker started successfully")
            await self._run_loop()

        finally:
            await self.stop()

    async def run_once(self) -> int:
        """Build and run exactly one monitoring cycle. Returns an exit code."""
        self.build()
        try:
            report = await self._scheduler.tick()
        finally:
            await self._close_ledger()

        if report is None:
            logger.error(f"Cycle did not complete: {self._scheduler.stats.last_error}")
            return 1
        logger.info(f"Cycle complete: {report.summary()}")
        return 0

    async def check_rpc(self) -> int:
        """
        Ping the endpoint once. Returns an exit code.

        Needs only the RPC URL: no key or contract addresses are read.
        """
        if self._raw_ledger is not None:
            try:
                block = await self._raw_ledger.ping()
            except LedgerError as e:
                logger.error(f"RPC offline: {e}")
                return 1
            finally:
                await self._close_ledger()
            logger.info(f"RPC online - block {block}")
            return 0

        if not self.config.rpc_url:
            logger.error(f"No RPC URL (set RPC_URL or a known NETWORK, got '{self.config.network}')")
            return 1

        logger.info(f"Checking {self.config.rpc_url}")
        try:
            chain_id, block = await check_endpoint(
                self.config.rpc_url, self.config.request_timeout_seconds
            )
        except LedgerError as e:
            logger.error(f"RPC offline: {e}")
            return 1

        logger.info(f"RPC online - chain {chain_id}, block {block}")
        return 0

    async def stop(self) -> None:
        """Stop the worker gracefully."""
        if self._stopped:
            return
        self._stopped = True

        logger.info("Shutting down...")
        self._running = False
        self._shutdown_event.set()

        if self._scheduler:
            try:
                await self._scheduler.stop()
            except Exception as e:
                logger.warning(f"Error stopping scheduler: {e}")

        await self._close_ledger()
        logger.info("Shutdown complete")

    async def request_shutdown(self, reason: str = "manual") -> None:
        if not self._running:
            return
        logger.warning(f"Shutdown requested: {reason}")
        self._running = False
        self._shutdown_event.set()

    async def _close_ledger(self) -> None:
        close = getattr(self._raw_ledger, "close", None)
        if close is None:
            return
        try:
            await close()
        except Exception as e:
            logger.warning(f"Error closing ledger client: {e}")

    async def _verify_startup(self) -> None:
        """Log connectivity and one price read before the first cycle."""
        try:
            block = await self._ledger.ping()
            logger.info(f"Connected to ledger at block {block}")
        except (TransportDegradedError, LedgerError) as e:
            # Scheduler will start halted-probing on its first cycle
            logger.warning(f"Ledger not reachable at startup: {e}")
            return

        snapshot = await self._cycle.oracle.read_prices()
        for feed in self._cycle.oracle.feeds:
            price = snapshot.get(feed.index)
            logger.info(
                f"Price verification: {feed.symbol} (feed {feed.index}) = "
                f"{price if price is not None else 'NOT FOUND'}"
            )

    async def _run_loop(self) -> None:
        """Periodic health checks until shutdown."""
        interval = self.config.health_check_interval_seconds

        while self._running:
            try:
                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                    break
                except asyncio.TimeoutError:
                    pass

                health = await self._health_checker.check_all()
                unhealthy = [
                    c for c in health.components if c.status == HealthStatus.UNHEALTHY
                ]
                if unhealthy:
                    logger.warning(f"Health check failed: {[c.component for c in unhealthy]}")
                    for component in unhealthy:
                        await asyncio.to_thread(
                            self._alert_manager.alert_health_issue,
                            component=component.component,
                            status=component.status.value,
                            message=component.message,
                        )

                stats = self._cycle.coordinator.stats
                logger.info(
                    f"Stats: cycles={self._scheduler.stats.cycles_run}, "
                    f"started={stats.starts_accepted}, completed={stats.completions}, "
                    f"timeouts={stats.timeouts}, guarded={len(self._cycle.coordinator.guard)}, "
                    f"status={get_worker_status(health)}"
                )

            except Exception as e:
                logger.error(f"Error in main loop: {e}")
                await asyncio.sleep(5)

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        def handle_signal(sig):
            logger.info(f"Received signal {sig}")
            self._running = False
            self._shutdown_event.set()

        try:
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass


def load_env_file(path: str = ".env") -> None:
    """Load environment variables from .env file if it exists."""
    env_path = Path(path)
    if env_path.exists():
        logger.info(f"Loading environment from {env_path}")
        with open(env_path) as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith("#") and "=" in line:
                    key, _, value = line.partition("=")
                    value = value.strip().strip('"').strip("'")
                    os.environ.setdefault(key.strip(), value)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Trigger monitoring and execution worker",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "--once",
        action="store_true",
        help="Run a single monitoring cycle and exit",
    )
    mode.add_argument(
        "--check-rpc",
        action="store_true",
        help="Ping the RPC endpoint and exit",
    )
    parser.add_argument(
        "--env-file",
        default=".env",
        help="Path to .env file (default: .env)",
    )
    parser.add_argument(
        "--pid-file",
        default=DEFAULT_PID_FILE,
        help=f"Singleton lock file (default: {DEFAULT_PID_FILE})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override log level",
    )
    return parser.parse_args(argv)


async def main_async(args: argparse.Namespace) -> int:
    """Async main function."""
    try:
        config = WorkerConfig.from_env()
        if args.check_rpc:
            return await TriggerWorker(config).check_rpc()
        config.validate()
    except ConfigurationError as e:
        logger.error(str(e))
        return 1

    worker = TriggerWorker(config)

    if args.once:
        return await worker.run_once()

    try:
        await worker.start()
        return 0
    except KeyboardInterrupt:
        logger.info("Shutdown requested")
        return 0
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    load_env_file(args.env_file)

    if args.log_level:
        logging.getLogger().setLevel(getattr(logging, args.log_level))

    # Read-only, no lock needed
    if args.check_rpc:
        return asyncio.run(main_async(args))

    try:
        with singleton_lock(args.pid_file):
            try:
                return asyncio.run(main_async(args))
            except KeyboardInterrupt:
                return 0
    except SingletonWorkerError as e:
        logger.error(str(e))
        print(f"\n{e}\n", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
