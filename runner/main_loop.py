"""
cyclebot Runner

Wires configuration, repositories, exchange clients, the reconciliation
engine, the cycle creator and the scheduler, and exposes them on the
command line:

    python -m runner.main_loop --update [--exchange BINANCE]
    python -m runner.main_loop --new
    python -m runner.main_loop --cancel 12
    python -m runner.main_loop --schedule
"""

import logging
import signal
import sys
from pathlib import Path
from typing import Callable, Dict, Optional

from core.cycle_creation import CycleCreator
from core.exceptions import ConfigError, CycleBotError, RepositoryUnavailable
from core.exchange_base import ExchangeClient
from core.exchanges import build_clients
from core.manual_cancel import cancel_all_buys, cancel_cycle
from core.reconcile import ReconcileSummary, ReconciliationEngine
from infra.instance_lock import check_single_instance
from infra.metrics import MetricsRecorder
from infra.repository import AccumulationRepository, CycleRepository
from infra.scheduler import Scheduler, in_process_runners, subprocess_runners
from tools.config_validator import BotConfig, load_bot_config, validate_all_configs

logger = logging.getLogger(__name__)


def setup_logging(config: BotConfig) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def load_config(config_dir: str) -> BotConfig:
    """
    Validate and load configuration, reporting every problem.

    Raises:
        ConfigError: if validation fails
    """
    validation_errors = validate_all_configs(config_dir)
    if validation_errors:
        logger.error("=" * 80)
        logger.error("CONFIGURATION VALIDATION FAILED")
        logger.error("=" * 80)
        for idx, error in enumerate(validation_errors, start=1):
            logger.error(f"{idx:>2}. {error}")
        raise ConfigError(f"Invalid configuration: {len(validation_errors)} error(s) found")
    return load_bot_config(config_dir)


def prompt_force_delete(error: str) -> bool:
    """Ask on the terminal whether to delete the cycle despite a failed cancel."""
    print(f"Order cancel failed: {error}")
    answer = input("Delete the cycle from the database anyway? [Y/n]: ").strip().lower()
    return answer in ("", "y", "yes")


class CycleBot:
    """
    Process-level wiring.

    Repository and config problems are fatal: the constructor raises and
    main() exits with status 1.
    """

    def __init__(self, config_dir: str = "config", exchange: Optional[str] = None,
                 clients: Optional[Dict[str, ExchangeClient]] = None,
                 config: Optional[BotConfig] = None):
        self.config_dir = config_dir
        if config is None:
            config = load_config(config_dir)
        self.config = config

        self.metrics = MetricsRecorder(enabled=config.metrics.enabled, port=config.metrics.port)

        self.cycles = CycleRepository(config.storage.cycles_file)
        self.accumulations = AccumulationRepository(config.storage.accumulations_file)
        self.cycles.check()
        self.accumulations.check()

        self.clients = clients if clients is not None else build_clients(config, only=exchange)
        self.engine = ReconciliationEngine(self.cycles, self.accumulations, self.clients, config)
        self.creator = CycleCreator(self.cycles, self.clients, config)

    def update(self, exchange: Optional[str] = None) -> ReconcileSummary:
        return self.engine.run(exchange)

    def new(self, exchange: Optional[str] = None) -> int:
        return len(self.creator.create_cycles(exchange))

    def cancel(self, cycle_id: int, exchange: Optional[str] = None,
               confirm: Callable[[str], bool] = prompt_force_delete) -> bool:
        result = cancel_cycle(self.cycles, self.clients, cycle_id, exchange, confirm_force_delete=confirm)
        if result.error:
            logger.error(f"Cycle {cycle_id}: {result.error}")
        return result.deleted

    def cancel_all(self, exchange: Optional[str] = None) -> Dict[str, int]:
        return cancel_all_buys(self.cycles, self.clients, exchange)

    def build_scheduler(self) -> Scheduler:
        settings = self.config.scheduler
        if settings.task_mode == "subprocess":
            runners = subprocess_runners(settings, self.config_dir)
        else:
            runners = in_process_runners(self.engine, self.creator)
        scheduler = Scheduler(settings, runners=runners, tasks_file=settings.tasks_file)
        if scheduler.load_tasks_from_file() == 0 and settings.create_default_tasks:
            logger.info("No scheduled tasks found, creating defaults")
            scheduler.create_default_tasks()
        return scheduler

    def run_scheduler(self) -> None:
        lock = check_single_instance(self.config.app.name, lock_dir=self.config.storage.lock_dir)
        if not lock:
            raise RuntimeError("Another cyclebot instance is already running")

        self.metrics.start()
        scheduler = self.build_scheduler()
        for task in scheduler.get_all_tasks():
            logger.info(f"Task {task.name} ({task.type}, {scheduler.describe_interval(task)}) "
                        f"next run {task.next_scheduled_at:%Y-%m-%d %H:%M:%S}")

        def _shutdown(signum, frame):
            logger.info(f"Received signal {signum}, stopping scheduler")
            scheduler.stop()

        signal.signal(signal.SIGTERM, _shutdown)
        signal.signal(signal.SIGINT, _shutdown)

        scheduler.start()
        try:
            scheduler.wait()
        finally:
            scheduler.stop()
            lock.release()


def list_tasks(config: BotConfig) -> None:
    scheduler = Scheduler(config.scheduler, runners=in_process_runners(None, None),
                          tasks_file=config.scheduler.tasks_file)
    scheduler.load_tasks_from_file()
    tasks = scheduler.get_all_tasks()
    if not tasks:
        print("No scheduled tasks")
    for task in tasks:
        state = "enabled" if task.enabled else "disabled"
        exchange = task.exchange or "all exchanges"
        print(f"{task.name:<20} {task.type:<7} {state:<9} {scheduler.describe_interval(task):<22} "
              f"{exchange:<14} next {task.next_scheduled_at:%Y-%m-%d %H:%M}")


def main(argv=None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="cyclebot BTC/USDC cycle trader")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--exchange", help="Restrict to one exchange (BINANCE, MEXC, KUCOIN, KRAKEN)")
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--update", "-u", action="store_true", help="Run one reconciliation pass")
    action.add_argument("--once", action="store_true", help="Alias of --update")
    action.add_argument("--new", "-n", action="store_true", help="Create a new cycle")
    action.add_argument("--cancel", "-c", type=int, metavar="ID", help="Cancel and delete one cycle")
    action.add_argument("--cancel-all", action="store_true", help="Cancel every buy-state cycle")
    action.add_argument("--list-tasks", action="store_true", help="Show scheduled tasks")
    action.add_argument("--schedule", action="store_true", help="Run the task scheduler (default)")
    args = parser.parse_args(argv)

    try:
        config = load_config(args.config_dir)
    except ConfigError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    if args.list_tasks:
        list_tasks(config)
        return 0

    setup_logging(config)
    try:
        bot = CycleBot(args.config_dir, exchange=args.exchange, config=config)
    except (ConfigError, RepositoryUnavailable) as e:
        logger.error(f"Startup failed: {e}")
        return 1

    try:
        if args.update or args.once:
            summary = bot.update(args.exchange)
            return 0 if not summary.skipped_exchanges else 2
        if args.new:
            bot.new(args.exchange)
            return 0
        if args.cancel is not None:
            return 0 if bot.cancel(args.cancel, args.exchange) else 1
        if args.cancel_all:
            counts = bot.cancel_all(args.exchange)
            return 0 if counts["failed"] == 0 else 1
        bot.run_scheduler()
        return 0
    except RepositoryUnavailable as e:
        logger.error(f"Cycle store unavailable, stopping: {e}")
        return 1
    except (CycleBotError, RuntimeError) as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
