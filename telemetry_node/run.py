"""
Telemetry Sync Node Entry Point
Runs the periodic sync/online-check scheduler, or a single named task
Graceful shutdown on SIGINT/SIGTERM: in-flight ticks finish within the grace period
"""
import argparse
import asyncio
import json
import logging
import os
import signal
import sys
from typing import Optional

from .config import Config
from .logging_config import setup_logging_from_config
from .metrics import start_metrics_server
from .telemetry_infrastructure import (
    IdempotencyCache,
    InMemoryRepository,
    RateController,
    Repository,
    SqlRepository,
    VendorHttpClient,
    close_sqlalchemy,
    create_tables,
    health_check,
    init_sqlalchemy,
)
from .telemetry_infrastructure.models import get_timezone
from .telemetry_sync import Scheduler, ScheduledTaskService, build_scheduler

logger = logging.getLogger(__name__)

# Global shutdown event shared with the scheduler loops and the DB retry loop
_shutdown_event = asyncio.Event()
_scheduler: Optional[Scheduler] = None


class Runtime:
    """Long-lived collaborators shared by every task"""

    def __init__(self, repository: Repository, http_client: VendorHttpClient, cache: IdempotencyCache,
                 service: ScheduledTaskService, uses_database: bool):
        self.repository = repository
        self.http_client = http_client
        self.cache = cache
        self.service = service
        self.uses_database = uses_database

    async def close(self):
        await self.cache.stop_cleanup_task()
        try:
            await asyncio.wait_for(self.http_client.close(), timeout=5.0)
        except Exception as e:
            logger.debug(f"Error closing HTTP client: {e}")
        try:
            await self.repository.close()
        except Exception as e:
            logger.debug(f"Error closing repository: {e}")
        if self.uses_database:
            try:
                await asyncio.wait_for(close_sqlalchemy(), timeout=5.0)
            except Exception as e:
                logger.debug(f"Error closing database: {e}")


def _handle_shutdown(sig=None, frame=None):
    """Handle shutdown signals (sync context)"""
    sig_name = signal.Signals(sig).name if sig else "UNKNOWN"
    logger.info(f"Received {sig_name} signal, initiating shutdown...")
    _shutdown_event.set()
    if _scheduler:
        _scheduler.running = False


async def _async_shutdown():
    """Async shutdown handler"""
    logger.info("Shutdown initiated...")
    _shutdown_event.set()


def _setup_signal_handlers(loop: asyncio.AbstractEventLoop):
    """Setup signal handlers for graceful shutdown"""
    if sys.platform == 'win32':
        # SIGTERM is not available on Windows
        signal.signal(signal.SIGINT, _handle_shutdown)
        logger.debug("Registered SIGINT handler for Windows")
    else:
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(
                    sig,
                    lambda s=sig: asyncio.create_task(_async_shutdown())
                )
                logger.debug(f"Registered async handler for {sig.name}")
            except (NotImplementedError, ValueError) as e:
                signal.signal(sig, _handle_shutdown)
                logger.debug(f"Registered sync handler for {sig.name}: {e}")


async def build_runtime(memory_fixture: Optional[str] = None, start_cache_cleanup: bool = True) -> Runtime:
    """
    Wire repository, HTTP client, cache and task service.

    Args:
        memory_fixture: JSON fixture for an in-memory repository; None uses PostgreSQL
        start_cache_cleanup: Start the periodic sweep of expired cache entries
    """
    if memory_fixture:
        repository: Repository = InMemoryRepository.from_json(
            memory_fixture, zone=get_timezone(Config.get('sync.timezone'))
        )
        uses_database = False
        logger.info(f"Using in-memory repository seeded from {memory_fixture}")
    else:
        await init_sqlalchemy(retry=True, shutdown_event=_shutdown_event)
        await create_tables()
        health = await health_check()
        logger.info(f"Database health: healthy={health['healthy']}, latency={health['latency_ms']:.1f}ms")
        repository = SqlRepository()
        uses_database = True

    http_client = VendorHttpClient(
        timeout_seconds=Config.get_float('sync.request_timeout_seconds', 30),
    )
    cache = IdempotencyCache()
    if start_cache_cleanup:
        await cache.start_cleanup_task()
    service = ScheduledTaskService.from_config(repository, http_client, cache, RateController.from_config())
    return Runtime(repository, http_client, cache, service, uses_database)


async def _run_scheduler(runtime: Runtime):
    """Run the scheduler until a shutdown signal arrives"""
    global _scheduler

    grace = Config.get_float('shutdown.grace_period_seconds', 5.0)
    _scheduler = build_scheduler(runtime.service, shutdown_event=_shutdown_event)
    _scheduler.start()
    try:
        await _scheduler.wait()
    finally:
        await _scheduler.stop(grace_period=grace)
        for name, stats in _scheduler.get_stats().items():
            logger.info(f"Loop {name}: runs={stats['runs']}, failures={stats['failures']}")


async def _run_task(runtime: Runtime, name: str, force: bool) -> int:
    if name not in runtime.service.available_tasks():
        logger.error(f"Unknown task: {name} (available: {', '.join(runtime.service.available_tasks())})")
        return 2
    result = await runtime.service.execute_task(name, force=force)
    print(json.dumps(result, default=str, ensure_ascii=False, indent=2))
    return 0 if result['success'] else 1


def _print_tasks():
    service = ScheduledTaskService.from_config(
        InMemoryRepository(), VendorHttpClient(), IdempotencyCache(), RateController()
    )
    for name, description in service.available_tasks().items():
        print(f"{name:<22} {description}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='telemetry-node',
        description='Device telemetry synchronization and online-state engine',
    )
    parser.add_argument('--config', help='Path to config.json (overrides TELEMETRY_CONFIG_FILE)')
    parser.add_argument('--memory', metavar='FIXTURE',
                        help='Use an in-memory repository seeded from a JSON fixture instead of PostgreSQL')

    commands = parser.add_subparsers(dest='command')
    commands.add_parser('run', help='Run the periodic scheduler (default)')
    task = commands.add_parser('task', help='Run one task immediately')
    task.add_argument('name', help='Task name (see list-tasks)')
    task.add_argument('--force', action='store_true', help='Bypass interval and calendar gating')
    commands.add_parser('list-tasks', help='List runnable task names')
    return parser


async def main(args: argparse.Namespace) -> int:
    """Main entry point"""
    command = args.command or 'run'

    logger.info("=" * 60)
    logger.info("Telemetry Sync Node Starting...")
    logger.info(f"Python {sys.version}")
    logger.info(f"Platform: {sys.platform}")
    logger.info(f"Node ID: {Config.get('node.node_id')}")
    logger.info(f"Command: {command}")
    if not args.memory:
        db = Config.get_database_config()
        logger.info(f"Database: {db['host']}:{db['port']}/{db['database']}")
    logger.info(
        f"Sync interval: {Config.get('sync.sync_interval_minutes')}min, "
        f"traffic: {Config.get('traffic.sync_interval_minutes')}min, "
        f"offline threshold: {Config.get('online_check.offline_threshold_minutes')}min"
    )
    logger.info("=" * 60)

    loop = asyncio.get_running_loop()
    _setup_signal_handlers(loop)

    if command == 'run' and Config.get_bool('metrics.enabled', True):
        try:
            start_metrics_server(Config.get_int('metrics.port', 9095))
        except OSError as e:
            logger.warning(f"Failed to start metrics server: {e}")

    runtime: Optional[Runtime] = None
    exit_code = 0
    try:
        runtime = await build_runtime(args.memory, start_cache_cleanup=command == 'run')
        if command == 'task':
            exit_code = await _run_task(runtime, args.name, args.force)
        else:
            await _run_scheduler(runtime)
    except asyncio.CancelledError:
        logger.info("Main task cancelled")
    except Exception as e:
        logger.error(f"Fatal error in main: {e}", exc_info=True)
        exit_code = 1
    finally:
        logger.info("Shutting down...")
        if runtime:
            await runtime.close()
        logger.info("Telemetry Sync Node stopped")
    return exit_code


def run(argv=None):
    """Entry point function"""
    args = build_parser().parse_args(argv)
    if args.config:
        os.environ['TELEMETRY_CONFIG_FILE'] = args.config
        Config.clear_cache()

    setup_logging_from_config()
    try:
        Config.load()
    except ValueError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if args.command == 'list-tasks':
        _print_tasks()
        return

    try:
        exit_code = asyncio.run(main(args))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        exit_code = 0
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        exit_code = 1
    sys.exit(exit_code)


if __name__ == '__main__':
    run()
