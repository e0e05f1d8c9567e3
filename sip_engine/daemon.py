"""Long-running scheduler daemon.

SIPDaemon.run() wires the components together and runs two background
tasks until SIGTERM/SIGINT:

- the reconciler sweep (immediately, then every sweep interval)
- the dispatch worker (fires due triggers, executes one job at a time)

Shutdown lets an in-flight job finish (bounded by the graceful shutdown
timeout), then closes the registry. A job cut off by the timeout stays
leased and is re-delivered after restart.
"""

import asyncio
import os
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from sip_engine.config.base import Config, get_config
from sip_engine.config.scheduler import SchedulerConfig, load_scheduler_config
from sip_engine.data.database import get_engine, get_session_factory, init_database
from sip_engine.execution.engine import ExecutionEngine
from sip_engine.execution.trade_client import TradeClient, build_trade_client
from sip_engine.scheduling.reconciler import Reconciler
from sip_engine.scheduling.registry import ScheduleRegistry
from sip_engine.scheduling.worker import DispatchWorker
from sip_engine.services.plan_service import PlanService


@dataclass
class Components:
    """Everything a process needs to schedule and execute plans."""

    trade_client: TradeClient
    registry: ScheduleRegistry
    reconciler: Reconciler
    engine: ExecutionEngine
    worker: DispatchWorker
    plans: PlanService

    async def aclose(self) -> None:
        self.registry.close()
        try:
            await self.trade_client.aclose()
        except Exception as e:
            logger.warning(f"Trade client close error: {e}")


def build_components(
    config: Optional[Config] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    trade_client: Optional[TradeClient] = None,
) -> Components:
    """Build the component graph on the global database.

    Args:
        config: Application config (defaults to get_config())
        scheduler_config: Scheduler tuning (defaults to the YAML file)
        trade_client: Override the client picked from config
    """
    config = config or get_config()
    scheduler_config = scheduler_config or load_scheduler_config(config.scheduler_config_path)
    init_database(config.database_url)
    session_factory = get_session_factory()

    trade_client = trade_client or build_trade_client(config)
    registry = ScheduleRegistry(
        session_factory, scheduler_config.registry, owned_engine=get_engine()
    )
    reconciler = Reconciler(registry, session_factory, scheduler_config.reconciler)
    engine = ExecutionEngine(session_factory, trade_client, scheduler_config.engine)
    worker = DispatchWorker(
        registry, reconciler, engine, session_factory, scheduler_config.worker
    )
    plans = PlanService(session_factory, trade_client, reconciler, engine)
    return Components(
        trade_client=trade_client,
        registry=registry,
        reconciler=reconciler,
        engine=engine,
        worker=worker,
        plans=plans,
    )


class SIPDaemon:
    """Scheduler daemon process."""

    def __init__(
        self,
        config: Optional[SchedulerConfig] = None,
        components: Optional[Components] = None,
    ):
        """Initialize the daemon.

        Args:
            config: Scheduler configuration (loads from YAML if None)
            components: Prebuilt components (built on run() if None)
        """
        self.config = config or load_scheduler_config(get_config().scheduler_config_path)
        self.components = components
        self.pid_file = Path(self.config.daemon.pid_file)
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._stop_event is not None and not self._stop_event.is_set()

    def request_stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()

    async def run(self) -> None:
        """Run until a stop is requested."""
        logger.info("=" * 60)
        logger.info("SIP scheduler daemon starting...")
        logger.info("=" * 60)

        if self.components is None:
            self.components = build_components(scheduler_config=self.config)
        c = self.components

        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._async_shutdown_handler, sig)
            except (NotImplementedError, RuntimeError):
                logger.debug(f"Could not register handler for {sig.name}")

        self._write_pid_file()
        reconcile_task = None
        worker_task = None
        try:
            report = c.reconciler.reconcile()
            logger.info(f"Initial reconciliation: {report.summary()}")

            reconcile_task = asyncio.create_task(
                c.reconciler.run_periodic(self._stop_event, run_immediately=False)
            )
            worker_task = asyncio.create_task(c.worker.run(self._stop_event))
            logger.info(
                f"Daemon running (pid={os.getpid()}, "
                f"sweep every {self.config.reconciler.sweep_interval_seconds}s)"
            )

            await self._stop_event.wait()
            logger.info("Shutdown requested, waiting for in-flight job")

        except asyncio.CancelledError:
            logger.info("Daemon cancelled")
        except Exception as e:
            logger.error(f"Daemon error: {e}", exc_info=True)
        finally:
            self._stop_event.set()
            if worker_task is not None:
                try:
                    await asyncio.wait_for(
                        worker_task,
                        timeout=self.config.daemon.graceful_shutdown_timeout_seconds,
                    )
                except asyncio.TimeoutError:
                    logger.warning("Graceful shutdown timed out, in-flight job will be re-delivered")
                except Exception as e:
                    logger.error(f"Dispatch worker error during shutdown: {e}")

            if reconcile_task is not None and not reconcile_task.done():
                reconcile_task.cancel()
                try:
                    await reconcile_task
                except asyncio.CancelledError:
                    pass

            for sig in (signal.SIGTERM, signal.SIGINT):
                try:
                    loop.remove_signal_handler(sig)
                except (NotImplementedError, RuntimeError):
                    pass

            await c.aclose()
            self._remove_pid_file()
            logger.info("SIP scheduler daemon stopped")

    def _async_shutdown_handler(self, sig: signal.Signals) -> None:
        """Signal handler: request graceful shutdown."""
        sig_name = sig.name if hasattr(sig, "name") else str(sig)
        logger.info(f"Received {sig_name}, requesting graceful shutdown")
        self.request_stop()

    def _write_pid_file(self) -> None:
        pid = os.getpid()
        self.pid_file.parent.mkdir(parents=True, exist_ok=True)
        self.pid_file.write_text(str(pid))
        logger.info(f"PID file written: {self.pid_file} (pid={pid})")

    def _remove_pid_file(self) -> None:
        if self.pid_file.exists():
            self.pid_file.unlink()
            logger.info(f"PID file removed: {self.pid_file}")

    @staticmethod
    def is_daemon_running(pid_file: str = "run/sip_engine.pid") -> Optional[int]:
        """Check if the daemon is running by reading its PID file.

        Returns:
            PID if running, None if not
        """
        path = Path(pid_file)
        if not path.exists():
            return None

        try:
            pid = int(path.read_text().strip())
            os.kill(pid, 0)
            return pid
        except (ValueError, ProcessLookupError, PermissionError):
            return None


def start_daemon(config_path: Optional[str] = None) -> None:
    """Entry point to start the daemon.

    Args:
        config_path: Optional path to scheduler.yaml
    """
    config = load_scheduler_config(config_path or get_config().scheduler_config_path)
    daemon = SIPDaemon(config=config)
    asyncio.run(daemon.run())
