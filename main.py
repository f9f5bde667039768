import asyncio
import logging
import time
from typing import Callable, List, Optional

from api.alerts import WebhookNotificationSink
from api.metrics import metrics, start_metrics_server
from config import config
from ingest.signal_feed import SignalFeedClient
from ingest.signal_ingestor import SignalIngestor
from monitoring.async_utils import KeyedLock, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from monitoring.signal_auditor import ExecutionAuditor
from orchestration.persistence import InMemoryStore
from orchestration.portfolio import PortfolioReconciler
from orchestration.services import AutoExecutionService, SignalActionService, SignalNotifier
from orchestration.trade_executor import TradeExecutionOrchestrator
from strategy.cycle_manager import CycleManager
from strategy.eligibility import EligibilityFilter
from strategy.exceptions import SignalBotError
from strategy.signal_manager import SignalManager


logger = logging.getLogger(__name__)


def build_store(database_cfg):
    if database_cfg.get('enabled', False):
        from ingest.persister import PostgresStore
        return PostgresStore()
    return InMemoryStore()


def build_gateway(exchange_cfg):
    mode = str(exchange_cfg.get('mode', 'paper')).lower()
    if mode == 'binance':
        from strategy.transports.binance import BinanceGateway
        return BinanceGateway()
    if mode != 'paper':
        raise ValueError(f"Unsupported exchange mode: {mode}")
    from strategy.simulators.paper import PaperExchangeGateway
    return PaperExchangeGateway(quote_asset=exchange_cfg.get('quote_asset', 'USDT'))


class SignalBotSystem:
    """Wire ingestion, execution windows, trade execution and cycles together."""

    def __init__(self, config_obj=None, store=None, gateway=None, feed=None, sink=None,
                 clock: Callable[[], float] = time.time):
        self.config = config_obj or config
        self.signals_cfg = self.config.section('signals')
        self.execution_cfg = self.config.section('execution')
        self.portfolio_cfg = self.config.section('portfolio')
        self.monitoring_cfg = self.config.section('monitoring')
        self.clock = clock

        self.store = store or build_store(self.config.section('database'))
        self.gateway = gateway or build_gateway(self.config.section('exchange'))
        self.feed = feed or SignalFeedClient()
        self.sink = sink or WebhookNotificationSink()

        dedupe_hours = float(self.signals_cfg.get('dedupe_hours', 24))
        self.locks = KeyedLock()
        self.ingestor = SignalIngestor(self.feed, self.store, clock=clock)
        self.signal_manager = SignalManager(self.store, clock=clock, dedupe_hours=dedupe_hours)
        self.eligibility = EligibilityFilter(self.store, clock=clock, dedupe_hours=dedupe_hours)
        self.cycles = CycleManager(self.store, clock=clock, locks=self.locks)
        self.reconciler = PortfolioReconciler(self.gateway, self.store, cycles=self.cycles, clock=clock)
        self.auditor = ExecutionAuditor(self.monitoring_cfg.get('execution_audit_log'))
        self.executor = TradeExecutionOrchestrator(
            self.gateway,
            self.store,
            self.cycles,
            reconciler=self.reconciler,
            sink=self.sink,
            auditor=self.auditor,
            dedupe_hours=dedupe_hours,
            clock=clock,
        )
        self.actions = SignalActionService(
            self.store, self.ingestor, self.signal_manager, self.executor, eligibility=self.eligibility
        )
        self.auto_execution = AutoExecutionService(
            self.store, self.signal_manager, self.eligibility, self.executor, sink=self.sink, clock=clock
        )
        self.notifier = SignalNotifier(
            self.store, self.eligibility, self.sink, manager=self.signal_manager, clock=clock
        )

        self.running = False
        self._closed = False
        self._tasks: List[asyncio.Task] = []

    async def initialize(self):
        await self.store.initialize()
        logger.info("Signal bot initialized (store=%s, gateway=%s)",
                    type(self.store).__name__, type(self.gateway).__name__)

    async def ingest_once(self) -> int:
        signals = await self.ingestor.fetch_signals(force_refresh=True)
        stored = await self.ingestor.materialize_all(signals)
        await self.notifier.notify_recent()
        return len(stored)

    async def tick_windows(self, now: Optional[float] = None):
        transitions = self.signal_manager.update_windows(now)
        for transition in transitions:
            metrics.record_window(transition.to_state)
            logger.info("Window %s/%s %s -> %s (%s)", transition.signal_id, transition.user_id,
                        transition.from_state, transition.to_state, transition.action)
        metrics.update_pending_windows(len(self.signal_manager.windows))
        return transitions

    async def _run_periodic(self, name: str, interval_s: float, step):
        while self.running:
            try:
                await step()
            except SignalBotError as exc:
                logger.warning("%s loop: %s", name, exc)
            except Exception:
                logger.exception("%s loop failed", name)
            try:
                await asyncio.sleep(interval_s)
            except asyncio.CancelledError:
                break

    async def _ingest_step(self):
        count = await self.ingest_once()
        logger.debug("Ingestion pass materialized %s signals", count)

    async def _auto_execute_step(self):
        results = await self.auto_execution.run_sweep()
        if results:
            executed = sum(1 for r in results if r.success)
            logger.info("Auto-execution sweep: %s executed, %s not executed",
                        executed, len(results) - executed)

    async def _hold_step(self):
        promoted = await self.cycles.promote_to_hold()
        if promoted:
            logger.info("Promoted %s cycles to hold", len(promoted))

    async def start(self):
        self.running = True
        self._closed = False
        await self.initialize()

        port = self.monitoring_cfg.get('prometheus_port')
        if port:
            start_metrics_server(int(port))

        self._tasks = [
            asyncio.create_task(self._run_periodic(
                'ingestion', float(self.signals_cfg.get('poll_interval_s', 60)), self._ingest_step)),
            asyncio.create_task(self._run_periodic(
                'windows', float(self.execution_cfg.get('window_tick_interval_s', 5)), self.tick_windows)),
            asyncio.create_task(self._run_periodic(
                'auto-execution', float(self.execution_cfg.get('auto_execute_interval_s', 60)),
                self._auto_execute_step)),
            asyncio.create_task(self._run_periodic(
                'hold-promotion', float(self.execution_cfg.get('auto_execute_interval_s', 60)), self._hold_step)),
            asyncio.create_task(self.reconciler.poll(self.portfolio_cfg.get('refresh_interval_s', 300))),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(self._tasks, cleanup=_cleanup)

    async def stop(self):
        self.running = False
        self.reconciler.stop()
        if self._closed:
            return
        self._closed = True
        for task in self._tasks:
            if not task.done():
                task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.feed.close()
        await self.gateway.close()
        await self.store.close()
        logger.info("Signal bot stopped")


async def main():
    system = SignalBotSystem(config)
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
