import errno
import logging
from prometheus_client import Counter, Gauge, Histogram, start_http_server
from typing import Optional

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


def _get_port_scan_limit() -> int:
    try:
        return int(config.section('monitoring').get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.signals_fetched = Counter('signals_fetched_total', 'Signals returned by the feed after normalization')
        self.feed_failures = Counter('signal_feed_failures_total', 'Signal/risk feed requests that failed', ['feed'])
        self.cache_fallbacks = Counter('signal_cache_fallbacks_total', 'Feed failures served from stale cache', ['feed'])
        self.signals_materialized = Counter('signals_materialized_total', 'Provisional signals persisted')

        self.window_transitions = Counter(
            'execution_window_transitions_total', 'Execution window decisions', ['state']
        )
        self.pending_windows = Gauge('execution_windows_pending', 'Execution windows still counting down')

        self.trades_executed = Counter('trades_executed_total', 'Completed trades', ['direction', 'path'])
        self.trades_failed = Counter('trades_failed_total', 'Trades rejected by the exchange', ['direction', 'path'])
        self.execution_latency = Histogram('trade_execution_latency_seconds', 'Latency of a full execution attempt')
        self.degraded_executions = Counter(
            'degraded_executions_total', 'Executions sized from the cached portfolio'
        )

        self.auto_claims = Counter('auto_execution_claims_total', 'Signals claimed by the unattended sweep')
        self.auto_results = Counter('auto_execution_results_total', 'Per-user unattended results', ['outcome'])

        self.cycles_opened = Counter('cycles_opened_total', 'Cycles created in entry')
        self.cycles_closed = Counter('cycles_closed_total', 'Cycles fully exited')
        self.partial_exits = Counter('cycle_partial_exits_total', 'Partial exits appended to cycles')
        self.pnl_realized = Gauge('pnl_realized_total', 'Total realized PnL')

        self.reconciliations = Counter('portfolio_reconciliations_total', 'Successful portfolio refreshes')
        self.reconciliation_failures = Counter(
            'portfolio_reconciliation_failures_total', 'Portfolio refreshes that kept the previous snapshot'
        )
        self.notifications_sent = Counter('notifications_sent_total', 'Notifications handed to the sink', ['kind'])
        self.notification_failures = Counter('notification_failures_total', 'Notifications the sink failed to deliver')

    def record_signals_fetched(self, count: int):
        self.signals_fetched.inc(count)

    def record_feed_failure(self, feed: str, fallback: bool = False):
        self.feed_failures.labels(feed=feed).inc()
        if fallback:
            self.cache_fallbacks.labels(feed=feed).inc()

    def record_materialized(self):
        self.signals_materialized.inc()

    def record_window(self, state: str):
        self.window_transitions.labels(state=state).inc()

    def update_pending_windows(self, count: int):
        self.pending_windows.set(count)

    def record_trade(self, direction: str, auto_executed: bool, success: bool,
                     latency_seconds: Optional[float] = None):
        path = 'auto' if auto_executed else 'manual'
        if success:
            self.trades_executed.labels(direction=direction, path=path).inc()
        else:
            self.trades_failed.labels(direction=direction, path=path).inc()
        if latency_seconds is not None:
            self.execution_latency.observe(latency_seconds)

    def record_degraded_execution(self):
        self.degraded_executions.inc()

    def record_auto_claim(self):
        self.auto_claims.inc()

    def record_auto_result(self, outcome: str):
        self.auto_results.labels(outcome=outcome).inc()

    def record_cycle_opened(self):
        self.cycles_opened.inc()

    def record_cycle_closed(self):
        self.cycles_closed.inc()

    def record_partial_exit(self):
        self.partial_exits.inc()

    def record_pnl(self, pnl: float):
        if pnl is None:
            return
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(float(pnl)))

    def record_reconciliation(self, success: bool):
        if success:
            self.reconciliations.inc()
        else:
            self.reconciliation_failures.inc()

    def record_notification(self, kind: str, delivered: bool = True):
        self.notifications_sent.labels(kind=kind).inc()
        if not delivered:
            self.notification_failures.inc()


def start_metrics_server(port: int = 9090):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    port_scan_limit = max(0, _get_port_scan_limit())
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
