import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from config import config


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

RISK_STATE_CODES = {
    'FLAT': 0,
    'NEUTRAL': 1,
    'STANDARD_PROFIT': 2,
    'AGGRESSIVE_PROFIT': 3,
    'STANDARD_LOSS': -2,
    'AGGRESSIVE_LOSS': -3,
}


def _get_port_scan_limit() -> int:
    try:
        return int(config.monitoring.get('prometheus_port_scan', 0))
    except (TypeError, ValueError):
        return 0


class MetricsCollector:
    def __init__(self):
        self.orders_placed = Counter('mm_orders_placed_total', 'Total orders placed', ['symbol', 'type'])
        self.orders_filled = Counter('mm_orders_filled_total', 'Total orders filled', ['symbol'])
        self.orders_cancelled = Counter('mm_orders_cancelled_total', 'Total orders cancelled', ['symbol'])
        self.order_failures = Counter('mm_order_failures_total', 'Order placements rejected or failed', ['symbol'])
        self.filled_volume = Counter('mm_filled_volume_total', 'Filled base quantity', ['symbol'])

        self.cycles = Counter('mm_cycles_total', 'Quoting cycles by outcome', ['symbol', 'outcome'])
        self.flatten_orders = Counter('mm_flatten_orders_total', 'Flattening orders by risk state', ['symbol', 'state'])
        self.transport_errors = Counter('mm_transport_errors_total', 'Venue transport errors', ['operation'])

        self.risk_state = Gauge('mm_risk_state', 'Current risk state code per symbol', ['symbol'])
        self.pnl_pct = Gauge('mm_unrealized_pnl_pct', 'Unrealized PnL percentage per symbol', ['symbol'])
        self.position = Gauge('mm_position_quantity', 'Signed position quantity per symbol', ['symbol'])
        self.volatility = Gauge('mm_volatility', 'Trade-price volatility of the last window', ['symbol'])
        self.spread = Gauge('mm_optimal_spread', 'Optimal spread of the last ladder', ['symbol'])
        self.open_orders = Gauge('mm_open_orders', 'Orders tracked by the ledger', ['symbol'])

        self.order_send_latency = Histogram('mm_order_send_latency_seconds', 'Latency from order send to ack')

    def record_order_placed(self, symbol: str, order_type: str, latency_seconds: Optional[float] = None):
        self.orders_placed.labels(symbol=symbol, type=order_type).inc()
        if latency_seconds is not None:
            self.order_send_latency.observe(latency_seconds)

    def record_order_filled(self, symbol: str, quantity: float = 0.0):
        self.orders_filled.labels(symbol=symbol).inc()
        if quantity > 0:
            self.filled_volume.labels(symbol=symbol).inc(quantity)

    def record_order_cancelled(self, symbol: str, count: int = 1):
        if count > 0:
            self.orders_cancelled.labels(symbol=symbol).inc(count)

    def record_order_failure(self, symbol: str):
        self.order_failures.labels(symbol=symbol).inc()

    def record_cycle(self, symbol: str, outcome: str):
        self.cycles.labels(symbol=symbol, outcome=outcome).inc()

    def record_flatten(self, symbol: str, state: str):
        self.flatten_orders.labels(symbol=symbol, state=state).inc()

    def record_transport_error(self, operation: str):
        self.transport_errors.labels(operation=operation).inc()

    def update_risk(self, symbol: str, state: str, pnl_pct: float, quantity: float):
        self.risk_state.labels(symbol=symbol).set(RISK_STATE_CODES.get(state, 0))
        self.pnl_pct.labels(symbol=symbol).set(pnl_pct)
        self.position.labels(symbol=symbol).set(quantity)

    def update_signal(self, symbol: str, volatility: float, spread: Optional[float] = None):
        self.volatility.labels(symbol=symbol).set(volatility)
        if spread is not None:
            self.spread.labels(symbol=symbol).set(spread)

    def update_open_orders(self, symbol: str, count: int):
        self.open_orders.labels(symbol=symbol).set(count)


def start_metrics_server(port: int = 9108) -> Optional[int]:
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
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
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None


metrics = MetricsCollector()
