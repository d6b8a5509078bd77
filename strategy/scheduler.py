import asyncio
import logging
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional

from analytics.signals import InsufficientDataError, estimate
from api.alerts import AlertWebhook
from api.metrics import metrics
from config import config
from ingest.market_data import MarketDataCache
from monitoring.async_utils import wait_for_stop
from risk.risk_manager import RiskDecision, RiskManager, RiskState
from strategy.gateway import ExchangeGateway
from strategy.models import MarketSignal, Position, StrategyConfig
from strategy.order_ledger import OrderLedger
from strategy.quote_engine import QuoteEngine, optimal_spread


logger = logging.getLogger(__name__)


class SymbolTrader:
    """Quote, then watch risk, then pause; repeated for one symbol until stopped."""

    def __init__(
        self,
        gateway: ExchangeGateway,
        strategy: StrategyConfig,
        stop_event: asyncio.Event,
        quote_engine: Optional[QuoteEngine] = None,
        risk_manager: Optional[RiskManager] = None,
        ledger: Optional[OrderLedger] = None,
        market_data: Optional[MarketDataCache] = None,
        check_interval_s: Optional[float] = None,
        restart_delay_s: Optional[float] = None,
        collection_duration_s: Optional[float] = None,
        alerts: Optional[AlertWebhook] = None,
    ):
        risk_cfg = config.section("risk")
        sched_cfg = config.section("scheduler")
        marketable_level = int(config.section("quoting").get("marketable_level", 0))

        self.gateway = gateway
        self.strategy = strategy
        self.symbol = strategy.symbol
        self.stop_event = stop_event
        self.quote_engine = quote_engine or QuoteEngine()
        self.risk_manager = risk_manager or RiskManager(strategy, marketable_level=marketable_level)
        self.ledger = ledger or OrderLedger(gateway, self.symbol, marketable_level=marketable_level)
        self.market_data = market_data or MarketDataCache(gateway, self.symbol, stop_event=stop_event)
        self.check_interval_s = float(
            check_interval_s if check_interval_s is not None else risk_cfg.get("check_interval_s", 2.0)
        )
        self.restart_delay_s = float(
            restart_delay_s if restart_delay_s is not None else sched_cfg.get("restart_delay_s", 5.0)
        )
        self.collection_duration_s = collection_duration_s
        self.alerts = alerts
        self.shutdown_order = RiskManager.flatten_kind(risk_cfg.get("shutdown_order", "MARKET"))

        self.cycles = 0
        self.outcomes: Counter = Counter()
        self.last_position: Optional[Position] = None
        self.last_signal: Optional[MarketSignal] = None
        self.last_decision: Optional[RiskDecision] = None
        self.last_cycle_ts: Optional[float] = None

    @property
    def dust_notional(self) -> float:
        return self.risk_manager.dust_notional

    async def run(self) -> None:
        logger.info("%s: trader started", self.symbol)
        while not self.stop_event.is_set():
            try:
                outcome = await self.run_cycle()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                outcome = "error"
                metrics.record_transport_error("cycle")
                logger.error("%s: cycle abandoned: %s", self.symbol, exc)
            self.cycles += 1
            self.outcomes[outcome] += 1
            self.last_cycle_ts = time.time()
            metrics.record_cycle(self.symbol, outcome)
            if await wait_for_stop(self.stop_event, self.restart_delay_s):
                break
        logger.info("%s: trader stopped after %s cycles", self.symbol, self.cycles)

    async def run_cycle(self) -> str:
        await self.ledger.cancel_all()
        position = await self.gateway.get_open_position(self.symbol)
        self.last_position = position

        if position.is_dust(self.dust_notional):
            outcome = await self.quote(position)
        else:
            logger.info("%s: holding %s (notional %.2f); skipping quotes", self.symbol,
                        position.quantity, position.notional)
            outcome = "managing"

        if self.stop_event.is_set():
            return outcome
        await self.risk_window()
        return outcome

    async def quote(self, position: Position) -> str:
        snapshots, trades = await self.market_data.collect(self.collection_duration_s)
        if self.stop_event.is_set():
            return "stopped"
        try:
            signal = estimate(trades, snapshots, self.strategy)
        except InsufficientDataError as exc:
            logger.warning("%s: skipping quotes this cycle: %s", self.symbol, exc)
            return "insufficient_data"
        self.last_signal = signal
        metrics.update_signal(
            self.symbol, signal.volatility,
            optimal_spread(signal.volatility, self.strategy.gamma, self.strategy.k),
        )
        levels = self.quote_engine.build_ladder(self.strategy, signal, position.quantity)
        placed = await self.ledger.replace_ladder(levels)
        logger.info("%s: %s/%s ladder orders accepted", self.symbol, len(placed), len(levels))
        return "quoted"

    async def risk_window(self) -> None:
        """Check risk every interval until the trade period ends or an opened position is flat again."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.strategy.trade_period_s
        seen_position = False
        while not self.stop_event.is_set():
            try:
                seen_position = await self._risk_tick(seen_position)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                metrics.record_transport_error("risk_check")
                logger.error("%s: risk check failed: %s", self.symbol, exc)
            else:
                if seen_position and self.last_decision is not None and self.last_decision.is_flat:
                    logger.info("%s: position closed; ending trade period early", self.symbol)
                    return
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            if await wait_for_stop(self.stop_event, min(self.check_interval_s, remaining)):
                return

    async def _risk_tick(self, seen_position: bool) -> bool:
        position = await self.gateway.get_open_position(self.symbol)
        self.last_position = position
        decision = self.risk_manager.evaluate(position)
        previous = self.last_decision.state if self.last_decision else None
        self.last_decision = decision
        if (self.alerts is not None and decision.state is RiskState.AGGRESSIVE_LOSS
                and previous is not RiskState.AGGRESSIVE_LOSS):
            await self.alerts.risk_alert(self.symbol, decision.state.value, decision.pnl_pct)
        if decision.is_flat and not seen_position:
            # ladder is still working; nothing to unwind yet
            metrics.update_risk(self.symbol, decision.state.value, decision.pnl_pct, position.quantity)
            return False
        await self.risk_manager.apply(decision, self.ledger, position.quantity)
        return True

    async def flatten(self) -> Optional[Position]:
        """Cancel everything and close any open position with a reduce-only order."""
        await self.ledger.cancel_all()
        position = await self.gateway.get_open_position(self.symbol)
        self.last_position = position
        if position.quantity != 0:
            await self.ledger.flatten(position, self.shutdown_order)
        return position

    def status_line(self) -> str:
        pos = self.last_position
        position_text = "unknown" if pos is None else f"{pos.quantity:+g} @ {pos.average_entry_price:g}"
        state = self.last_decision.state.value if self.last_decision else "n/a"
        pnl = self.last_decision.pnl_pct if self.last_decision else 0.0
        stats = self.ledger.stats()
        return (
            f"{self.symbol}: position {position_text}, risk {state} ({pnl:+.4f}%), "
            f"cycles {self.cycles}, open orders {stats['open_orders']}, "
            f"filled {stats['filled_orders']} orders / {stats['filled_volume']:g} qty"
        )

    def snapshot(self) -> Dict[str, object]:
        pos = self.last_position
        signal = self.last_signal
        decision = self.last_decision
        return {
            "symbol": self.symbol,
            "cycles": self.cycles,
            "outcomes": dict(self.outcomes),
            "position": None if pos is None else {
                "quantity": pos.quantity,
                "average_entry_price": pos.average_entry_price,
                "mark_price": pos.mark_price,
            },
            "signal": None if signal is None else {
                "prediction": signal.prediction.value,
                "volatility": signal.volatility,
                "mid_price": signal.mid_price,
            },
            "risk": None if decision is None else {
                "state": decision.state.value,
                "pnl_pct": decision.pnl_pct,
            },
            "orders": self.ledger.stats(),
            "open_orders": [order.as_dict() for order in self.ledger.open_orders.values()],
        }


class StrategyScheduler:
    """Runs one SymbolTrader task per configured symbol and owns the shared stop token."""

    def __init__(self, gateway: ExchangeGateway, strategies: Iterable[StrategyConfig],
                 stop_event: Optional[asyncio.Event] = None, **trader_kwargs):
        self.gateway = gateway
        self.stop_event = stop_event or asyncio.Event()
        self.shutdown_timeout_s = float(config.section("scheduler").get("shutdown_timeout_s", 30.0))
        self.traders: Dict[str, SymbolTrader] = {}
        for strategy in strategies:
            trader = SymbolTrader(gateway, strategy, self.stop_event, **trader_kwargs)
            gateway.on_fill_push(trader.ledger.handle_fill)
            self.traders[strategy.symbol] = trader
        self._tasks: List[asyncio.Task] = []
        self.started_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> List[asyncio.Task]:
        if self.running:
            return self._tasks
        self.stop_event.clear()
        self.started_at = time.time()
        self._tasks = [
            asyncio.create_task(trader.run(), name=f"trader-{symbol}")
            for symbol, trader in self.traders.items()
        ]
        logger.info("Scheduler started %s traders: %s", len(self._tasks), ", ".join(self.traders))
        return self._tasks

    async def run(self) -> None:
        tasks = self.start()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        for symbol, result in zip(self.traders, results):
            if isinstance(result, Exception):
                logger.error("%s: trader exited with %s", symbol, result)

    def request_stop(self) -> None:
        if not self.stop_event.is_set():
            logger.info("Stop requested")
        self.stop_event.set()

    async def stop_loops(self) -> None:
        self.request_stop()
        pending = [t for t in self._tasks if not t.done()]
        if not pending:
            return
        done, still_pending = await asyncio.wait(pending, timeout=self.shutdown_timeout_s)
        for task in still_pending:
            task.cancel()
        if still_pending:
            logger.warning("Cancelled %s traders that did not stop in time", len(still_pending))
            await asyncio.gather(*still_pending, return_exceptions=True)

    async def flatten_all(self) -> None:
        for symbol, trader in self.traders.items():
            try:
                await trader.flatten()
            except Exception as exc:
                logger.error("%s: flatten on shutdown failed: %s", symbol, exc)

    async def shutdown(self) -> None:
        await self.stop_loops()
        await self.flatten_all()
        logger.info("Scheduler shut down")

    async def restart(self) -> None:
        logger.info("Restarting traders")
        await self.shutdown()
        self.start()

    def status_report(self) -> str:
        header = "running" if self.running else "stopped"
        if self.started_at is not None:
            uptime = int(time.time() - self.started_at)
            header = f"{header}, up {uptime // 3600}h{(uptime % 3600) // 60:02d}m"
        lines = [f"Market maker {header}"]
        lines.extend(trader.status_line() for trader in self.traders.values())
        return "\n".join(lines)
