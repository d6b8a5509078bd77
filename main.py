import asyncio
import logging
import signal
from typing import Dict, Optional

from api.alerts import alert_webhook
from api.metrics import start_metrics_server
from config import config
from ingest.private_stream import PrivateStreamClient
from ingest.rest_client import OrderlyRESTClient, load_signer
from monitoring.async_utils import run_tasks_with_cleanup, wait_for_stop
from monitoring.logging_utils import setup_logging
from strategy.gateway import ExchangeGateway
from strategy.models import StrategyConfig, load_strategies
from strategy.scheduler import StrategyScheduler
from strategy.simulators.paper import PaperExchange
from strategy.transports.orderly import OrderlyTransport


logger = logging.getLogger(__name__)


class TradingSystem:
    """Wire the venue gateway, per-symbol traders and the operator surface together."""

    def __init__(self, config_obj=None, gateway: Optional[ExchangeGateway] = None):
        self.config = config_obj if config_obj is not None else config
        self.config.require(("exchange", "strategies"))
        self.exchange_cfg = self.config.section("exchange")
        self.monitoring_cfg = self.config.section("monitoring")
        self.strategies: Dict[str, StrategyConfig] = load_strategies(self.config.get("strategies"))
        if not self.strategies:
            raise ValueError("No strategies configured")

        self.paper_mode = bool(self.exchange_cfg.get("paper", True))
        self.gateway = gateway or self._build_gateway()
        self.scheduler = StrategyScheduler(self.gateway, self.strategies.values(), alerts=alert_webhook)
        self._halt = asyncio.Event()
        self.running = False
        self._stopped = False

    @property
    def mode(self) -> str:
        return "paper" if self.paper_mode else "live"

    def _build_gateway(self) -> ExchangeGateway:
        try:
            signer = load_signer(self.exchange_cfg.get("signer"))
            auth_builder = load_signer(self.exchange_cfg.get("ws_auth"))
        except (ImportError, AttributeError, ValueError) as exc:
            raise RuntimeError(f"Cannot load exchange signer: {exc}") from exc
        if signer is None:
            # order books come from a signed endpoint, paper mode included
            raise RuntimeError("exchange.signer is not set; configure ORDERLY_SIGNER as 'module:callable'")

        if self.paper_mode:
            logger.info("Paper mode: venue market data with simulated fills")
            return PaperExchange(market_source=OrderlyTransport(rest=OrderlyRESTClient(signer=signer)))

        stream = None
        if auth_builder is not None:
            stream = PrivateStreamClient(auth_builder=auth_builder)
        else:
            logger.warning("No private stream auth configured; fills will not be pushed")
        return OrderlyTransport(signer=signer, stream=stream)

    async def start(self):
        self.running = True
        self._stopped = False
        try:
            start_metrics_server(int(self.monitoring_cfg.get("prometheus_port", 9108)))
        except (OSError, RuntimeError) as exc:
            logger.error("Metrics server unavailable: %s", exc)

        background = [
            asyncio.create_task(self.gateway.start(), name="gateway"),
            asyncio.create_task(self._report_loop(), name="report"),
        ]
        self.scheduler.start()
        await alert_webhook.startup_alert(self.mode, self.strategies)
        await run_tasks_with_cleanup(self._halt.wait(), background, cleanup=self.stop)

    async def _report_loop(self):
        interval = float(self.monitoring_cfg.get("report_interval_s", 3600))
        while not await wait_for_stop(self._halt, interval):
            await alert_webhook.status_report(self.status_report())

    def request_stop(self):
        """Signal-handler entry: stop quoting and let ``start`` unwind through ``stop``."""
        self.scheduler.request_stop()
        self._halt.set()

    async def stop_trading(self):
        await self.scheduler.shutdown()

    async def restart(self):
        await self.scheduler.restart()

    def status_report(self) -> str:
        return f"[{self.mode}] {self.scheduler.status_report()}"

    async def stop(self):
        if self._stopped:
            return
        self._stopped = True
        self.running = False
        self._halt.set()
        await alert_webhook.shutdown_alert("stop requested")
        await self.scheduler.shutdown()
        await self.gateway.close()


async def main():
    system = TradingSystem(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, system.request_stop)
        except NotImplementedError:
            pass
    try:
        await system.start()
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("System shutting down on interrupt")
        await system.stop()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
