import asyncio
import json
import logging
import random
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

import websockets

from config import config
from strategy.execution_types import FillEvent
from strategy.gateway import FillHandler
from strategy.models import Side


logger = logging.getLogger(__name__)

# timestamp (ms, as text) -> auth params: {"orderly_key", "sign", "timestamp"}
AuthBuilder = Callable[[str], Dict[str, str]]


def parse_execution_report(message: Dict[str, Any]) -> Optional[FillEvent]:
    if message.get("topic") != "executionreport":
        return None
    data = message.get("data")
    if not isinstance(data, dict):
        return None
    order_id = data.get("orderId")
    side = data.get("side")
    if order_id is None or not side:
        return None
    try:
        executed_price = data.get("executedPrice")
        return FillEvent(
            order_id=str(order_id),
            symbol=data.get("symbol", ""),
            side=Side.parse(side),
            status=str(data.get("status") or ""),
            executed_quantity=float(data.get("totalExecutedQuantity") or data.get("executedQuantity") or 0.0),
            executed_price=float(executed_price) if executed_price not in (None, "") else None,
        )
    except (TypeError, ValueError):
        logger.warning("Malformed execution report: %s", data)
        return None


class PrivateStreamClient:
    """Authenticated private stream delivering execution reports as fill events."""

    def __init__(self, account_id: Optional[str] = None, auth_builder: Optional[AuthBuilder] = None,
                 url: Optional[str] = None):
        ws_cfg = config.section("websocket")
        self.account_id = account_id or config.exchange.get("account_id")
        base_url = url or config.exchange.get("private_ws_url", "")
        self.url = f"{base_url}{self.account_id}"
        self.auth_builder = auth_builder
        self.ping_interval = float(ws_cfg.get("ping_interval_s", 10))
        self.reconnect_backoff: List[float] = list(ws_cfg.get("reconnect_backoff", [1, 2, 5, 10, 30]))
        self.handlers: List[FillHandler] = []
        self.running = False
        self.last_message_ts = 0.0

    def register_handler(self, handler: FillHandler):
        self.handlers.append(handler)

    async def _dispatch(self, event: FillEvent):
        for handler in self.handlers:
            try:
                await handler(event)
            except Exception:
                logger.exception("Fill handler failed for order %s", event.order_id)

    async def _authenticate(self, ws) -> None:
        if self.auth_builder is None:
            raise RuntimeError("Private stream requires an auth builder")
        timestamp = str(int(time.time() * 1000))
        payload = {"id": uuid.uuid4().hex[:8], "event": "auth", "params": self.auth_builder(timestamp)}
        await ws.send(json.dumps(payload))

    async def _subscribe(self, ws) -> None:
        payload = {"id": uuid.uuid4().hex[:8], "topic": "executionreport", "event": "subscribe"}
        await ws.send(json.dumps(payload))

    async def _ping_loop(self, ws):
        while self.running:
            await asyncio.sleep(self.ping_interval)
            await ws.send(json.dumps({"event": "ping"}))

    async def _handle_message(self, ws, raw: str) -> None:
        message = json.loads(raw)
        self.last_message_ts = time.time()
        if message.get("event") == "ping":
            await ws.send(json.dumps({"event": "pong", "ts": int(time.time() * 1000)}))
            return
        if message.get("event") == "auth" and not message.get("success", True):
            raise ConnectionError(f"Private stream auth rejected: {message}")
        event = parse_execution_report(message)
        if event is not None:
            await self._dispatch(event)

    async def _reconnect_delay(self, backoff_index: int) -> float:
        index = min(backoff_index, len(self.reconnect_backoff) - 1)
        delay = self.reconnect_backoff[index] + random.uniform(0, 0.5)
        logger.info("Private stream reconnecting in %.1fs", delay)
        await asyncio.sleep(delay)
        return delay

    async def start(self):
        self.running = True
        backoff_index = 0
        while self.running:
            try:
                async with websockets.connect(self.url, ping_interval=None) as ws:
                    await self._authenticate(ws)
                    await self._subscribe(ws)
                    logger.info("Private stream connected for account %s", self.account_id)
                    backoff_index = 0
                    ping_task = asyncio.create_task(self._ping_loop(ws))
                    try:
                        async for raw in ws:
                            if not self.running:
                                break
                            await self._handle_message(ws, raw)
                    finally:
                        ping_task.cancel()
                        await asyncio.gather(ping_task, return_exceptions=True)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Private stream error: %s", e)
                if not self.running:
                    break
                await self._reconnect_delay(backoff_index)
                backoff_index += 1
        self.running = False

    async def stop(self):
        self.running = False
