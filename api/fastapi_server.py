import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from config import config
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)

trading_system = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    global trading_system
    from main import TradingSystem
    trading_system = TradingSystem()
    task = asyncio.create_task(trading_system.start(), name="trading-system")
    try:
        yield
    finally:
        await trading_system.stop()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)


app = FastAPI(title="Market Maker API", version="1.0.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(config.section('api').get('cors_origins', ["*"])),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _system():
    if trading_system is None:
        raise HTTPException(status_code=503, detail="Trading system not initialized")
    return trading_system


def _quoting() -> bool:
    return bool(trading_system is not None and trading_system.scheduler.running)


@app.get("/")
async def root():
    return {"service": "Perpetual Market Maker", "quoting": _quoting()}


@app.get("/favicon.ico")
async def favicon():
    return Response(content=b"", media_type="image/x-icon")


@app.get("/health")
async def health():
    return {"status": "healthy", "timestamp": _now(), "system_running": _quoting()}


@app.get("/api/status")
async def get_status():
    system = _system()
    return {
        "running": _quoting(),
        "mode": system.mode,
        "report": system.status_report(),
        "symbols": {symbol: trader.ledger.stats() for symbol, trader in system.scheduler.traders.items()},
        "timestamp": _now(),
    }


@app.get("/api/symbols/{symbol}")
async def get_symbol(symbol: str):
    trader = _system().scheduler.traders.get(symbol.upper())
    if trader is None:
        raise HTTPException(status_code=404, detail=f"Unknown symbol {symbol}")
    return trader.snapshot()


@app.post("/api/stop")
async def stop_trading():
    system = _system()
    logger.warning("Stop requested through the API")
    await system.stop_trading()
    return {"status": "stopped", "report": system.status_report(), "timestamp": _now()}


@app.post("/api/restart")
async def restart_trading():
    system = _system()
    logger.warning("Restart requested through the API")
    await system.restart()
    return {"status": "restarted", "running": _quoting(), "timestamp": _now()}


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = config.section('api')
    uvicorn.run(app, host=api_cfg.get('host', '0.0.0.0'), port=int(api_cfg.get('port', 8080)), log_level="info")
