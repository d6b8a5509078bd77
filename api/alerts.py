import asyncio
import logging
import time
from typing import Dict, Optional

import aiohttp

from config import config


logger = logging.getLogger(__name__)


class AlertWebhook:
    """Operator notification sink; falls back to the log when no webhook is configured."""

    def __init__(self, url: Optional[str] = None):
        url = url if url is not None else config.monitoring.get('alert_webhook')
        # Treat empty or placeholder URLs as disabled
        if url and 'your-webhook-url' not in str(url):
            self.webhook_url = url
            self.enabled = True
        else:
            self.webhook_url = None
            self.enabled = False

    async def send_alert(self, alert_type: str, message: str, severity: str = 'warning',
                         metadata: Dict = None) -> bool:
        if not self.enabled:
            logger.warning(
                "[Alert] %s: %s - %s",
                severity.upper(),
                alert_type,
                message,
            )
            return False

        payload = {
            'type': alert_type,
            'message': message,
            'text': message,
            'severity': severity,
            'timestamp': int(time.time() * 1000),
            'metadata': metadata or {},
        }

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    self.webhook_url,
                    json=payload,
                    timeout=aiohttp.ClientTimeout(total=5),
                ) as response:
                    if response.status >= 300:
                        logger.error(
                            "[Alert] Webhook failed with status %s",
                            response.status,
                        )
                        return False
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            logger.error("[Alert] Webhook error: %s", e)
            return False
        return True

    async def status_report(self, report: str):
        await self.send_alert('report', report, 'info')

    async def startup_alert(self, mode: str, symbols):
        symbols = list(symbols)
        await self.send_alert(
            'startup',
            f'Market maker started in {mode} mode for {", ".join(symbols)}',
            'info',
            {'mode': mode, 'symbols': symbols},
        )

    async def risk_alert(self, symbol: str, state: str, pnl_pct: float):
        await self.send_alert(
            'risk',
            f'{symbol} entered {state} at {pnl_pct:+.4f}%',
            'critical',
            {'symbol': symbol, 'state': state, 'pnl_pct': pnl_pct},
        )

    async def shutdown_alert(self, reason: str):
        await self.send_alert(
            'shutdown',
            f'Market maker stopping: {reason}',
            'critical',
            {'reason': reason},
        )


alert_webhook = AlertWebhook()
