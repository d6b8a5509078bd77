import asyncio
import importlib
import json
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlencode

import aiohttp

from config import config


# (method, path including query string, body text) -> auth headers
RequestSigner = Callable[[str, str, str], Dict[str, str]]


class OrderlyAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Orderly API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


def load_signer(target: Optional[str]) -> Optional[RequestSigner]:
    """Resolve a ``module:callable`` factory into a request signer."""
    if not target:
        return None
    module_name, _, attr = target.partition(':')
    if not attr:
        raise ValueError(f"Signer target must look like 'module:callable', got {target!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory(config.exchange)


class OrderlyRESTClient:
    def __init__(self, base_url: Optional[str] = None, signer: Optional[RequestSigner] = None,
                 timeout_s: Optional[float] = None):
        self.base_url = (base_url or config.exchange.get("rest_url", "https://api-evm.orderly.org")).rstrip("/")
        self.signer = signer
        self.timeout_s = float(timeout_s or config.exchange.get("request_timeout_s", 15))
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
        signed: bool = False,
    ) -> Any:
        session = await self._get_session()
        query = urlencode(params or {}, doseq=True)
        path_with_query = f"{path}?{query}" if query else path
        data = json.dumps(body) if body is not None else ""
        headers: Dict[str, str] = {}
        if body is not None:
            headers["Content-Type"] = "application/json"

        if signed:
            if self.signer is None:
                raise RuntimeError("Request signer required for private endpoint")
            headers.update(self.signer(method.upper(), path_with_query, data))

        url = f"{self.base_url}{path_with_query}"
        async with session.request(
            method.upper(),
            url,
            data=data or None,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            try:
                payload: Any = json.loads(text) if text else {}
            except ValueError:
                payload = text

            failed = isinstance(payload, dict) and payload.get("success") is False
            if resp.status >= 400 or failed:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("message") or payload.get("msg")
                raise OrderlyAPIError(resp.status, code, msg, text)

            if isinstance(payload, dict) and "data" in payload:
                return payload["data"]
            return payload

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request("GET", path, params=params, signed=signed)

    async def post(self, path: str, body: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await self._request("POST", path, body=body or {}, signed=signed)

    async def delete(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = True) -> Any:
        return await self._request("DELETE", path, params=params, signed=signed)
