import asyncio
import hashlib
import hmac
import json
import logging
import time
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import aiohttp

from config import config
from strategy.exceptions import ExchangeGatewayError


logger = logging.getLogger(__name__)

# timestamp outside recvWindow
CLOCK_SKEW_CODE = -1021


class BinanceAPIError(ExchangeGatewayError):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        super().__init__(f"Binance API error (status={status}, code={code}, msg={msg})")


class BinanceRESTClient:
    """Spot REST client for one set of API credentials.

    Every failure surfaces as ``ExchangeGatewayError``; a signed request
    rejected for clock skew is retried once after syncing with server time.
    """

    def __init__(self, api_key: Optional[str] = None, api_secret: Optional[str] = None,
                 base_url: Optional[str] = None, timeout_s: Optional[float] = None):
        exchange = config.section('exchange')
        self.base_url = (base_url or exchange.get('base_url') or "https://api.binance.com").rstrip("/")
        self.api_key: Optional[str] = api_key or exchange.get("api_key") or None
        self.api_secret: Optional[str] = api_secret or exchange.get("api_secret") or None
        self.recv_window = int(exchange.get('recv_window', 5000))
        self.timeout_s = float(timeout_s or config.section('execution').get('gateway_timeout_s', 10))
        self.time_offset_ms = 0
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

    def _signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key or not self.api_secret:
            raise ExchangeGatewayError("Binance API key/secret required for signed request")
        signed = {k: v for k, v in params.items() if k != 'signature'}
        signed['timestamp'] = int(time.time() * 1000) + self.time_offset_ms
        signed.setdefault('recvWindow', self.recv_window)
        query = urlencode(signed, doseq=True)
        signed['signature'] = hmac.new(self.api_secret.encode('utf-8'), query.encode('utf-8'),
                                       hashlib.sha256).hexdigest()
        return signed

    @staticmethod
    def _decode(text: str, content_type: str) -> Any:
        if 'application/json' not in content_type:
            return text
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _send(self, method: str, path: str, params: Dict[str, Any]) -> Tuple[int, Any, str]:
        session = await self._get_session()
        headers = {'X-MBX-APIKEY': self.api_key} if self.api_key else {}
        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as resp:
                text = await resp.text()
                return resp.status, self._decode(text, resp.headers.get('Content-Type', '')), text
        except asyncio.TimeoutError as exc:
            raise ExchangeGatewayError(f"{method} {path} timed out after {self.timeout_s:.0f}s") from exc
        except aiohttp.ClientError as exc:
            raise ExchangeGatewayError(f"{method} {path} failed: {exc}") from exc

    async def sync_time(self) -> int:
        status, payload, text = await self._send('GET', '/api/v3/time', {})
        if status >= 400 or not isinstance(payload, dict) or 'serverTime' not in payload:
            raise BinanceAPIError(status, None, 'server time unavailable', text)
        self.time_offset_ms = int(payload['serverTime']) - int(time.time() * 1000)
        logger.info("Binance clock offset set to %sms", self.time_offset_ms)
        return self.time_offset_ms

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                       signed: bool = False) -> Any:
        method = method.upper()
        base = dict(params or {})
        attempts = 2 if signed else 1
        for attempt in range(1, attempts + 1):
            status, payload, text = await self._send(method, path, self._signed(base) if signed else base)
            if status < 400:
                return payload
            code = payload.get('code') if isinstance(payload, dict) else None
            msg = payload.get('msg') if isinstance(payload, dict) else None
            if code == CLOCK_SKEW_CODE and attempt < attempts:
                logger.warning("%s %s rejected for clock skew; resyncing", method, path)
                await self.sync_time()
                continue
            raise BinanceAPIError(status, code, msg, text)

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        return await self._request('GET', path, params=params, signed=signed)

    async def post(self, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False) -> Any:
        # signed params travel in the query string
        return await self._request('POST', path, params=params, signed=signed)
