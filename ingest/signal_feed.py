import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from config import config
from strategy.exceptions import UpstreamUnavailable

logger = logging.getLogger(__name__)

RISK_EXCHANGES = ('binance', 'btcc')


class SignalFeedClient:
    """Thin aiohttp client for the third-party signal provider."""

    def __init__(self, base_url: Optional[str] = None, timeout_s: Optional[float] = None):
        settings = config.section('signals')
        self.base_url = (base_url or settings.get('feed_url', 'https://api.coinchart.fun')).rstrip('/')
        self.timeout_s = float(timeout_s or settings.get('request_timeout_s', 10))
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

    async def _get_json(self, path: str) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.get(url, timeout=aiohttp.ClientTimeout(total=self.timeout_s)) as resp:
                text = await resp.text()
                if resp.status >= 300:
                    raise UpstreamUnavailable(f"GET {path} returned HTTP {resp.status}")
                return json.loads(text)
        except asyncio.TimeoutError as exc:
            raise UpstreamUnavailable(f"GET {path} timed out after {self.timeout_s:.0f}s") from exc
        except aiohttp.ClientError as exc:
            raise UpstreamUnavailable(f"GET {path} failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"GET {path} returned invalid JSON") from exc

    async def get_signals(self) -> List[Dict[str, Any]]:
        payload = await self._get_json('/signals')
        if isinstance(payload, dict):
            payload = payload.get('signals') or payload.get('data') or []
        if not isinstance(payload, list):
            raise UpstreamUnavailable("signal feed returned an unexpected payload")
        return [item for item in payload if isinstance(item, dict)]

    async def get_risks(self, exchange: str = 'binance') -> Dict[str, Any]:
        if exchange not in RISK_EXCHANGES:
            raise ValueError(f"unsupported risk exchange: {exchange}")
        payload = await self._get_json(f'/risks/{exchange}')
        if not isinstance(payload, dict):
            raise UpstreamUnavailable("risk feed returned an unexpected payload")
        return payload
