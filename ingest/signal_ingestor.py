import hashlib
import logging
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from api.metrics import metrics
from config import config
from ingest.cache import TTLCache
from monitoring.async_utils import KeyedLock
from strategy.exceptions import UpstreamUnavailable
from strategy.execution_types import Direction, RiskLevel, new_id
from strategy.signal_manager import PROVISIONAL_PREFIX, Signal

logger = logging.getLogger(__name__)

SIGNALS_KEY = 'signals'


def parse_timestamp(value: Any) -> Optional[float]:
    """Best-effort conversion of feed timestamps to epoch seconds."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # feeds mix epoch seconds and milliseconds
        return float(value) / 1000.0 if value > 1e11 else float(value)
    if isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                return parse_timestamp(float(text))
            except ValueError:
                return None
        return parse_timestamp(parsed)
    return None


def provisional_id(direction: Direction, token: str, price: float, stamp: Any) -> str:
    digest = hashlib.sha1(f"{direction.value}|{token}|{price}|{stamp or ''}".encode('utf-8')).hexdigest()
    return f"{PROVISIONAL_PREFIX}{digest[:16]}"


class SignalIngestor:
    """Pulls raw signals, normalizes them and promotes them to stored signals.

    Feed results are cached for ``cache_ttl_s``; when the feed fails the last
    non-empty result is served instead. Time anchors are remembered per signal
    id so a refresh never restarts a user's countdown.
    """

    def __init__(self, feed, store, clock: Callable[[], float] = time.time,
                 cache: Optional[TTLCache] = None, risk_cache: Optional[TTLCache] = None,
                 window_minutes: Optional[float] = None):
        settings = config.section('signals')
        self.feed = feed
        self.store = store
        self.clock = clock
        self.window_s = float(window_minutes or settings.get('window_minutes', 10)) * 60.0
        self.cache = cache or TTLCache(settings.get('cache_ttl_s', 300), clock=clock)
        self.risk_cache = risk_cache or TTLCache(settings.get('risk_cache_ttl_s', 900), clock=clock)
        self._anchors: Dict[str, Tuple[float, float]] = {}
        self._promoted: Dict[str, str] = {}
        self._locks = KeyedLock()

    async def fetch_signals(self, force_refresh: bool = False) -> List[Signal]:
        if not force_refresh:
            cached = self.cache.get(SIGNALS_KEY)
            if cached is not None:
                return list(cached)

        try:
            raw_signals = await self.feed.get_signals()
        except UpstreamUnavailable as exc:
            stale = self.cache.peek(SIGNALS_KEY)
            metrics.record_feed_failure('signals', fallback=bool(stale))
            if stale:
                logger.warning("Signal feed unavailable (%s); serving %s cached signals", exc, len(stale))
                return list(stale)
            raise

        signals = self.normalize_all(raw_signals)
        self.cache.set(SIGNALS_KEY, signals)
        metrics.record_signals_fetched(len(signals))
        logger.info("Fetched %s signals from feed", len(signals))
        return list(signals)

    def normalize_all(self, raw_signals: List[Dict[str, Any]]) -> List[Signal]:
        now = self.clock()
        signals: List[Signal] = []
        seen = set()
        for raw in raw_signals:
            try:
                signal = self.normalize(raw, now)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("Dropping malformed signal %r: %s", raw, exc)
                continue
            if signal.id in seen:
                continue
            seen.add(signal.id)
            signals.append(signal)
        self._prune_anchors(now)
        return signals

    def normalize(self, raw: Dict[str, Any], now: Optional[float] = None) -> Signal:
        now = self.clock() if now is None else now
        token = str(raw.get('token') or raw['symbol']).upper()
        price = float(raw['price'])
        if price <= 0:
            raise ValueError(f"non-positive price {price}")

        risk_score = raw.get('risk')
        risk_score = float(risk_score) if risk_score is not None else None

        kind = raw.get('type') or raw.get('direction')
        if kind:
            direction = Direction(str(kind).upper())
        elif risk_score is not None:
            direction = Direction.BUY if risk_score < 50 else Direction.SELL
        else:
            raise ValueError("signal has neither type nor risk")

        level = raw.get('riskLevel') or raw.get('risk_level')
        if level:
            risk_level = RiskLevel(str(level).lower())
        elif risk_score is not None:
            risk_level = RiskLevel.from_score(risk_score)
        else:
            risk_level = RiskLevel.MEDIUM

        stamp = raw.get('createdAt') or raw.get('date')
        signal_id = raw.get('id') or raw.get('_id')
        signal_id = str(signal_id) if signal_id else provisional_id(direction, token, price, stamp)
        signal_id = self._promoted.get(signal_id, signal_id)

        created_at, expires_at = self._anchor(signal_id, parse_timestamp(stamp), now)

        positives = raw.get('positives') or []
        warnings = raw.get('warnings') or []
        return Signal(
            id=signal_id,
            direction=direction,
            token=token,
            price=price,
            risk_level=risk_level,
            risk_score=risk_score,
            created_at=created_at,
            expires_at=expires_at,
            auto_executed=bool(raw.get('autoExecuted', False)),
            link=raw.get('link'),
            positives=list(positives),
            warnings=list(warnings),
            warning_count=int(raw.get('warning_count') or len(warnings)),
        )

    def _anchor(self, signal_id: str, created_at: Optional[float], now: float) -> Tuple[float, float]:
        anchored = self._anchors.get(signal_id)
        if anchored is not None:
            return anchored
        if created_at is None or created_at > now + self.window_s:
            created_at = now
        anchored = (created_at, created_at + self.window_s)
        self._anchors[signal_id] = anchored
        return anchored

    def _prune_anchors(self, now: float) -> None:
        horizon = now - 24 * 3600.0
        for signal_id, (_, expires_at) in list(self._anchors.items()):
            if expires_at < horizon:
                self._anchors.pop(signal_id, None)

    async def materialize(self, signal: Signal) -> Signal:
        """Store a feed signal and return the stored copy.

        Provisional ids are swapped for a fresh persisted id; feed ids are kept.
        An active stored signal with the same direction, token and price wins
        over a second copy.
        """
        async with self._locks.acquire(signal.identity()):
            promoted_id = self._promoted.get(signal.id)
            if promoted_id:
                stored = await self.store.get_signal(promoted_id)
                if stored is not None:
                    return stored
            if not signal.is_provisional:
                stored = await self.store.get_signal(signal.id)
                if stored is not None:
                    return stored

            existing = await self.store.find_active_signal(
                signal.direction, signal.token, signal.price, self.clock()
            )
            if existing is not None:
                self._promote(signal.id, existing)
                return existing

            persisted = replace(signal, id=new_id()) if signal.is_provisional else signal
            await self.store.insert_signal(persisted)
            self._promote(signal.id, persisted)
            metrics.record_materialized()
            logger.info("Materialized %s %s signal %s as %s", signal.direction.value, signal.token,
                        signal.id, persisted.id)
            return persisted

    def _promote(self, provisional: str, stored: Signal) -> None:
        self._promoted[provisional] = stored.id
        self._anchors[stored.id] = (stored.created_at, stored.expires_at)

    async def materialize_all(self, signals: List[Signal]) -> List[Signal]:
        return [await self.materialize(signal) for signal in signals]

    async def resolve(self, signal_id: str) -> Optional[Signal]:
        """Look a signal up by persisted, feed or provisional id."""
        signal_id = self._promoted.get(signal_id, signal_id)
        if not signal_id.startswith(PROVISIONAL_PREFIX):
            stored = await self.store.get_signal(signal_id)
            if stored is not None:
                return stored
        for signal in self.cache.peek(SIGNALS_KEY) or []:
            if signal.id == signal_id:
                return signal
        return None

    async def fetch_risks(self, exchange: str = 'binance', force_refresh: bool = False) -> Dict[str, Any]:
        if not force_refresh:
            cached = self.risk_cache.get(exchange)
            if cached is not None:
                return cached
        try:
            risks = await self.feed.get_risks(exchange)
        except UpstreamUnavailable as exc:
            stale = self.risk_cache.peek(exchange)
            metrics.record_feed_failure('risks', fallback=bool(stale))
            if stale:
                logger.warning("Risk feed for %s unavailable (%s); serving cached data", exchange, exc)
                return stale
            raise
        self.risk_cache.set(exchange, risks)
        return risks
