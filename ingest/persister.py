import asyncpg
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from config import config
from orchestration.persistence import DocumentStore
from strategy.exceptions import DuplicateOpenCycle
from strategy.execution_types import (
    Cycle,
    CycleState,
    Direction,
    Holding,
    PartialExit,
    Portfolio,
    RiskLevel,
    SignalTokenMark,
    Trade,
    TradeStatus,
    User,
)
from strategy.signal_manager import ExecutionWindow, Signal, WindowState


logger = logging.getLogger(__name__)

SCHEMA = '''
CREATE TABLE IF NOT EXISTS signals (
    id TEXT PRIMARY KEY,
    direction TEXT NOT NULL,
    token TEXT NOT NULL,
    price DOUBLE PRECISION NOT NULL,
    risk_level TEXT NOT NULL,
    risk_score DOUBLE PRECISION,
    created_at TIMESTAMPTZ NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    auto_executed BOOLEAN NOT NULL DEFAULT FALSE,
    link TEXT,
    positives JSONB NOT NULL DEFAULT '[]',
    warnings JSONB NOT NULL DEFAULT '[]',
    warning_count INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS signals_unclaimed ON signals (expires_at) WHERE NOT auto_executed;

CREATE TABLE IF NOT EXISTS signal_actions (
    signal_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    state TEXT NOT NULL,
    expires_at TIMESTAMPTZ NOT NULL,
    percentage DOUBLE PRECISION,
    trade_id TEXT,
    decided_at TIMESTAMPTZ,
    reason TEXT,
    PRIMARY KEY (signal_id, user_id)
);

CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    risk_level TEXT NOT NULL,
    exchange_connected BOOLEAN NOT NULL DEFAULT FALSE,
    exchange TEXT,
    credentials_ref TEXT,
    auto_trade_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    last_signal_tokens JSONB NOT NULL DEFAULT '[]'
);

CREATE TABLE IF NOT EXISTS trades (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    signal_id TEXT,
    cycle_id TEXT,
    direction TEXT NOT NULL,
    token TEXT NOT NULL,
    price DOUBLE PRECISION NOT NULL,
    amount DOUBLE PRECISION NOT NULL,
    status TEXT NOT NULL,
    auto_executed BOOLEAN NOT NULL DEFAULT FALSE,
    order_id TEXT,
    error TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS cycles (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    token TEXT NOT NULL,
    state TEXT NOT NULL,
    entry_price DOUBLE PRECISION NOT NULL,
    entry_trade_id TEXT,
    entry_trade_ids JSONB NOT NULL DEFAULT '[]',
    entry_amount DOUBLE PRECISION NOT NULL DEFAULT 0,
    amount_sold DOUBLE PRECISION NOT NULL DEFAULT 0,
    exit_trade_id TEXT,
    exit_price DOUBLE PRECISION,
    pnl DOUBLE PRECISION,
    pnl_percentage DOUBLE PRECISION,
    partial_exits JSONB NOT NULL DEFAULT '[]',
    guidance TEXT,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE UNIQUE INDEX IF NOT EXISTS cycles_one_open ON cycles (user_id, token) WHERE state IN ('entry', 'hold');

CREATE TABLE IF NOT EXISTS portfolios (
    user_id TEXT PRIMARY KEY,
    total_value DOUBLE PRECISION NOT NULL,
    free_capital DOUBLE PRECISION NOT NULL,
    allocated_capital DOUBLE PRECISION NOT NULL,
    holdings JSONB NOT NULL DEFAULT '[]',
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS notifications (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    message TEXT NOT NULL,
    related_id TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS notifications_lookup ON notifications (user_id, related_id, kind);
'''


def _ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _epoch(value: Optional[datetime]) -> Optional[float]:
    return value.timestamp() if value is not None else None


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresStore(DocumentStore):
    """asyncpg-backed document store.

    The single-open-cycle rule is a partial unique index; auto-execution and
    action claims are conditional writes that report whether they won.
    """

    def __init__(self):
        self.pool = None

    async def initialize(self):
        db_config = config.database
        self.pool = await asyncpg.create_pool(
            host=db_config['host'],
            port=db_config['port'],
            database=db_config['database'],
            user=db_config['user'],
            password=db_config['password'],
            min_size=db_config.get('min_pool_size', 2),
            max_size=db_config.get('max_pool_size', 10),
        )
        async with self.pool.acquire() as conn:
            await conn.execute(SCHEMA)
        logger.info("Postgres store ready (%s/%s)", db_config['host'], db_config['database'])

    async def close(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    # signals
    @staticmethod
    def _signal(row) -> Optional[Signal]:
        if row is None:
            return None
        return Signal(
            id=row['id'],
            direction=Direction(row['direction']),
            token=row['token'],
            price=row['price'],
            risk_level=RiskLevel(row['risk_level']),
            risk_score=row['risk_score'],
            created_at=_epoch(row['created_at']),
            expires_at=_epoch(row['expires_at']),
            auto_executed=row['auto_executed'],
            link=row['link'],
            positives=_json(row['positives']),
            warnings=_json(row['warnings']),
            warning_count=row['warning_count'],
        )

    async def get_signal(self, signal_id: str) -> Optional[Signal]:
        row = await self.pool.fetchrow('SELECT * FROM signals WHERE id = $1', signal_id)
        return self._signal(row)

    async def find_active_signal(self, direction: Direction, token: str, price: float,
                                 now: float) -> Optional[Signal]:
        row = await self.pool.fetchrow(
            '''SELECT * FROM signals
               WHERE direction = $1 AND token = $2 AND price = $3 AND expires_at > $4
               ORDER BY created_at LIMIT 1''',
            direction.value, token, price, _ts(now),
        )
        return self._signal(row)

    async def insert_signal(self, signal: Signal) -> None:
        await self.pool.execute(
            '''INSERT INTO signals
               (id, direction, token, price, risk_level, risk_score, created_at, expires_at,
                auto_executed, link, positives, warnings, warning_count)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)''',
            signal.id,
            signal.direction.value,
            signal.token,
            signal.price,
            signal.risk_level.value,
            signal.risk_score,
            _ts(signal.created_at),
            _ts(signal.expires_at),
            signal.auto_executed,
            signal.link,
            json.dumps(signal.positives),
            json.dumps(signal.warnings),
            signal.warning_count,
        )

    async def list_signals(self, active_at: Optional[float] = None,
                           created_since: Optional[float] = None) -> List[Signal]:
        rows = await self.pool.fetch(
            '''SELECT * FROM signals
               WHERE ($1::timestamptz IS NULL OR expires_at > $1)
                 AND ($2::timestamptz IS NULL OR created_at >= $2)
               ORDER BY created_at DESC''',
            _ts(active_at), _ts(created_since),
        )
        return [self._signal(row) for row in rows]

    async def find_unclaimed_expired_signals(self, now: float) -> List[Signal]:
        rows = await self.pool.fetch(
            'SELECT * FROM signals WHERE expires_at < $1 AND NOT auto_executed ORDER BY expires_at',
            _ts(now),
        )
        return [self._signal(row) for row in rows]

    async def claim_signal_for_auto_execution(self, signal_id: str) -> bool:
        row = await self.pool.fetchrow(
            'UPDATE signals SET auto_executed = TRUE WHERE id = $1 AND auto_executed = FALSE RETURNING id',
            signal_id,
        )
        return row is not None

    # execution windows
    @staticmethod
    def _window(row) -> Optional[ExecutionWindow]:
        if row is None:
            return None
        return ExecutionWindow(
            signal_id=row['signal_id'],
            user_id=row['user_id'],
            expires_at=_epoch(row['expires_at']),
            state=WindowState(row['state']),
            percentage=row['percentage'],
            trade_id=row['trade_id'],
            decided_at=_epoch(row['decided_at']),
            reason=row['reason'],
        )

    async def claim_action(self, window: ExecutionWindow) -> bool:
        row = await self.pool.fetchrow(
            '''INSERT INTO signal_actions
               (signal_id, user_id, state, expires_at, percentage, trade_id, decided_at, reason)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
               ON CONFLICT (signal_id, user_id) DO NOTHING
               RETURNING signal_id''',
            window.signal_id,
            window.user_id,
            window.state.value,
            _ts(window.expires_at),
            window.percentage,
            window.trade_id,
            _ts(window.decided_at),
            window.reason,
        )
        return row is not None

    async def get_action(self, signal_id: str, user_id: str) -> Optional[ExecutionWindow]:
        row = await self.pool.fetchrow(
            'SELECT * FROM signal_actions WHERE signal_id = $1 AND user_id = $2', signal_id, user_id
        )
        return self._window(row)

    async def update_action(self, window: ExecutionWindow) -> None:
        await self.pool.execute(
            '''UPDATE signal_actions SET state = $3, trade_id = $4, reason = $5
               WHERE signal_id = $1 AND user_id = $2''',
            window.signal_id, window.user_id, window.state.value, window.trade_id, window.reason,
        )

    async def release_action(self, signal_id: str, user_id: str) -> None:
        await self.pool.execute(
            'DELETE FROM signal_actions WHERE signal_id = $1 AND user_id = $2', signal_id, user_id
        )

    # users
    @staticmethod
    def _user(row) -> Optional[User]:
        if row is None:
            return None
        return User(
            id=row['id'],
            risk_level=RiskLevel(row['risk_level']),
            exchange_connected=row['exchange_connected'],
            exchange=row['exchange'],
            credentials_ref=row['credentials_ref'],
            auto_trade_enabled=row['auto_trade_enabled'],
            last_signal_tokens=[SignalTokenMark(**mark) for mark in _json(row['last_signal_tokens'])],
        )

    async def get_user(self, user_id: str) -> Optional[User]:
        return self._user(await self.pool.fetchrow('SELECT * FROM users WHERE id = $1', user_id))

    async def save_user(self, user: User) -> None:
        await self.pool.execute(
            '''INSERT INTO users
               (id, risk_level, exchange_connected, exchange, credentials_ref, auto_trade_enabled, last_signal_tokens)
               VALUES ($1, $2, $3, $4, $5, $6, $7)
               ON CONFLICT (id) DO UPDATE SET
                   risk_level = EXCLUDED.risk_level,
                   exchange_connected = EXCLUDED.exchange_connected,
                   exchange = EXCLUDED.exchange,
                   credentials_ref = EXCLUDED.credentials_ref,
                   auto_trade_enabled = EXCLUDED.auto_trade_enabled,
                   last_signal_tokens = EXCLUDED.last_signal_tokens''',
            user.id,
            user.risk_level.value,
            user.exchange_connected,
            user.exchange,
            user.credentials_ref,
            user.auto_trade_enabled,
            json.dumps([asdict(mark) for mark in user.last_signal_tokens]),
        )

    async def find_users(self, risk_level: Optional[RiskLevel] = None,
                         exchange_connected: Optional[bool] = None) -> List[User]:
        rows = await self.pool.fetch(
            '''SELECT * FROM users
               WHERE ($1::text IS NULL OR risk_level = $1)
                 AND ($2::boolean IS NULL OR exchange_connected = $2)
               ORDER BY id''',
            risk_level.value if risk_level else None, exchange_connected,
        )
        return [self._user(row) for row in rows]

    async def claim_signal_token(self, user_id: str, mark: SignalTokenMark, window_s: float) -> bool:
        # the row lock makes a concurrent claim re-check the updated marks
        row = await self.pool.fetchrow(
            '''UPDATE users SET last_signal_tokens = last_signal_tokens || $2::jsonb
               WHERE id = $1 AND NOT EXISTS (
                   SELECT 1 FROM jsonb_array_elements(last_signal_tokens) AS mark
                   WHERE mark->>'token' = $3 AND (mark->>'timestamp')::float8 > $4
               )
               RETURNING id''',
            user_id, json.dumps([asdict(mark)]), mark.token, mark.timestamp - window_s,
        )
        return row is not None

    async def release_signal_token(self, user_id: str, mark: SignalTokenMark) -> None:
        await self.pool.execute(
            '''UPDATE users SET last_signal_tokens = COALESCE((
                   SELECT jsonb_agg(mark) FROM jsonb_array_elements(last_signal_tokens) AS mark
                   WHERE NOT (mark->>'token' = $2 AND (mark->>'timestamp')::float8 = $3)
               ), '[]'::jsonb)
               WHERE id = $1''',
            user_id, mark.token, mark.timestamp,
        )

    # trades
    @staticmethod
    def _trade(row) -> Trade:
        return Trade(
            id=row['id'],
            user_id=row['user_id'],
            signal_id=row['signal_id'],
            cycle_id=row['cycle_id'],
            direction=Direction(row['direction']),
            token=row['token'],
            price=row['price'],
            amount=row['amount'],
            status=TradeStatus(row['status']),
            auto_executed=row['auto_executed'],
            order_id=row['order_id'],
            error=row['error'],
            created_at=_epoch(row['created_at']),
        )

    async def insert_trade(self, trade: Trade) -> None:
        await self.pool.execute(
            '''INSERT INTO trades
               (id, user_id, signal_id, cycle_id, direction, token, price, amount, status,
                auto_executed, order_id, error, created_at)
               VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)''',
            trade.id,
            trade.user_id,
            trade.signal_id,
            trade.cycle_id,
            trade.direction.value,
            trade.token,
            trade.price,
            trade.amount,
            trade.status.value,
            trade.auto_executed,
            trade.order_id,
            trade.error,
            _ts(trade.created_at),
        )

    async def update_trade(self, trade: Trade) -> None:
        # the ledger only ever gains a cycle reference or a status change
        await self.pool.execute(
            'UPDATE trades SET cycle_id = $2, status = $3 WHERE id = $1',
            trade.id, trade.cycle_id, trade.status.value,
        )

    async def list_trades(self, user_id: Optional[str] = None,
                          signal_id: Optional[str] = None) -> List[Trade]:
        rows = await self.pool.fetch(
            '''SELECT * FROM trades
               WHERE ($1::text IS NULL OR user_id = $1)
                 AND ($2::text IS NULL OR signal_id = $2)
               ORDER BY created_at''',
            user_id, signal_id,
        )
        return [self._trade(row) for row in rows]

    # cycles
    @staticmethod
    def _cycle(row) -> Optional[Cycle]:
        if row is None:
            return None
        return Cycle(
            id=row['id'],
            user_id=row['user_id'],
            token=row['token'],
            state=CycleState(row['state']),
            entry_price=row['entry_price'],
            entry_trade_id=row['entry_trade_id'],
            entry_trade_ids=list(_json(row['entry_trade_ids'])),
            entry_amount=row['entry_amount'],
            amount_sold=row['amount_sold'],
            exit_trade_id=row['exit_trade_id'],
            exit_price=row['exit_price'],
            pnl=row['pnl'],
            pnl_percentage=row['pnl_percentage'],
            partial_exits=[PartialExit(**p) for p in _json(row['partial_exits'])],
            guidance=row['guidance'] or '',
            created_at=_epoch(row['created_at']),
            updated_at=_epoch(row['updated_at']),
        )

    def _cycle_args(self, cycle: Cycle):
        return (
            cycle.id,
            cycle.user_id,
            cycle.token,
            cycle.state.value,
            cycle.entry_price,
            cycle.entry_trade_id,
            json.dumps(cycle.entry_trade_ids),
            cycle.entry_amount,
            cycle.amount_sold,
            cycle.exit_trade_id,
            cycle.exit_price,
            cycle.pnl,
            cycle.pnl_percentage,
            json.dumps([asdict(p) for p in cycle.partial_exits]),
            cycle.guidance,
            _ts(cycle.created_at),
            _ts(cycle.updated_at),
        )

    async def find_open_cycle(self, user_id: str, token: str) -> Optional[Cycle]:
        row = await self.pool.fetchrow(
            "SELECT * FROM cycles WHERE user_id = $1 AND token = $2 AND state IN ('entry', 'hold')",
            user_id, token,
        )
        return self._cycle(row)

    async def insert_cycle(self, cycle: Cycle) -> None:
        try:
            await self.pool.execute(
                '''INSERT INTO cycles
                   (id, user_id, token, state, entry_price, entry_trade_id, entry_trade_ids, entry_amount,
                    amount_sold, exit_trade_id, exit_price, pnl, pnl_percentage, partial_exits, guidance,
                    created_at, updated_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17)''',
                *self._cycle_args(cycle),
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateOpenCycle(f"open cycle exists for {cycle.user_id}/{cycle.token}") from exc

    async def save_cycle(self, cycle: Cycle) -> None:
        await self.pool.execute(
            '''UPDATE cycles SET
                   state = $2, entry_price = $3, entry_trade_ids = $4, entry_amount = $5,
                   amount_sold = $6, exit_trade_id = $7, exit_price = $8, pnl = $9,
                   pnl_percentage = $10, partial_exits = $11, guidance = $12, updated_at = $13
               WHERE id = $1''',
            cycle.id,
            cycle.state.value,
            cycle.entry_price,
            json.dumps(cycle.entry_trade_ids),
            cycle.entry_amount,
            cycle.amount_sold,
            cycle.exit_trade_id,
            cycle.exit_price,
            cycle.pnl,
            cycle.pnl_percentage,
            json.dumps([asdict(p) for p in cycle.partial_exits]),
            cycle.guidance,
            _ts(cycle.updated_at),
        )

    async def get_cycle(self, cycle_id: str) -> Optional[Cycle]:
        return self._cycle(await self.pool.fetchrow('SELECT * FROM cycles WHERE id = $1', cycle_id))

    async def list_cycles(self, user_id: Optional[str] = None,
                          states: Optional[Iterable[CycleState]] = None) -> List[Cycle]:
        state_values = [s.value for s in states] if states is not None else None
        rows = await self.pool.fetch(
            '''SELECT * FROM cycles
               WHERE ($1::text IS NULL OR user_id = $1)
                 AND ($2::text[] IS NULL OR state = ANY($2))
               ORDER BY created_at''',
            user_id, state_values,
        )
        return [self._cycle(row) for row in rows]

    # portfolios
    async def get_portfolio(self, user_id: str) -> Optional[Portfolio]:
        row = await self.pool.fetchrow('SELECT * FROM portfolios WHERE user_id = $1', user_id)
        if row is None:
            return None
        return Portfolio(
            user_id=row['user_id'],
            total_value=row['total_value'],
            free_capital=row['free_capital'],
            allocated_capital=row['allocated_capital'],
            holdings=[Holding(**h) for h in _json(row['holdings'])],
            updated_at=_epoch(row['updated_at']),
        )

    async def replace_portfolio(self, portfolio: Portfolio) -> None:
        await self.pool.execute(
            '''INSERT INTO portfolios (user_id, total_value, free_capital, allocated_capital, holdings, updated_at)
               VALUES ($1, $2, $3, $4, $5, $6)
               ON CONFLICT (user_id) DO UPDATE SET
                   total_value = EXCLUDED.total_value,
                   free_capital = EXCLUDED.free_capital,
                   allocated_capital = EXCLUDED.allocated_capital,
                   holdings = EXCLUDED.holdings,
                   updated_at = EXCLUDED.updated_at''',
            portfolio.user_id,
            portfolio.total_value,
            portfolio.free_capital,
            portfolio.allocated_capital,
            json.dumps([asdict(h) for h in portfolio.holdings]),
            _ts(portfolio.updated_at),
        )

    # notifications
    async def has_notification(self, user_id: str, related_id: str, kind: str = 'signal') -> bool:
        row = await self.pool.fetchrow(
            'SELECT 1 FROM notifications WHERE user_id = $1 AND related_id = $2 AND kind = $3 LIMIT 1',
            user_id, related_id, kind,
        )
        return row is not None

    async def insert_notification(self, user_id: str, message: str, kind: str,
                                  related_id: Optional[str]) -> None:
        await self.pool.execute(
            'INSERT INTO notifications (user_id, kind, message, related_id) VALUES ($1, $2, $3, $4)',
            user_id, kind, message, related_id,
        )
