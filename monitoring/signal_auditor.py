import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Optional

from config import config
from strategy.execution_types import Trade, User
from strategy.signal_manager import Signal


logger = logging.getLogger(__name__)


class ExecutionAuditor:
    """Appends one JSON line per execution attempt."""

    def __init__(self, log_path: Optional[str] = None):
        path = log_path or config.section('monitoring').get('execution_audit_log') or 'logs/execution_audit.jsonl'
        self.log_path = Path(path)

    def record_execution(
        self,
        user: User,
        signal: Optional[Signal],
        direction: str,
        token: str,
        quantity: Optional[float],
        outcome: str,
        latency_s: Optional[float] = None,
        trade: Optional[Trade] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        payload = {
            'timestamp': time.time(),
            'user_id': user.id,
            'signal_id': signal.id if signal else None,
            'direction': direction,
            'token': token,
            'quantity': quantity,
            'outcome': outcome,
            'latency_s': latency_s,
            'trade_id': trade.id if trade else None,
            'price': trade.price if trade else None,
            'auto_executed': trade.auto_executed if trade else None,
            'details': details or {},
        }
        self._write_entry(payload)

    def _write_entry(self, payload: Dict):
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open('a', encoding='utf-8') as handle:
                handle.write(json.dumps(payload, default=str) + '\n')
        except OSError as exc:
            logger.error("Failed to persist audit log: %s", exc)
