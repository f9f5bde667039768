import json
import sys

sys.path.insert(0, '.')

from monitoring.signal_auditor import ExecutionAuditor
from strategy.execution_types import Direction, Trade, TradeStatus
from tests.fakes import make_signal, make_user


def test_execution_auditor_appends_json_lines(tmp_path):
    log_path = tmp_path / 'audit.jsonl'
    auditor = ExecutionAuditor(str(log_path))
    user = make_user()
    signal = make_signal()
    trade = Trade(user_id=user.id, direction=Direction.BUY, token='SOL', price=100.0, amount=1.0,
                  status=TradeStatus.COMPLETED, signal_id=signal.id, auto_executed=True)

    auditor.record_execution(user, signal, 'BUY', 'SOL', 1.0, 'completed', latency_s=0.2, trade=trade)
    auditor.record_execution(user, None, 'SELL', 'SOL', None, 'no holdings', details={'message': 'no SOL'})

    lines = [json.loads(line) for line in log_path.read_text().splitlines()]
    assert len(lines) == 2
    assert lines[0]['signal_id'] == signal.id
    assert lines[0]['trade_id'] == trade.id
    assert lines[0]['auto_executed'] is True
    assert lines[1]['outcome'] == 'no holdings'
    assert lines[1]['signal_id'] is None
    assert lines[1]['details'] == {'message': 'no SOL'}
