import sys

sys.path.insert(0, '.')

import pytest

from config.config_loader import Config, ConfigError


def _write(tmp_path, text):
    path = tmp_path / 'config.yaml'
    path.write_text(text)
    return str(path)


def test_env_references_and_defaults(tmp_path):
    path = _write(tmp_path, (
        "exchange:\n"
        "  mode: paper\n"
        "  api_key: ${BINANCE_API_KEY}\n"
        "  quote_asset: ${QUOTE:-USDT}\n"
        "database:\n"
        "  host: ${POSTGRES_HOST:-localhost}\n"
    ))
    cfg = Config(path, environ={'BINANCE_API_KEY': 'k1'})
    assert cfg.section('exchange').get('api_key') == 'k1'
    assert cfg.section('exchange').get('quote_asset') == 'USDT'
    assert cfg.database['host'] == 'localhost'
    assert cfg.section('missing') == {}


def test_section_overrides_from_environment(tmp_path):
    path = _write(tmp_path, "execution:\n  buy_fraction: 0.1\n")
    cfg = Config(path, environ={
        'SIGNALBOT_EXECUTION__BUY_FRACTION': '0.25',
        'SIGNALBOT_DATABASE__ENABLED': 'true',
        'SIGNALBOT_CONFIG': 'ignored.yaml',
    })
    assert cfg.section('execution').get('buy_fraction') == 0.25
    assert cfg.section('database').get('enabled') is True


def test_invalid_settings_are_rejected(tmp_path):
    with pytest.raises(ConfigError):
        Config(_write(tmp_path, "exchange:\n  mode: kraken\n"), environ={})
    with pytest.raises(ConfigError):
        Config(_write(tmp_path, "execution:\n  buy_fraction: 2\n"), environ={})
    with pytest.raises(ConfigError):
        Config(str(tmp_path / 'nope.yaml'), environ={})


def test_shipped_config_loads():
    cfg = Config(environ={})
    assert cfg.section('signals').get('window_minutes') == 10
    assert list(cfg.section('signals').get('risk_targets')) == ['low', 'medium', 'high']
