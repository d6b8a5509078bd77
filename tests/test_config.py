import sys

sys.path.insert(0, '.')

import pytest

from config import Config, config
from config.config_loader import expand_env
from strategy.models import StrategyConfig, load_strategies
from tests.market_fixtures import make_strategy


def test_env_placeholders_are_expanded(tmp_path, monkeypatch):
    monkeypatch.setenv('MM_TEST_ACCOUNT', 'acct-123')
    path = tmp_path / 'config.yaml'
    path.write_text(
        "exchange:\n"
        "  account_id: ${MM_TEST_ACCOUNT}\n"
        "  missing: ${MM_TEST_NOT_SET_ANYWHERE}\n"
        "  urls:\n"
        "    - ${MM_TEST_ACCOUNT}\n"
        "    - plain\n"
    )
    cfg = Config(str(path))
    assert cfg.exchange.account_id == 'acct-123'
    assert cfg.exchange['missing'] == ''
    assert cfg.exchange.urls == ['acct-123', 'plain']


def test_inline_placeholders_and_fallbacks(monkeypatch):
    monkeypatch.setenv('MM_TEST_HOST', 'api.example')
    monkeypatch.delenv('MM_TEST_PORT', raising=False)
    tree = expand_env({'url': 'https://${MM_TEST_HOST}:${MM_TEST_PORT:-443}/v1', 'n': 3})
    assert tree == {'url': 'https://api.example:443/v1', 'n': 3}


def test_require_reports_missing_sections(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("exchange:\n  paper: true\n")
    cfg = Config(str(path))
    cfg.require(['exchange'])
    with pytest.raises(RuntimeError, match='strategies'):
        cfg.require(['exchange', 'strategies'])


def test_missing_sections_and_keys(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("risk:\n  dust_notional: 10\n")
    cfg = Config(str(path))
    assert cfg.section('quoting').get('min_notional', 7.0) == 7.0
    assert len(cfg.section('quoting')) == 0
    with pytest.raises(AttributeError):
        cfg.quoting
    with pytest.raises(AttributeError):
        cfg.risk.check_interval_s


def test_missing_file_raises(tmp_path):
    with pytest.raises(RuntimeError):
        Config(str(tmp_path / 'nope.yaml'))


def test_shipped_config_builds_valid_strategies():
    strategies = load_strategies(config.get('strategies'))
    assert strategies
    for symbol, strategy in strategies.items():
        assert strategy.symbol == symbol
        assert strategy.order_levels >= 1
        assert strategy.gamma > 0 and strategy.k > 0


def test_strategy_from_dict_defaults():
    strategy = StrategyConfig.from_dict('PERP_Y_USDC', {
        'price_precision': 2, 'base_order_quantity': 1, 'trade_period_ms': 1000,
        'order_levels': 2, 'level_spacing_ratio': 0.1, 'take_profit_ratio_pct': 1,
        'stop_loss_ratio_pct': 1, 'risk_aversion': 0.5, 'liquidity_constant': 2,
    })
    assert strategy.symbol == 'PERP_Y_USDC'
    assert strategy.directional_threshold_pct == 60.0
    assert strategy.trade_period_s == 1.0


@pytest.mark.parametrize('field,value', [
    ('risk_aversion', 0.0),
    ('liquidity_constant', -1.0),
    ('base_order_quantity', 0.0),
    ('order_levels', 0),
    ('trade_period_ms', 0),
    ('price_precision', -1),
    ('directional_threshold_pct', 120.0),
])
def test_invalid_strategy_values_are_rejected(field, value):
    with pytest.raises(ValueError):
        make_strategy(**{field: value})
