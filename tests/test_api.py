import sys

sys.path.insert(0, '.')

import pytest
from fastapi.testclient import TestClient

import api.fastapi_server as server


class FakeLedger:
    def stats(self):
        return {'open_orders': 2, 'filled_orders': 1, 'filled_volume': 3.0, 'cancelled_orders': 0}


class FakeTrader:
    ledger = FakeLedger()

    def snapshot(self):
        return {'symbol': 'PERP_TEST_USDC', 'risk': {'state': 'FLAT', 'pnl_pct': 0.0}}


class FakeScheduler:
    def __init__(self):
        self.running = True
        self.traders = {'PERP_TEST_USDC': FakeTrader()}


class FakeSystem:
    mode = 'paper'

    def __init__(self):
        self.scheduler = FakeScheduler()
        self.calls = []

    def status_report(self):
        return 'PERP_TEST_USDC: position +0'

    async def stop_trading(self):
        self.calls.append('stop')
        self.scheduler.running = False

    async def restart(self):
        self.calls.append('restart')
        self.scheduler.running = True


@pytest.fixture
def system(monkeypatch):
    fake = FakeSystem()
    monkeypatch.setattr(server, 'trading_system', fake)
    return fake


def test_health_reports_running(system):
    client = TestClient(server.app)
    body = client.get('/health').json()
    assert body['status'] == 'healthy'
    assert body['system_running'] is True


def test_status_contains_report_and_ledger_stats(system):
    body = TestClient(server.app).get('/api/status').json()
    assert body['mode'] == 'paper'
    assert body['report'].startswith('PERP_TEST_USDC')
    assert body['symbols']['PERP_TEST_USDC']['filled_volume'] == 3.0


def test_stop_and_restart(system):
    client = TestClient(server.app)
    assert client.post('/api/stop').status_code == 200
    assert client.get('/health').json()['system_running'] is False
    body = client.post('/api/restart').json()
    assert body['running'] is True
    assert system.calls == ['stop', 'restart']


def test_symbol_detail(system):
    client = TestClient(server.app)
    assert client.get('/api/symbols/perp_test_usdc').json()['risk']['state'] == 'FLAT'
    assert client.get('/api/symbols/PERP_NOPE_USDC').status_code == 404


def test_endpoints_without_system(monkeypatch):
    monkeypatch.setattr(server, 'trading_system', None)
    client = TestClient(server.app)
    assert client.get('/health').json()['system_running'] is False
    assert client.get('/api/status').status_code == 503
    assert client.post('/api/stop').status_code == 503
