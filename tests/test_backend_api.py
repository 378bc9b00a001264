"""
TradeBuilder - HTTP API tests (Flask test client)
"""

from unittest.mock import MagicMock

import pytest

from builders import always_buy_logic, logic_data, node, const_compare_graph
from tradebuilder.api import backend
from tradebuilder.utils.log_center import LogCenter
from tradebuilder.workflows.logic_runner import LogicRunnerManager
from tradebuilder.workflows.logic_store import LogicStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    s = LogicStore(str(tmp_path))
    monkeypatch.setattr(backend, 'store', s)
    return s


@pytest.fixture
def log_center(monkeypatch):
    center = LogCenter(max_entries=50)
    monkeypatch.setattr(backend, 'log_center', center)
    return center


@pytest.fixture
def runner(monkeypatch):
    mock = MagicMock()
    mock.is_running.return_value = False
    mock.get_all_running_logics.return_value = []
    monkeypatch.setattr(backend, 'logic_runner', mock)
    return mock


@pytest.fixture
def client(store, log_center, runner):
    backend.app.config['TESTING'] = True
    with backend.app.test_client() as c:
        yield c


@pytest.fixture
def saved(store):
    return store.create_logic('Always buy', 'KRW-BTC', always_buy_logic())


# =============================================================================
# CRUD
# =============================================================================

class TestLogicCrud:

    def test_health(self, client):
        resp = client.get('/health')
        assert resp.status_code == 200
        assert resp.get_json()['status'] == 'ok'

    def test_create_and_list(self, client):
        resp = client.post('/api/logics', json={'name': 'Dip', 'stock': 'KRW-ETH'})
        assert resp.status_code == 201
        logic_id = resp.get_json()['logic']['id']
        listed = client.get('/api/logics').get_json()
        assert listed == [{'id': logic_id, 'name': 'Dip', 'stock': 'KRW-ETH', 'order': 0, 'isRunning': False}]

    def test_get_and_update(self, client, saved):
        resp = client.get(f"/api/logics/{saved['id']}")
        assert resp.get_json()['data'] == always_buy_logic()
        resp = client.put(f"/api/logics/{saved['id']}", json={'name': 'Renamed'})
        assert resp.get_json()['logic']['name'] == 'Renamed'

    def test_unknown_logic(self, client):
        assert client.get('/api/logics/logic-missing').status_code == 404
        assert client.put('/api/logics/logic-missing', json={}).status_code == 404

    def test_delete_stops_running_logic(self, client, saved, runner):
        assert client.delete(f"/api/logics/{saved['id']}").status_code == 200
        runner.stop_logic.assert_called_once_with(saved['id'])
        assert client.get(f"/api/logics/{saved['id']}").status_code == 404

    def test_reorder(self, client, store):
        a = store.create_logic('A')
        b = store.create_logic('B')
        resp = client.post('/api/logics/reorder', json={'order': [b['id'], a['id']]})
        assert [e['id'] for e in resp.get_json()['logics']] == [b['id'], a['id']]
        assert client.post('/api/logics/reorder', json={'order': 'nope'}).status_code == 400


# =============================================================================
# Validation / execution
# =============================================================================

class TestExecution:

    def test_validate_valid_logic(self, client, saved):
        body = client.post(f"/api/logics/{saved['id']}/validate").get_json()
        assert body['valid'] is True
        assert body['buy'][0] == {'kind': 'compare', 'operator': '>'}
        assert body['buyOrder'] == {'orderType': 'market', 'limitPrice': 0.0, 'quantity': 10000.0}

    def test_validate_reports_reason(self, client, saved):
        bad = logic_data({'nodes': [node('term', 'buy')], 'connections': []},
                         const_compare_graph('sell', 1, 2))
        body = client.post(f"/api/logics/{saved['id']}/validate", json={'data': bad}).get_json()
        assert body['valid'] is False
        assert body['reason'] == 'MissingCondition'
        assert body['nodeId'] == 'term'

    def test_start(self, client, saved, runner):
        runner.start_logic.return_value = True
        runner.get_running_logic.return_value.to_dict.return_value = {'logicId': saved['id']}
        resp = client.post(f"/api/logics/{saved['id']}/start", json={'interval': 2, 'logDetails': True})
        assert resp.status_code == 200
        args, kwargs = runner.start_logic.call_args
        assert args[:3] == (saved['id'], 'KRW-BTC', always_buy_logic())
        assert kwargs == {'log_details': True, 'interval': 2.0}

    def test_start_already_running(self, client, saved, runner):
        runner.is_running.return_value = True
        assert client.post(f"/api/logics/{saved['id']}/start").status_code == 409
        runner.start_logic.assert_not_called()

    def test_start_invalid_logic(self, client, store, runner):
        logic = store.create_logic('Bad', 'KRW-BTC', {'buyGraph': {'nodes': [node('term', 'buy')]}})
        resp = client.post(f"/api/logics/{logic['id']}/start")
        assert resp.status_code == 400
        runner.start_logic.assert_not_called()

    def test_start_requires_stock(self, client, store):
        logic = store.create_logic('No stock', '', always_buy_logic())
        assert client.post(f"/api/logics/{logic['id']}/start").status_code == 400

    def test_stop_not_running(self, client, runner):
        runner.stop_logic.return_value = False
        assert client.post('/api/logics/logic-x/stop').status_code == 404

    def test_stop_all(self, client, runner):
        assert client.post('/api/logics/stop-all').get_json()['success'] is True
        runner.stop_all_logics.assert_called_once_with()

    def test_running_list(self, client, runner):
        running = MagicMock()
        running.to_dict.return_value = {'logicId': 'logic-1'}
        runner.get_all_running_logics.return_value = [running]
        assert client.get('/api/logics/running').get_json() == [{'logicId': 'logic-1'}]

    def test_run_once_and_logs(self, client, saved, monkeypatch):
        monkeypatch.setattr(backend, 'logic_runner', LogicRunnerManager(None))
        body = client.post(f"/api/logics/{saved['id']}/run-once", json={'logDetails': True}).get_json()
        assert body['success'] is True
        assert body['result'] == {'buy': True, 'sell': False}
        logs = client.get(f"/api/logics/{saved['id']}/logs").get_json()
        titles = {entry['title'] for entry in logs}
        assert {'Buy', 'Sell'} <= titles
        assert client.get(f"/api/logics/{saved['id']}/logs?limit=1").get_json() == logs[-1:]
