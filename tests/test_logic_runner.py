"""
TradeBuilder - Supervisor tests
The end-to-end cases spawn real worker processes.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from builders import always_buy_logic, const_compare_graph, logic_data, make_candles, node
from fakes import FakeProvider, LogRecorder, RecordingSink
from tradebuilder.workflows.logic_runner import LogicRunnerManager, RunningLogic


SPAWN_TIMEOUT = 30.0


def wait_for(predicate, timeout=SPAWN_TIMEOUT):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return predicate()


def invalid_logic():
    return logic_data({'nodes': [node('term', 'buy')], 'connections': []},
                      const_compare_graph('sell', 1, 2))


@pytest.fixture
def runner_factory():
    runners = []

    def factory(provider=None, order_sink=None):
        runner = LogicRunnerManager(provider, order_sink=order_sink, request_timeout=5)
        runners.append(runner)
        return runner

    yield factory
    for runner in runners:
        runner.shutdown()


@pytest.fixture
def running(logs):
    return RunningLogic(
        logic_id='logic-1',
        stock='KRW-BTC',
        start_time=time.time(),
        interval=1.0,
        log_details=False,
        log_func=logs,
        inbox=MagicMock(),
    )


# =============================================================================
# Start / stop contract
# =============================================================================

class TestStartStop:

    def test_stop_unknown_logic(self, runner_factory):
        assert runner_factory().stop_logic('nope') is False

    def test_invalid_logic_is_rejected_before_spawn(self, runner_factory, logs):
        runner = runner_factory()
        assert runner.start_logic('logic-1', 'KRW-BTC', invalid_logic(), logs) is False
        assert not runner.is_running('logic-1')
        assert logs.contains('Error', 'MissingCondition')

    def test_missing_logic_id(self, runner_factory, logs):
        assert runner_factory().start_logic('', 'KRW-BTC', always_buy_logic(), logs) is False

    def test_runs_in_isolated_worker_and_dispatches_buy(self, runner_factory, logs):
        provider = FakeProvider(make_candles(range(100, 130)))
        sink = RecordingSink()
        runner = runner_factory(provider, sink)

        assert runner.start_logic('logic-1', 'KRW-BTC', always_buy_logic(quantity=5000), logs, interval=1)
        assert runner.is_running('logic-1')
        assert runner.get_running_logic('logic-1').to_dict()['interval'] == 1.0

        # second start of the same id is rejected
        other_logs = LogRecorder()
        assert runner.start_logic('logic-1', 'KRW-BTC', always_buy_logic(), other_logs) is False
        assert other_logs.contains('Error', 'already running')

        assert wait_for(lambda: sink.orders), f"no order dispatched; logs: {logs.entries}"
        assert sink.orders[0] == ('market_buy', 'KRW-BTC', 5000.0)
        assert all(o[0] == 'market_buy' for o in sink.orders)
        # the worker's market data is served by the supervisor's provider
        assert any(c[0] == 'fetch_candles' for c in provider.calls)

        assert runner.stop_logic('logic-1') is True
        assert not runner.is_running('logic-1')
        assert logs.contains('System', 'stopped')

        # nothing is emitted for the logic after stop returns
        entries, orders = len(logs.entries), len(sink.orders)
        time.sleep(1.5)
        assert len(logs.entries) == entries
        assert len(sink.orders) == orders
        assert runner.stop_logic('logic-1') is False

    def test_stop_all(self, runner_factory, logs):
        runner = runner_factory(FakeProvider(make_candles([1, 2, 3])))
        assert runner.start_logic('a', 'KRW-BTC', always_buy_logic(), logs, interval=5)
        assert runner.start_logic('b', 'KRW-ETH', always_buy_logic(), logs, interval=5)
        assert len(runner.get_all_running_logics()) == 2
        runner.stop_all_logics()
        assert runner.get_all_running_logics() == []

    def test_interval_is_clamped(self, runner_factory, logs):
        runner = runner_factory(FakeProvider(make_candles([1, 2, 3])))
        assert runner.start_logic('a', 'KRW-BTC', always_buy_logic(), logs, interval=0.1)
        assert runner.get_running_logic('a').interval == 1.0
        assert logs.contains('System', 'raised to minimum')


# =============================================================================
# Supervisor side of the boundary
# =============================================================================

class TestWorkerMessages:

    def test_api_request_is_served_from_provider(self, runner_factory, running):
        runner = runner_factory(FakeProvider(price=123.0))
        runner._handle_api_request(running, {'type': 'api-request', 'request_id': 7,
                                             'method': 'get_current_price', 'params': ['KRW-BTC']})
        running.inbox.put.assert_called_once_with(
            {'type': 'api-response', 'request_id': 7, 'success': True, 'result': 123.0})

    def test_unknown_api_method_is_refused(self, runner_factory, running):
        runner = runner_factory(FakeProvider())
        runner._handle_api_request(running, {'request_id': 8, 'method': '__init__', 'params': []})
        response = running.inbox.put.call_args[0][0]
        assert response['success'] is False
        assert 'Unknown API method' in response['error']

    def test_provider_failure_becomes_error_response(self, runner_factory, running):
        runner = runner_factory(FakeProvider(fail=True))
        runner._handle_api_request(running, {'request_id': 9, 'method': 'get_current_price',
                                             'params': ['KRW-BTC']})
        assert running.inbox.put.call_args[0][0]['success'] is False

    def test_log_and_error_messages_reach_sink(self, runner_factory, running, logs):
        runner = runner_factory()
        runner.handle_worker_message(running, {'type': 'log', 'title': 'Buy', 'msg': 'hello'})
        runner.handle_worker_message(running, {'type': 'error', 'message': 'DataNotReadyError: x'})
        assert ('Buy', 'hello') in logs.entries
        assert ('Error', 'DataNotReadyError: x') in logs.entries

    def test_ready_triggers_start(self, runner_factory, running):
        runner_factory().handle_worker_message(running, {'type': 'ready'})
        running.inbox.put.assert_called_once_with({'type': 'start', 'interval': 1.0, 'log_details': False})

    def test_order_is_dispatched_to_sink(self, runner_factory, running, logs):
        sink = RecordingSink()
        runner = runner_factory(order_sink=sink)
        runner._handle_order(running, {'type': 'order', 'action': 'sell', 'stock': 'KRW-BTC',
                                       'order': {'orderType': 'limit', 'limitPrice': 10, 'quantity': 100}})
        assert sink.orders == [('limit_sell_with_krw', 'KRW-BTC', 10.0, 100.0)]

    def test_nothing_emitted_once_stopping(self, runner_factory, running, logs):
        sink = RecordingSink()
        runner = runner_factory(order_sink=sink)
        running.stopping.set()
        runner.handle_worker_message(running, {'type': 'log', 'title': 'Buy', 'msg': 'late'})
        runner._handle_order(running, {'type': 'order', 'action': 'buy', 'stock': 'KRW-BTC',
                                       'order': {'orderType': 'market', 'quantity': 1}})
        assert logs.entries == []
        assert sink.orders == []

    def test_stop_waits_for_order_in_flight(self, runner_factory, running):
        entered, release = threading.Event(), threading.Event()

        class SlowSink(RecordingSink):
            def market_buy(self, symbol, krw_amount):
                entered.set()
                release.wait(5)
                return super().market_buy(symbol, krw_amount)

        sink = SlowSink()
        runner = runner_factory(order_sink=sink)
        order = {'type': 'order', 'action': 'buy', 'stock': 'KRW-BTC',
                 'order': {'orderType': 'market', 'quantity': 1}}
        dispatcher = threading.Thread(target=runner._handle_order, args=(running, order))
        dispatcher.start()
        assert entered.wait(5)

        stopper = threading.Thread(target=runner._teardown, args=(running,))
        stopper.start()
        stopper.join(0.3)
        assert stopper.is_alive()

        release.set()
        stopper.join(5)
        dispatcher.join(5)
        assert not stopper.is_alive()
        runner._handle_order(running, order)
        assert sink.orders == [('market_buy', 'KRW-BTC', 1.0)]

    def test_init_failure_tears_logic_down(self, runner_factory, running, logs):
        runner = runner_factory()
        runner._running[running.logic_id] = running
        runner.handle_worker_message(running, {'type': 'init-failed', 'message': 'MissingCondition: x'})
        assert wait_for(lambda: not runner.is_running('logic-1'), timeout=5)
        assert wait_for(lambda: logs.contains('System', 'stopped after failure'), timeout=5)
        assert ('Error', 'Logic parse failed: MissingCondition: x') in logs.entries
        running.inbox.put.assert_any_call({'type': 'stop'})


# =============================================================================
# Worker crash
# =============================================================================

def test_dead_worker_is_reported_and_torn_down(runner_factory, logs):
    runner = runner_factory(FakeProvider(make_candles(range(100, 130))))
    assert runner.start_logic('logic-1', 'KRW-BTC', always_buy_logic(), logs, interval=1)
    assert wait_for(lambda: logs.contains('System', 'Logic running')), f"worker never started; logs: {logs.entries}"

    runner.get_running_logic('logic-1').process.kill()

    assert wait_for(lambda: not runner.is_running('logic-1'))
    assert wait_for(lambda: logs.contains('System', 'stopped after failure'))
    assert logs.contains('Error', 'Worker error')
    assert runner.stop_logic('logic-1') is False


# =============================================================================
# One-shot execution
# =============================================================================

class TestRunOnce:

    def test_run_once_returns_decision(self, runner_factory, logs):
        result = runner_factory().run_once('KRW-BTC', always_buy_logic(), logs, ready_timeout=1)
        assert result == {'buy': True, 'sell': False}
        # no order sink: the buy is only logged
        assert logs.contains('Buy', 'Dry run')

    def test_run_once_with_sink(self, runner_factory, logs):
        sink = RecordingSink()
        runner = runner_factory(order_sink=sink)
        runner.run_once('KRW-BTC', always_buy_logic(quantity=7000), logs, ready_timeout=1)
        assert sink.orders == [('market_buy', 'KRW-BTC', 7000.0)]

    def test_run_once_invalid_logic(self, runner_factory, logs):
        assert runner_factory().run_once('KRW-BTC', invalid_logic(), logs) is None
        assert logs.contains('Error', 'Logic parse failed')

    def test_run_once_evaluation_error(self, runner_factory, logs):
        buy = logic_data(
            {'nodes': [node('cp', 'currentPrice'),
                       node('hp', 'highestPrice', periodUnit='day', periodLength=1),
                       node('cmp', 'compare', operator='>'),
                       node('term', 'buy')],
             'connections': [{'source': 'cp', 'target': 'cmp'}, {'source': 'hp', 'target': 'cmp'},
                             {'source': 'cmp', 'target': 'term'}]},
            const_compare_graph('sell', 1, 2),
        )
        assert runner_factory().run_once('KRW-BTC', buy, logs, ready_timeout=1) is None
        assert logs.contains('Error', 'DataNotReadyError')
