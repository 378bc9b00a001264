"""
logic_worker.py

Process-side half of an isolated running logic. Each running logic gets its
own worker process so an exception, hang or memory blow-up in one logic
cannot touch another logic or the supervisor.

Messages supervisor -> worker (inbox):
  {'type': 'init', 'stock', 'logic_data'}
  {'type': 'start', 'interval', 'log_details'}
  {'type': 'stop'}
  {'type': 'api-response', 'request_id', 'success', 'result' | 'error'}

Messages worker -> supervisor (outbox):
  ready | init-failed | started | stopped | error | log | order | api-request

The worker's main thread only reads the inbox. Ticks run on a scheduler
thread, so a tick blocked on an api-request never stops the api-response from
being delivered.
"""
import itertools
import threading
import time
from typing import Any, Dict, Optional

from tradebuilder import config
from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.errors import IsolationBoundaryError, MarketDataError, RequestTimeoutError
from tradebuilder.workflows.graph_compiler import OrderData
from tradebuilder.workflows.interpreter import Interpreter
from tradebuilder.workflows.market_data import MarketDataProvider

logger = setup_logger('tradebuilder.worker')


class WorkerChannel:
    """Outbound side of the worker boundary."""

    def __init__(self, outbox):
        self.outbox = outbox
        self._lock = threading.Lock()

    def post(self, message: Dict[str, Any]):
        with self._lock:
            self.outbox.put(message)

    def log(self, title: str, msg: str):
        self.post({'type': 'log', 'title': title, 'msg': msg})


class _PendingRequest:
    __slots__ = ('event', 'success', 'result', 'error')

    def __init__(self):
        self.event = threading.Event()
        self.success = False
        self.result = None
        self.error = None


class WorkerAPIProxy(MarketDataProvider):
    """
    MarketDataProvider that forwards every call to the supervisor.

    Requests are correlated by request_id. A request without a response
    after `timeout` seconds raises RequestTimeoutError and its entry is purged.
    """

    def __init__(self, channel: WorkerChannel, timeout: float = None):
        self.channel = channel
        self.timeout = timeout or config.WORKER_REQUEST_TIMEOUT
        self._pending: Dict[int, _PendingRequest] = {}
        self._ids = itertools.count(1)
        self._lock = threading.Lock()
        self._closed = False

    def send_request(self, method: str, params: list) -> Any:
        with self._lock:
            if self._closed:
                raise IsolationBoundaryError(f"API channel closed: {method}")
            request_id = next(self._ids)
            pending = _PendingRequest()
            self._pending[request_id] = pending

        self.channel.post({
            'type': 'api-request',
            'request_id': request_id,
            'method': method,
            'params': params,
        })

        if not pending.event.wait(self.timeout):
            with self._lock:
                self._pending.pop(request_id, None)
            raise RequestTimeoutError(f"API request timeout: {method}")

        if not pending.success:
            raise MarketDataError(pending.error or f"API request failed: {method}")
        return pending.result

    def resolve(self, message: Dict[str, Any]):
        with self._lock:
            pending = self._pending.pop(message.get('request_id'), None)
        if pending is None:
            # late response for a request that already timed out
            return
        pending.success = bool(message.get('success'))
        pending.result = message.get('result')
        pending.error = message.get('error')
        pending.event.set()

    def close(self, reason: str = 'worker stopping'):
        with self._lock:
            self._closed = True
            pending = list(self._pending.values())
            self._pending.clear()
        for p in pending:
            p.success = False
            p.error = reason
            p.event.set()

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def fetch_candles(self, symbol: str, interval_minutes: int, count: int):
        return self.send_request('fetch_candles', [symbol, interval_minutes, count])

    def get_current_price(self, symbol: str) -> float:
        return self.send_request('get_current_price', [symbol])

    def get_highest_price(self, symbol: str, period_unit: str, period_count: int) -> float:
        return self.send_request('get_highest_price', [symbol, period_unit, period_count])


class TickScheduler:
    """
    Runs interpreter.run() every `interval` seconds on its own thread.

    Overlap policy is drop-and-skip: when a tick runs longer than the
    interval, the ticks that fell inside it are skipped rather than queued.
    """

    def __init__(self, interpreter: Interpreter, channel: WorkerChannel, interval: float,
                 log_details: bool = False):
        self.interpreter = interpreter
        self.channel = channel
        self.interval = max(float(interval), config.MIN_RUN_INTERVAL)
        self.log_details = log_details
        self.skipped_ticks = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name='TickScheduler', daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        t = self._thread
        if t and t is not threading.current_thread():
            t.join(timeout=timeout)

    def _loop(self):
        # candles first; HighestPrice nodes still fail fast until their warm-up lands
        self.interpreter.manager.wait_until_ready(config.DATA_READY_TIMEOUT)
        next_run = time.monotonic()
        while not self._stop.is_set():
            self.run_tick()
            next_run += self.interval
            now = time.monotonic()
            if now > next_run:
                missed = int((now - next_run) // self.interval) + 1
                self.skipped_ticks += missed
                next_run += missed * self.interval
                logger.warning('Tick overran interval; skipped %d tick(s)', missed)
            if self._stop.wait(max(0.0, next_run - time.monotonic())):
                break

    def run_tick(self):
        try:
            self.interpreter.run(self.log_details)
        except Exception as e:
            # per-tick failure: report it, keep the schedule
            self.channel.post({'type': 'error', 'message': f"{type(e).__name__}: {e}"})


class LogicWorker:
    """Message loop of one worker process."""

    def __init__(self, logic_id: str, inbox, outbox, request_timeout: float = None):
        self.logic_id = logic_id
        self.inbox = inbox
        self.channel = WorkerChannel(outbox)
        self.proxy = WorkerAPIProxy(self.channel, request_timeout)
        self.interpreter: Optional[Interpreter] = None
        self.scheduler: Optional[TickScheduler] = None

    def execute_order(self, action: str, order: OrderData, stock: str):
        self.channel.post({'type': 'order', 'action': action, 'stock': stock, 'order': order.to_dict()})

    def serve(self):
        while True:
            try:
                message = self.inbox.get()
            except (EOFError, OSError):
                break
            if not isinstance(message, dict):
                continue
            if not self.handle(message):
                break
        self.shutdown()

    def handle(self, message: Dict[str, Any]) -> bool:
        """Handle one inbox message. False ends the loop."""
        msg_type = message.get('type')

        if msg_type == 'api-response':
            self.proxy.resolve(message)
        elif msg_type == 'init':
            self._init(message)
        elif msg_type == 'start':
            self._start(message)
        elif msg_type == 'stop':
            self.shutdown()
            self.channel.post({'type': 'stopped'})
            return False
        else:
            logger.warning('Unknown message type: %s', msg_type)
        return True

    def _init(self, message: Dict[str, Any]):
        if self.interpreter is not None:
            self.interpreter.dispose()
        self.interpreter = Interpreter(
            message.get('stock') or '',
            self.proxy,
            self.channel.log,
            order_executor=self.execute_order,
        )
        if self.interpreter.parse(message.get('logic_data') or {}):
            self.channel.post({'type': 'ready'})
        else:
            self.channel.post({'type': 'init-failed', 'message': self.interpreter.last_error})

    def _start(self, message: Dict[str, Any]):
        if self.interpreter is None or not self.interpreter.is_runnable:
            self.channel.post({'type': 'error', 'message': 'Interpreter not initialized'})
            return
        if self.scheduler is not None:
            self.scheduler.stop()
        interval = message.get('interval') or config.DEFAULT_RUN_INTERVAL
        self.scheduler = TickScheduler(self.interpreter, self.channel, interval,
                                       bool(message.get('log_details')))
        self.scheduler.start()
        self.channel.post({'type': 'started', 'interval': self.scheduler.interval})

    def shutdown(self):
        if self.scheduler is not None:
            self.scheduler.stop()
            self.scheduler = None
        self.proxy.close()
        if self.interpreter is not None:
            self.interpreter.dispose()
            self.interpreter = None


def worker_main(logic_id: str, inbox, outbox, request_timeout: float = None):
    """Entry point of the worker process."""
    LogicWorker(logic_id, inbox, outbox, request_timeout).serve()
