"""
logic_runner.py

Supervisor for running logics. Each running logic lives in its own worker
process (see logic_worker.py); the supervisor owns the only copies of the
market data provider and the order sink and serves the worker's requests.

  LogicRunnerManager.start_logic(id, ...)  -> True, or False if already running / invalid
  LogicRunnerManager.stop_logic(id)        -> True, or False if not running
  LogicRunnerManager.stop_all_logics()
  LogicRunnerManager.run_once(...)         -> synchronous, in the caller's thread

Once stop_logic() returns, no log entry or order is emitted for that logic id.
A worker that dies on its own is reported as an Error entry and torn down.
"""
import multiprocessing
import queue
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tradebuilder import config
from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.errors import CompileError, IsolationBoundaryError
from tradebuilder.workflows.graph_compiler import OrderData, validate_logic
from tradebuilder.workflows.interpreter import Interpreter
from tradebuilder.workflows.logic_worker import worker_main
from tradebuilder.workflows.market_data import MarketDataProvider
from tradebuilder.workflows.order_dispatch import OrderSink, execute_order

logger = setup_logger('tradebuilder.runner')

LogFunc = Callable[[str, str], None]

# Worker api-request methods the supervisor is willing to serve
API_METHODS = ('fetch_candles', 'get_current_price', 'get_highest_price')

LISTENER_POLL = 0.25


@dataclass
class RunningLogic:
    logic_id: str
    stock: str
    start_time: float
    interval: float
    log_details: bool
    log_func: LogFunc
    process: Any = None
    inbox: Any = None
    outbox: Any = None
    listener: Optional[threading.Thread] = None
    stopping: threading.Event = field(default_factory=threading.Event)
    emit_lock: threading.RLock = field(default_factory=threading.RLock)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'logicId': self.logic_id,
            'stock': self.stock,
            'startTime': self.start_time,
            'interval': self.interval,
            'logDetails': self.log_details,
            'pid': getattr(self.process, 'pid', None),
        }


class LogicRunnerManager:
    """
    Starts, stops and supervises isolated running logics.

    Args:
        provider: market data provider serving worker api-requests
        order_sink: order execution adapter (None = log-only dry run)
        request_timeout: worker-side timeout for correlated requests
        mp_context: multiprocessing start method
    """

    def __init__(
        self,
        provider: Optional[MarketDataProvider],
        order_sink: Optional[OrderSink] = None,
        request_timeout: float = None,
        mp_context: str = 'spawn',
        max_workers: int = 8,
    ):
        self.provider = provider
        self.order_sink = order_sink
        self.request_timeout = request_timeout or config.WORKER_REQUEST_TIMEOUT
        self._ctx = multiprocessing.get_context(mp_context)
        self._running: Dict[str, RunningLogic] = {}
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='LogicRunner')

    # ------------------------------------------------------------------
    # Start / stop
    # ------------------------------------------------------------------

    def start_logic(
        self,
        logic_id: str,
        stock: str,
        logic_data: Dict[str, Any],
        log_func: LogFunc,
        log_details: bool = False,
        interval: float = None,
    ) -> bool:
        """Start repeated execution of a logic in its own worker process."""
        if not logic_id:
            log_func('Error', 'Logic id is required')
            return False

        interval = config.DEFAULT_RUN_INTERVAL if interval is None else float(interval)
        if interval < config.MIN_RUN_INTERVAL:
            log_func('System', f"Interval {interval:g}s raised to minimum {config.MIN_RUN_INTERVAL:g}s")
            interval = config.MIN_RUN_INTERVAL

        # reject malformed graphs before spawning anything
        try:
            validate_logic(logic_data, stock)
        except CompileError as e:
            log_func('Error', f"Logic parse failed: {e}")
            return False

        with self._lock:
            if logic_id in self._running:
                log_func('Error', f'Logic "{logic_id}" is already running')
                return False

            running = RunningLogic(
                logic_id=logic_id,
                stock=stock,
                start_time=time.time(),
                interval=interval,
                log_details=log_details,
                log_func=log_func,
            )
            try:
                running.inbox = self._ctx.Queue()
                running.outbox = self._ctx.Queue()
                running.process = self._ctx.Process(
                    target=worker_main,
                    args=(logic_id, running.inbox, running.outbox, self.request_timeout),
                    name=f'logic-{logic_id}',
                    daemon=True,
                )
                running.process.start()
            except Exception as e:
                logger.exception('Failed to spawn worker for %s', logic_id)
                log_func('Error', f"Failed to start logic: {e}")
                self._close_queues(running)
                return False

            self._running[logic_id] = running
            running.listener = threading.Thread(
                target=self._listen, args=(running,), name=f'listener-{logic_id}', daemon=True
            )
            running.listener.start()
            running.inbox.put({'type': 'init', 'stock': stock, 'logic_data': logic_data})

        log_func('System', f'Logic "{logic_id}" started ({interval:g}s interval)')
        return True

    def stop_logic(self, logic_id: str) -> bool:
        """Stop a running logic. False (and no side effects) if it is not running."""
        with self._lock:
            running = self._running.pop(logic_id, None)
        if running is None:
            return False
        self._teardown(running)
        running.log_func('System', f'Logic "{logic_id}" stopped')
        return True

    def stop_all_logics(self):
        for logic_id in list(self._running.keys()):
            self.stop_logic(logic_id)

    def shutdown(self):
        self.stop_all_logics()
        self._executor.shutdown(wait=False, cancel_futures=True)

    def _teardown(self, running: RunningLogic):
        # after this block nothing else is emitted for the logic
        with running.emit_lock:
            running.stopping.set()

        try:
            running.inbox.put({'type': 'stop'})
        except (OSError, ValueError):
            pass

        process = running.process
        if process is not None:
            process.join(timeout=config.WORKER_STOP_GRACE)
            if process.is_alive():
                process.terminate()
                process.join(timeout=config.WORKER_STOP_GRACE)

        listener = running.listener
        if listener and listener is not threading.current_thread():
            listener.join(timeout=2)
        self._close_queues(running)

    @staticmethod
    def _close_queues(running: RunningLogic):
        for q in (running.inbox, running.outbox):
            if q is None:
                continue
            try:
                q.cancel_join_thread()
                q.close()
            except (OSError, ValueError):
                pass

    def _fail(self, running: RunningLogic, reason: str):
        """Tear down a logic whose worker failed on its own."""
        with self._lock:
            if self._running.get(running.logic_id) is not running:
                return
            del self._running[running.logic_id]
        self._emit(running, 'Error', reason)
        self._teardown(running)
        running.log_func('System', f'Logic "{running.logic_id}" stopped after failure')

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_running_logic(self, logic_id: str) -> Optional[RunningLogic]:
        with self._lock:
            return self._running.get(logic_id)

    def get_all_running_logics(self) -> List[RunningLogic]:
        with self._lock:
            return list(self._running.values())

    def is_running(self, logic_id: str) -> bool:
        with self._lock:
            return logic_id in self._running

    # ------------------------------------------------------------------
    # Worker messages
    # ------------------------------------------------------------------

    def _emit(self, running: RunningLogic, title: str, msg: str):
        with running.emit_lock:
            if running.stopping.is_set():
                return
            try:
                running.log_func(title, msg)
            except Exception:
                logger.exception('Log sink failed for %s', running.logic_id)

    def _listen(self, running: RunningLogic):
        while not running.stopping.is_set():
            try:
                message = running.outbox.get(timeout=LISTENER_POLL)
            except queue.Empty:
                process = running.process
                if process is not None and not process.is_alive() and not running.stopping.is_set():
                    err = IsolationBoundaryError(f"worker exited unexpectedly (exit code {process.exitcode})")
                    self._fail(running, f"Worker error: {err}")
                    return
                continue
            except (EOFError, OSError, ValueError):
                if not running.stopping.is_set():
                    self._fail(running, 'Worker error: message channel closed')
                return

            try:
                self.handle_worker_message(running, message)
            except Exception as e:
                logger.exception('Failed to handle worker message for %s', running.logic_id)
                self._emit(running, 'Error', f"Supervisor error: {e}")

    def handle_worker_message(self, running: RunningLogic, data: Dict[str, Any]):
        msg_type = data.get('type')

        if msg_type == 'log':
            self._emit(running, data.get('title', 'System'), data.get('msg', ''))
        elif msg_type == 'order':
            self._executor.submit(self._handle_order, running, data)
        elif msg_type == 'api-request':
            self._executor.submit(self._handle_api_request, running, data)
        elif msg_type == 'ready':
            running.inbox.put({'type': 'start', 'interval': running.interval, 'log_details': running.log_details})
        elif msg_type == 'init-failed':
            self._executor.submit(self._fail, running, f"Logic parse failed: {data.get('message')}")
        elif msg_type == 'started':
            self._emit(running, 'System', f"Logic running ({data.get('interval'):g}s interval)")
        elif msg_type == 'stopped':
            self._emit(running, 'System', 'Logic execution stopped')
        elif msg_type == 'error':
            self._emit(running, 'Error', data.get('message', 'unknown error'))
        else:
            logger.warning('Unknown worker message type: %s', msg_type)

    def _handle_api_request(self, running: RunningLogic, data: Dict[str, Any]):
        request_id = data.get('request_id')
        method = data.get('method')
        params = data.get('params') or []
        try:
            if self.provider is None:
                raise IsolationBoundaryError('no market data provider configured')
            if method not in API_METHODS:
                raise ValueError(f"Unknown API method: {method}")
            result = getattr(self.provider, method)(*params)
            response = {'type': 'api-response', 'request_id': request_id, 'success': True, 'result': result}
        except Exception as e:
            response = {'type': 'api-response', 'request_id': request_id, 'success': False, 'error': str(e)}
        if running.stopping.is_set():
            return
        try:
            running.inbox.put(response)
        except (OSError, ValueError):
            logger.debug('Dropping api-response for stopped logic %s', running.logic_id)

    def _handle_order(self, running: RunningLogic, data: Dict[str, Any]):
        raw = data.get('order') or {}
        order = OrderData(
            order_type=raw.get('orderType', 'market'),
            limit_price=float(raw.get('limitPrice') or 0.0),
            quantity=float(raw.get('quantity') or 0.0),
        )
        # _teardown waits on emit_lock, so stop returns only after an order in flight completes
        with running.emit_lock:
            if running.stopping.is_set():
                return
            execute_order(self.order_sink, data.get('action'), order, data.get('stock') or running.stock,
                          lambda title, msg: self._emit(running, title, msg))

    # ------------------------------------------------------------------
    # One-shot execution
    # ------------------------------------------------------------------

    def run_once(
        self,
        stock: str,
        logic_data: Dict[str, Any],
        log_func: LogFunc,
        log_details: bool = False,
        ready_timeout: float = None,
    ) -> Optional[Dict[str, bool]]:
        """
        Parse and run a logic once in the caller's thread.

        No scheduler and no worker process. Returns the {'buy', 'sell'}
        decision, or None when parsing or evaluation failed.
        """
        interpreter = Interpreter(
            stock,
            self.provider,
            log_func,
            order_executor=lambda action, order, symbol: execute_order(
                self.order_sink, action, order, symbol, log_func),
        )
        try:
            if not interpreter.parse(logic_data):
                return None
            if not interpreter.wait_until_ready(ready_timeout):
                log_func('System', 'Market data warm-up timed out; evaluating with what is loaded')
            return interpreter.run(log_details)
        except Exception as e:
            log_func('Error', f"Run failed: {type(e).__name__}: {e}")
            return None
        finally:
            interpreter.dispose()
