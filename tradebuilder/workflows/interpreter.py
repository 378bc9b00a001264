"""
Interpreter - owns one compiled logic and evaluates it.

State machine:

    UNINITIALIZED --parse ok--> PARSED --run--> RUNNING --done--> IDLE
          ^                       |                                 |
          +------parse failed-----+<-----------parse---------------+
    any state --dispose--> STOPPED

One Interpreter per logic id. It owns its MarketDataManager and tears it
down on dispose().
"""
import threading
from enum import Enum
from typing import Any, Callable, Dict, Optional

from tradebuilder import config
from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.errors import CompileError, InterpreterStateError
from tradebuilder.workflows.graph_compiler import CompiledLogic, OrderData, compile_logic
from tradebuilder.workflows.logic_ast import truthy
from tradebuilder.workflows.market_data import MarketDataManager, MarketDataProvider

logger = setup_logger('tradebuilder.interpreter')

LogFunc = Callable[[str, str], None]
OrderExecutor = Callable[[str, OrderData, str], Any]


class InterpreterState(Enum):
    UNINITIALIZED = 'uninitialized'
    PARSED = 'parsed'
    RUNNING = 'running'
    IDLE = 'idle'
    STOPPED = 'stopped'


class Interpreter:
    """
    Parses a logic and runs it against live market data.

    Args:
        stock: market code the logic trades
        provider: market data provider used by the owned MarketDataManager
        log_func: log sink, called as log_func(title, message)
        order_executor: called as order_executor(action, order_data, stock)
        manager: optional pre-built manager (ownership passes to the interpreter)
    """

    def __init__(
        self,
        stock: str,
        provider: Optional[MarketDataProvider],
        log_func: LogFunc,
        order_executor: Optional[OrderExecutor] = None,
        manager: Optional[MarketDataManager] = None,
    ):
        self.stock = stock
        self.log = log_func
        self.order_executor = order_executor
        self.manager = manager or MarketDataManager(stock, provider)
        self.state = InterpreterState.UNINITIALIZED
        self.compiled: Optional[CompiledLogic] = None
        self.last_error: Optional[str] = None
        self._run_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Parse
    # ------------------------------------------------------------------

    def parse(self, logic_data: Dict[str, Any]) -> bool:
        if self.state in (InterpreterState.RUNNING, InterpreterState.STOPPED):
            raise InterpreterStateError(f"cannot parse while {self.state.value}")

        # never keep a stale tree around a failed re-parse
        self.compiled = None
        try:
            compiled = compile_logic(logic_data, self.manager)
        except CompileError as e:
            self.state = InterpreterState.UNINITIALIZED
            self.last_error = str(e)
            self.log('Error', f"Logic parse failed: {e}")
            return False

        self.compiled = compiled
        self.last_error = None
        self.state = InterpreterState.PARSED

        self.manager.start()
        for period_unit, period_length in compiled.warm_ups:
            self.manager.warm_up_highest_price(period_unit, period_length)
        return True

    def wait_until_ready(self, timeout: float = None) -> bool:
        """Wait for the initial candles and every HighestPrice warm-up."""
        timeout = config.DATA_READY_TIMEOUT if timeout is None else timeout
        if not self.manager.wait_until_ready(timeout):
            return False
        return self.manager.wait_for_warm_ups(timeout)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    @property
    def is_runnable(self) -> bool:
        return self.compiled is not None and self.state in (InterpreterState.PARSED, InterpreterState.IDLE)

    def run(self, log_details: bool = False) -> Dict[str, bool]:
        """
        Evaluate both trees once and dispatch orders for true conditions.

        Buy and sell are evaluated and dispatched independently. Errors from
        evaluation (e.g. DataNotReadyError) propagate to the caller.
        """
        if not self._run_lock.acquire(blocking=False):
            raise InterpreterStateError("a run is already in progress")
        if not self.is_runnable:
            self._run_lock.release()
            raise InterpreterStateError(f"cannot run while {self.state.value}")

        compiled = self.compiled
        self.state = InterpreterState.RUNNING
        try:
            self._retry_warm_ups(compiled)
            buy = self._evaluate('Buy', compiled.buy_root, log_details)
            if buy:
                self._dispatch('buy', compiled.buy_order)
            else:
                self.log('Buy', 'Buy condition not met')

            sell = self._evaluate('Sell', compiled.sell_root, log_details)
            if sell:
                self._dispatch('sell', compiled.sell_order)
            else:
                self.log('Sell', 'Sell condition not met')

            if buy and sell:
                logger.warning('[%s] buy and sell conditions both true in the same tick', self.stock)
            return {'buy': buy, 'sell': sell}
        finally:
            if self.state == InterpreterState.RUNNING:
                self.state = InterpreterState.IDLE
            self._run_lock.release()

    def _retry_warm_ups(self, compiled: CompiledLogic):
        """Re-issue HighestPrice lookups that failed; pending ones are reused."""
        for period_unit, period_length in compiled.warm_ups:
            if not self.manager.is_highest_price_ready(period_unit, period_length):
                self.manager.warm_up_highest_price(period_unit, period_length)

    def _evaluate(self, title: str, root, log_details: bool) -> bool:
        if log_details:
            result = root.evaluate_detailed(lambda msg: self.log(title, msg))
        else:
            result = root.evaluate()
        return truthy(result)

    def _dispatch(self, action: str, order: OrderData):
        if self.order_executor is None:
            self.log('Buy' if action == 'buy' else 'Sell', f"{action} condition met (no order executor)")
            return
        self.order_executor(action, order, self.stock)

    # ------------------------------------------------------------------
    # Teardown
    # ------------------------------------------------------------------

    def dispose(self):
        self.state = InterpreterState.STOPPED
        self.compiled = None
        self.manager.dispose()
