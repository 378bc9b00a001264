"""
Compiled expression tree for trading conditions.

Supplier nodes are leaves that read the MarketDataManager every time they are
evaluated (nothing is cached between evaluations). Combinator nodes hold
exactly two children.

Every node has:
  - evaluate()                 -> float | bool
  - evaluate_detailed(log)     -> same result, plus one log line per node

evaluate_detailed visits children in the same order as evaluate (A, B, self),
so the two only differ by the log side effect.
"""
import math
from typing import Callable, Iterator, Optional, Union

from tradebuilder.indicators.technical import calculate_rsi, calculate_sma
from tradebuilder.utils.log_center import setup_logger
from tradebuilder.workflows.market_data import MarketDataManager

logger = setup_logger('tradebuilder.ast')

Value = Union[float, bool]
DetailLog = Callable[[str], None]

RSI_PERIOD = 14


def format_value(value: Value) -> str:
    if isinstance(value, bool):
        return str(value)
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return 'NaN'
    return f"{value:.2f}"


def truthy(value: Value) -> bool:
    """Boolean view of a node value. NaN (missing data) is false."""
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


class LogicAST:
    """Base node."""

    kind = ''

    def evaluate(self) -> Value:
        raise NotImplementedError()

    def evaluate_detailed(self, log: DetailLog) -> Value:
        raise NotImplementedError()

    def children(self) -> tuple:
        return ()

    def walk(self) -> Iterator['LogicAST']:
        """Pre-order traversal of this subtree."""
        yield self
        for child in self.children():
            yield from child.walk()


# ═══════════════════════════════════════════════════════════════════
# SUPPLIER NODES - Provide numeric values
# ═══════════════════════════════════════════════════════════════════

class SupplierAST(LogicAST):
    """Leaf node computing its value from the market data manager."""

    label = ''

    def __init__(self, manager: MarketDataManager):
        self.manager = manager

    def calc_value(self) -> float:
        raise NotImplementedError()

    def evaluate(self) -> float:
        return self.calc_value()

    def evaluate_detailed(self, log: DetailLog) -> float:
        value = self.calc_value()
        log(f"{self.label} value: {format_value(value)}")
        return value


class ConstantAST(SupplierAST):
    kind = 'const'
    label = 'Const'

    def __init__(self, value: float):
        super().__init__(None)
        self.value = value

    def calc_value(self) -> float:
        return self.value


class CurrentPriceAST(SupplierAST):
    kind = 'currentPrice'
    label = 'CurrentPrice'

    def calc_value(self) -> float:
        return self.manager.get_latest_price()


class HighestPriceAST(SupplierAST):
    """
    Highest price over `period_length` units of `period_unit`.

    The value comes from an async warm-up started after compilation. Reading
    it before the warm-up finished raises DataNotReadyError.
    """

    kind = 'highestPrice'

    def __init__(self, manager: MarketDataManager, period_length: int, period_unit: str):
        super().__init__(manager)
        self.period_length = period_length
        self.period_unit = period_unit
        self.label = f"HighestPrice({period_unit}-{period_length})"

    @property
    def is_ready(self) -> bool:
        return self.manager.is_highest_price_ready(self.period_unit, self.period_length)

    def calc_value(self) -> float:
        return self.manager.get_highest_price(self.period_unit, self.period_length)


class RsiAST(SupplierAST):
    kind = 'rsi'
    label = 'RSI'

    def calc_value(self) -> float:
        return calculate_rsi(self.manager.get_price_data_array(), RSI_PERIOD)


class SmaAST(SupplierAST):
    kind = 'sma'

    def __init__(self, manager: MarketDataManager, period: int):
        super().__init__(manager)
        self.period = period
        self.label = f"SMA({period})"

    def calc_value(self) -> float:
        return calculate_sma(self.manager.get_price_data_array(self.period), self.period)


class RoiAST(SupplierAST):
    """
    Return on investment.

    There is no portfolio accounting behind this node yet, so without an
    injected `roi_source` it returns a fixed 0.0 placeholder and says so in
    every detailed log line.
    """

    kind = 'roi'
    label = 'ROI'

    PLACEHOLDER_VALUE = 0.0

    def __init__(self, manager: MarketDataManager, roi_source: Optional[Callable[[], float]] = None):
        super().__init__(manager)
        self.roi_source = roi_source
        self._warned = False

    @property
    def is_placeholder(self) -> bool:
        return self.roi_source is None

    def calc_value(self) -> float:
        if self.roi_source is not None:
            return float(self.roi_source())
        if not self._warned:
            logger.warning('ROI node has no portfolio source; using placeholder %.2f', self.PLACEHOLDER_VALUE)
            self._warned = True
        return self.PLACEHOLDER_VALUE

    def evaluate_detailed(self, log: DetailLog) -> float:
        value = self.calc_value()
        suffix = ' (placeholder)' if self.is_placeholder else ''
        log(f"ROI value: {format_value(value)}{suffix}")
        return value


# ═══════════════════════════════════════════════════════════════════
# COMBINATOR NODES - Compare / logic gates
# ═══════════════════════════════════════════════════════════════════

COMPARE_OPERATORS = {
    '>': lambda a, b: a > b,
    '<': lambda a, b: a < b,
    '≥': lambda a, b: a >= b,
    '≤': lambda a, b: a <= b,
    '=': lambda a, b: a == b,
    '≠': lambda a, b: a != b,
}

COMPARE_ALIASES = {
    '>=': '≥',
    '<=': '≤',
    '==': '=',
    '!=': '≠',
}

LOGIC_OPERATORS = {
    'and': lambda a, b: a and b,
    'or': lambda a, b: a or b,
}

LOGIC_ALIASES = {
    '&&': 'and',
    '||': 'or',
}


def normalize_compare_operator(operator: str) -> Optional[str]:
    op = (operator or '').strip()
    op = COMPARE_ALIASES.get(op, op)
    return op if op in COMPARE_OPERATORS else None


def normalize_logic_operator(operator: str) -> Optional[str]:
    op = (operator or '').strip().lower()
    op = LOGIC_ALIASES.get(op, op)
    return op if op in LOGIC_OPERATORS else None


class CombinatorAST(LogicAST):
    """Binary node combining child A and child B with an operator."""

    def __init__(self, operator: str, child_a: LogicAST, child_b: LogicAST):
        self.operator = operator
        self.child_a = child_a
        self.child_b = child_b

    def children(self) -> tuple:
        return (self.child_a, self.child_b)

    def apply(self, a: Value, b: Value) -> bool:
        raise NotImplementedError()

    def evaluate(self) -> bool:
        a = self.child_a.evaluate()
        b = self.child_b.evaluate()
        return self.apply(a, b)


class CompareAST(CombinatorAST):
    kind = 'compare'

    def apply(self, a: Value, b: Value) -> bool:
        return bool(COMPARE_OPERATORS[self.operator](float(a), float(b)))

    def evaluate_detailed(self, log: DetailLog) -> bool:
        a = self.child_a.evaluate_detailed(log)
        b = self.child_b.evaluate_detailed(log)
        result = self.apply(a, b)
        log(f"Compare expr: {format_value(a)} {self.operator} {format_value(b)} => {result}")
        return result


class LogicOpAST(CombinatorAST):
    kind = 'logicOp'

    def apply(self, a: Value, b: Value) -> bool:
        return bool(LOGIC_OPERATORS[self.operator](truthy(a), truthy(b)))

    def evaluate_detailed(self, log: DetailLog) -> bool:
        a = self.child_a.evaluate_detailed(log)
        b = self.child_b.evaluate_detailed(log)
        result = self.apply(a, b)
        log(f"LogicOp expr: {truthy(a)} {self.operator} {truthy(b)} => {result}")
        return result
