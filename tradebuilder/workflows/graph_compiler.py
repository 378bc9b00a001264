"""
Graph-to-AST compiler.

Turns a serialized buy/sell graph pair into two condition trees plus the
order parameters of their terminal nodes.

Algorithm per graph:
1. Locate the single terminal node (buy in buyGraph, sell in sellGraph)
2. Read OrderData from its controls
3. Index nodes by id and build reverse adjacency (target -> sources, in
   discovery order)
4. The terminal's first incoming source is the condition root
5. Recursively compile by NodeKind; binary nodes take their first two
   incoming sources as operand A and B
6. Terminal inputs and logicOp operands must be conditions (compare or
   logicOp), never a numeric supplier

The compiler is a pure function of the graphs: it only builds objects.
Async warm-ups (HighestPrice) are listed in CompiledLogic.warm_ups for the
interpreter to start after a successful parse.
"""
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

from tradebuilder import config
from tradebuilder.workflows.errors import (
    CyclicGraph,
    DanglingConnection,
    InsufficientOperands,
    InvalidControlValue,
    InvalidNumericControl,
    MissingCondition,
    MissingTerminalNode,
    NonBooleanInput,
    PeriodTooLarge,
    UnknownNodeKind,
)
from tradebuilder.workflows.graph_format import (
    NodeKind,
    SerializedGraph,
    SerializedNode,
    SUPPLIER_KINDS,
    TERMINAL_KINDS,
    split_logic_data,
)
from tradebuilder.workflows.logic_ast import (
    CompareAST,
    ConstantAST,
    CurrentPriceAST,
    HighestPriceAST,
    LogicAST,
    LogicOpAST,
    RoiAST,
    RsiAST,
    SmaAST,
    normalize_compare_operator,
    normalize_logic_operator,
)
from tradebuilder.workflows.market_data import MarketDataManager

ORDER_TYPES = ('market', 'limit')
PERIOD_UNITS = ('day', 'week', 'month', 'year')
MAX_SMA_PERIOD = config.HISTORY_SIZE


@dataclass(frozen=True)
class OrderData:
    """Order parameters of a terminal node, fixed for one compiled logic."""
    order_type: str = 'market'
    limit_price: float = 0.0
    quantity: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'orderType': self.order_type,
            'limitPrice': self.limit_price,
            'quantity': self.quantity,
        }


@dataclass
class CompiledLogic:
    buy_root: LogicAST
    sell_root: LogicAST
    buy_order: OrderData
    sell_order: OrderData
    warm_ups: List[Tuple[str, int]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════
# CONTROL PARSING
# ═══════════════════════════════════════════════════════════════════

def parse_int_control(node: SerializedNode, name: str, default: Any = None, graph: str = None) -> int:
    raw = node.control(name, default)
    if isinstance(raw, bool) or raw is None:
        raise InvalidNumericControl(f"{name}={raw!r} on node {node.id} is not an integer",
                                    graph=graph, node_id=node.id)
    if isinstance(raw, int):
        return raw
    text = str(raw).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        as_float = float(text)
    except ValueError:
        as_float = math.nan
    if math.isfinite(as_float) and as_float.is_integer():
        return int(as_float)
    raise InvalidNumericControl(f"{name}={raw!r} on node {node.id} is not an integer",
                                graph=graph, node_id=node.id)


def parse_float_control(node: SerializedNode, name: str, default: Any = None, graph: str = None) -> float:
    raw = node.control(name, default)
    if isinstance(raw, bool) or raw is None:
        raise InvalidNumericControl(f"{name}={raw!r} on node {node.id} is not a number",
                                    graph=graph, node_id=node.id)
    try:
        value = float(str(raw).strip()) if not isinstance(raw, (int, float)) else float(raw)
    except ValueError:
        raise InvalidNumericControl(f"{name}={raw!r} on node {node.id} is not a number",
                                    graph=graph, node_id=node.id)
    if not math.isfinite(value):
        raise InvalidNumericControl(f"{name}={raw!r} on node {node.id} is not finite",
                                    graph=graph, node_id=node.id)
    return value


def extract_order_data(node: SerializedNode, graph: str = None) -> OrderData:
    order_type = str(node.control('orderType', 'market')).strip().lower()
    if order_type not in ORDER_TYPES:
        raise InvalidControlValue(f"orderType={order_type!r} on node {node.id} (expected market|limit)",
                                  graph=graph, node_id=node.id)
    limit_price = parse_float_control(node, 'limitPrice', 0.0, graph)
    quantity_key = 'quantity' if node.control('quantity') is not None else 'sellPercent'
    quantity = parse_float_control(node, quantity_key, 0.0, graph)
    return OrderData(order_type=order_type, limit_price=limit_price, quantity=quantity)


# ═══════════════════════════════════════════════════════════════════
# GRAPH COMPILER
# ═══════════════════════════════════════════════════════════════════

class GraphCompiler:
    """Compiles one graph (buy or sell) into a condition tree."""

    def __init__(self, graph: SerializedGraph, terminal_kind: NodeKind, manager: MarketDataManager,
                 name: str = None):
        self.graph = graph
        self.terminal_kind = terminal_kind
        self.manager = manager
        self.name = name or f"{terminal_kind.value}Graph"

        self.nodes: Dict[str, SerializedNode] = {}
        for node in graph.nodes:
            self.nodes[node.id] = node
        self.parents = self._build_reverse_adjacency()
        self.warm_ups: List[Tuple[str, int]] = []

    def _build_reverse_adjacency(self) -> Dict[str, List[str]]:
        """target id -> source ids, first-registered first."""
        parents: Dict[str, List[str]] = {}
        for conn in self.graph.connections:
            if conn.source is None or conn.target is None:
                continue
            parents.setdefault(conn.target, []).append(conn.source)
        return parents

    def find_terminal(self) -> SerializedNode:
        terminals = self.graph.nodes_of_kind(self.terminal_kind)
        if not terminals:
            raise MissingTerminalNode(f"no '{self.terminal_kind.value}' node found", graph=self.name)
        if len(terminals) > 1:
            ids = ', '.join(str(t.id) for t in terminals)
            raise MissingTerminalNode(
                f"expected exactly one '{self.terminal_kind.value}' node, found {len(terminals)} ({ids})",
                graph=self.name,
            )
        return terminals[0]

    def compile(self) -> Tuple[LogicAST, OrderData]:
        terminal = self.find_terminal()
        order = extract_order_data(terminal, self.name)
        sources = self.parents.get(terminal.id, [])
        if not sources:
            raise MissingCondition(f"'{self.terminal_kind.value}' node {terminal.id} has no incoming condition",
                                   graph=self.name, node_id=terminal.id)
        root = self._compile_condition(sources[0], set(), terminal.id)
        return root, order

    def _resolve(self, node_id: str, referenced_by: str = None) -> SerializedNode:
        node = self.nodes.get(node_id)
        if node is None:
            raise DanglingConnection(f"connection into {referenced_by} references missing node {node_id}",
                                     graph=self.name, node_id=node_id)
        return node

    def _compile_node(self, node_id: str, visiting: Set[str], referenced_by: str = None) -> LogicAST:
        node = self._resolve(node_id, referenced_by)
        if node_id in visiting:
            raise CyclicGraph(f"node {node_id} is part of a cycle", graph=self.name, node_id=node_id)

        raw_kind = node.resolved_kind
        kind = NodeKind.parse(raw_kind)
        if kind is None:
            raise UnknownNodeKind(f"node {node_id} has unknown kind {raw_kind!r}",
                                  graph=self.name, node_id=node_id)

        visiting = visiting | {node_id}

        if kind == NodeKind.CONST:
            return ConstantAST(parse_float_control(node, 'value', 0, self.name))
        elif kind == NodeKind.CURRENT_PRICE:
            return CurrentPriceAST(self.manager)
        elif kind == NodeKind.HIGHEST_PRICE:
            return self._compile_highest_price(node)
        elif kind == NodeKind.RSI:
            return RsiAST(self.manager)
        elif kind == NodeKind.ROI:
            return RoiAST(self.manager)
        elif kind == NodeKind.SMA:
            return self._compile_sma(node)
        elif kind == NodeKind.COMPARE:
            operator = normalize_compare_operator(str(node.control('operator', '>')))
            if operator is None:
                raise InvalidControlValue(f"compare node {node_id} has unsupported operator "
                                          f"{node.control('operator')!r}", graph=self.name, node_id=node_id)
            a, b = self._compile_operands(node, visiting)
            return CompareAST(operator, a, b)
        elif kind == NodeKind.LOGIC_OP:
            operator = normalize_logic_operator(str(node.control('operator', 'and')))
            if operator is None:
                raise InvalidControlValue(f"logicOp node {node_id} has unsupported operator "
                                          f"{node.control('operator')!r}", graph=self.name, node_id=node_id)
            a, b = self._compile_operands(node, visiting, conditions=True)
            return LogicOpAST(operator, a, b)
        elif kind in TERMINAL_KINDS:
            raise UnknownNodeKind(f"terminal node {node_id} ({kind.value}) cannot be used as a condition",
                                  graph=self.name, node_id=node_id)
        raise UnknownNodeKind(f"node {node_id} has unhandled kind {kind.value!r}",
                              graph=self.name, node_id=node_id)

    def _compile_condition(self, node_id: str, visiting: Set[str], referenced_by: str) -> LogicAST:
        """Compile a node wired into a boolean input (terminal or logicOp operand)."""
        node = self._resolve(node_id, referenced_by)
        if NodeKind.parse(node.resolved_kind) in SUPPLIER_KINDS:
            raise NonBooleanInput(f"{node.resolved_kind} node {node_id} yields a number but {referenced_by} "
                                  f"expects a condition", graph=self.name, node_id=node_id)
        return self._compile_node(node_id, visiting, referenced_by)

    def _compile_operands(self, node: SerializedNode, visiting: Set[str],
                          conditions: bool = False) -> Tuple[LogicAST, LogicAST]:
        sources = self.parents.get(node.id, [])
        if len(sources) < 2:
            raise InsufficientOperands(
                f"{node.resolved_kind} node {node.id} needs 2 operands, got {len(sources)}",
                graph=self.name, node_id=node.id,
            )
        compile_operand = self._compile_condition if conditions else self._compile_node
        a = compile_operand(sources[0], visiting, node.id)
        b = compile_operand(sources[1], visiting, node.id)
        return a, b

    def _compile_sma(self, node: SerializedNode) -> SmaAST:
        period = parse_int_control(node, 'period', 20, self.name)
        if period > MAX_SMA_PERIOD:
            raise PeriodTooLarge(f"SMA period {period} on node {node.id} exceeds history size {MAX_SMA_PERIOD}",
                                 graph=self.name, node_id=node.id)
        if period < 1:
            raise InvalidNumericControl(f"SMA period {period} on node {node.id} must be >= 1",
                                        graph=self.name, node_id=node.id)
        return SmaAST(self.manager, period)

    def _compile_highest_price(self, node: SerializedNode) -> HighestPriceAST:
        period_length = parse_int_control(node, 'periodLength', 1, self.name)
        if period_length < 1:
            raise InvalidNumericControl(f"periodLength {period_length} on node {node.id} must be >= 1",
                                        graph=self.name, node_id=node.id)
        period_unit = str(node.control('periodUnit', 'day')).strip().lower()
        if period_unit not in PERIOD_UNITS:
            raise InvalidControlValue(f"periodUnit={period_unit!r} on node {node.id} "
                                      f"(expected {'|'.join(PERIOD_UNITS)})", graph=self.name, node_id=node.id)
        key = (period_unit, period_length)
        if key not in self.warm_ups:
            self.warm_ups.append(key)
        return HighestPriceAST(self.manager, period_length, period_unit)


def compile_graphs(buy_graph: SerializedGraph, sell_graph: SerializedGraph,
                   manager: MarketDataManager) -> CompiledLogic:
    """Compile a buy/sell graph pair. Raises CompileError on the first problem."""
    buy_compiler = GraphCompiler(buy_graph, NodeKind.BUY, manager, 'buyGraph')
    sell_compiler = GraphCompiler(sell_graph, NodeKind.SELL, manager, 'sellGraph')
    buy_root, buy_order = buy_compiler.compile()
    sell_root, sell_order = sell_compiler.compile()

    warm_ups = list(buy_compiler.warm_ups)
    for key in sell_compiler.warm_ups:
        if key not in warm_ups:
            warm_ups.append(key)

    return CompiledLogic(
        buy_root=buy_root,
        sell_root=sell_root,
        buy_order=buy_order,
        sell_order=sell_order,
        warm_ups=warm_ups,
    )


def compile_logic(logic_data: Dict[str, Any], manager: MarketDataManager) -> CompiledLogic:
    buy_graph, sell_graph = split_logic_data(logic_data)
    return compile_graphs(buy_graph, sell_graph, manager)


def validate_logic(logic_data: Dict[str, Any], stock: str = '') -> CompiledLogic:
    """
    Compile against a manager that is never started.

    No threads, no network: used to reject malformed graphs before a worker
    is spawned.
    """
    return compile_logic(logic_data, MarketDataManager(stock, provider=None))


def describe_tree(root: LogicAST) -> List[Dict[str, Optional[str]]]:
    """Flat pre-order description of a compiled tree (kind + operator)."""
    return [{'kind': n.kind, 'operator': getattr(n, 'operator', None)} for n in root.walk()]
