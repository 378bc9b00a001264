"""
Serialized graph format shared with the node editor.

    {
      "nodes": [{"id", "label", "kind", "position": {"x", "y"}, "controls": {...}}],
      "connections": [{"id", "source", "target", "sourceOutput", "targetInput"}],
      "viewport": {"k", "x", "y"}
    }

SerializedGraph.from_dict(g).to_dict() returns g unchanged at the node and
connection level: fields missing from the input stay missing in the output,
and fields the engine does not know are carried through.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class NodeKind(Enum):
    """Closed set of node kinds the compiler understands."""
    CONST = 'const'
    CURRENT_PRICE = 'currentPrice'
    HIGHEST_PRICE = 'highestPrice'
    RSI = 'rsi'
    ROI = 'roi'
    SMA = 'sma'
    COMPARE = 'compare'
    LOGIC_OP = 'logicOp'
    BUY = 'buy'
    SELL = 'sell'

    @classmethod
    def parse(cls, raw: Any) -> Optional['NodeKind']:
        for kind in cls:
            if kind.value == raw:
                return kind
        return None


SUPPLIER_KINDS = frozenset({
    NodeKind.CONST, NodeKind.CURRENT_PRICE, NodeKind.HIGHEST_PRICE,
    NodeKind.RSI, NodeKind.ROI, NodeKind.SMA,
})
COMBINATOR_KINDS = frozenset({NodeKind.COMPARE, NodeKind.LOGIC_OP})
TERMINAL_KINDS = frozenset({NodeKind.BUY, NodeKind.SELL})

# Editor labels for nodes saved before `kind` was persisted
LABEL_TO_KIND = {
    'Buy': 'buy',
    'Sell': 'sell',
    'ROI': 'roi',
    'Const': 'const',
    'CurrentPrice': 'currentPrice',
    'HighestPrice': 'highestPrice',
    'RSI': 'rsi',
    'SMA': 'sma',
    'Compare': 'compare',
    'LogicOp': 'logicOp',
    'AND/OR': 'logicOp',
}

BUY_GRAPH_KEYS = ('buyGraph', 'buy', 'graphBuy')
SELL_GRAPH_KEYS = ('sellGraph', 'sell', 'graphSell')

NODE_KEYS = frozenset({'id', 'kind', 'label', 'position', 'controls'})
CONNECTION_KEYS = frozenset({'id', 'source', 'target', 'sourceOutput', 'targetInput'})
GRAPH_KEYS = frozenset({'nodes', 'connections', 'viewport'})


def _put(out: Dict[str, Any], key: str, value: Any):
    if value is not None:
        out[key] = value


def _extra(data: Dict[str, Any], known: frozenset) -> Dict[str, Any]:
    """Editor fields the engine does not read, kept for the round trip."""
    return {k: v for k, v in data.items() if k not in known}


@dataclass
class SerializedNode:
    id: str
    kind: Optional[str] = None
    label: Optional[str] = None
    position: Optional[Dict[str, float]] = None
    controls: Optional[Dict[str, Any]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SerializedNode':
        controls = data.get('controls')
        position = data.get('position')
        return cls(
            id=data.get('id'),
            kind=data.get('kind'),
            label=data.get('label'),
            position=dict(position) if isinstance(position, dict) else position,
            controls=dict(controls) if isinstance(controls, dict) else controls,
            extra=_extra(data, NODE_KEYS),
        )

    @property
    def resolved_kind(self) -> Optional[str]:
        """`kind`, falling back to the legacy editor label."""
        if self.kind:
            return self.kind
        return LABEL_TO_KIND.get(self.label or '')

    def control(self, name: str, default: Any = None) -> Any:
        value = (self.controls or {}).get(name)
        if value is None or value == '':
            return default
        return value

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'id': self.id}
        _put(out, 'label', self.label)
        _put(out, 'kind', self.kind)
        _put(out, 'position', dict(self.position) if isinstance(self.position, dict) else self.position)
        _put(out, 'controls', dict(self.controls) if isinstance(self.controls, dict) else self.controls)
        out.update(self.extra)
        return out


@dataclass
class SerializedConnection:
    source: str
    target: str
    source_output: Optional[str] = None
    target_input: Optional[str] = None
    id: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SerializedConnection':
        return cls(
            id=data.get('id'),
            source=data.get('source'),
            target=data.get('target'),
            source_output=data.get('sourceOutput'),
            target_input=data.get('targetInput'),
            extra=_extra(data, CONNECTION_KEYS),
        )

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        _put(out, 'id', self.id)
        out['source'] = self.source
        out['target'] = self.target
        _put(out, 'sourceOutput', self.source_output)
        _put(out, 'targetInput', self.target_input)
        out.update(self.extra)
        return out


@dataclass
class SerializedGraph:
    nodes: List[SerializedNode] = field(default_factory=list)
    connections: List[SerializedConnection] = field(default_factory=list)
    viewport: Optional[Dict[str, float]] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SerializedGraph':
        if not data:
            return cls()
        nodes = [SerializedNode.from_dict(n) for n in (data.get('nodes') or []) if isinstance(n, dict)]
        connections = [
            SerializedConnection.from_dict(c) for c in (data.get('connections') or []) if isinstance(c, dict)
        ]
        viewport = data.get('viewport')
        return cls(nodes=nodes, connections=connections,
                   viewport=dict(viewport) if isinstance(viewport, dict) else None,
                   extra=_extra(data, GRAPH_KEYS))

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            'nodes': [n.to_dict() for n in self.nodes],
            'connections': [c.to_dict() for c in self.connections],
        }
        _put(out, 'viewport', dict(self.viewport) if self.viewport else None)
        out.update(self.extra)
        return out

    def nodes_of_kind(self, kind: NodeKind) -> List[SerializedNode]:
        return [n for n in self.nodes if n.resolved_kind == kind.value]


def split_logic_data(logic_data: Optional[Dict[str, Any]]) -> Tuple[SerializedGraph, SerializedGraph]:
    """Return (buy_graph, sell_graph) from a stored logic payload."""
    logic_data = logic_data or {}

    def first(keys):
        for key in keys:
            if logic_data.get(key):
                return logic_data[key]
        return None

    return (SerializedGraph.from_dict(first(BUY_GRAPH_KEYS)),
            SerializedGraph.from_dict(first(SELL_GRAPH_KEYS)))
