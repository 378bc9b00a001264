"""
Error taxonomy for the logic engine.

CompileError subclasses are raised while turning a graph into an AST and are
fatal to that parse attempt. DataNotReadyError is a per-tick evaluation
failure. MarketDataError covers exchange/network failures. Isolation boundary
errors come from the worker <-> supervisor channel.
"""


class LogicError(Exception):
    """Base class for every logic engine error."""


# ═══════════════════════════════════════════════════════════════════
# COMPILE ERRORS
# ═══════════════════════════════════════════════════════════════════

class CompileError(LogicError):
    """Graph could not be compiled into an AST."""

    reason = 'CompileError'

    def __init__(self, message: str, graph: str = None, node_id: str = None):
        self.graph = graph
        self.node_id = node_id
        prefix = f"[{graph}] " if graph else ''
        super().__init__(f"{prefix}{self.reason}: {message}")


class MissingTerminalNode(CompileError):
    reason = 'MissingTerminalNode'


class MissingCondition(CompileError):
    reason = 'MissingCondition'


class InsufficientOperands(CompileError):
    reason = 'InsufficientOperands'


class UnknownNodeKind(CompileError):
    reason = 'UnknownNodeKind'


class InvalidNumericControl(CompileError):
    reason = 'InvalidNumericControl'


class PeriodTooLarge(CompileError):
    reason = 'PeriodTooLarge'


class InvalidControlValue(CompileError):
    reason = 'InvalidControlValue'


class CyclicGraph(CompileError):
    reason = 'CyclicGraph'


class DanglingConnection(CompileError):
    reason = 'DanglingConnection'


class NonBooleanInput(CompileError):
    reason = 'NonBooleanInput'


# ═══════════════════════════════════════════════════════════════════
# RUNTIME ERRORS
# ═══════════════════════════════════════════════════════════════════

class InterpreterStateError(LogicError):
    """Operation not allowed in the interpreter's current state."""


class DataNotReadyError(LogicError):
    """Market data needed by a node has not been warmed up yet."""


class MarketDataError(LogicError):
    """Market data or order request to the exchange failed."""


class IsolationBoundaryError(LogicError):
    """Worker <-> supervisor channel failed (crash, closed queue)."""


class RequestTimeoutError(IsolationBoundaryError):
    """A correlated request across the worker boundary got no response in time."""
