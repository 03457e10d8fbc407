from services.flows.engine import ExecutionResult, execute_strategy
from services.flows.errors import (
    ConfigurationError,
    CyclicTriggerError,
    ExecutionStateError,
    FatalNodeError,
    FlowError,
    StepError,
    StrategyNotFoundError,
)
from services.flows.graph import FlowGraph, load_graph, save_graph

__all__ = [
    "ConfigurationError",
    "CyclicTriggerError",
    "ExecutionResult",
    "ExecutionStateError",
    "FatalNodeError",
    "FlowError",
    "FlowGraph",
    "StepError",
    "StrategyNotFoundError",
    "execute_strategy",
    "load_graph",
    "save_graph",
]
