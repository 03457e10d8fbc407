from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
import logging
import time
from typing import Any

from core.config import Config
from core.models import (
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_SUCCESS,
    HANDLE_DEFAULT,
    HANDLE_FALSE,
    NODE_TYPE_API,
    NODE_TYPE_CONDITION,
    NODE_TYPE_MODEL,
    NODE_TYPE_START,
    NODE_TYPE_STRATEGY_TRIGGER,
    NODE_TYPE_TELEGRAM_MESSAGE,
    NODE_TYPES_WITHOUT_OUTPUT,
    TRIGGER_KIND_MANUAL,
)
from services.flows import steps
from services.flows.errors import (
    ConfigurationError,
    CyclicTriggerError,
    FatalNodeError,
    StepError,
    StrategyNotFoundError,
)
from services.flows.graph import FlowGraph, NodeSpec, load_graph
from services.flows.recorder import (
    append_step_log,
    create_execution,
    finalize_execution,
)
from services.flows.variables import VariableEnvironment, referenced_names

STEP_EXECUTORS = {
    NODE_TYPE_API: steps.execute_api_node,
    NODE_TYPE_MODEL: steps.execute_model_node,
    NODE_TYPE_CONDITION: steps.execute_condition_node,
    NODE_TYPE_STRATEGY_TRIGGER: steps.execute_strategy_trigger_node,
    NODE_TYPE_TELEGRAM_MESSAGE: steps.execute_telegram_message_node,
}

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    success: bool
    variables: dict[str, Any]
    logs: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    execution_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "execution_id": self.execution_id,
            "variables": self.variables,
            "logs": self.logs,
        }
        if self.error:
            payload["error"] = self.error
        return payload


def _is_required(node: NodeSpec) -> bool:
    if node.required is not None:
        return bool(node.required)
    flag = node.config.get("required")
    if flag is not None:
        return str(flag).strip().lower() in {"1", "true", "yes"}
    return Config.FLOW_REQUIRED_STEP_POLICY.strip().lower() == "required"


def _successors(graph: FlowGraph, node: NodeSpec, handle: str) -> list[NodeSpec]:
    if not graph.is_legacy:
        return graph.successors(node.id, handle)
    # Ungraphed strategies run as one implicit chain in order_index order.
    ordered = graph.ordered_nodes()
    position = next(
        index for index, candidate in enumerate(ordered) if candidate.id == node.id
    )
    return ordered[position + 1 : position + 2]


def _run_node(
    node: NodeSpec,
    context: steps.StepContext,
) -> tuple[str, dict[str, Any], str | None]:
    """Execute one node and record its step log.

    Returns the handle to route on, the serialized log and the fatal error
    message when the failure must fail the whole execution.
    """
    variables = context.variables
    input_snapshot = variables.select(referenced_names(node.config))
    executor = STEP_EXECUTORS[node.node_type]
    output: Any = None
    error: str | None = None
    fatal: str | None = None
    handle = HANDLE_DEFAULT
    started = time.monotonic()
    try:
        result = executor(node, context)
    except FatalNodeError as exc:
        error = fatal = str(exc)
        logger.error("Node %s (%s) failed fatally: %s", node.id, node.node_type, exc)
    except CyclicTriggerError as exc:
        # A refused re-entry never fails the caller, required or not.
        error = str(exc)
        logger.warning("Node %s (%s) refused: %s", node.id, node.node_type, exc)
    except StepError as exc:
        error = str(exc)
        if _is_required(node):
            fatal = error
        logger.warning("Node %s (%s) failed: %s", node.id, node.node_type, exc)
    except Exception as exc:
        error = str(exc) or exc.__class__.__name__
        if _is_required(node):
            fatal = error
        logger.exception("Node %s (%s) raised unexpectedly", node.id, node.node_type)
    else:
        output = result.output
        handle = result.handle
        if (
            result.store_output
            and node.output_variable
            and node.node_type not in NODE_TYPES_WITHOUT_OUTPUT
        ):
            variables.set(node.output_variable, result.output, node.node_type)
        for name, value in result.outputs.items():
            variables.set(name, value, node.node_type)
    if error is not None:
        handle = HANDLE_FALSE if node.node_type == NODE_TYPE_CONDITION else HANDLE_DEFAULT

    duration_ms = int((time.monotonic() - started) * 1000)
    log = append_step_log(
        context.execution_id,
        node,
        input_snapshot=input_snapshot,
        output=output,
        error=error,
        duration_ms=duration_ms,
    )
    return handle, log, fatal


def _fail_before_start(
    strategy_id: int,
    trigger_kind: str,
    variables: dict[str, Any] | None,
    exc: ConfigurationError,
) -> ExecutionResult:
    message = str(exc)
    logger.warning("Strategy %s cannot run: %s", strategy_id, message)
    execution_id = None
    if not isinstance(exc, StrategyNotFoundError):
        execution_id = create_execution(strategy_id, trigger_kind)
        finalize_execution(execution_id, EXECUTION_STATUS_FAILED, message)
    return ExecutionResult(
        success=False,
        variables=dict(variables or {}),
        error=message,
        execution_id=execution_id,
    )


def execute_strategy(
    strategy_id: int,
    trigger_kind: str = TRIGGER_KIND_MANUAL,
    *,
    variables: dict[str, Any] | None = None,
    call_stack: tuple[int, ...] | list[int] = (),
) -> ExecutionResult:
    """Run one strategy's flow graph to completion.

    ``variables`` seeds the run's environment and ``call_stack`` holds the
    strategy ids already executing above this run in a trigger chain.
    """
    try:
        graph = load_graph(strategy_id)
        graph.validate()
    except ConfigurationError as exc:
        return _fail_before_start(strategy_id, trigger_kind, variables, exc)

    execution_id = create_execution(strategy_id, trigger_kind)
    logger.info(
        "Executing strategy %s (%s) as %s, execution %s",
        strategy_id,
        graph.strategy_name,
        trigger_kind,
        execution_id,
    )
    context = steps.StepContext(
        execution_id=execution_id,
        strategy_id=strategy_id,
        trigger_kind=trigger_kind,
        call_stack=(*tuple(call_stack), strategy_id),
        variables=VariableEnvironment(variables),
        run_strategy=execute_strategy,
    )
    logs: list[dict[str, Any]] = []
    fatal_error: str | None = None

    try:
        if graph.is_legacy:
            ready_queue = deque(graph.ordered_nodes()[:1])
        else:
            ready_queue = deque(graph.entry_nodes())
        enqueued = {node.id for node in ready_queue}
        while ready_queue:
            node = ready_queue.popleft()
            handle = HANDLE_DEFAULT
            if node.enabled and node.node_type != NODE_TYPE_START:
                handle, log, fatal = _run_node(node, context)
                logs.append(log)
                if fatal is not None and fatal_error is None:
                    fatal_error = fatal
            if fatal_error is not None:
                continue
            for successor in _successors(graph, node, handle):
                if successor.id in enqueued:
                    continue
                enqueued.add(successor.id)
                ready_queue.append(successor)
    except Exception as exc:
        logger.exception("Execution %s aborted", execution_id)
        message = str(exc) or exc.__class__.__name__
        finalize_execution(execution_id, EXECUTION_STATUS_FAILED, message)
        return ExecutionResult(
            success=False,
            variables=context.variables.snapshot(),
            logs=logs,
            error=message,
            execution_id=execution_id,
        )

    status = EXECUTION_STATUS_FAILED if fatal_error else EXECUTION_STATUS_SUCCESS
    finalize_execution(execution_id, status, fatal_error)
    return ExecutionResult(
        success=fatal_error is None,
        variables=context.variables.snapshot(),
        logs=logs,
        error=fatal_error,
        execution_id=execution_id,
    )
