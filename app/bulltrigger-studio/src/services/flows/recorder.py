from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, select

from core.db import as_utc, session_scope, utcnow
from core.models import (
    EXECUTION_STATUS_FAILED,
    EXECUTION_STATUS_RUNNING,
    EXECUTION_STATUS_SUCCESS,
    EXECUTION_TERMINAL_STATUSES,
    FlowStepLog,
    Strategy,
    StrategyExecution,
    TRIGGER_KIND_CHOICES,
)
from services.flows.errors import ExecutionStateError
from services.flows.graph import NodeSpec

DEFAULT_RECENT_EXECUTIONS_LIMIT = 10

logger = logging.getLogger(__name__)


def _dump(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True, default=str)


def _load(raw: str | None) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _isoformat(value) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value is not None else None


def serialize_step_log(log: FlowStepLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "execution_id": log.execution_id,
        "node_id": log.node_id,
        "node_type": log.node_type,
        "node_name": log.node_name,
        "input": _load(log.input_json),
        "output": _load(log.output_json),
        "error": log.error,
        "duration_ms": log.duration_ms,
        "created_at": _isoformat(log.created_at),
    }


def serialize_execution(execution: StrategyExecution) -> dict[str, Any]:
    started_at = as_utc(execution.started_at)
    completed_at = as_utc(execution.completed_at)
    duration = None
    if started_at is not None and completed_at is not None:
        duration = (completed_at - started_at).total_seconds()
    return {
        "id": execution.id,
        "strategy_id": execution.strategy_id,
        "trigger_kind": execution.trigger_kind,
        "status": execution.status,
        "started_at": _isoformat(started_at),
        "completed_at": _isoformat(completed_at),
        "duration_seconds": duration,
        "error": execution.error,
    }


def create_execution(strategy_id: int, trigger_kind: str) -> int:
    if trigger_kind not in TRIGGER_KIND_CHOICES:
        raise ValueError(f"Unknown trigger kind '{trigger_kind}'.")
    with session_scope() as session:
        execution = StrategyExecution.create(
            session,
            strategy_id=strategy_id,
            trigger_kind=trigger_kind,
            status=EXECUTION_STATUS_RUNNING,
            started_at=utcnow(),
        )
        return execution.id


def append_step_log(
    execution_id: int,
    node: NodeSpec,
    *,
    input_snapshot: dict[str, Any] | None,
    output: Any,
    error: str | None,
    duration_ms: int,
) -> dict[str, Any]:
    with session_scope() as session:
        log = FlowStepLog.create(
            session,
            execution_id=execution_id,
            node_id=node.id,
            node_type=node.node_type,
            node_name=node.name,
            input_json=_dump(input_snapshot or {}),
            output_json=_dump(output),
            error=error,
            duration_ms=max(0, int(duration_ms)),
        )
        return serialize_step_log(log)


def finalize_execution(
    execution_id: int,
    status: str,
    error: str | None = None,
) -> None:
    if status not in EXECUTION_TERMINAL_STATUSES:
        raise ExecutionStateError(f"'{status}' is not a terminal execution status.")
    with session_scope() as session:
        execution = session.get(StrategyExecution, execution_id)
        if execution is None:
            raise ExecutionStateError(f"Execution {execution_id} not found.")
        if execution.status != EXECUTION_STATUS_RUNNING:
            raise ExecutionStateError(
                f"Execution {execution_id} is already {execution.status}."
            )
        execution.status = status
        execution.error = error
        execution.completed_at = utcnow()
    logger.info("Execution %s finished with status %s", execution_id, status)


def get_execution(execution_id: int) -> dict[str, Any] | None:
    with session_scope() as session:
        execution = session.get(StrategyExecution, execution_id)
        if execution is None:
            return None
        payload = serialize_execution(execution)
        payload["logs"] = [serialize_step_log(log) for log in execution.step_logs]
        return payload


def get_recent_executions(
    strategy_id: int,
    limit: int = DEFAULT_RECENT_EXECUTIONS_LIMIT,
) -> list[dict[str, Any]]:
    with session_scope() as session:
        executions = (
            session.execute(
                select(StrategyExecution)
                .where(StrategyExecution.strategy_id == strategy_id)
                .order_by(StrategyExecution.started_at.desc(), StrategyExecution.id.desc())
                .limit(max(1, int(limit)))
            )
            .scalars()
            .all()
        )
        return [serialize_execution(execution) for execution in executions]


def get_strategy_metrics(strategy_id: int) -> dict[str, Any]:
    with session_scope() as session:
        counts = dict(
            session.execute(
                select(StrategyExecution.status, func.count(StrategyExecution.id))
                .where(StrategyExecution.strategy_id == strategy_id)
                .group_by(StrategyExecution.status)
            ).all()
        )
        last_run = session.execute(
            select(func.max(StrategyExecution.started_at)).where(
                StrategyExecution.strategy_id == strategy_id
            )
        ).scalar()
        finished = (
            session.execute(
                select(StrategyExecution).where(
                    StrategyExecution.strategy_id == strategy_id,
                    StrategyExecution.status == EXECUTION_STATUS_SUCCESS,
                    StrategyExecution.completed_at.is_not(None),
                )
            )
            .scalars()
            .all()
        )
        durations = [
            (as_utc(item.completed_at) - as_utc(item.started_at)).total_seconds()
            for item in finished
        ]

    total = sum(counts.values())
    successful = counts.get(EXECUTION_STATUS_SUCCESS, 0)
    failed = counts.get(EXECUTION_STATUS_FAILED, 0)
    return {
        "strategy_id": strategy_id,
        "total_runs": total,
        "successful_runs": successful,
        "failed_runs": failed,
        "running_runs": counts.get(EXECUTION_STATUS_RUNNING, 0),
        "success_rate": round(successful / total * 100) if total else 0,
        "last_run": _isoformat(last_run),
        "avg_execution_seconds": (
            round(sum(durations) / len(durations), 3) if durations else 0
        ),
    }


def get_all_strategy_metrics() -> list[dict[str, Any]]:
    with session_scope() as session:
        strategies = (
            session.execute(select(Strategy).order_by(Strategy.id.asc()))
            .scalars()
            .all()
        )
        names = [(strategy.id, strategy.name) for strategy in strategies]
    metrics = []
    for strategy_id, name in names:
        payload = get_strategy_metrics(strategy_id)
        payload["strategy_name"] = name
        metrics.append(payload)
    return metrics
