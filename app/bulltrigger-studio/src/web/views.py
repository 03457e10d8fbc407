from __future__ import annotations

import logging
from typing import Any

from flask import Blueprint, request
from sqlalchemy import select

from core.config import Config
from core.db import session_scope
from core.models import Strategy, TRIGGER_KIND_MANUAL
from services.flows import execute_strategy
from services.flows.recorder import (
    DEFAULT_RECENT_EXECUTIONS_LIMIT,
    get_all_strategy_metrics,
    get_execution,
    get_recent_executions,
    get_strategy_metrics,
)
from services.notifications import REACTIONS, dispatch_signal, record_reaction
from services.telegram import TelegramError, answer_callback_query
from services.usage import get_token_usage, reset_token_usage

bp = Blueprint("strategies", __name__, url_prefix=Config.API_PREFIX)

logger = logging.getLogger(__name__)


def _strategy_exists(strategy_id: int) -> bool:
    with session_scope() as session:
        return session.get(Strategy, strategy_id) is not None


def _parse_limit(raw: str | None, default: int) -> int:
    try:
        value = int(raw) if raw is not None else default
    except ValueError:
        return default
    return max(1, min(value, 100))


def _serialize_strategy(strategy: Strategy) -> dict[str, Any]:
    return {
        "id": strategy.id,
        "name": strategy.name,
        "description": strategy.description,
        "enabled": strategy.enabled,
        "cron": strategy.cron,
    }


@bp.get("/health")
def health():
    return {"ok": True}


@bp.get("/strategies")
def list_strategies():
    with session_scope() as session:
        strategies = (
            session.execute(select(Strategy).order_by(Strategy.id.asc()))
            .scalars()
            .all()
        )
        return {"strategies": [_serialize_strategy(item) for item in strategies]}


@bp.post("/strategies/<int:strategy_id>/run")
def run_strategy_now(strategy_id: int):
    payload = request.get_json(silent=True) or {}
    if not isinstance(payload, dict):
        return {"error": "Invalid JSON payload."}, 400
    variables = payload.get("variables") or {}
    if not isinstance(variables, dict):
        return {"error": "variables must be an object."}, 400
    if not _strategy_exists(strategy_id):
        return {"error": "Strategy not found."}, 404
    result = execute_strategy(strategy_id, TRIGGER_KIND_MANUAL, variables=variables)
    return result.to_dict()


@bp.get("/strategies/<int:strategy_id>/executions")
def list_strategy_executions(strategy_id: int):
    if not _strategy_exists(strategy_id):
        return {"error": "Strategy not found."}, 404
    limit = _parse_limit(request.args.get("limit"), DEFAULT_RECENT_EXECUTIONS_LIMIT)
    return {"executions": get_recent_executions(strategy_id, limit)}


@bp.get("/strategies/<int:strategy_id>/metrics")
def strategy_metrics(strategy_id: int):
    if not _strategy_exists(strategy_id):
        return {"error": "Strategy not found."}, 404
    return get_strategy_metrics(strategy_id)


@bp.get("/strategies/metrics")
def all_strategy_metrics():
    return {"strategies": get_all_strategy_metrics()}


@bp.get("/executions/<int:execution_id>")
def execution_detail(execution_id: int):
    execution = get_execution(execution_id)
    if execution is None:
        return {"error": "Execution not found."}, 404
    return execution


@bp.get("/tokens/usage")
def token_usage():
    return get_token_usage()


@bp.put("/tokens/reset")
def token_reset():
    reset_token_usage()
    return get_token_usage()


@bp.post("/signals")
def send_signal():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return {"error": "Invalid JSON payload."}, 400
    try:
        outcome = dispatch_signal(payload, payload.get("chat_id"))
    except ValueError as exc:
        return {"error": str(exc)}, 400
    except TelegramError as exc:
        return {"error": str(exc)}, 502
    return {
        "message_id": outcome.message_id,
        "reminder": outcome.reminder,
        "fingerprint": outcome.fingerprint,
    }


@bp.post("/telegram/callback")
def telegram_callback():
    payload = request.get_json(silent=True) or {}
    callback = payload.get("callback_query") if isinstance(payload, dict) else None
    if not isinstance(callback, dict):
        return {"ok": True, "handled": False}
    reaction = str(callback.get("data") or "").strip()
    message = callback.get("message") or {}
    if not isinstance(message, dict):
        message = {}
    message_id = message.get("message_id")
    chat = message.get("chat")
    chat_id = chat.get("id") if isinstance(chat, dict) else None
    if reaction not in REACTIONS or message_id is None:
        return {"ok": True, "handled": False}
    handled = record_reaction(int(message_id), reaction, chat_id)
    try:
        answer_callback_query(str(callback.get("id") or ""), "Noted")
    except TelegramError:
        logger.warning("Failed to answer Telegram callback %s", callback.get("id"))
    return {"ok": True, "handled": handled}
