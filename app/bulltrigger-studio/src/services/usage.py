"""Process-wide LLM token usage counter.

The counter lives in ``integration_settings`` under the ``usage`` provider so
every worker process shares it. Increments are a single SQL ``UPDATE`` that
adds to the stored value, so concurrent workers never lose an increment.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import Integer, String, cast, select, update
from sqlalchemy.exc import IntegrityError

from core.config import Config
from core.db import session_scope
from core.models import IntegrationSetting
from services.integrations import load_integration_settings

USAGE_PROVIDER = "usage"
TOKEN_USED_KEY = "token_used"

logger = logging.getLogger(__name__)


def _parse_int(value: str | None, default: int = 0) -> int:
    try:
        return int(str(value or "").strip())
    except ValueError:
        return default


def _parse_float(value: str | None, default: float) -> float:
    try:
        return float(str(value or "").strip())
    except ValueError:
        return default


def _counter_filter():
    return (
        IntegrationSetting.provider == USAGE_PROVIDER,
        IntegrationSetting.key == TOKEN_USED_KEY,
    )


def _ensure_counter() -> None:
    try:
        with session_scope() as session:
            existing = session.execute(
                select(IntegrationSetting.id).where(*_counter_filter()).limit(1)
            ).first()
            if existing is None:
                IntegrationSetting.create(
                    session, provider=USAGE_PROVIDER, key=TOKEN_USED_KEY, value="0"
                )
    except IntegrityError:
        logger.debug("Token usage counter was created concurrently")


def increment_token_usage(tokens: int) -> int:
    amount = max(0, int(tokens or 0))
    _ensure_counter()
    with session_scope() as session:
        session.execute(
            update(IntegrationSetting)
            .where(*_counter_filter())
            .values(value=cast(cast(IntegrationSetting.value, Integer) + amount, String))
            .execution_options(synchronize_session=False)
        )
        total = session.execute(
            select(IntegrationSetting.value).where(*_counter_filter())
        ).scalar_one()
    return _parse_int(total)


def get_token_usage() -> dict[str, Any]:
    settings = load_integration_settings(USAGE_PROVIDER)
    used = _parse_int(settings.get(TOKEN_USED_KEY))
    limit = _parse_int(settings.get("token_limit"), Config.TOKEN_LIMIT)
    warn = _parse_float(settings.get("token_warn"), Config.TOKEN_WARN)
    panic = _parse_float(settings.get("token_panic"), Config.TOKEN_PANIC)
    ratio = used / limit if limit > 0 else 0.0
    return {
        "used": used,
        "limit": limit,
        "ratio": ratio,
        "percentage": round(ratio * 100),
        "warning": ratio >= warn,
        "panic": ratio >= panic,
        "thresholds": {"warn": warn, "panic": panic},
    }


def reset_token_usage() -> None:
    _ensure_counter()
    with session_scope() as session:
        session.execute(
            update(IntegrationSetting)
            .where(*_counter_filter())
            .values(value="0")
            .execution_options(synchronize_session=False)
        )
    logger.info("Token usage counter reset")
