from __future__ import annotations

import logging
from typing import Any

from services.celery_app import celery_app
from core.config import Config
from core.db import init_db, init_engine
from core.models import TRIGGER_KIND_CHOICES, TRIGGER_KIND_CRON, TRIGGER_KIND_MANUAL
from services.flows import execute_strategy
from services.scheduler import claim_due_strategies

logger = logging.getLogger(__name__)


@celery_app.task(bind=True)
def run_strategy(
    self,
    strategy_id: int,
    trigger_kind: str = TRIGGER_KIND_MANUAL,
    variables: dict[str, Any] | None = None,
    call_stack: list[int] | None = None,
) -> dict[str, Any]:
    init_engine(Config.SQLALCHEMY_DATABASE_URI)
    init_db()

    if trigger_kind not in TRIGGER_KIND_CHOICES:
        logger.warning(
            "Unknown trigger kind %r for strategy %s; running as manual",
            trigger_kind,
            strategy_id,
        )
        trigger_kind = TRIGGER_KIND_MANUAL
    result = execute_strategy(
        int(strategy_id),
        trigger_kind,
        variables=variables or {},
        call_stack=tuple(call_stack or ()),
    )
    if not result.success:
        logger.warning(
            "Strategy %s execution %s failed: %s",
            strategy_id,
            result.execution_id,
            result.error,
        )
    return {
        "success": result.success,
        "execution_id": result.execution_id,
        "error": result.error,
    }


@celery_app.task(bind=True)
def dispatch_due_strategies(self) -> list[int]:
    init_engine(Config.SQLALCHEMY_DATABASE_URI)
    init_db()

    strategy_ids = claim_due_strategies()
    for strategy_id in strategy_ids:
        run_strategy.delay(strategy_id, TRIGGER_KIND_CRON)
    if strategy_ids:
        logger.info("Queued scheduled strategies: %s", strategy_ids)
    return strategy_ids
