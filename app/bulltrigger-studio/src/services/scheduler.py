from __future__ import annotations

from datetime import datetime, timezone
import logging

from celery.schedules import ParseException, crontab
from sqlalchemy import select

from core.config import Config
from core.db import as_utc, session_scope, utcnow
from core.models import Strategy

logger = logging.getLogger(__name__)


def parse_cron(expression: str | None) -> crontab:
    """Build a crontab from a 5-field expression.

    Six-field expressions carry a leading seconds field, which is dropped.
    Blank or unparseable expressions fall back to the default schedule.
    """
    parts = (expression or "").split()
    if len(parts) == 6:
        parts = parts[1:]
    if len(parts) == 5:
        minute, hour, day_of_month, month_of_year, day_of_week = parts
        try:
            return crontab(
                minute=minute,
                hour=hour,
                day_of_month=day_of_month,
                month_of_year=month_of_year,
                day_of_week=day_of_week,
            )
        except (ParseException, ValueError):
            logger.warning("Invalid cron expression %r; using default", expression)
    elif expression:
        logger.warning("Invalid cron expression %r; using default", expression)
    if expression == Config.STRATEGY_DEFAULT_CRON:
        raise ValueError(f"Default cron expression {expression!r} is invalid.")
    return parse_cron(Config.STRATEGY_DEFAULT_CRON)


def cron_matches(schedule: crontab, moment: datetime) -> bool:
    return (
        moment.minute in schedule.minute
        and moment.hour in schedule.hour
        and moment.day in schedule.day_of_month
        and moment.month in schedule.month_of_year
        and moment.isoweekday() % 7 in schedule.day_of_week
    )


def claim_due_strategies(now: datetime | None = None) -> list[int]:
    """Mark and return enabled strategies whose schedule matches this minute.

    A strategy is claimed at most once per minute, so overlapping scheduler
    ticks never dispatch it twice.
    """
    moment = (as_utc(now) or utcnow()).astimezone(timezone.utc)
    minute_start = moment.replace(second=0, microsecond=0)
    due: list[int] = []
    with session_scope() as session:
        strategies = (
            session.execute(
                select(Strategy)
                .where(Strategy.enabled.is_(True))
                .order_by(Strategy.id.asc())
            )
            .scalars()
            .all()
        )
        for strategy in strategies:
            if not cron_matches(parse_cron(strategy.cron), minute_start):
                continue
            last = as_utc(strategy.last_scheduled_at)
            if last is not None and last >= minute_start:
                continue
            strategy.last_scheduled_at = minute_start
            due.append(strategy.id)
    return due
