from __future__ import annotations

import sys
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

REPO_ROOT = Path(__file__).resolve().parents[3]
STUDIO_SRC = REPO_ROOT / "app" / "bulltrigger-studio" / "src"
if str(STUDIO_SRC) not in sys.path:
    sys.path.insert(0, str(STUDIO_SRC))

import core.db as core_db
from core.config import Config
from core.db import session_scope
from core.models import (
    FlowEdge,
    FlowNode,
    NODE_TYPE_API,
    NODE_TYPE_START,
    NODE_TYPE_STRATEGY_TRIGGER,
    Strategy,
    StrategyExecution,
)
from core.seed import BTC_ANALYSIS_STRATEGY, CRYPTO_TIP_STRATEGY, seed_defaults
from services import scheduler
from services import tasks as studio_tasks
from services.flows import load_graph, save_graph
from services.flows import steps as flow_steps
from services.flows.graph import parse_json_object


class SchedulerDbTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        tmp_dir = Path(self._tmp.name)
        self._orig_db_uri = Config.SQLALCHEMY_DATABASE_URI
        Config.SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_dir / 'scheduler.sqlite3'}"
        self._reset_engine()

    def tearDown(self) -> None:
        self._dispose_engine()
        Config.SQLALCHEMY_DATABASE_URI = self._orig_db_uri
        self._tmp.cleanup()

    def _dispose_engine(self) -> None:
        if core_db._engine is not None:
            core_db._engine.dispose()
        core_db._engine = None
        core_db.SessionLocal = None

    def _reset_engine(self) -> None:
        self._dispose_engine()
        core_db.init_engine(Config.SQLALCHEMY_DATABASE_URI)
        core_db.init_db()

    def _create_strategy(self, name: str, cron: str | None, enabled: bool = True) -> int:
        with session_scope() as session:
            return Strategy.create(session, name=name, cron=cron, enabled=enabled).id


class CronParsingTests(unittest.TestCase):
    def test_six_field_expression_drops_seconds(self) -> None:
        schedule = scheduler.parse_cron("0 0 9 * * *")
        self.assertTrue(
            scheduler.cron_matches(schedule, datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
        )
        self.assertFalse(
            scheduler.cron_matches(schedule, datetime(2024, 1, 1, 9, 1, tzinfo=timezone.utc))
        )

    def test_day_of_week_uses_sunday_as_zero(self) -> None:
        schedule = scheduler.parse_cron("30 12 * * 0")
        sunday = datetime(2024, 1, 7, 12, 30, tzinfo=timezone.utc)
        monday = datetime(2024, 1, 8, 12, 30, tzinfo=timezone.utc)
        self.assertTrue(scheduler.cron_matches(schedule, sunday))
        self.assertFalse(scheduler.cron_matches(schedule, monday))

    def test_invalid_expression_falls_back_to_default(self) -> None:
        default = scheduler.parse_cron(Config.STRATEGY_DEFAULT_CRON)
        for expression in ("not a cron", "99 * * * *", "", None):
            schedule = scheduler.parse_cron(expression)
            self.assertEqual(default.minute, schedule.minute, expression)
            self.assertEqual(default.hour, schedule.hour, expression)


class ClaimDueStrategiesTests(SchedulerDbTestCase):
    def test_due_strategy_is_claimed_once_per_minute(self) -> None:
        every_five = self._create_strategy("Every five", "*/5 * * * *")
        self._create_strategy("Hourly", "0 * * * *")
        self._create_strategy("Disabled", "* * * * *", enabled=False)

        first = scheduler.claim_due_strategies(
            datetime(2024, 1, 1, 9, 5, 10, tzinfo=timezone.utc)
        )
        again = scheduler.claim_due_strategies(
            datetime(2024, 1, 1, 9, 5, 50, tzinfo=timezone.utc)
        )
        later = scheduler.claim_due_strategies(
            datetime(2024, 1, 1, 9, 10, 0, tzinfo=timezone.utc)
        )

        self.assertEqual([every_five], first)
        self.assertEqual([], again)
        self.assertEqual([every_five], later)

    def test_dispatch_task_queues_claimed_strategies_as_cron_runs(self) -> None:
        with patch.object(
            studio_tasks, "claim_due_strategies", return_value=[3, 4]
        ), patch.object(studio_tasks.run_strategy, "delay") as delay_mock:
            queued = studio_tasks.dispatch_due_strategies.run()

        self.assertEqual([3, 4], queued)
        self.assertEqual(
            [(3, "cron"), (4, "cron")],
            [call.args for call in delay_mock.call_args_list],
        )

    def test_run_task_treats_unknown_trigger_kind_as_manual(self) -> None:
        strategy_id = self._create_strategy("Ping", None)
        save_graph(
            strategy_id,
            [
                {"key": "start", "node_type": NODE_TYPE_START, "name": "Start"},
                {
                    "key": "ping",
                    "node_type": NODE_TYPE_API,
                    "name": "Ping",
                    "output_variable": "pong",
                    "config": {"url": "https://status.test"},
                },
            ],
            [{"source": "start", "target": "ping"}],
        )
        response = flow_steps.HttpResponse(status=200, body='{"ok": true}')
        with patch.object(flow_steps, "http_call", return_value=response):
            result = studio_tasks.run_strategy.run(strategy_id, "webhook")

        self.assertTrue(result["success"])
        with session_scope() as session:
            execution = session.get(StrategyExecution, result["execution_id"])
            self.assertEqual("manual", execution.trigger_kind)


class SeedDefaultsTests(SchedulerDbTestCase):
    def test_seeding_is_idempotent_and_links_trigger_target(self) -> None:
        seed_defaults()
        seed_defaults()

        with session_scope() as session:
            strategies = {
                item.name: item.id for item in session.query(Strategy).all()
            }
            self.assertEqual({CRYPTO_TIP_STRATEGY, BTC_ANALYSIS_STRATEGY}, set(strategies))
            trigger = (
                session.query(FlowNode)
                .filter(
                    FlowNode.strategy_id == strategies[BTC_ANALYSIS_STRATEGY],
                    FlowNode.node_type == NODE_TYPE_STRATEGY_TRIGGER,
                )
                .one()
            )
            self.assertEqual(
                strategies[CRYPTO_TIP_STRATEGY],
                parse_json_object(trigger.config_json)["target_strategy_id"],
            )
            edge_count = (
                session.query(FlowEdge)
                .filter(FlowEdge.strategy_id == strategies[BTC_ANALYSIS_STRATEGY])
                .count()
            )
        self.assertEqual(5, edge_count)

        for strategy_id in strategies.values():
            load_graph(strategy_id).validate()


if __name__ == "__main__":
    unittest.main()
