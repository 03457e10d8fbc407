from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from flask import Flask

REPO_ROOT = Path(__file__).resolve().parents[3]
STUDIO_SRC = REPO_ROOT / "app" / "bulltrigger-studio" / "src"
if str(STUDIO_SRC) not in sys.path:
    sys.path.insert(0, str(STUDIO_SRC))

import core.db as core_db
import web.views as studio_views
from core.config import Config
from core.db import session_scope
from core.models import NODE_TYPE_API, NODE_TYPE_START, SentMessage, Strategy
from services import telegram, usage
from services.flows import save_graph
from services.flows import steps as flow_steps


class StrategyApiTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        tmp_dir = Path(self._tmp.name)
        self._orig_db_uri = Config.SQLALCHEMY_DATABASE_URI
        Config.SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_dir / 'api.sqlite3'}"
        self._reset_engine()
        app = Flask(__name__)
        app.config["TESTING"] = True
        app.register_blueprint(studio_views.bp)
        self.client = app.test_client()

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

    def _create_price_strategy(self) -> int:
        with session_scope() as session:
            strategy_id = Strategy.create(session, name="Price check").id
        save_graph(
            strategy_id,
            [
                {"key": "start", "node_type": NODE_TYPE_START, "name": "Start"},
                {
                    "key": "price",
                    "node_type": NODE_TYPE_API,
                    "name": "Price",
                    "output_variable": "price",
                    "config": {
                        "url": "https://prices.test/{{symbol}}",
                        "json_path": "$.price",
                        "cast_to_number": True,
                    },
                },
            ],
            [{"source": "start", "target": "price"}],
        )
        return strategy_id

    def _run(self, strategy_id: int, variables: dict | None = None):
        response = flow_steps.HttpResponse(status=200, body='{"price": "51000"}')
        with patch.object(flow_steps, "http_call", return_value=response) as http_mock:
            result = self.client.post(
                f"/api/strategies/{strategy_id}/run",
                json={"variables": variables or {}},
            )
        return result, http_mock

    def test_health_and_strategy_listing(self) -> None:
        strategy_id = self._create_price_strategy()
        self.assertEqual({"ok": True}, self.client.get("/api/health").get_json())
        listing = self.client.get("/api/strategies").get_json()["strategies"]
        self.assertEqual([strategy_id], [item["id"] for item in listing])

    def test_manual_run_returns_variables_and_logs(self) -> None:
        strategy_id = self._create_price_strategy()
        response, http_mock = self._run(strategy_id, {"symbol": "BTC"})

        self.assertEqual(200, response.status_code)
        payload = response.get_json()
        self.assertTrue(payload["success"])
        self.assertEqual(51000, payload["variables"]["price"])
        self.assertEqual("BTC", payload["variables"]["symbol"])
        self.assertEqual(["Price"], [log["node_name"] for log in payload["logs"]])
        self.assertEqual("https://prices.test/BTC", http_mock.call_args.args[1])

        detail = self.client.get(f"/api/executions/{payload['execution_id']}").get_json()
        self.assertEqual("success", detail["status"])
        self.assertEqual("manual", detail["trigger_kind"])
        self.assertEqual(1, len(detail["logs"]))

    def test_run_rejects_unknown_strategy_and_bad_variables(self) -> None:
        strategy_id = self._create_price_strategy()
        missing = self.client.post("/api/strategies/999/run", json={})
        self.assertEqual(404, missing.status_code)
        bad = self.client.post(
            f"/api/strategies/{strategy_id}/run", json={"variables": ["x"]}
        )
        self.assertEqual(400, bad.status_code)
        self.assertEqual(404, self.client.get("/api/executions/999").status_code)

    def test_executions_and_metrics_reflect_runs(self) -> None:
        strategy_id = self._create_price_strategy()
        for _ in range(3):
            self._run(strategy_id, {"symbol": "ETH"})

        executions = self.client.get(
            f"/api/strategies/{strategy_id}/executions?limit=2"
        ).get_json()["executions"]
        self.assertEqual(2, len(executions))
        self.assertGreater(executions[0]["id"], executions[1]["id"])

        metrics = self.client.get(f"/api/strategies/{strategy_id}/metrics").get_json()
        self.assertEqual(3, metrics["total_runs"])
        self.assertEqual(100, metrics["success_rate"])

        overview = self.client.get("/api/strategies/metrics").get_json()["strategies"]
        self.assertEqual(["Price check"], [item["strategy_name"] for item in overview])
        self.assertEqual(
            404, self.client.get("/api/strategies/999/metrics").status_code
        )

    def test_token_usage_and_reset(self) -> None:
        usage.increment_token_usage(250)
        self.assertEqual(250, self.client.get("/api/tokens/usage").get_json()["used"])
        reset = self.client.put("/api/tokens/reset")
        self.assertEqual(200, reset.status_code)
        self.assertEqual(0, reset.get_json()["used"])

    def test_signal_dispatch_and_reaction_callback(self) -> None:
        signal = {"symbol": "eth", "price": 3000, "chat_id": "12"}
        with patch.object(telegram, "send_message", side_effect=[501, 502]) as send_mock:
            first = self.client.post("/api/signals", json=signal).get_json()
            second = self.client.post("/api/signals", json=signal).get_json()

        self.assertEqual("ETH_3000", first["fingerprint"])
        self.assertFalse(first["reminder"])
        self.assertTrue(second["reminder"])
        self.assertEqual(2, send_mock.call_count)

        callback = {
            "callback_query": {
                "id": "cb-1",
                "data": "trade_yes",
                "message": {"message_id": 501},
            }
        }
        with patch.object(studio_views, "answer_callback_query") as answer_mock:
            handled = self.client.post("/api/telegram/callback", json=callback).get_json()
        self.assertEqual({"ok": True, "handled": True}, handled)
        answer_mock.assert_called_once_with("cb-1", "Noted")

        ignored = self.client.post(
            "/api/telegram/callback", json={"message": {"text": "hi"}}
        ).get_json()
        self.assertFalse(ignored["handled"])

    def test_reaction_callback_matches_only_the_originating_chat(self) -> None:
        with patch.object(telegram, "send_message", return_value=777):
            self.client.post("/api/signals", json={"symbol": "sol", "price": 150, "chat_id": "12"})

        def _callback(chat_id: int) -> dict:
            return {
                "callback_query": {
                    "id": f"cb-{chat_id}",
                    "data": "trade_no",
                    "message": {"message_id": 777, "chat": {"id": chat_id}},
                }
            }

        with patch.object(studio_views, "answer_callback_query"):
            other_chat = self.client.post("/api/telegram/callback", json=_callback(999)).get_json()
            same_chat = self.client.post("/api/telegram/callback", json=_callback(12)).get_json()

        self.assertFalse(other_chat["handled"])
        self.assertTrue(same_chat["handled"])
        with session_scope() as session:
            record = session.query(SentMessage).one()
            self.assertEqual("trade_no", record.reaction)

    def test_signal_errors_map_to_status_codes(self) -> None:
        self.assertEqual(
            400, self.client.post("/api/signals", json={"price": 1}).status_code
        )
        with patch.object(
            telegram, "send_message", side_effect=telegram.TelegramError("down")
        ):
            failed = self.client.post(
                "/api/signals", json={"symbol": "BTC", "price": 1}
            )
        self.assertEqual(502, failed.status_code)


if __name__ == "__main__":
    unittest.main()
