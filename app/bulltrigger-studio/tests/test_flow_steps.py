from __future__ import annotations

import json
import sys
import unittest
from pathlib import Path
from unittest.mock import MagicMock, patch

REPO_ROOT = Path(__file__).resolve().parents[3]
STUDIO_SRC = REPO_ROOT / "app" / "bulltrigger-studio" / "src"
if str(STUDIO_SRC) not in sys.path:
    sys.path.insert(0, str(STUDIO_SRC))

from core.models import (
    NODE_TYPE_API,
    NODE_TYPE_CONDITION,
    NODE_TYPE_MODEL,
    NODE_TYPE_TELEGRAM_MESSAGE,
)
from services import llm, notifications, usage
from services.flows import steps
from services.flows.errors import FatalNodeError, StepError
from services.flows.graph import NodeSpec
from services.flows.variables import VariableEnvironment, is_truthy, referenced_names


def _node(node_type: str, config: dict, output_variable: str | None = None) -> NodeSpec:
    return NodeSpec(
        id=1,
        strategy_id=1,
        node_type=node_type,
        name=f"{node_type} node",
        config=config,
        output_variable=output_variable,
        enabled=True,
        required=None,
        order_index=0,
    )


def _context(variables: dict | None = None) -> steps.StepContext:
    return steps.StepContext(
        execution_id=1,
        strategy_id=1,
        trigger_kind="manual",
        call_stack=(1,),
        variables=VariableEnvironment(variables),
        run_strategy=MagicMock(),
    )


class VariableEnvironmentTests(unittest.TestCase):
    def test_interpolation_leaves_unknown_placeholders(self) -> None:
        env = VariableEnvironment({"price": 51000.0, "meta": {"a": 1}})
        self.assertEqual(
            "BTC 51000 {{missing}} {\"a\": 1}",
            env.interpolate("BTC {{price}} {{missing}} {{ meta }}"),
        )

    def test_truthiness_treats_textual_false_values_as_falsy(self) -> None:
        for value in ("false", "0", "null", "None", "undefined", "", 0, None, []):
            self.assertFalse(is_truthy(value), value)
        for value in ("yes", "0.5", 1, 51000, {"a": 1}):
            self.assertTrue(is_truthy(value), value)

    def test_referenced_names_collects_templates_and_direct_references(self) -> None:
        config = {
            "url": "https://x.test/{{symbol}}",
            "headers": {"Authorization": "Bearer {{token}}"},
            "left_operand": "price",
            "pass_variables": ["symbol", "extra"],
        }
        self.assertEqual(["symbol", "token", "price", "extra"], referenced_names(config))

    def test_api_snapshot_only_contains_api_outputs(self) -> None:
        env = VariableEnvironment({"seed": 1})
        env.set("price", 10, NODE_TYPE_API)
        env.set("analysis", "text", NODE_TYPE_MODEL)
        self.assertEqual({"price": 10}, env.api_snapshot())


class ApiStepTests(unittest.TestCase):
    def test_extract_path_supports_dollar_and_dotted_paths(self) -> None:
        payload = {"data": [{"value": "42"}], "price": "1.5"}
        self.assertEqual("42", steps.extract_path(payload, "$.data[0].value"))
        self.assertEqual("42", steps.extract_path(payload, "data.0.value"))
        self.assertEqual("1.5", steps.extract_path(payload, "$.price"))
        self.assertIsNone(steps.extract_path(payload, "$.data[3].value"))
        self.assertEqual(payload, steps.extract_path(payload, "$"))

    def test_extract_path_rejects_unsupported_syntax(self) -> None:
        payload = {"price": "1.5", "data": [{"value": "42"}]}
        for path in ("$['price']", "$.data[*].value", "$..price", '$["price"]', "$.data[?(@.value)]"):
            with self.subTest(path=path):
                with self.assertRaisesRegex(StepError, "Unsupported JSON path"):
                    steps.extract_path(payload, path)

    def test_api_node_with_bracket_key_path_is_a_soft_error(self) -> None:
        node = _node(NODE_TYPE_API, {"url": "https://x.test", "json_path": "$['price']"})
        with patch.object(
            steps, "http_call", return_value=steps.HttpResponse(status=200, body='{"price": 1}')
        ):
            with self.assertRaisesRegex(StepError, "Unsupported JSON path"):
                steps.execute_api_node(node, _context())

    def test_api_node_interpolates_request_and_casts_number(self) -> None:
        node = _node(
            NODE_TYPE_API,
            {
                "method": "post",
                "url": "https://prices.test/{{symbol}}",
                "headers": '{"X-Key": "{{key}}"}',
                "body": {"symbol": "{{symbol}}"},
                "json_path": "$.price",
                "cast_to_number": True,
            },
        )
        response = steps.HttpResponse(status=200, body=json.dumps({"price": "64000.5"}))
        with patch.object(steps, "http_call", return_value=response) as http_mock:
            result = steps.execute_api_node(node, _context({"symbol": "BTC", "key": "k1"}))

        self.assertEqual(64000.5, result.output)
        method, url, headers, body, timeout = http_mock.call_args.args
        self.assertEqual("POST", method)
        self.assertEqual("https://prices.test/BTC", url)
        self.assertEqual({"X-Key": "k1", "Content-Type": "application/json"}, headers)
        self.assertEqual({"symbol": "BTC"}, json.loads(body))
        self.assertGreater(timeout, 0)

    def test_get_request_sends_no_body_and_keeps_text_response(self) -> None:
        node = _node(NODE_TYPE_API, {"url": "https://status.test", "body": "ignored"})
        response = steps.HttpResponse(status=204, body="ok")
        with patch.object(steps, "http_call", return_value=response) as http_mock:
            result = steps.execute_api_node(node, _context())
        self.assertEqual("ok", result.output)
        self.assertIsNone(http_mock.call_args.args[3])

    def test_cast_failure_and_bad_status_are_soft_errors(self) -> None:
        node = _node(NODE_TYPE_API, {"url": "https://x.test", "cast_to_number": True})
        with patch.object(
            steps, "http_call", return_value=steps.HttpResponse(status=200, body='"abc"')
        ):
            with self.assertRaisesRegex(StepError, "Cannot convert"):
                steps.execute_api_node(node, _context())
        with patch.object(
            steps, "http_call", return_value=steps.HttpResponse(status=404, body="")
        ):
            with self.assertRaisesRegex(StepError, "HTTP 404"):
                steps.execute_api_node(node, _context())


class ConditionStepTests(unittest.TestCase):
    def test_numeric_comparison_when_both_operands_are_numbers(self) -> None:
        self.assertTrue(steps.compare_values(5, ">", 2))
        self.assertTrue(steps.compare_values("10", ">", "9"))
        self.assertTrue(steps.compare_values("2.0", "==", 2))

    def test_string_semantics_when_an_operand_is_not_numeric(self) -> None:
        self.assertFalse(steps.compare_values("5", "contains", "abc"))
        self.assertTrue(steps.compare_values("abc5", "contains", "c5"))
        self.assertTrue(steps.compare_values("10", "<", "9x"))
        self.assertTrue(steps.compare_values("bullish", "startsWith", "bull"))
        self.assertTrue(steps.compare_values("bullish", "endsWith", "ish"))

    def test_condition_sets_branch_variable_to_operand_value(self) -> None:
        node = _node(
            NODE_TYPE_CONDITION,
            {
                "left_operand": "price",
                "operator": ">",
                "right_operand": 2,
                "true_output_variable": "high",
                "false_output_variable": "low",
            },
        )
        result = steps.execute_condition_node(node, _context({"price": 5}))
        self.assertEqual("true", result.handle)
        self.assertEqual({"high": 5}, result.outputs)
        self.assertFalse(result.store_output)

        result = steps.execute_condition_node(node, _context({"price": 1}))
        self.assertEqual("false", result.handle)
        self.assertEqual({"low": 1}, result.outputs)

    def test_unknown_variable_falls_back_to_literal(self) -> None:
        node = _node(
            NODE_TYPE_CONDITION,
            {"left_operand": "5", "operator": "contains", "right_operand": "abc"},
        )
        result = steps.execute_condition_node(node, _context())
        self.assertEqual("false", result.handle)

    def test_malformed_condition_raises_fatal_error(self) -> None:
        for config in (
            {"left_operand": "x", "operator": "=~", "right_operand": "1"},
            {"operator": "==", "right_operand": "1"},
            {"left_operand": "x", "operator": "=="},
            {"condition_type": "weather", "left_operand": "x", "operator": "==", "right_operand": 1},
        ):
            with self.assertRaises(FatalNodeError):
                steps.execute_condition_node(_node(NODE_TYPE_CONDITION, config), _context())


class ModelAndMessageStepTests(unittest.TestCase):
    def test_model_prompt_includes_api_data_and_counts_tokens(self) -> None:
        context = _context({"seed": "x"})
        context.variables.set("btc_price", 64000, NODE_TYPE_API)
        node = _node(
            NODE_TYPE_MODEL,
            {
                "model_tier": "deep",
                "system_prompt": "You analyse {{seed}}",
                "user_prompt": "Summarize",
                "include_api_data": True,
            },
            output_variable="analysis",
        )
        completion = llm.Completion(text="Bullish", tokens_used=123)
        with patch.object(llm, "complete", return_value=completion) as complete_mock, patch.object(
            usage, "increment_token_usage"
        ) as usage_mock:
            result = steps.execute_model_node(node, context)

        self.assertEqual("Bullish", result.output)
        complete_mock.assert_called_once_with(
            "deep",
            "You analyse x",
            "Summarize\n\n=== API Data ===\nbtc_price: 64000",
        )
        usage_mock.assert_called_once_with(123)

    def test_model_failure_is_soft(self) -> None:
        node = _node(NODE_TYPE_MODEL, {"user_prompt": "hi"})
        with patch.object(llm, "complete", side_effect=RuntimeError("rate limited")):
            with self.assertRaisesRegex(StepError, "rate limited"):
                steps.execute_model_node(node, _context())

    def test_signal_message_gets_trade_buttons(self) -> None:
        node = _node(
            NODE_TYPE_TELEGRAM_MESSAGE,
            {
                "chat_id": "55",
                "message_template": "Buy {{symbol}}",
                "message_type": "signal",
                "parse_mode": "HTML",
            },
        )
        outcome = notifications.DispatchOutcome(fingerprint="f", message_id=8, reminder=False)
        with patch.object(notifications, "dispatch_message", return_value=outcome) as dispatch_mock:
            result = steps.execute_telegram_message_node(node, _context({"symbol": "ETH"}))

        dispatch_mock.assert_called_once_with(
            "55",
            "Buy ETH",
            parse_mode="HTML",
            buttons=notifications.TRADE_BUTTONS,
        )
        self.assertEqual(8, result.output["message_id"])
        self.assertFalse(result.store_output)

    def test_message_gated_on_falsy_variable_is_skipped(self) -> None:
        node = _node(
            NODE_TYPE_TELEGRAM_MESSAGE,
            {"message_template": "hi", "only_if_variable": "alert"},
        )
        with patch.object(notifications, "dispatch_message") as dispatch_mock:
            result = steps.execute_telegram_message_node(node, _context({"alert": 0}))
        dispatch_mock.assert_not_called()
        self.assertTrue(result.skipped)


if __name__ == "__main__":
    unittest.main()
