from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
import json
import logging
import re
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from core.config import Config
from core.models import HANDLE_DEFAULT, HANDLE_FALSE, HANDLE_TRUE
from services import llm, notifications, usage
from services.flows.errors import CyclicTriggerError, FatalNodeError, StepError
from services.flows.graph import NodeSpec
from services.flows.variables import (
    VariableEnvironment,
    format_value,
    is_truthy,
    render_snapshot,
)
from services.telegram import PARSE_MODE_MARKDOWN, PARSE_MODES

CONDITION_OPERATORS = ("==", "!=", ">", "<", ">=", "<=", "contains", "startsWith", "endsWith")
CONDITION_TYPES = ("api_result", "model_response", "variable_value")
TEXT_OPERATORS = {"contains", "startsWith", "endsWith"}
MESSAGE_TYPES = ("info", "success", "warning", "error", "signal")
BODYLESS_METHODS = {"GET", "HEAD"}
_PATH_INDEX_PATTERN = re.compile(r"\[(\d+)\]")
_PATH_UNSUPPORTED_PATTERN = re.compile(r"[\[\]'\"*?@()]")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: str


@dataclass
class StepContext:
    execution_id: int
    strategy_id: int
    trigger_kind: str
    call_stack: tuple[int, ...]
    variables: VariableEnvironment
    # Runs another strategy in-process and returns its ExecutionResult.
    run_strategy: Callable[..., Any]


@dataclass
class StepResult:
    output: Any = None
    handle: str = HANDLE_DEFAULT
    store_output: bool = True
    skipped: bool = False
    outputs: dict[str, Any] = field(default_factory=dict)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _parse_json_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, str) and value.strip():
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return [item.strip() for item in value.split(",") if item.strip()]
        return parsed if isinstance(parsed, list) else []
    return []


def http_call(
    method: str,
    url: str,
    headers: dict[str, str],
    body: str | None,
    timeout: float,
) -> HttpResponse:
    request = Request(
        url,
        method=method,
        data=body.encode("utf-8") if body is not None else None,
        headers=headers,
    )
    try:
        with urlopen(request, timeout=timeout) as response:
            return HttpResponse(
                status=int(response.status),
                body=response.read().decode("utf-8", errors="replace"),
            )
    except HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except Exception:
            detail = ""
        return HttpResponse(status=int(exc.code), body=detail)


def extract_path(payload: Any, path: str) -> Any:
    """Return the value at ``path`` (``$.data[0].value`` or ``data.0.value``).

    Only dotted keys and numeric indexes are understood. Anything else
    (quoted keys, wildcards, filters, recursive descent) raises StepError
    instead of silently resolving to nothing.
    """
    cleaned_path = (path or "").strip()
    if cleaned_path.startswith("$"):
        cleaned_path = cleaned_path[1:]
    cleaned_path = _PATH_INDEX_PATTERN.sub(r".\1", cleaned_path)
    if cleaned_path.startswith("."):
        cleaned_path = cleaned_path[1:]
    if not cleaned_path:
        return payload
    segments = [token.strip() for token in cleaned_path.split(".")]
    if _PATH_UNSUPPORTED_PATTERN.search(cleaned_path) or not all(segments):
        raise StepError(f"Unsupported JSON path '{path}'.")
    current = payload
    for segment in segments:
        if isinstance(current, dict):
            if segment not in current:
                return None
            current = current[segment]
            continue
        if isinstance(current, list):
            if not segment.isdigit():
                return None
            index = int(segment)
            if index >= len(current):
                return None
            current = current[index]
            continue
        return None
    return current


def _parse_headers(raw: Any, variables: VariableEnvironment) -> dict[str, str]:
    headers: dict[str, str] = {}
    if isinstance(raw, str) and raw.strip():
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise StepError("API node headers must be a JSON object.") from exc
    if isinstance(raw, dict):
        for key, value in raw.items():
            headers[str(key)] = variables.interpolate(format_value(value))
    elif raw:
        raise StepError("API node headers must be a JSON object.")
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return headers


def _cast_number(value: Any) -> float:
    if isinstance(value, bool) or value is None:
        raise StepError(f"Cannot convert {value!r} to a number.")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise StepError(f"Cannot convert {value!r} to a number.") from exc


def execute_api_node(node: NodeSpec, context: StepContext) -> StepResult:
    config = node.config
    variables = context.variables
    url = variables.interpolate(config.get("url")).strip()
    if not url:
        raise StepError("API node has no URL.")
    method = str(config.get("method") or "GET").strip().upper()
    headers = _parse_headers(config.get("headers"), variables)

    body = None
    raw_body = config.get("body")
    if method not in BODYLESS_METHODS and raw_body not in (None, ""):
        if isinstance(raw_body, (dict, list)):
            body = json.dumps(variables.interpolate_value(raw_body))
        else:
            body = variables.interpolate(str(raw_body))

    try:
        response = http_call(method, url, headers, body, Config.FLOW_HTTP_TIMEOUT_SECONDS)
    except (URLError, TimeoutError, OSError, ValueError) as exc:
        raise StepError(f"{method} {url} failed: {exc}") from exc
    if not 200 <= response.status < 300:
        raise StepError(f"HTTP {response.status}")

    try:
        payload: Any = json.loads(response.body)
    except (json.JSONDecodeError, TypeError):
        payload = response.body

    json_path = str(config.get("json_path") or "").strip()
    value = extract_path(payload, json_path) if json_path else payload
    if _as_bool(config.get("cast_to_number")):
        value = _cast_number(value)
    return StepResult(output=value)


def execute_model_node(node: NodeSpec, context: StepContext) -> StepResult:
    config = node.config
    variables = context.variables
    tier = str(config.get("model_tier") or "cheap").strip().lower()
    system_prompt = variables.interpolate(config.get("system_prompt"))
    user_prompt = variables.interpolate(config.get("user_prompt"))
    if not user_prompt.strip():
        raise StepError("Model node has no user prompt.")
    if _as_bool(config.get("include_api_data")):
        summary = render_snapshot("API Data", variables.api_snapshot())
        if summary:
            user_prompt = f"{user_prompt}\n\n{summary}"

    try:
        completion = llm.complete(tier, system_prompt, user_prompt)
    except Exception as exc:
        raise StepError(f"Model call failed: {exc}") from exc
    usage.increment_token_usage(completion.tokens_used)
    return StepResult(output=completion.text)


def _resolve_operand(raw: Any, variables: VariableEnvironment) -> Any:
    if not isinstance(raw, str):
        return raw
    name = raw.strip()
    if name in variables:
        return variables.get(name)
    if "{{" in raw:
        return variables.interpolate(raw)
    return raw


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and value.strip():
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def compare_values(left: Any, operator: str, right: Any) -> bool:
    if operator in TEXT_OPERATORS:
        left_text, right_text = format_value(left), format_value(right)
        if operator == "contains":
            return right_text in left_text
        if operator == "startsWith":
            return left_text.startswith(right_text)
        return left_text.endswith(right_text)

    left_number, right_number = _as_number(left), _as_number(right)
    if left_number is not None and right_number is not None:
        lhs: Any = left_number
        rhs: Any = right_number
    else:
        lhs, rhs = format_value(left), format_value(right)
    if operator == "==":
        return lhs == rhs
    if operator == "!=":
        return lhs != rhs
    if operator == ">":
        return lhs > rhs
    if operator == "<":
        return lhs < rhs
    if operator == ">=":
        return lhs >= rhs
    if operator == "<=":
        return lhs <= rhs
    raise FatalNodeError(f"Unsupported operator '{operator}'.")


def execute_condition_node(node: NodeSpec, context: StepContext) -> StepResult:
    config = node.config
    condition_type = str(config.get("condition_type") or "variable_value").strip()
    if condition_type not in CONDITION_TYPES:
        raise FatalNodeError(f"Unknown condition type '{condition_type}'.")
    operator = str(config.get("operator") or "").strip()
    if operator not in CONDITION_OPERATORS:
        raise FatalNodeError(f"Unknown condition operator '{operator}'.")
    left_raw = config.get("left_operand")
    right_raw = config.get("right_operand")
    if left_raw is None or (isinstance(left_raw, str) and not left_raw.strip()):
        raise FatalNodeError("Condition node has no left operand.")
    if right_raw is None:
        raise FatalNodeError("Condition node has no right operand.")

    left = _resolve_operand(left_raw, context.variables)
    right = _resolve_operand(right_raw, context.variables)
    matched = compare_values(left, operator, right)

    outputs: dict[str, Any] = {}
    target = config.get("true_output_variable" if matched else "false_output_variable")
    if isinstance(target, str) and target.strip():
        outputs[target.strip()] = left
    return StepResult(
        output={"result": matched, "left": left, "operator": operator, "right": right},
        handle=HANDLE_TRUE if matched else HANDLE_FALSE,
        store_output=False,
        outputs=outputs,
    )


def execute_strategy_trigger_node(node: NodeSpec, context: StepContext) -> StepResult:
    config = node.config
    try:
        target_id = int(config.get("target_strategy_id"))
    except (TypeError, ValueError) as exc:
        raise StepError("Strategy trigger node has no target strategy.") from exc

    condition_variable = str(config.get("condition_variable") or "").strip()
    if condition_variable and not is_truthy(context.variables.get(condition_variable)):
        return StepResult(
            output={"skipped": True, "reason": f"{condition_variable} is not set"},
            store_output=False,
            skipped=True,
        )
    if target_id in context.call_stack:
        raise CyclicTriggerError(target_id, context.call_stack)

    names = [str(name) for name in _parse_json_list(config.get("pass_variables"))]
    forwarded = context.variables.select(names)

    if not _as_bool(config.get("wait_for_completion")):
        from services.tasks import run_strategy

        try:
            async_result = run_strategy.delay(
                target_id,
                context.trigger_kind,
                forwarded,
                list(context.call_stack),
            )
        except Exception as exc:
            raise StepError(f"Failed to queue strategy {target_id}: {exc}") from exc
        return StepResult(
            output={
                "queued": True,
                "target_strategy_id": target_id,
                "task_id": getattr(async_result, "id", None),
            },
            store_output=False,
        )

    result = context.run_strategy(
        target_id,
        context.trigger_kind,
        variables=forwarded,
        call_stack=context.call_stack,
    )
    if _as_bool(config.get("include_variables")):
        value: Any = {
            "success": result.success,
            "execution_id": result.execution_id,
            "variables": result.variables,
        }
    else:
        value = result.success
    return StepResult(output=value)


def _message_buttons(config: dict[str, Any], message_type: str) -> list[list[dict[str, str]]] | None:
    raw = config.get("buttons")
    if raw:
        rows = _parse_json_list(raw)
        if rows and all(isinstance(row, list) for row in rows):
            return rows
        raise StepError("Telegram buttons must be a list of button rows.")
    if message_type == "signal":
        return notifications.TRADE_BUTTONS
    return None


def execute_telegram_message_node(node: NodeSpec, context: StepContext) -> StepResult:
    config = node.config
    variables = context.variables
    only_if = str(config.get("only_if_variable") or "").strip()
    if only_if and not is_truthy(variables.get(only_if)):
        return StepResult(
            output={"skipped": True, "reason": f"{only_if} is not set"},
            store_output=False,
            skipped=True,
        )

    text = variables.interpolate(config.get("message_template")).strip()
    if not text:
        raise StepError("Telegram message template is empty.")
    if _as_bool(config.get("include_api_data")):
        snapshot = render_snapshot("Variables", variables.snapshot())
        if snapshot:
            text = f"{text}\n\n{snapshot}"

    message_type = str(config.get("message_type") or "info").strip().lower()
    if message_type not in MESSAGE_TYPES:
        message_type = "info"
    parse_mode = str(config.get("parse_mode") or PARSE_MODE_MARKDOWN).strip()
    if parse_mode not in PARSE_MODES:
        parse_mode = PARSE_MODE_MARKDOWN

    try:
        outcome = notifications.dispatch_message(
            config.get("chat_id"),
            text,
            parse_mode=parse_mode,
            buttons=_message_buttons(config, message_type),
        )
    except StepError:
        raise
    except Exception as exc:
        raise StepError(f"Telegram send failed: {exc}") from exc
    return StepResult(
        output={
            "message_id": outcome.message_id,
            "reminder": outcome.reminder,
            "fingerprint": outcome.fingerprint,
            "message_type": message_type,
        },
        store_output=False,
    )
