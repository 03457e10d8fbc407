from __future__ import annotations

import json
import re
from typing import Any, Iterable

from core.models import NODE_TYPE_API

TEMPLATE_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")
FALSY_STRINGS = {"", "false", "0", "null", "none", "undefined"}
# Config keys that name a variable directly rather than through a template.
REFERENCE_KEYS = (
    "left_operand",
    "right_operand",
    "condition_variable",
    "only_if_variable",
)


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in FALSY_STRINGS
    return bool(value)


def _template_names(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield from TEMPLATE_PATTERN.findall(value)
    elif isinstance(value, dict):
        for item in value.values():
            yield from _template_names(item)
    elif isinstance(value, list):
        for item in value:
            yield from _template_names(item)


def referenced_names(config: dict[str, Any]) -> list[str]:
    names: list[str] = []
    for name in _template_names(config):
        if name not in names:
            names.append(name)
    for key in REFERENCE_KEYS:
        raw = config.get(key)
        if isinstance(raw, str) and raw.strip() and raw.strip() not in names:
            names.append(raw.strip())
    forwarded = config.get("pass_variables")
    if isinstance(forwarded, list):
        for name in forwarded:
            if isinstance(name, str) and name not in names:
                names.append(name)
    return names


class VariableEnvironment:
    """Run-scoped variable store threaded through node execution.

    Each value remembers the node type that produced it so model prompts can
    include only data fetched by API nodes.
    """

    def __init__(self, seed: dict[str, Any] | None = None):
        self._values: dict[str, Any] = {}
        self._sources: dict[str, str | None] = {}
        for name, value in (seed or {}).items():
            self.set(name, value)

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def set(self, name: str, value: Any, source_type: str | None = None) -> None:
        cleaned = (name or "").strip()
        if not cleaned:
            return
        self._values[cleaned] = value
        self._sources[cleaned] = source_type

    def snapshot(self) -> dict[str, Any]:
        return dict(self._values)

    def select(self, names: Iterable[str]) -> dict[str, Any]:
        return {name: self._values[name] for name in names if name in self._values}

    def api_snapshot(self) -> dict[str, Any]:
        return {
            name: value
            for name, value in self._values.items()
            if self._sources.get(name) == NODE_TYPE_API
        }

    def interpolate(self, template: str | None) -> str:
        if not template:
            return ""

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            if name not in self._values:
                return match.group(0)
            return format_value(self._values[name])

        return TEMPLATE_PATTERN.sub(_replace, str(template))

    def interpolate_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.interpolate(value)
        if isinstance(value, dict):
            return {key: self.interpolate_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.interpolate_value(item) for item in value]
        return value


def render_snapshot(title: str, values: dict[str, Any]) -> str:
    if not values:
        return ""
    lines = [f"=== {title} ==="]
    for name in sorted(values):
        lines.append(f"{name}: {format_value(values[name])}")
    return "\n".join(lines)
