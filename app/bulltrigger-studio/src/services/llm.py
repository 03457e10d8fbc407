from __future__ import annotations

from dataclasses import dataclass

from openai import OpenAI

from core.config import Config
from services.integrations import (
    load_integration_settings,
    resolve_model_name,
    resolve_openai_api_key,
)

DEFAULT_TEMPERATURE = 0.2
# Reasoning models reject a custom temperature.
_FIXED_TEMPERATURE_PREFIXES = ("o1", "o3")


@dataclass(frozen=True)
class Completion:
    text: str
    tokens_used: int


def _supports_temperature(model: str) -> bool:
    return not model.lower().startswith(_FIXED_TEMPERATURE_PREFIXES)


def _message_text(content) -> str:
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, list):
        text_parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type") == "text" and item.get("text"):
                    text_parts.append(str(item["text"]))
                continue
            text_value = getattr(item, "text", None)
            if text_value:
                text_parts.append(str(text_value))
        return "\n".join(part.strip() for part in text_parts if part and part.strip()).strip()
    return ""


def complete(tier: str, system_prompt: str, user_prompt: str) -> Completion:
    settings = load_integration_settings("llm")
    model = resolve_model_name(tier, settings)
    api_key = resolve_openai_api_key(settings)
    if not api_key:
        raise RuntimeError("OpenAI API key is not configured.")

    messages = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.append({"role": "user", "content": user_prompt})
    options = {"model": model, "messages": messages}
    if _supports_temperature(model):
        options["temperature"] = DEFAULT_TEMPERATURE

    client = OpenAI(api_key=api_key, timeout=Config.FLOW_LLM_TIMEOUT_SECONDS)
    response = client.chat.completions.create(**options)
    choice = response.choices[0] if response.choices else None
    content = choice.message.content if choice and choice.message else None
    usage = getattr(response, "usage", None)
    tokens_used = int(getattr(usage, "total_tokens", 0) or 0)
    return Completion(text=_message_text(content), tokens_used=tokens_used)
