from __future__ import annotations

import json
import logging
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from core.config import Config
from services.integrations import resolve_telegram_settings

PARSE_MODE_MARKDOWN = "Markdown"
PARSE_MODE_HTML = "HTML"
PARSE_MODE_NONE = "none"
PARSE_MODES = (PARSE_MODE_MARKDOWN, PARSE_MODE_HTML, PARSE_MODE_NONE)

logger = logging.getLogger(__name__)


class TelegramError(RuntimeError):
    pass


def _api_url(bot_token: str, method: str) -> str:
    base = Config.TELEGRAM_API_BASE_URL.rstrip("/")
    return f"{base}/bot{bot_token}/{method}"


def _post(bot_token: str, method: str, payload: dict[str, Any]) -> dict[str, Any]:
    request = Request(
        _api_url(bot_token, method),
        method="POST",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )
    try:
        with urlopen(request, timeout=Config.TELEGRAM_TIMEOUT_SECONDS) as response:
            data = json.loads(response.read().decode("utf-8"))
    except HTTPError as exc:
        detail = ""
        try:
            detail = exc.read().decode("utf-8", errors="replace")
        except Exception:
            detail = ""
        message = detail.strip() or str(exc)
        raise TelegramError(f"Telegram {method} failed: {message}") from exc
    except (URLError, TimeoutError) as exc:
        raise TelegramError(f"Telegram {method} failed: {exc}") from exc
    if not isinstance(data, dict) or not data.get("ok"):
        description = data.get("description") if isinstance(data, dict) else None
        raise TelegramError(f"Telegram {method} failed: {description or 'unknown error'}")
    return data


def resolve_chat_id(chat_id: str | int | None) -> str:
    cleaned = str(chat_id or "").strip()
    if cleaned:
        return cleaned
    _, default_chat_id = resolve_telegram_settings()
    return default_chat_id


def send_message(
    chat_id: str | int | None,
    text: str,
    *,
    formatted: bool = True,
    parse_mode: str | None = PARSE_MODE_MARKDOWN,
    buttons: list[list[dict[str, str]]] | None = None,
) -> int:
    """Send ``text`` through the Bot API and return the Telegram message id.

    ``formatted=False`` sends plain text: no parse mode, no inline keyboard.
    """
    bot_token, _ = resolve_telegram_settings()
    if not bot_token:
        raise TelegramError("Telegram bot token is not configured.")
    target_chat = resolve_chat_id(chat_id)
    if not target_chat:
        raise TelegramError("Telegram chat id is not configured.")

    payload: dict[str, Any] = {"chat_id": target_chat, "text": text}
    if formatted:
        if parse_mode and parse_mode != PARSE_MODE_NONE:
            payload["parse_mode"] = parse_mode
        if buttons:
            payload["reply_markup"] = {"inline_keyboard": buttons}
    data = _post(bot_token, "sendMessage", payload)
    result = data.get("result") or {}
    message_id = int(result.get("message_id") or 0)
    logger.info("Telegram message %s sent to chat %s", message_id, target_chat)
    return message_id


def answer_callback_query(callback_query_id: str, text: str | None = None) -> None:
    bot_token, _ = resolve_telegram_settings()
    if not bot_token or not callback_query_id:
        return
    payload: dict[str, Any] = {"callback_query_id": callback_query_id}
    if text:
        payload["text"] = text
    _post(bot_token, "answerCallbackQuery", payload)
