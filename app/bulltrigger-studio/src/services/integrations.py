from __future__ import annotations

from sqlalchemy import select

from core.config import Config
from core.db import session_scope
from core.models import IntegrationSetting

MODEL_TIER_CHEAP = "cheap"
MODEL_TIER_DEEP = "deep"
MODEL_TIERS = (MODEL_TIER_CHEAP, MODEL_TIER_DEEP)


def normalize_provider(value: str | None) -> str:
    return (value or "").strip().lower()


def load_integration_settings(provider: str) -> dict[str, str]:
    with session_scope() as session:
        rows = (
            session.execute(
                select(IntegrationSetting).where(
                    IntegrationSetting.provider == normalize_provider(provider)
                )
            )
            .scalars()
            .all()
        )
    return {row.key: row.value for row in rows}


def save_integration_settings(provider: str, payload: dict[str, str]) -> None:
    provider = normalize_provider(provider)
    cleaned = {key: str(value or "").strip() for key, value in payload.items()}
    with session_scope() as session:
        existing = (
            session.execute(
                select(IntegrationSetting).where(
                    IntegrationSetting.provider == provider
                )
            )
            .scalars()
            .all()
        )
        existing_map = {setting.key: setting for setting in existing}
        for key, value in cleaned.items():
            if not value:
                if key in existing_map:
                    session.delete(existing_map[key])
                continue
            if key in existing_map:
                existing_map[key].value = value
            else:
                IntegrationSetting.create(
                    session, provider=provider, key=key, value=value
                )


def resolve_model_name(tier: str, settings: dict[str, str] | None = None) -> str:
    if settings is None:
        settings = load_integration_settings("llm")
    normalized = (tier or "").strip().lower()
    if normalized not in MODEL_TIERS:
        raise ValueError(f"Unknown model tier '{tier}'.")
    if normalized == MODEL_TIER_DEEP:
        return (settings.get("model_deep") or "").strip() or Config.MODEL_DEEP
    return (settings.get("model_cheap") or "").strip() or Config.MODEL_CHEAP


def resolve_openai_api_key(settings: dict[str, str] | None = None) -> str:
    if settings is None:
        settings = load_integration_settings("llm")
    return (settings.get("openai_api_key") or "").strip() or Config.OPENAI_API_KEY


def resolve_telegram_settings() -> tuple[str, str]:
    settings = load_integration_settings("telegram")
    bot_token = (settings.get("bot_token") or "").strip() or Config.TELEGRAM_BOT_TOKEN
    chat_id = (settings.get("chat_id") or "").strip() or Config.TELEGRAM_CHAT_ID
    return bot_token, chat_id
