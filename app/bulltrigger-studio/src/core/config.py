from __future__ import annotations

import os
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[4]


def _ensure_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() == "true"


class Config:
    DATA_DIR = str(
        _ensure_dir(Path(os.getenv("BULLTRIGGER_DATA_DIR", REPO_ROOT / "data")))
    )
    DATABASE_FILENAME = os.getenv("BULLTRIGGER_DB_NAME", "bulltrigger.sqlite3")
    SQLALCHEMY_DATABASE_URI = f"sqlite:///{Path(DATA_DIR) / DATABASE_FILENAME}"

    SECRET_KEY = os.getenv("FLASK_SECRET_KEY", "dev")
    API_PREFIX = os.getenv("API_PREFIX", "/api")
    SEED_DEFAULT_STRATEGIES = _env_bool("SEED_DEFAULT_STRATEGIES", "true")

    CELERY_REDIS_HOST = os.getenv("CELERY_REDIS_HOST", "127.0.0.1")
    CELERY_REDIS_PORT = int(os.getenv("CELERY_REDIS_PORT", "6379"))
    CELERY_REDIS_BROKER_DB = os.getenv("CELERY_REDIS_BROKER_DB", "0")
    CELERY_REDIS_BACKEND_DB = os.getenv("CELERY_REDIS_BACKEND_DB", "1")
    _DEFAULT_CELERY_BROKER_URL = (
        f"redis://{CELERY_REDIS_HOST}:{CELERY_REDIS_PORT}/{CELERY_REDIS_BROKER_DB}"
    )
    _DEFAULT_CELERY_RESULT_BACKEND = (
        f"redis://{CELERY_REDIS_HOST}:{CELERY_REDIS_PORT}/{CELERY_REDIS_BACKEND_DB}"
    )
    CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", _DEFAULT_CELERY_BROKER_URL)
    _CELERY_RESULT_BACKEND_ENV = os.getenv("CELERY_RESULT_BACKEND")
    if _CELERY_RESULT_BACKEND_ENV is None and CELERY_BROKER_URL.startswith(
        "filesystem://"
    ):
        CELERY_RESULT_BACKEND = (
            f"db+sqlite:///{Path(DATA_DIR) / 'celery-results.sqlite3'}"
        )
    else:
        CELERY_RESULT_BACKEND = _CELERY_RESULT_BACKEND_ENV or _DEFAULT_CELERY_RESULT_BACKEND
    CELERY_BROKER_TRANSPORT_OPTIONS = None
    if CELERY_BROKER_URL.startswith("filesystem://"):
        CELERY_BROKER_TRANSPORT_OPTIONS = {
            "data_folder_in": str(_ensure_dir(Path(DATA_DIR) / "celery" / "in")),
            "data_folder_out": str(_ensure_dir(Path(DATA_DIR) / "celery" / "out")),
            "data_folder_processed": str(
                _ensure_dir(Path(DATA_DIR) / "celery" / "processed")
            ),
            "store_processed": True,
        }

    STRATEGY_SCHEDULER_ENABLED = _env_bool("STRATEGY_SCHEDULER_ENABLED", "true")
    STRATEGY_SCHEDULER_INTERVAL_SECONDS = float(
        os.getenv("STRATEGY_SCHEDULER_INTERVAL_SECONDS", "60")
    )
    STRATEGY_DEFAULT_CRON = os.getenv("STRATEGY_DEFAULT_CRON", "*/5 * * * *")

    FLOW_HTTP_TIMEOUT_SECONDS = float(os.getenv("FLOW_HTTP_TIMEOUT_SECONDS", "15"))
    FLOW_LLM_TIMEOUT_SECONDS = float(os.getenv("FLOW_LLM_TIMEOUT_SECONDS", "120"))
    # "soft" or "required"; applies to nodes whose config omits the flag.
    FLOW_REQUIRED_STEP_POLICY = os.getenv("FLOW_REQUIRED_STEP_POLICY", "soft")

    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
    MODEL_CHEAP = os.getenv("MODEL_CHEAP", "gpt-4o-mini")
    MODEL_DEEP = os.getenv("MODEL_DEEP", "o1")
    TOKEN_LIMIT = int(os.getenv("TOKEN_LIMIT", "100000"))
    TOKEN_WARN = float(os.getenv("TOKEN_WARN", "0.8"))
    TOKEN_PANIC = float(os.getenv("TOKEN_PANIC", "0.95"))

    TELEGRAM_API_BASE_URL = os.getenv(
        "TELEGRAM_API_BASE_URL", "https://api.telegram.org"
    )
    TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
    TELEGRAM_CHAT_ID = os.getenv("TELEGRAM_CHAT_ID", "")
    TELEGRAM_TIMEOUT_SECONDS = float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", "10"))
    NOTIFICATION_DEDUP_WINDOW_HOURS = float(
        os.getenv("NOTIFICATION_DEDUP_WINDOW_HOURS", "72")
    )
