from __future__ import annotations

import os
from multiprocessing import cpu_count


def _as_int(name: str, default: int, *, minimum: int = 1) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= minimum else default


def _as_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _default_workers() -> int:
    # Manual runs block a worker thread for the whole strategy execution.
    return max(2, min(4, cpu_count()))


bind = _as_str(
    "GUNICORN_BIND",
    f"{_as_str('FLASK_HOST', '0.0.0.0')}:{_as_int('FLASK_PORT', 5080)}",
)
workers = _as_int("GUNICORN_WORKERS", _default_workers())
threads = _as_int("GUNICORN_THREADS", 4)
worker_class = _as_str("GUNICORN_WORKER_CLASS", "gthread")
timeout = _as_int("GUNICORN_TIMEOUT", 300)
graceful_timeout = _as_int("GUNICORN_GRACEFUL_TIMEOUT", 30)
loglevel = _as_str("GUNICORN_LOG_LEVEL", "info")
accesslog = _as_str("GUNICORN_ACCESS_LOG", "-")
errorlog = _as_str("GUNICORN_ERROR_LOG", "-")
