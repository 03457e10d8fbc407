from __future__ import annotations

from celery import Celery

from core.config import Config

STRATEGY_TASK_QUEUE = "bulltrigger_strategies"

celery_app = Celery("bulltrigger_studio")
celery_config = {
    "broker_url": Config.CELERY_BROKER_URL,
    "result_backend": Config.CELERY_RESULT_BACKEND,
    "task_default_queue": STRATEGY_TASK_QUEUE,
    "task_track_started": True,
    "task_serializer": "json",
    "accept_content": ["json"],
    "result_serializer": "json",
    "timezone": "UTC",
}
if Config.STRATEGY_SCHEDULER_ENABLED and Config.STRATEGY_SCHEDULER_INTERVAL_SECONDS > 0:
    celery_config["beat_schedule"] = {
        "strategy_scheduler": {
            "task": "services.tasks.dispatch_due_strategies",
            "schedule": Config.STRATEGY_SCHEDULER_INTERVAL_SECONDS,
            "options": {"queue": STRATEGY_TASK_QUEUE},
        }
    }
if Config.CELERY_BROKER_TRANSPORT_OPTIONS:
    celery_config["broker_transport_options"] = Config.CELERY_BROKER_TRANSPORT_OPTIONS
celery_app.conf.update(celery_config)

celery_app.autodiscover_tasks(["services"])
