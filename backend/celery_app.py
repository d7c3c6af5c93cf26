from celery import Celery
from tokenguard.core.config import settings

celery_app = Celery(
    "tokenguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["tokenguard.tasks"],
)

celery_app.conf.beat_schedule = {
    "sweep-refresh-tokens-hourly": {
        "task": "tokenguard.tasks.sweep_refresh_tokens",
        "schedule": 3600.0,
    }
}
