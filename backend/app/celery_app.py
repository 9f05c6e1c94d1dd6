# app/celery_app.py
from __future__ import annotations

import os
from typing import Sequence
from urllib.parse import urlparse

from celery import Celery
from kombu import Queue, Exchange

from app.core.config import settings
from app.core.logging import configure_logging
from app.services.scheduler_catalog import build_beat_schedule


def _use_ssl(url: str | None) -> bool:
    if not url:
        return False
    try:
        return urlparse(url).scheme.lower() == "amqps"
    except ValueError:
        return False


BROKER_URL = settings.CELERY_BROKER_URL or os.getenv("CELERY_BROKER_URL")
BACKEND_URL = settings.CELERY_RESULT_BACKEND or os.getenv("CELERY_RESULT_BACKEND")

configure_logging()

celery_app = Celery("tthubs")
celery_app.conf.broker_url = BROKER_URL
celery_app.conf.result_backend = BACKEND_URL

if _use_ssl(celery_app.conf.broker_url):
    celery_app.conf.broker_use_ssl = True


def _load_queues() -> tuple[str, Sequence[Queue]]:
    default_q = settings.CELERY_TASK_DEFAULT_QUEUE
    names = [default_q]
    if settings.CELERY_SYNC_QUEUE not in names:
        names.append(settings.CELERY_SYNC_QUEUE)

    exch = Exchange("tthubs.celery", type="direct", durable=True)
    qs = [Queue(n, exchange=exch, routing_key=n, durable=True) for n in names]
    return default_q, qs


default_queue_name, queue_objs = _load_queues()

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.CRON_TIMEZONE,
    enable_utc=True,

    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_concurrency=int(settings.CELERY_WORKER_CONCURRENCY),
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=int(settings.CELERY_TASK_HARD_TIME_LIMIT),
    task_soft_time_limit=int(settings.CELERY_TASK_SOFT_TIME_LIMIT),
    result_expires=60 * 60 * 24 * 3,

    task_default_queue=default_queue_name,
    task_default_exchange="tthubs.celery",
    task_default_routing_key=default_queue_name,
    task_queues=queue_objs,
)

celery_app.conf.task_routes = {
    "tthubs.sync.*": {"queue": settings.CELERY_SYNC_QUEUE},
    "tthubs.tokens.*": {"queue": settings.CELERY_SYNC_QUEUE},
}

celery_app.conf.beat_schedule = build_beat_schedule(settings)

# register tasks on worker start
import app.tasks.sync_tasks  # noqa: F401,E402
