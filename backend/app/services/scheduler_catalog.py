# app/services/scheduler_catalog.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from celery.schedules import ParseException, crontab

from app.core.config import Settings, settings as default_settings
from app.data.models.sync import JobName


@dataclass(frozen=True)
class PeriodicTaskSpec:
    name: str
    task: str
    setting: str  # Settings attribute holding the cron expression
    kwargs: Optional[Dict[str, Any]] = None
    description: Optional[str] = None


TASK_REFRESH_TOKENS = "tthubs.tokens.refresh"
TASK_SYNC_USER_DAILY = "tthubs.sync.user_daily"
TASK_SYNC_VIDEO_DAILY = "tthubs.sync.video_daily"
TASK_SYNC_STORE = "tthubs.sync.store"

# daily order matters: tokens are refreshed before the syncs use them
CATALOG: List[PeriodicTaskSpec] = [
    PeriodicTaskSpec(
        name=JobName.REFRESH_TOKENS.value,
        task=TASK_REFRESH_TOKENS,
        setting="CRON_REFRESH_TOKENS",
        description="Refresh access tokens expiring within the lookahead window",
    ),
    PeriodicTaskSpec(
        name="sync_user_daily",
        task=TASK_SYNC_USER_DAILY,
        setting="CRON_SYNC_USER_DAILY",
        description="Daily account snapshot for every connected store",
    ),
    PeriodicTaskSpec(
        name="sync_video_daily",
        task=TASK_SYNC_VIDEO_DAILY,
        setting="CRON_SYNC_VIDEO_DAILY",
        description="Daily video snapshots for every connected store",
    ),
]


class CronExpressionError(ValueError):
    pass


def parse_cron(expr: str) -> crontab:
    """
    Five-field cron expression -> celery crontab.

        minute hour day-of-month month day-of-week
    """
    parts = str(expr or "").split()
    if len(parts) != 5:
        raise CronExpressionError(f"expected 5 cron fields, got {len(parts)}: {expr!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = parts
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
        )
    except (ValueError, ParseException) as exc:
        raise CronExpressionError(f"invalid cron expression {expr!r}: {exc}") from exc


def build_beat_schedule(cfg: Settings | None = None) -> Dict[str, Dict[str, Any]]:
    """Beat entries for the catalog; empty when ``CRON_ENABLED`` is off."""
    cfg = cfg or default_settings
    if not cfg.CRON_ENABLED:
        return {}
    schedule: Dict[str, Dict[str, Any]] = {}
    for spec in CATALOG:
        schedule[spec.name] = {
            "task": spec.task,
            "schedule": parse_cron(getattr(cfg, spec.setting)),
            "kwargs": dict(spec.kwargs or {}),
            "options": {"queue": cfg.CELERY_SYNC_QUEUE},
        }
    return schedule


def scheduler_status(cfg: Settings | None = None) -> Dict[str, Any]:
    cfg = cfg or default_settings
    return {
        "enabled": bool(cfg.CRON_ENABLED),
        "timezone": cfg.CRON_TIMEZONE,
        "jobs": [
            {
                "name": spec.name,
                "task": spec.task,
                "schedule": getattr(cfg, spec.setting),
                "description": spec.description,
            }
            for spec in CATALOG
        ],
    }
