import pytest

from app.core.config import settings
from app.services.scheduler_catalog import (
    TASK_REFRESH_TOKENS,
    TASK_SYNC_STORE,
    TASK_SYNC_USER_DAILY,
    TASK_SYNC_VIDEO_DAILY,
    CronExpressionError,
    build_beat_schedule,
    parse_cron,
    scheduler_status,
)


def test_parse_cron_fields():
    sched = parse_cron("30 1 * * *")
    assert sched.minute == {30}
    assert sched.hour == {1}
    assert len(sched.day_of_week) == 7


@pytest.mark.parametrize("expr", ["", "* * * *", "0 2 * * * *", "61 * * * *", "x 2 * * *"])
def test_parse_cron_rejects_bad_expressions(expr):
    with pytest.raises(CronExpressionError):
        parse_cron(expr)


def test_beat_schedule_follows_settings():
    cfg = settings.model_copy(
        update={"CRON_ENABLED": True, "CRON_SYNC_USER_DAILY": "15 3 * * *", "CELERY_SYNC_QUEUE": "q.sync"}
    )
    schedule = build_beat_schedule(cfg)

    assert list(schedule) == ["refresh_tokens", "sync_user_daily", "sync_video_daily"]
    assert schedule["refresh_tokens"]["task"] == TASK_REFRESH_TOKENS
    assert schedule["sync_video_daily"]["task"] == TASK_SYNC_VIDEO_DAILY
    user = schedule["sync_user_daily"]
    assert user["task"] == TASK_SYNC_USER_DAILY
    assert user["schedule"].hour == {3}
    assert user["schedule"].minute == {15}
    assert user["options"] == {"queue": "q.sync"}


def test_beat_schedule_empty_when_disabled():
    assert build_beat_schedule(settings.model_copy(update={"CRON_ENABLED": False})) == {}


def test_scheduler_status_reports_expressions():
    cfg = settings.model_copy(update={"CRON_ENABLED": False, "CRON_TIMEZONE": "Asia/Shanghai"})
    status = scheduler_status(cfg)

    assert status["enabled"] is False
    assert status["timezone"] == "Asia/Shanghai"
    assert {j["name"]: j["schedule"] for j in status["jobs"]}["refresh_tokens"] == cfg.CRON_REFRESH_TOKENS


def test_tasks_are_registered_and_routed():
    from app.celery_app import celery_app

    for name in (TASK_REFRESH_TOKENS, TASK_SYNC_USER_DAILY, TASK_SYNC_VIDEO_DAILY, TASK_SYNC_STORE):
        assert name in celery_app.tasks
    assert celery_app.conf.task_routes["tthubs.sync.*"] == {"queue": settings.CELERY_SYNC_QUEUE}
    assert {q.name for q in celery_app.conf.task_queues} == {
        settings.CELERY_TASK_DEFAULT_QUEUE,
        settings.CELERY_SYNC_QUEUE,
    }


def test_safe_execute_reports_failure_without_raising():
    from app.tasks.sync_tasks import safe_execute

    async def boom():
        raise RuntimeError("upstream said access_token=AT1 is bad")

    out = safe_execute("sync_user_daily", boom)

    assert out["ok"] is False
    assert out["job"] == "sync_user_daily"
    assert "AT1" not in out["error"]


def test_safe_execute_serializes_result():
    from app.tasks.sync_tasks import safe_execute

    class _Summary:
        def as_dict(self):
            return {"total": 0}

    async def job():
        return _Summary()

    out = safe_execute("refresh_tokens", job)
    assert out["ok"] is True
    assert out["result"] == {"total": 0}


def test_sync_store_task_runs_eagerly(monkeypatch):
    from app.services.sync_orchestrator import SyncKind
    from app.tasks import sync_tasks

    seen = {}

    class _Runner:
        async def sync_one(self, store_code, kind):
            seen["args"] = (store_code, kind)
            return {"success": True}

    monkeypatch.setattr(sync_tasks, "JobRunner", _Runner)

    out = sync_tasks.task_sync_store.apply(args=("S1", "video")).get()

    assert seen["args"] == ("S1", SyncKind.VIDEO)
    assert out["ok"] is True
    assert out["job"] == "sync_store:S1"
