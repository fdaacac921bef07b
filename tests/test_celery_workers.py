"""
Tests for the Celery workers - opsboard/workers/tasks.py

Task bodies are run on the test's event loop: run_async is patched to hand
back the coroutine and get_task_session to yield the test session.
"""
from contextlib import contextmanager
from datetime import date
from unittest.mock import AsyncMock, patch

import pytest
from celery.schedules import crontab
from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.db.database import utcnow
from opsboard.db.models.alert import AlertStatus
from opsboard.domain.services.alert_store import AlertStore


@contextmanager
def _run_task_on_test_loop(db_session: AsyncSession):
    with patch("opsboard.workers.tasks.run_async", side_effect=lambda coro: coro), \
         patch("opsboard.workers.tasks.get_task_session") as mock_session_ctx:
        mock_session_ctx.return_value.__aenter__ = AsyncMock(return_value=db_session)
        mock_session_ctx.return_value.__aexit__ = AsyncMock(return_value=None)
        yield


class TestDispatchAlertTask:

    @pytest.mark.asyncio
    async def test_dispatch_success(self, db_session: AsyncSession, alert_factory, mock_webhooks) -> None:
        from opsboard.workers.tasks import dispatch_alert

        alert = await alert_factory()

        with _run_task_on_test_loop(db_session):
            result = await dispatch_alert(alert.id)

        assert result["success"] is True
        assert result["outcome"] == "sent"
        stored = await AlertStore(db_session).get(alert.id)
        assert stored.status == AlertStatus.SENT

    @pytest.mark.asyncio
    async def test_dispatch_not_found(self, db_session: AsyncSession, mock_webhooks) -> None:
        from opsboard.workers.tasks import dispatch_alert

        with _run_task_on_test_loop(db_session):
            result = await dispatch_alert("missing")

        assert result == {"success": False, "error": "Alert not found", "alert_id": "missing"}
        assert mock_webhooks.calls == []

    @pytest.mark.asyncio
    async def test_dispatch_delivery_failure(
        self, db_session: AsyncSession, alert_factory, mock_webhooks, webhook_urls
    ) -> None:
        from opsboard.workers.tasks import dispatch_alert

        alert = await alert_factory()
        mock_webhooks.status_by_url[webhook_urls["alerts"]] = 503

        with _run_task_on_test_loop(db_session):
            result = await dispatch_alert(alert.id)

        assert result["success"] is False
        assert result["error_code"] == "ERR_5001"
        stored = await AlertStore(db_session).get(alert.id)
        assert stored.status == AlertStatus.FAILED


class TestBatchTasks:

    @pytest.mark.asyncio
    async def test_run_daily_alerts(
        self, db_session: AsyncSession, subscription_factory, mock_webhooks
    ) -> None:
        from opsboard.workers.tasks import run_daily_alerts

        today = utcnow().date()
        await subscription_factory(start_date=date(today.year - 1, 1, 1), end_date=today)

        with _run_task_on_test_loop(db_session):
            result = await run_daily_alerts()

        assert result["alerts_created"] == 1
        assert result["sent"] == 1
        assert result["evaluator_failures"] == []

    @pytest.mark.asyncio
    async def test_dispatch_pending_alerts(
        self, db_session: AsyncSession, alert_factory, mock_webhooks
    ) -> None:
        from opsboard.workers.tasks import dispatch_pending_alerts

        await alert_factory()
        await alert_factory()

        with _run_task_on_test_loop(db_session):
            result = await dispatch_pending_alerts(limit=1)

        assert result["alerts_processed"] == 1
        assert result["sent"] == 1


class TestBeatSchedule:

    def test_daily_alerts_scheduled(self) -> None:
        from opsboard.core.config import settings
        from opsboard.workers.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["run-daily-alerts"]
        assert entry["task"] == "opsboard.workers.tasks.run_daily_alerts"
        assert entry["schedule"] == crontab(
            hour=str(settings.DAILY_ALERTS_HOUR), minute=str(settings.DAILY_ALERTS_MINUTE)
        )
        assert celery_app.conf.timezone == settings.SCHEDULER_TIMEZONE


class TestEventLoopManagement:
    """get_event_loop and run_async"""

    def test_get_event_loop_creates_and_closes(self) -> None:
        from opsboard.workers.tasks import get_event_loop

        with get_event_loop() as loop:
            assert loop is not None
            assert loop.is_running() is False

        assert loop.is_closed()

    def test_run_async_executes_coroutine(self) -> None:
        from opsboard.workers.tasks import run_async

        async def _coro():
            return 42

        assert run_async(_coro()) == 42
