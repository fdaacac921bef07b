"""
Celery Tasks for the alert pipeline

The daily batch run is triggered by beat; single and bulk dispatch are queued
from the API. Every task runs its coroutine on a fresh event loop with its
own database session.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager

from opsboard.workers.celery_app import celery_app
from opsboard.db.database import get_task_session
from opsboard.domain.services.alert_batch_runner import dispatch_pending, run_alert_batch
from opsboard.domain.services.alert_dispatcher import AlertDispatcher
from opsboard.core.exceptions import AlertNotFoundError, AppException
from opsboard.core.logging import get_logger, set_correlation_id

logger = get_logger(__name__)


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # The Redis singleton is bound to this loop; drop it before closing
            from opsboard.core.redis_client import close_redis
            loop.run_until_complete(close_redis())
        except Exception as e:
            logger.warning(
                "Failed to close Redis at task end",
                extra_data={"error": str(e)},
            )
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro):
    """Helper to run async code in sync Celery task with proper cleanup"""
    set_correlation_id()

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


@celery_app.task(name="opsboard.workers.tasks.run_daily_alerts")
def run_daily_alerts():
    """Daily batch: evaluate all rules, dispatch the alerts created by this run"""

    async def _run():
        async with get_task_session() as db:
            result = await run_alert_batch(db)
            return result.to_dict()

    return run_async(_run())


@celery_app.task(name="opsboard.workers.tasks.dispatch_alert")
def dispatch_alert(alert_id: str):
    """Send a specific alert by ID"""

    async def _dispatch():
        async with get_task_session() as db:
            try:
                result = await AlertDispatcher(db).dispatch(alert_id)
            except AlertNotFoundError:
                return {"success": False, "error": "Alert not found", "alert_id": alert_id}
            except AppException as e:
                logger.warning(
                    "Alert dispatch task failed",
                    extra_data={
                        "alert_id": alert_id,
                        "error_code": e.error_code.value,
                        "error": e.message,
                    },
                )
                return {
                    "success": False,
                    "error": e.message,
                    "error_code": e.error_code.value,
                    "alert_id": alert_id,
                }
            return {"success": True, **result.to_dict()}

    return run_async(_dispatch())


@celery_app.task(name="opsboard.workers.tasks.dispatch_pending_alerts")
def dispatch_pending_alerts(limit: int | None = None):
    """Send every pending alert, oldest first (bounded by PENDING_DISPATCH_LIMIT)"""

    async def _dispatch():
        async with get_task_session() as db:
            summary = await dispatch_pending(db, limit=limit)
            return summary.to_dict()

    return run_async(_dispatch())
