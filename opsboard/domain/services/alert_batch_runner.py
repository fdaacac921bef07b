"""
Alert Batch Runner - one evaluation + dispatch pass.

Only alerts created during the current run are dispatched. A pending alert
left over from an earlier run (e.g. its webhook failed to record) is not
picked up again here; it stays visible in the listing and can be sent from
the interactive path.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.core.config import settings
from opsboard.core.exceptions import AppException, EvaluatorError, StoreWriteError
from opsboard.core.logging import get_logger
from opsboard.db.database import utcnow
from opsboard.domain.services.alert_dispatcher import AlertDispatcher, DispatchOutcome
from opsboard.domain.services.alert_store import AlertStore
from opsboard.domain.services.condition_evaluators import EVALUATORS, Evaluator

logger = get_logger(__name__)


@dataclass
class DispatchSummary:
    alerts_processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    failed_alert_ids: list[str] = field(default_factory=list)
    # Outcome not recorded: the webhook may have gone out while the row stays unchanged
    store_write_failures: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "alerts_processed": self.alerts_processed,
            "sent": self.sent,
            "failed": self.failed,
            "skipped": self.skipped,
            "failed_alert_ids": list(self.failed_alert_ids),
            "store_write_failures": list(self.store_write_failures),
        }


@dataclass
class BatchRunResult(DispatchSummary):
    started_at: datetime | None = None
    finished_at: datetime | None = None
    evaluators_run: list[str] = field(default_factory=list)
    evaluator_failures: list[str] = field(default_factory=list)
    alerts_created: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "evaluators_run": list(self.evaluators_run),
            "evaluator_failures": list(self.evaluator_failures),
            "alerts_created": self.alerts_created,
        })
        return data


async def _dispatch_all(
    dispatcher: AlertDispatcher,
    alert_ids: list[str],
    summary: DispatchSummary,
) -> None:
    """Sequential dispatch; one alert's failure never stops the loop"""
    for alert_id in alert_ids:
        summary.alerts_processed += 1
        try:
            result = await dispatcher.dispatch(alert_id)
        except StoreWriteError as e:
            summary.store_write_failures.append(alert_id)
            logger.error(
                "Alert outcome could not be recorded",
                extra_data={
                    "alert_id": alert_id,
                    "error_code": e.error_code.value,
                    "target_status": e.details.get("target_status"),
                    "error": e.message,
                },
            )
            continue
        except AppException as e:
            summary.failed += 1
            summary.failed_alert_ids.append(alert_id)
            logger.warning(
                "Alert dispatch failed",
                extra_data={
                    "alert_id": alert_id,
                    "error_code": e.error_code.value,
                    "error": e.message,
                },
            )
            continue
        except Exception as e:
            summary.failed += 1
            summary.failed_alert_ids.append(alert_id)
            logger.error(
                "Unexpected error dispatching alert",
                extra_data={"alert_id": alert_id, "error": str(e)},
                exc_info=True,
            )
            continue

        if result.outcome == DispatchOutcome.SENT:
            summary.sent += 1
        else:
            summary.skipped += 1


async def run_alert_batch(
    db: AsyncSession,
    *,
    evaluators: Mapping[str, Evaluator] | None = None,
    dispatcher: AlertDispatcher | None = None,
    now: Callable[[], datetime] = utcnow,
    today: date | None = None,
) -> BatchRunResult:
    """
    Evaluate every rule, then dispatch the alerts born in this run.

    Args:
        db: session shared by evaluators, store and dispatcher
        evaluators: name -> evaluator, invoked in mapping order
            (defaults to the registered EVALUATORS)
        dispatcher: defaults to an AlertDispatcher on ``db``
        now: clock; the run start is captured before anything else
        today: business date passed to the evaluators (defaults to the
            date of the run start)

    Returns:
        BatchRunResult with per-evaluator and per-dispatch counts
    """
    execution_start_time = now()
    business_date = today or execution_start_time.date()
    evaluators = EVALUATORS if evaluators is None else evaluators
    dispatcher = dispatcher or AlertDispatcher(db)
    store = AlertStore(db)

    result = BatchRunResult(started_at=execution_start_time)
    logger.info(
        "Alert batch started",
        extra_data={
            "started_at": execution_start_time.isoformat(),
            "business_date": business_date.isoformat(),
            "evaluators": list(evaluators),
        },
    )

    for name, evaluator in evaluators.items():
        result.evaluators_run.append(name)
        try:
            created = await evaluator(db, business_date)
        except Exception as e:
            await db.rollback()
            failure = EvaluatorError(name, str(e) or type(e).__name__)
            result.evaluator_failures.append(name)
            logger.error(
                failure.message,
                extra_data={"evaluator": name, "error_code": failure.error_code.value},
                exc_info=True,
            )
            continue

        result.alerts_created += created or 0
        logger.info(
            "Evaluator completed",
            extra_data={"evaluator": name, "alerts_created": created},
        )

    new_alerts = await store.list_pending_created_since(execution_start_time)
    alert_ids = [alert.id for alert in new_alerts]
    logger.info(
        "Dispatching alerts created in this run",
        extra_data={"count": len(alert_ids)},
    )

    await _dispatch_all(dispatcher, alert_ids, result)

    result.finished_at = now()
    logger.info(
        "Alert batch finished",
        extra_data={
            **result.to_dict(),
            "duration_seconds": (result.finished_at - execution_start_time).total_seconds(),
        },
    )
    return result


async def dispatch_pending(
    db: AsyncSession,
    limit: int | None = None,
    dispatcher: AlertDispatcher | None = None,
) -> DispatchSummary:
    """Interactive "send all pending": every pending alert regardless of age"""
    limit = limit or settings.PENDING_DISPATCH_LIMIT
    pending = await AlertStore(db).list_pending(limit=limit)
    alert_ids = [alert.id for alert in pending]

    summary = DispatchSummary()
    await _dispatch_all(dispatcher or AlertDispatcher(db), alert_ids, summary)
    logger.info("Pending alerts dispatched", extra_data=summary.to_dict())
    return summary
