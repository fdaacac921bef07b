"""
Alert Endpoints - listing, interactive send and on-demand batch runs.

Sends run inline: the caller gets the dispatch outcome (or the delivery
error) in the response.
"""
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.core.config import settings
from opsboard.core.exceptions import ValidationException
from opsboard.core.logging import get_logger
from opsboard.db.database import get_db
from opsboard.db.models.alert import AlertStatus, AlertType
from opsboard.domain.services.alert_batch_runner import dispatch_pending, run_alert_batch
from opsboard.domain.services.alert_dispatcher import AlertDispatcher
from opsboard.domain.services.alert_store import AlertStore

logger = get_logger(__name__)

router = APIRouter()


class AlertResponse(BaseModel):
    """A single alert record"""
    id: str
    alert_type: AlertType
    title: str
    message: str
    status: AlertStatus
    client_id: str | None = None
    subscription_id: str | None = None
    installment_id: str | None = None
    metadata: dict | None = Field(default=None, validation_alias="alert_metadata")
    webhook_url: str | None = None
    attempt_count: int = 0
    last_error: str | None = None
    created_at: datetime
    sent_at: datetime | None = None

    class Config:
        from_attributes = True
        populate_by_name = True


class AlertSummaryResponse(BaseModel):
    """Alert counts per status"""
    pending: int = 0
    sent: int = 0
    failed: int = 0
    total: int = 0


class DispatchResponse(BaseModel):
    """Outcome of one dispatch"""
    alert_id: str
    outcome: str = Field(description="sent | already_processed | in_progress")
    webhook_url: str | None = None
    phase_activation: str | None = Field(
        default=None, description="delivered | failed | skipped"
    )


class DispatchSummaryResponse(BaseModel):
    """Counts for a bulk dispatch"""
    alerts_processed: int
    sent: int
    failed: int
    skipped: int
    failed_alert_ids: list[str] = Field(default_factory=list)
    store_write_failures: list[str] = Field(
        default_factory=list,
        description="Alerts whose delivery outcome could not be recorded",
    )


class BatchRunResponse(DispatchSummaryResponse):
    """Counts for one evaluation + dispatch pass"""
    started_at: datetime | None
    finished_at: datetime | None
    evaluators_run: list[str]
    evaluator_failures: list[str]
    alerts_created: int


def _parse_enum(enum_cls, value: Optional[str], field: str):
    if value is None:
        return None
    try:
        return enum_cls(value)
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise ValidationException(
            f"Invalid {field} '{value}'. Valid values: {valid}", field=field
        )


@router.get(
    "/",
    response_model=list[AlertResponse],
    summary="List alerts",
    description="Newest first, optionally filtered by status and type.",
    responses={400: {"description": "Unknown status or alert type"}},
)
async def list_alerts(
    db: AsyncSession = Depends(get_db),
    alert_status: Optional[str] = Query(
        default=None, alias="status", description="pending, sent or failed"
    ),
    alert_type: Optional[str] = Query(default=None, description="Alert type filter"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[AlertResponse]:
    alerts = await AlertStore(db).list_alerts(
        status=_parse_enum(AlertStatus, alert_status, "status"),
        alert_type=_parse_enum(AlertType, alert_type, "alert_type"),
        limit=limit,
        offset=offset,
    )
    return [AlertResponse.model_validate(alert) for alert in alerts]


@router.get(
    "/summary",
    response_model=AlertSummaryResponse,
    summary="Alert counts per status",
)
async def get_alert_summary(
    db: AsyncSession = Depends(get_db),
) -> AlertSummaryResponse:
    counts = await AlertStore(db).count_by_status()
    return AlertSummaryResponse(**counts, total=sum(counts.values()))


@router.post(
    "/run-batch",
    response_model=BatchRunResponse,
    summary="Run the alert batch now",
    description=(
        "Runs every condition evaluator, then dispatches the alerts created "
        "by this run. Older pending alerts are not touched."
    ),
)
async def run_batch(
    db: AsyncSession = Depends(get_db),
    today: Optional[date] = Query(
        default=None, description="Business date for the evaluators (default: today)"
    ),
) -> BatchRunResponse:
    result = await run_alert_batch(db, today=today)
    return BatchRunResponse(**result.to_dict())


@router.post(
    "/send-pending",
    response_model=DispatchSummaryResponse,
    summary="Send every pending alert",
    description="Dispatches all pending alerts regardless of age, oldest first.",
)
async def send_pending_alerts(
    db: AsyncSession = Depends(get_db),
    limit: Optional[int] = Query(default=None, ge=1, description="Maximum alerts to send"),
) -> DispatchSummaryResponse:
    summary = await dispatch_pending(db, limit=limit or settings.PENDING_DISPATCH_LIMIT)
    return DispatchSummaryResponse(**summary.to_dict())


@router.post(
    "/{alert_id}/send",
    response_model=DispatchResponse,
    summary="Send one alert",
    description=(
        "Delivers a pending or failed alert to its webhook. A sent alert is "
        "reported as already_processed without a new request."
    ),
    responses={
        404: {"description": "Alert not found"},
        503: {"description": "Webhook delivery failed; the alert is now failed"},
    },
)
async def send_alert(
    alert_id: str,
    db: AsyncSession = Depends(get_db),
) -> DispatchResponse:
    logger.info("Interactive alert send", extra_data={"alert_id": alert_id})
    result = await AlertDispatcher(db).dispatch(alert_id)
    return DispatchResponse(**result.to_dict())
