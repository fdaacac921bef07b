"""
Alert Store - persistence for alert records.

Creation is append-only and idempotent per condition key; the only mutation
is the status transition written by the dispatcher.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.core.exceptions import (
    AlertNotFoundError,
    InvalidStateTransitionError,
    StoreWriteError,
)
from opsboard.core.logging import get_logger
from opsboard.db.database import utcnow
from opsboard.db.models.alert import Alert, AlertStatus, AlertType

logger = get_logger(__name__)

# Allowed status moves. A failed alert may be re-dispatched explicitly.
_ALLOWED_TRANSITIONS: dict[AlertStatus, frozenset[AlertStatus]] = {
    AlertStatus.PENDING: frozenset({AlertStatus.SENT, AlertStatus.FAILED}),
    AlertStatus.FAILED: frozenset({AlertStatus.SENT, AlertStatus.FAILED}),
    AlertStatus.SENT: frozenset(),
}

_MAX_ERROR_CHARS = 1000


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in _ALLOWED_TRANSITIONS[current]


class AlertStore:
    """Reads and writes the alerts table through a single AsyncSession"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def insert_if_absent(
        self,
        condition_key: str,
        alert_type: AlertType,
        payload: dict[str, Any],
    ) -> Alert | None:
        """
        Create a pending alert unless one already exists for ``condition_key``.

        Args:
            condition_key: identifier of the underlying business fact
            alert_type: alert type
            payload: title, message, optional client_id / subscription_id /
                installment_id and metadata

        Returns:
            the new Alert, or None when the condition was already materialized
        """
        existing = await self.db.execute(
            select(Alert.id).where(Alert.condition_key == condition_key)
        )
        if existing.scalar_one_or_none() is not None:
            return None

        alert = Alert(
            condition_key=condition_key,
            alert_type=alert_type,
            title=payload["title"],
            message=payload["message"],
            client_id=payload.get("client_id"),
            subscription_id=payload.get("subscription_id"),
            installment_id=payload.get("installment_id"),
            alert_metadata=payload.get("metadata") or {},
            status=AlertStatus.PENDING,
        )
        self.db.add(alert)
        try:
            await self.db.commit()
        except IntegrityError:
            # unique condition_key - a concurrent writer got there first
            await self.db.rollback()
            logger.info(
                "Alert already materialized by a concurrent writer",
                extra_data={"condition_key": condition_key},
            )
            return None

        logger.info(
            "Alert created",
            extra_data={
                "alert_id": alert.id,
                "alert_type": alert_type.value,
                "condition_key": condition_key,
            },
        )
        return alert

    async def get(self, alert_id: str) -> Alert:
        result = await self.db.execute(
            select(Alert)
            .where(Alert.id == alert_id)
            .execution_options(populate_existing=True)
        )
        alert = result.scalar_one_or_none()
        if alert is None:
            raise AlertNotFoundError(alert_id)
        return alert

    async def list_pending_created_since(self, since: datetime) -> list[Alert]:
        """Pending alerts created at/after ``since``, oldest first"""
        result = await self.db.execute(
            select(Alert)
            .where(
                Alert.status == AlertStatus.PENDING,
                Alert.created_at >= since,
            )
            .order_by(Alert.created_at, Alert.id)
        )
        return list(result.scalars().all())

    async def list_pending(self, limit: int = 100) -> list[Alert]:
        """All pending alerts regardless of age, oldest first"""
        result = await self.db.execute(
            select(Alert)
            .where(Alert.status == AlertStatus.PENDING)
            .order_by(Alert.created_at, Alert.id)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def list_alerts(
        self,
        *,
        status: AlertStatus | None = None,
        alert_type: AlertType | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Alert]:
        """Newest first, optionally filtered"""
        query = select(Alert)
        if status is not None:
            query = query.where(Alert.status == status)
        if alert_type is not None:
            query = query.where(Alert.alert_type == alert_type)
        result = await self.db.execute(
            query.order_by(Alert.created_at.desc(), Alert.id).limit(limit).offset(offset)
        )
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(Alert.status, func.count(Alert.id)).group_by(Alert.status)
        )
        counts = {status.value: 0 for status in AlertStatus}
        for status, count in result.all():
            counts[AlertStatus(status).value] = count
        return counts

    async def update_status(
        self,
        alert_id: str,
        new_status: AlertStatus,
        *,
        sent_at: datetime | None = None,
        webhook_url: str | None = None,
        last_error: str | None = None,
    ) -> Alert:
        """
        Single-row status write.

        ``sent_at`` is kept present iff the status is ``sent``; any delivery
        attempt (sent or failed) increments ``attempt_count``.

        Raises:
            AlertNotFoundError: unknown id
            InvalidStateTransitionError: forbidden move (e.g. out of ``sent``)
            StoreWriteError: the database rejected the write
        """
        try:
            result = await self.db.execute(
                select(Alert)
                .where(Alert.id == alert_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            alert = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreWriteError(alert_id, new_status.value, str(e)) from e

        if alert is None:
            raise AlertNotFoundError(alert_id)

        current = AlertStatus(alert.status)
        if not can_transition(current, new_status):
            raise InvalidStateTransitionError(alert_id, current.value, new_status.value)

        alert.status = new_status
        alert.attempt_count = (alert.attempt_count or 0) + 1
        if new_status == AlertStatus.SENT:
            alert.sent_at = sent_at or utcnow()
            alert.webhook_url = webhook_url
            alert.last_error = None
        else:
            alert.sent_at = None
            if last_error is not None:
                alert.last_error = last_error[:_MAX_ERROR_CHARS]

        try:
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(
                "Alert status write failed",
                extra_data={
                    "alert_id": alert_id,
                    "target_status": new_status.value,
                    "error": str(e),
                },
                exc_info=True,
            )
            raise StoreWriteError(alert_id, new_status.value, str(e)) from e

        logger.info(
            "Alert status updated",
            extra_data={
                "alert_id": alert_id,
                "old_status": current.value,
                "new_status": new_status.value,
                "attempt_count": alert.attempt_count,
            },
        )
        return alert

    async def mark_as_sent(self, alert_id: str, webhook_url: str) -> Alert:
        return await self.update_status(
            alert_id, AlertStatus.SENT, sent_at=utcnow(), webhook_url=webhook_url
        )

    async def mark_as_failed(self, alert_id: str, error: str) -> Alert:
        return await self.update_status(alert_id, AlertStatus.FAILED, last_error=error)
