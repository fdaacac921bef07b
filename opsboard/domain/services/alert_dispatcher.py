"""
Alert Dispatcher - delivers one alert to its webhook and records the outcome.

State machine: pending -> sent | failed. ``sent`` is terminal; a ``failed``
alert can be dispatched again. The status is written only after the primary
POST outcome is known - no intermediate "sending" status is persisted.

Concurrent dispatch of the same alert (batch job vs. a user clicking "send")
is serialized with a short Redis lock. When Redis is unreachable the dispatch
proceeds unlocked, so a duplicate POST is possible in that window.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass, asdict
from typing import Any

import httpx
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.core import redis_client
from opsboard.core.circuit_breaker import get_webhook_circuit_breaker
from opsboard.core.config import settings
from opsboard.core.exceptions import (
    ExternalServiceException,
    SecondaryDeliveryError,
    ServiceTimeoutError,
    WebhookDeliveryError,
)
from opsboard.core.logging import get_logger
from opsboard.db.models.alert import Alert, AlertStatus
from opsboard.domain.services.alert_router import (
    ENDPOINT_PHASE_ACTIVATION,
    build_phase_activation_payload,
    endpoint_url,
    route_for,
)
from opsboard.domain.services.alert_store import AlertStore

logger = get_logger(__name__)

_LOCK_PREFIX = "alert_dispatch"


class DispatchOutcome(str, enum.Enum):
    SENT = "sent"
    ALREADY_PROCESSED = "already_processed"
    IN_PROGRESS = "in_progress"


class PhaseActivation(str, enum.Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class DispatchResult:
    alert_id: str
    outcome: DispatchOutcome
    webhook_url: str | None = None
    phase_activation: PhaseActivation | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["phase_activation"] = self.phase_activation.value if self.phase_activation else None
        return data


def _lock_key(alert_id: str) -> str:
    return f"{_LOCK_PREFIX}:{alert_id}"


async def post_webhook(endpoint: str, url: str, payload: dict[str, Any]) -> httpx.Response:
    """
    POST a JSON payload through the endpoint's circuit breaker.

    Raises:
        WebhookDeliveryError: non-2xx status or network failure
        ServiceTimeoutError: the request exceeded WEBHOOK_TIMEOUT_SECONDS
        CircuitBreakerOpenError: the endpoint is failing fast
    """
    timeout = settings.WEBHOOK_TIMEOUT_SECONDS

    async def _send() -> httpx.Response:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TimeoutException as e:
            raise ServiceTimeoutError(endpoint, timeout) from e
        except httpx.RequestError as e:
            raise WebhookDeliveryError(endpoint, str(e) or type(e).__name__) from e

        if not 200 <= response.status_code < 300:
            raise WebhookDeliveryError.from_response(endpoint, response)
        return response

    return await get_webhook_circuit_breaker(endpoint).execute(_send)


class AlertDispatcher:
    """Per-alert delivery shared by the batch job and the interactive paths"""

    def __init__(self, db: AsyncSession, store: AlertStore | None = None):
        self.db = db
        self.store = store or AlertStore(db)

    async def dispatch(self, alert_id: str) -> DispatchResult:
        """
        Deliver one alert.

        Returns:
            DispatchResult - ``already_processed`` for an alert that is already
            sent, ``in_progress`` when another dispatch holds the lock

        Raises:
            AlertNotFoundError: unknown id (no HTTP call, no write)
            WebhookDeliveryError / ServiceTimeoutError / CircuitBreakerOpenError:
                primary delivery failed; the alert is now ``failed``
            StoreWriteError: the outcome could not be recorded
        """
        alert = await self.store.get(alert_id)
        if alert.status == AlertStatus.SENT:
            return self._already_processed(alert)

        locked = await self._acquire_lock(alert_id)
        if locked is False:
            logger.info(
                "Alert dispatch already in progress - skipping",
                extra_data={"alert_id": alert_id},
            )
            return DispatchResult(alert_id, DispatchOutcome.IN_PROGRESS)

        try:
            # Another dispatch may have finished between the first read and the lock
            alert = await self.store.get(alert_id)
            if alert.status == AlertStatus.SENT:
                return self._already_processed(alert)
            return await self._deliver(alert)
        finally:
            if locked:
                await self._release_lock(alert_id)

    def _already_processed(self, alert: Alert) -> DispatchResult:
        logger.info(
            "Alert already sent - skipping",
            extra_data={"alert_id": alert.id, "sent_at": alert.sent_at},
        )
        return DispatchResult(alert.id, DispatchOutcome.ALREADY_PROCESSED, alert.webhook_url)

    async def _deliver(self, alert: Alert) -> DispatchResult:
        route = route_for(alert.alert_type)
        url = route.url
        payload = route.build_payload(alert)
        activation_payload = build_phase_activation_payload(alert) if route.activates_phase else None
        alert_id = alert.id

        try:
            await post_webhook(route.endpoint, url, payload)
        except ExternalServiceException as e:
            logger.warning(
                "Alert delivery failed",
                extra_data={
                    "alert_id": alert_id,
                    "alert_type": payload.get("alert_type"),
                    "endpoint": route.endpoint,
                    "error": e.message,
                    "details": e.details,
                },
            )
            await self.store.mark_as_failed(alert_id, e.message)
            raise

        await self.store.mark_as_sent(alert_id, webhook_url=url)
        logger.info(
            "Alert delivered",
            extra_data={
                "alert_id": alert_id,
                "alert_type": payload.get("alert_type"),
                "endpoint": route.endpoint,
            },
        )

        phase_activation = PhaseActivation.SKIPPED
        if activation_payload is not None:
            phase_activation = await self._activate_phase(alert_id, activation_payload)

        return DispatchResult(alert_id, DispatchOutcome.SENT, url, phase_activation)

    async def _activate_phase(self, alert_id: str, payload: dict[str, Any]) -> PhaseActivation:
        """Best-effort: failures are logged and never touch the alert status"""
        try:
            await post_webhook(
                ENDPOINT_PHASE_ACTIVATION, endpoint_url(ENDPOINT_PHASE_ACTIVATION), payload
            )
        except ExternalServiceException as e:
            secondary = SecondaryDeliveryError(ENDPOINT_PHASE_ACTIVATION, e.message, details=e.details)
            logger.error(
                "Phase activation failed - alert stays sent",
                extra_data={
                    "alert_id": alert_id,
                    "error_code": secondary.error_code.value,
                    "error": secondary.message,
                    "stage_number": payload.get("stage_number"),
                },
            )
            return PhaseActivation.FAILED

        logger.info(
            "Phase activation delivered",
            extra_data={"alert_id": alert_id, "stage_number": payload.get("stage_number")},
        )
        return PhaseActivation.DELIVERED

    async def _acquire_lock(self, alert_id: str) -> bool | None:
        """True = acquired, False = held elsewhere, None = Redis unavailable"""
        try:
            redis = await redis_client.get_redis()
            acquired = await redis.set(
                _lock_key(alert_id), "1", nx=True, ex=settings.DISPATCH_LOCK_TTL_SECONDS
            )
        except (RedisError, OSError) as e:
            logger.warning(
                "Dispatch lock unavailable - continuing without it",
                extra_data={"alert_id": alert_id, "error": str(e)},
            )
            return None
        return bool(acquired)

    async def _release_lock(self, alert_id: str) -> None:
        try:
            redis = await redis_client.get_redis()
            await redis.delete(_lock_key(alert_id))
        except (RedisError, OSError) as e:
            logger.warning(
                "Failed to release dispatch lock - it will expire",
                extra_data={"alert_id": alert_id, "error": str(e)},
            )
