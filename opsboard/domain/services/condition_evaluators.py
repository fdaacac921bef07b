"""
Condition Evaluators - rules that materialize new pending alerts.

Each evaluator is ``async (db, today) -> int`` and returns how many alerts it
created. Duplicate suppression is the store's condition key: re-running an
evaluator on the same day (or the next one) never creates a second alert for
the same fact.

Rows are copied into plain tuples before any insert: a rollback inside the
store expires ORM objects, and touching an expired attribute in async code
raises MissingGreenlet.
"""
from __future__ import annotations

from datetime import date, timedelta
from typing import Awaitable, Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from opsboard.core.config import settings
from opsboard.core.logging import get_logger
from opsboard.db.models.accelerator_stage import AcceleratorStage, STAGE_STATUS_COMPLETED
from opsboard.db.models.alert import AlertType
from opsboard.db.models.client import Client
from opsboard.db.models.installment import Installment, InstallmentStatus
from opsboard.db.models.subscription import Subscription, SubscriptionStatus
from opsboard.domain.services.alert_store import AlertStore

logger = get_logger(__name__)

Evaluator = Callable[[AsyncSession, date], Awaitable[int]]


def _program_day(subscription_start: date, today: date) -> int:
    return (today - subscription_start).days + 1


async def evaluate_payment_overdue(db: AsyncSession, today: date) -> int:
    """Unpaid installments whose due date has passed - one alert per installment"""
    result = await db.execute(
        select(Installment, Subscription.client_id, Client.full_name)
        .join(Subscription, Installment.subscription_id == Subscription.id)
        .join(Client, Subscription.client_id == Client.id)
        .where(
            Installment.due_date < today,
            Installment.payment_date.is_(None),
            or_(Installment.status.is_(None), Installment.status != InstallmentStatus.PAID),
        )
        .order_by(Installment.due_date)
    )
    rows = [
        (
            inst.id,
            inst.subscription_id,
            inst.installment_number,
            float(inst.amount_usd),
            inst.due_date,
            client_id,
            client_name,
        )
        for inst, client_id, client_name in result.all()
    ]

    store = AlertStore(db)
    created = 0
    for installment_id, subscription_id, number, amount, due_date, client_id, client_name in rows:
        days_overdue = (today - due_date).days
        alert = await store.insert_if_absent(
            f"{AlertType.PAYMENT_OVERDUE.value}:{installment_id}",
            AlertType.PAYMENT_OVERDUE,
            {
                "title": f"Pago retrasado: {client_name}",
                "message": (
                    f"La cuota #{number} de {client_name} por ${amount:.2f} USD "
                    f"venció el {due_date.isoformat()} ({days_overdue} días de retraso)."
                ),
                "client_id": client_id,
                "subscription_id": subscription_id,
                "installment_id": installment_id,
                "metadata": {
                    "installment_number": number,
                    "amount_usd": amount,
                    "due_date": due_date.isoformat(),
                    "days_overdue": days_overdue,
                },
            },
        )
        if alert is not None:
            created += 1
    return created


async def _active_subscriptions(db: AsyncSession, *conditions) -> list[tuple]:
    result = await db.execute(
        select(
            Subscription.id,
            Subscription.client_id,
            Subscription.end_date,
            Client.full_name,
        )
        .join(Client, Subscription.client_id == Client.id)
        .where(Subscription.status == SubscriptionStatus.ACTIVE, *conditions)
        .order_by(Subscription.end_date)
    )
    return [tuple(row) for row in result.all()]


async def evaluate_renewal_upcoming(db: AsyncSession, today: date) -> int:
    """Active subscriptions ending within RENEWAL_LOOKAHEAD_DAYS"""
    horizon = today + timedelta(days=settings.RENEWAL_LOOKAHEAD_DAYS)
    rows = await _active_subscriptions(
        db, Subscription.end_date >= today, Subscription.end_date <= horizon
    )

    store = AlertStore(db)
    created = 0
    for subscription_id, client_id, end_date, client_name in rows:
        days_left = (end_date - today).days
        alert = await store.insert_if_absent(
            f"{AlertType.RENEWAL_UPCOMING.value}:{subscription_id}:{end_date.isoformat()}",
            AlertType.RENEWAL_UPCOMING,
            {
                "title": f"Renovación próxima: {client_name}",
                "message": (
                    f"El servicio de {client_name} finaliza el {end_date.isoformat()} "
                    f"(en {days_left} días)."
                ),
                "client_id": client_id,
                "subscription_id": subscription_id,
                "metadata": {"end_date": end_date.isoformat(), "days_left": days_left},
            },
        )
        if alert is not None:
            created += 1
    return created


async def evaluate_service_expired(db: AsyncSession, today: date) -> int:
    """Subscriptions still marked active after their end date"""
    rows = await _active_subscriptions(db, Subscription.end_date < today)

    store = AlertStore(db)
    created = 0
    for subscription_id, client_id, end_date, client_name in rows:
        alert = await store.insert_if_absent(
            f"{AlertType.SERVICE_EXPIRED.value}:{subscription_id}:{end_date.isoformat()}",
            AlertType.SERVICE_EXPIRED,
            {
                "title": f"Servicio finalizado: {client_name}",
                "message": f"El servicio de {client_name} finalizó el {end_date.isoformat()}.",
                "client_id": client_id,
                "subscription_id": subscription_id,
                "metadata": {
                    "end_date": end_date.isoformat(),
                    "days_expired": (today - end_date).days,
                },
            },
        )
        if alert is not None:
            created += 1
    return created


async def evaluate_accelerator_stages(db: AsyncSession, today: date) -> int:
    """
    Accelerator program stages.

    - a stage whose start date has arrived and was never activated produces a
      ``stage_change`` alert and is flagged activated
    - a stage past its end date and not completed produces a ``stage_overdue``
      alert
    """
    result = await db.execute(
        select(
            AcceleratorStage,
            Subscription.client_id,
            Subscription.start_date,
            Client.full_name,
        )
        .join(Subscription, AcceleratorStage.subscription_id == Subscription.id)
        .join(Client, Subscription.client_id == Client.id)
        .where(
            AcceleratorStage.status != STAGE_STATUS_COMPLETED,
            AcceleratorStage.start_date <= today,
        )
        .order_by(AcceleratorStage.subscription_id, AcceleratorStage.stage_number)
    )
    rows = [
        (
            stage.id,
            stage.subscription_id,
            stage.stage_number,
            stage.stage_name,
            stage.start_date,
            stage.end_date,
            stage.is_activated,
            client_id,
            subscription_start,
            client_name,
        )
        for stage, client_id, subscription_start, client_name in result.all()
    ]

    store = AlertStore(db)
    created = 0
    for (
        stage_id,
        subscription_id,
        stage_number,
        stage_name,
        start_date,
        end_date,
        is_activated,
        client_id,
        subscription_start,
        client_name,
    ) in rows:
        metadata = {
            "stage_id": stage_id,
            "stage_number": stage_number,
            "stage_name": stage_name,
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
            "program_day": _program_day(subscription_start, today),
        }

        if not is_activated:
            # Flag rides on the alert insert commit
            stage = await db.get(AcceleratorStage, stage_id)
            stage.is_activated = True
            alert = await store.insert_if_absent(
                f"{AlertType.STAGE_CHANGE.value}:{stage_id}",
                AlertType.STAGE_CHANGE,
                {
                    "title": f"Cambio de etapa: {client_name}",
                    "message": (
                        f"{client_name} inicia la etapa {stage_number} ({stage_name}) "
                        f"del {start_date.isoformat()} al {end_date.isoformat()}."
                    ),
                    "client_id": client_id,
                    "subscription_id": subscription_id,
                    "metadata": metadata,
                },
            )
            if alert is None:
                # Alert already existed; only the flag is left to write
                await db.commit()
            else:
                created += 1

        if end_date < today:
            alert = await store.insert_if_absent(
                f"{AlertType.STAGE_OVERDUE.value}:{stage_id}",
                AlertType.STAGE_OVERDUE,
                {
                    "title": f"Etapa vencida: {client_name}",
                    "message": (
                        f"La etapa {stage_number} ({stage_name}) de {client_name} "
                        f"debía terminar el {end_date.isoformat()}."
                    ),
                    "client_id": client_id,
                    "subscription_id": subscription_id,
                    "metadata": {**metadata, "days_overdue": (today - end_date).days},
                },
            )
            if alert is not None:
                created += 1

    return created


# Registry order is the order the batch runner invokes them in
EVALUATORS: dict[str, Evaluator] = {
    "payment_overdue": evaluate_payment_overdue,
    "renewal_upcoming": evaluate_renewal_upcoming,
    "service_expired": evaluate_service_expired,
    "accelerator_stages": evaluate_accelerator_stages,
}
