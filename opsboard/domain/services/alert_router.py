"""
Alert Router - pure mapping from alert type to webhook endpoint and payload.

Every AlertType has exactly one route; a missing entry fails at import time.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from opsboard.core.config import settings
from opsboard.db.models.alert import Alert, AlertType

ENDPOINT_ALERTS = "alerts"
ENDPOINT_STAGE_CHANGE = "stage_change"
ENDPOINT_PHASE_ACTIVATION = "phase_activation"

_DEFAULT_COLOR = "warning"

_ALERT_COLORS: dict[AlertType, str] = {
    AlertType.PAYMENT_OVERDUE: "danger",
    AlertType.RENEWAL_UPCOMING: "warning",
    AlertType.SERVICE_EXPIRED: "danger",
    AlertType.NEW_SALE: "good",
}

_ALERT_TYPE_LABELS: dict[AlertType, str] = {
    AlertType.PAYMENT_OVERDUE: "Pago Retrasado",
    AlertType.RENEWAL_UPCOMING: "Renovación Próxima",
    AlertType.SERVICE_EXPIRED: "Servicio Finalizado",
    AlertType.NEW_SALE: "Nueva Venta",
}

_STAGE_INFO_FIELDS = ("stage_number", "stage_name", "start_date", "end_date", "program_day")


def _type_value(alert_type: AlertType | str) -> str:
    return alert_type.value if isinstance(alert_type, AlertType) else str(alert_type)


def alert_color(alert_type: AlertType | str) -> str:
    """Chat attachment color for an alert type (danger / warning / good)"""
    try:
        return _ALERT_COLORS.get(AlertType(alert_type), _DEFAULT_COLOR)
    except ValueError:
        return _DEFAULT_COLOR


def alert_type_label(alert_type: AlertType | str) -> str:
    """Human label for an alert type; unknown types fall back to the raw value"""
    try:
        return _ALERT_TYPE_LABELS.get(AlertType(alert_type), _type_value(alert_type))
    except ValueError:
        return _type_value(alert_type)


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _metadata(alert: Alert) -> dict[str, Any]:
    return dict(alert.alert_metadata or {})


def stage_info(alert: Alert) -> dict[str, Any]:
    """Stage fields lifted out of the alert metadata (missing keys -> None)"""
    metadata = _metadata(alert)
    return {field: metadata.get(field) for field in _STAGE_INFO_FIELDS}


def build_alert_payload(alert: Alert) -> dict[str, Any]:
    """Body for the generic alerts endpoint"""
    return {
        "alert_id": alert.id,
        "alert_type": _type_value(alert.alert_type),
        "title": alert.title,
        "message": alert.message,
        "client_id": alert.client_id,
        "subscription_id": alert.subscription_id,
        "installment_id": alert.installment_id,
        "metadata": _metadata(alert),
        "created_at": _isoformat(alert.created_at),
        "color": alert_color(alert.alert_type),
        "type_label": alert_type_label(alert.alert_type),
    }


def build_stage_change_payload(alert: Alert) -> dict[str, Any]:
    """Body for the stage-change endpoint"""
    return {
        "alert_id": alert.id,
        "alert_type": _type_value(alert.alert_type),
        "title": alert.title,
        "message": alert.message,
        "client_id": alert.client_id,
        "subscription_id": alert.subscription_id,
        "metadata": _metadata(alert),
        "created_at": _isoformat(alert.created_at),
        "stage_info": stage_info(alert),
    }


def build_phase_activation_payload(alert: Alert) -> dict[str, Any]:
    """Body for the best-effort phase activation call (stage_change only)"""
    return {
        "alert_id": alert.id,
        "client_id": alert.client_id,
        "subscription_id": alert.subscription_id,
        **stage_info(alert),
        "discord_channel": settings.PHASE_ACTIVATION_DISCORD_CHANNEL,
        "timestamp": _isoformat(alert.created_at),
    }


_ENDPOINT_URLS: dict[str, Callable[[], str]] = {
    ENDPOINT_ALERTS: lambda: settings.ALERTS_WEBHOOK_URL,
    ENDPOINT_STAGE_CHANGE: lambda: settings.STAGE_CHANGE_WEBHOOK_URL,
    ENDPOINT_PHASE_ACTIVATION: lambda: settings.PHASE_ACTIVATION_WEBHOOK_URL,
}


def endpoint_url(endpoint: str) -> str:
    """Configured URL for a logical endpoint name (read at call time)"""
    return _ENDPOINT_URLS[endpoint]()


@dataclass(frozen=True)
class AlertRoute:
    endpoint: str
    build_payload: Callable[[Alert], dict[str, Any]]
    activates_phase: bool = False

    @property
    def url(self) -> str:
        return endpoint_url(self.endpoint)


_GENERIC_ROUTE = AlertRoute(ENDPOINT_ALERTS, build_alert_payload)

_ROUTES: dict[AlertType, AlertRoute] = {
    AlertType.PAYMENT_OVERDUE: _GENERIC_ROUTE,
    AlertType.RENEWAL_UPCOMING: _GENERIC_ROUTE,
    AlertType.SERVICE_EXPIRED: _GENERIC_ROUTE,
    AlertType.NEW_SALE: _GENERIC_ROUTE,
    AlertType.OFFBOARDING: _GENERIC_ROUTE,
    AlertType.STAGE_CHANGE: AlertRoute(
        ENDPOINT_STAGE_CHANGE, build_stage_change_payload, activates_phase=True
    ),
    AlertType.STAGE_OVERDUE: AlertRoute(ENDPOINT_STAGE_CHANGE, build_stage_change_payload),
}

_missing_routes = set(AlertType) - set(_ROUTES)
if _missing_routes:
    raise RuntimeError(
        f"No webhook route for alert types: {sorted(t.value for t in _missing_routes)}"
    )


def route_for(alert_type: AlertType | str) -> AlertRoute:
    """Route for an alert type; raises ValueError for values outside AlertType"""
    return _ROUTES[AlertType(alert_type)]
