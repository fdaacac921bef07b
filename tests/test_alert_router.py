"""
Tests for the alert router - endpoint selection and payload shapes.
"""
from datetime import datetime
from unittest.mock import patch

import pytest

from opsboard.core.config import settings
from opsboard.db.models.alert import Alert, AlertStatus, AlertType
from opsboard.domain.services.alert_router import (
    ENDPOINT_ALERTS,
    ENDPOINT_STAGE_CHANGE,
    alert_color,
    alert_type_label,
    build_alert_payload,
    build_phase_activation_payload,
    build_stage_change_payload,
    route_for,
    stage_info,
)

CREATED_AT = datetime(2025, 3, 1, 9, 0, 5)


def _alert(alert_type: AlertType, metadata: dict | None = None) -> Alert:
    return Alert(
        id="alert-1",
        alert_type=alert_type,
        title="Título",
        message="Mensaje",
        status=AlertStatus.PENDING,
        client_id="client-1",
        subscription_id="sub-1",
        installment_id="inst-1",
        alert_metadata=metadata,
        created_at=CREATED_AT,
    )


class TestRouteTable:
    """Every alert type resolves to exactly one endpoint"""

    @pytest.mark.parametrize("alert_type", list(AlertType))
    def test_every_type_has_a_route(self, alert_type: AlertType) -> None:
        route = route_for(alert_type)
        assert route.endpoint in (ENDPOINT_ALERTS, ENDPOINT_STAGE_CHANGE)

    @pytest.mark.parametrize("alert_type", [
        AlertType.PAYMENT_OVERDUE,
        AlertType.RENEWAL_UPCOMING,
        AlertType.SERVICE_EXPIRED,
        AlertType.NEW_SALE,
        AlertType.OFFBOARDING,
    ])
    def test_generic_types_use_alerts_endpoint(self, alert_type: AlertType) -> None:
        route = route_for(alert_type)
        assert route.endpoint == ENDPOINT_ALERTS
        assert route.url == settings.ALERTS_WEBHOOK_URL
        assert route.activates_phase is False

    def test_stage_change_activates_phase(self) -> None:
        route = route_for(AlertType.STAGE_CHANGE)
        assert route.endpoint == ENDPOINT_STAGE_CHANGE
        assert route.url == settings.STAGE_CHANGE_WEBHOOK_URL
        assert route.activates_phase is True

    def test_stage_overdue_uses_stage_endpoint_without_activation(self) -> None:
        route = route_for(AlertType.STAGE_OVERDUE)
        assert route.endpoint == ENDPOINT_STAGE_CHANGE
        assert route.activates_phase is False

    def test_accepts_raw_string_value(self) -> None:
        assert route_for("new_sale").endpoint == ENDPOINT_ALERTS

    def test_unknown_type_raises(self) -> None:
        with pytest.raises(ValueError):
            route_for("birthday")

    def test_url_is_read_at_call_time(self) -> None:
        with patch.object(settings, "ALERTS_WEBHOOK_URL", "https://other.example.com/hook"):
            assert route_for(AlertType.NEW_SALE).url == "https://other.example.com/hook"


class TestLabelsAndColors:

    @pytest.mark.parametrize("alert_type,color", [
        (AlertType.PAYMENT_OVERDUE, "danger"),
        (AlertType.RENEWAL_UPCOMING, "warning"),
        (AlertType.SERVICE_EXPIRED, "danger"),
        (AlertType.NEW_SALE, "good"),
        (AlertType.OFFBOARDING, "warning"),
        ("not_a_type", "warning"),
    ])
    def test_alert_color(self, alert_type, color: str) -> None:
        assert alert_color(alert_type) == color

    @pytest.mark.parametrize("alert_type,label", [
        (AlertType.PAYMENT_OVERDUE, "Pago Retrasado"),
        (AlertType.RENEWAL_UPCOMING, "Renovación Próxima"),
        (AlertType.SERVICE_EXPIRED, "Servicio Finalizado"),
        (AlertType.NEW_SALE, "Nueva Venta"),
        (AlertType.OFFBOARDING, "offboarding"),
        ("not_a_type", "not_a_type"),
    ])
    def test_alert_type_label(self, alert_type, label: str) -> None:
        assert alert_type_label(alert_type) == label


class TestPayloads:

    def test_generic_payload_fields(self) -> None:
        alert = _alert(AlertType.PAYMENT_OVERDUE, {"amount_usd": 250.0})
        payload = build_alert_payload(alert)

        assert payload == {
            "alert_id": "alert-1",
            "alert_type": "payment_overdue",
            "title": "Título",
            "message": "Mensaje",
            "client_id": "client-1",
            "subscription_id": "sub-1",
            "installment_id": "inst-1",
            "metadata": {"amount_usd": 250.0},
            "created_at": "2025-03-01T09:00:05",
            "color": "danger",
            "type_label": "Pago Retrasado",
        }

    def test_generic_payload_with_empty_metadata(self) -> None:
        payload = build_alert_payload(_alert(AlertType.NEW_SALE))
        assert payload["metadata"] == {}
        assert payload["color"] == "good"

    def test_stage_change_payload_lifts_stage_info(self) -> None:
        metadata = {
            "stage_number": 2,
            "stage_name": "Validación",
            "start_date": "2025-03-01",
            "end_date": "2025-03-31",
            "program_day": 60,
            "extra": "kept",
        }
        payload = build_stage_change_payload(_alert(AlertType.STAGE_CHANGE, metadata))

        assert payload["stage_info"] == {
            "stage_number": 2,
            "stage_name": "Validación",
            "start_date": "2025-03-01",
            "end_date": "2025-03-31",
            "program_day": 60,
        }
        assert payload["metadata"]["extra"] == "kept"
        assert "installment_id" not in payload
        assert "color" not in payload

    def test_stage_info_missing_fields_are_none(self) -> None:
        info = stage_info(_alert(AlertType.STAGE_OVERDUE, {"stage_number": 3}))
        assert info["stage_number"] == 3
        assert info["stage_name"] is None
        assert info["program_day"] is None

    def test_phase_activation_payload(self) -> None:
        metadata = {"stage_number": 2, "stage_name": "Validación", "program_day": 31}
        payload = build_phase_activation_payload(_alert(AlertType.STAGE_CHANGE, metadata))

        assert payload["alert_id"] == "alert-1"
        assert payload["client_id"] == "client-1"
        assert payload["subscription_id"] == "sub-1"
        assert payload["stage_number"] == 2
        assert payload["stage_name"] == "Validación"
        assert payload["program_day"] == 31
        assert payload["discord_channel"] == "#aceleradora"
        assert payload["timestamp"] == "2025-03-01T09:00:05"

    def test_phase_activation_channel_from_settings(self) -> None:
        with patch.object(settings, "PHASE_ACTIVATION_DISCORD_CHANNEL", "#fase-2"):
            payload = build_phase_activation_payload(_alert(AlertType.STAGE_CHANGE, {}))
        assert payload["discord_channel"] == "#fase-2"
