"""
Alert Model - durable records of detected business conditions
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON, Text

from opsboard.db.database import Base, generate_uuid, utcnow


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    # Persist the lowercase values, not the member names
    return [member.value for member in enum_cls]


class AlertType(str, enum.Enum):
    PAYMENT_OVERDUE = "payment_overdue"
    RENEWAL_UPCOMING = "renewal_upcoming"
    SERVICE_EXPIRED = "service_expired"
    NEW_SALE = "new_sale"
    STAGE_CHANGE = "stage_change"
    STAGE_OVERDUE = "stage_overdue"
    OFFBOARDING = "offboarding"


class AlertStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Alert(Base):
    """One detected business condition and its webhook delivery state"""

    __tablename__ = "alerts"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    alert_type = Column(
        SQLEnum(AlertType, name="alert_type", values_callable=_enum_values),
        nullable=False,
        index=True,
    )
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)

    status = Column(
        SQLEnum(AlertStatus, name="alert_status", values_callable=_enum_values),
        nullable=False,
        default=AlertStatus.PENDING,
        index=True,
    )

    # Business fact behind the alert, e.g. "payment_overdue:<installment_id>"
    condition_key = Column(String(255), unique=True, nullable=True)

    # Optional references used for payload enrichment only
    client_id = Column(String(36), nullable=True, index=True)
    subscription_id = Column(String(36), nullable=True, index=True)
    installment_id = Column(String(36), nullable=True)

    # "metadata" is reserved on declarative classes
    alert_metadata = Column("metadata", JSON, nullable=True)

    # Delivery bookkeeping
    webhook_url = Column(String(500), nullable=True)
    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1000), nullable=True)

    # Timestamps
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    sent_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Alert {self.id} {self.alert_type} {self.status}>"
