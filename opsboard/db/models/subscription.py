"""
Subscription Model - a client's contracted service period
"""
import enum

from sqlalchemy import Column, String, Date, DateTime, Enum as SQLEnum, ForeignKey
from sqlalchemy.orm import relationship

from opsboard.db.database import Base, generate_uuid, utcnow


class SubscriptionStatus(str, enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    PENDING_PAYMENT = "pending_payment"
    CANCELLED = "cancelled"


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    client_id = Column(String(36), ForeignKey("clients.id"), nullable=False, index=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False, index=True)
    status = Column(
        SQLEnum(
            SubscriptionStatus,
            name="subscription_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=SubscriptionStatus.ACTIVE,
        index=True,
    )

    created_at = Column(DateTime, default=utcnow)

    client = relationship("Client")
