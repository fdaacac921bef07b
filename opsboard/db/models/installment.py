"""
Installment Model - one scheduled payment of a subscription
"""
import enum

from sqlalchemy import Column, Integer, String, Date, DateTime, Numeric, Enum as SQLEnum, ForeignKey
from sqlalchemy.orm import relationship

from opsboard.db.database import Base, generate_uuid, utcnow


class InstallmentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    OVERDUE = "overdue"


class Installment(Base):
    __tablename__ = "installments"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)

    installment_number = Column(Integer, nullable=False)
    amount_usd = Column(Numeric(10, 2), nullable=False)
    due_date = Column(Date, nullable=False, index=True)
    payment_date = Column(Date, nullable=True)
    status = Column(
        SQLEnum(
            InstallmentStatus,
            name="installment_status",
            values_callable=lambda e: [m.value for m in e],
        ),
        default=InstallmentStatus.PENDING,
    )

    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("Subscription")
