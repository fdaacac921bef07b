"""
Accelerator Stage Model - one dated stage of a subscription's accelerator program
"""
from sqlalchemy import Boolean, Column, Integer, String, Date, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from opsboard.db.database import Base, generate_uuid, utcnow

STAGE_STATUS_COMPLETED = "completed"


class AcceleratorStage(Base):
    __tablename__ = "accelerator_stages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    subscription_id = Column(String(36), ForeignKey("subscriptions.id"), nullable=False, index=True)

    stage_number = Column(Integer, nullable=False)
    stage_name = Column(String(200), nullable=False)
    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    # pending / in_progress / completed
    status = Column(String(30), nullable=False, default="pending")
    # Set once the stage_change alert for this stage has been materialized
    is_activated = Column(Boolean, nullable=False, default=False)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    subscription = relationship("Subscription")
