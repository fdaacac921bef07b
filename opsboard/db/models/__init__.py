"""
Database Models
"""
from opsboard.db.models.alert import Alert, AlertStatus, AlertType
from opsboard.db.models.client import Client
from opsboard.db.models.subscription import Subscription, SubscriptionStatus
from opsboard.db.models.installment import Installment, InstallmentStatus
from opsboard.db.models.accelerator_stage import AcceleratorStage

__all__ = [
    "Alert",
    "AlertStatus",
    "AlertType",
    "Client",
    "Subscription",
    "SubscriptionStatus",
    "Installment",
    "InstallmentStatus",
    "AcceleratorStage",
]
