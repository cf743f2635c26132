# Database models
from subscription_engine.models.plan import Plan
from subscription_engine.models.subscription import Subscription
from subscription_engine.models.payment_record import PaymentRecord
from subscription_engine.models.audit_log import AuditLog

__all__ = [
    "Plan",
    "Subscription",
    "PaymentRecord",
    "AuditLog",
]
