from tradehub.models.user import User
from tradehub.models.job import Job
from tradehub.models.application import Application
from tradehub.models.transaction import Transaction
from tradehub.models.subscription_plan import SubscriptionPlan
from tradehub.models.audit_log import AuditLog
from tradehub.models.failed_event import FailedEvent

__all__ = [
    "User",
    "Job",
    "Application",
    "Transaction",
    "SubscriptionPlan",
    "AuditLog",
    "FailedEvent",
]
