"""ORM models package."""
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .dispute import Dispute, DisputeResolutionNote, DisputeStatus
from .milestone import Milestone, MilestoneStatus
from .notification import Notification
from .payment import BankTransferStatus, Payment, PaymentStatus
from .project import Project, ProjectStatus
from .psp_webhook import PSPWebhookEvent
from .scheduler_lock import SchedulerLock
from .user import User, UserRole

__all__ = [
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "BankTransferStatus",
    "Dispute",
    "DisputeResolutionNote",
    "DisputeStatus",
    "Milestone",
    "MilestoneStatus",
    "Notification",
    "Payment",
    "PaymentStatus",
    "Project",
    "ProjectStatus",
    "PSPWebhookEvent",
    "SchedulerLock",
    "User",
    "UserRole",
]
