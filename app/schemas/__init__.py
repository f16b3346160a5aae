"""Schema package exports."""
from .apikey import ApiKeyCreateOut, ApiKeyRead, CreateKeyIn
from .dispute import (
    DisputeCreate,
    DisputePayout,
    DisputeRead,
    DisputeRedo,
    DisputeResolve,
    DisputeStatsRead,
    PayoutSummaryRead,
    ReleaseRetry,
    ResolutionNoteRead,
)
from .milestone import (
    MilestoneCreate,
    MilestonePlan,
    MilestoneRead,
    ProjectMilestonesRead,
    RequestChangesPayload,
    StartWorkPayload,
    SubmitPayload,
)
from .notification import AuditLogRead, NotificationRead
from .payment import (
    BankTransferConfirm,
    PaymentInitiate,
    PaymentInitiateRead,
    PaymentRead,
    ProviderEarningsRead,
    RefundRequest,
)
from .project import ProjectCreate, ProjectRead
from .user import PayoutDestinationUpdate, UserCreate, UserRead

__all__ = [
    "ApiKeyCreateOut",
    "ApiKeyRead",
    "AuditLogRead",
    "BankTransferConfirm",
    "CreateKeyIn",
    "DisputeCreate",
    "DisputePayout",
    "DisputeRead",
    "DisputeRedo",
    "DisputeResolve",
    "DisputeStatsRead",
    "MilestoneCreate",
    "MilestonePlan",
    "MilestoneRead",
    "NotificationRead",
    "PaymentInitiate",
    "PaymentInitiateRead",
    "PaymentRead",
    "PayoutDestinationUpdate",
    "PayoutSummaryRead",
    "ProjectCreate",
    "ProjectMilestonesRead",
    "ProjectRead",
    "ProviderEarningsRead",
    "RefundRequest",
    "ReleaseRetry",
    "ResolutionNoteRead",
    "StartWorkPayload",
    "SubmitPayload",
    "UserCreate",
    "UserRead",
]
