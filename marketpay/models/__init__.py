"""ORM models package."""
from .alert import Alert
from .api_key import ApiKey, ApiScope
from .audit import AuditLog
from .base import Base
from .escrow import (
    EscrowAccount,
    EscrowAccountStatus,
    EscrowAccountType,
    PayoutMethod,
    PayoutMethodStatus,
    PayoutMethodType,
)
from .marketplace import (
    Contract,
    ContractStatus,
    Milestone,
    MilestoneStatus,
    Project,
    ProjectStatus,
    Proposal,
    ProposalStatus,
    Review,
    ReviewStatus,
)
from .payment import ACTIVE_PAYMENT_STATUSES, Payment, PaymentStatus, PaymentType
from .scheduler_lock import SchedulerLock
from .transaction import Transaction, TransactionStatus, TransactionType
from .user import User, UserRole

__all__ = [
    "ACTIVE_PAYMENT_STATUSES",
    "Alert",
    "ApiKey",
    "ApiScope",
    "AuditLog",
    "Base",
    "Contract",
    "ContractStatus",
    "EscrowAccount",
    "EscrowAccountStatus",
    "EscrowAccountType",
    "Milestone",
    "MilestoneStatus",
    "Payment",
    "PaymentStatus",
    "PaymentType",
    "PayoutMethod",
    "PayoutMethodStatus",
    "PayoutMethodType",
    "Project",
    "ProjectStatus",
    "Proposal",
    "ProposalStatus",
    "Review",
    "ReviewStatus",
    "SchedulerLock",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "User",
    "UserRole",
]
