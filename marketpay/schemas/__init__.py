"""Schema package exports."""
from .alert import AlertRead
from .consistency import (
    ConsistencyIssueRead,
    ConsistencyReportRead,
    FixDetailRead,
    FixReportRead,
    FixRequest,
    SyncResultRead,
)
from .escrow_account import (
    EscrowAccountCreate,
    EscrowAccountCreated,
    EscrowAccountRead,
    EscrowAccountStatusRead,
    OnboardingLinkRead,
    PayoutMethodCreate,
    PayoutMethodRead,
    PayoutMethodResponse,
    ProcessorAccountRead,
)
from .payment import (
    EarningsRead,
    IntentRead,
    Pagination,
    PaymentHistoryPage,
    PaymentIntentCreate,
    PaymentIntentResponse,
    PaymentRead,
    PaymentReleaseResponse,
    PayoutCreate,
    PayoutResponse,
    RefundCreate,
    RefundRead,
    RefundResponse,
    TransferRead,
)

__all__ = [
    "AlertRead",
    "ConsistencyIssueRead",
    "ConsistencyReportRead",
    "FixDetailRead",
    "FixReportRead",
    "FixRequest",
    "SyncResultRead",
    "EscrowAccountCreate",
    "EscrowAccountCreated",
    "EscrowAccountRead",
    "EscrowAccountStatusRead",
    "OnboardingLinkRead",
    "PayoutMethodCreate",
    "PayoutMethodRead",
    "PayoutMethodResponse",
    "ProcessorAccountRead",
    "EarningsRead",
    "IntentRead",
    "Pagination",
    "PaymentHistoryPage",
    "PaymentIntentCreate",
    "PaymentIntentResponse",
    "PaymentRead",
    "PaymentReleaseResponse",
    "PayoutCreate",
    "PayoutResponse",
    "RefundCreate",
    "RefundRead",
    "RefundResponse",
    "TransferRead",
]
