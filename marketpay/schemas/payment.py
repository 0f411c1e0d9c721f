"""Schemas for payments, withdrawals and refunds."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketpay.models.payment import PaymentStatus, PaymentType


class PaymentRead(BaseModel):
    id: int
    type: PaymentType
    status: PaymentStatus
    contract_id: int | None
    milestone_id: int | None
    client_id: int | None
    freelancer_id: int
    payout_method_id: int | None
    amount: Decimal
    platform_fee: Decimal
    freelancer_amount: Decimal
    currency: str
    external_intent_id: str | None
    external_transfer_id: str | None
    failure_reason: str | None
    completed_at: datetime | None
    escrow_release_date: datetime | None
    released_at: datetime | None
    refunded_at: datetime | None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PaymentIntentCreate(BaseModel):
    contract_id: int = Field(alias="contractId")
    milestone_id: int = Field(alias="milestoneId")
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    payment_method_id: str = Field(alias="paymentMethodId", min_length=1, max_length=255)

    model_config = ConfigDict(populate_by_name=True)


class IntentRead(BaseModel):
    id: str | None = None
    status: str | None = None
    client_secret: str | None = None

    model_config = ConfigDict(from_attributes=True)


class PaymentIntentResponse(BaseModel):
    payment: PaymentRead
    payment_intent: IntentRead = Field(alias="paymentIntent")

    model_config = ConfigDict(populate_by_name=True)


class PaymentReleaseResponse(BaseModel):
    payment: PaymentRead
    freelancer_balance: Decimal = Field(alias="freelancerBalance")

    model_config = ConfigDict(populate_by_name=True)


class RefundCreate(BaseModel):
    reason: str = Field(min_length=1, max_length=255)
    amount: Decimal | None = Field(default=None, gt=0, max_digits=18, decimal_places=2)


class RefundRead(BaseModel):
    id: str
    amount: Decimal
    status: str | None


class RefundResponse(BaseModel):
    payment: PaymentRead
    refund: RefundRead


class PayoutCreate(BaseModel):
    amount: Decimal = Field(gt=0, max_digits=18, decimal_places=2)
    payout_method_id: int = Field(alias="payoutMethodId")

    model_config = ConfigDict(populate_by_name=True)


class TransferRead(BaseModel):
    id: str | None
    amount: Decimal
    status: str | None


class PayoutResponse(BaseModel):
    payment: PaymentRead
    transfer: TransferRead | None = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class PaymentHistoryPage(BaseModel):
    items: list[PaymentRead]
    pagination: Pagination


class EarningsRead(BaseModel):
    available: Decimal
    in_escrow: Decimal
    pending: Decimal
    withdrawn: Decimal
    currency: str
