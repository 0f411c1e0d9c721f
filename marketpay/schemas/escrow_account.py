"""Schemas for escrow accounts and payout methods."""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from marketpay.models.escrow import (
    EscrowAccountStatus,
    EscrowAccountType,
    PayoutMethodStatus,
    PayoutMethodType,
)


class EscrowAccountCreate(BaseModel):
    account_type: EscrowAccountType = Field(alias="accountType")

    model_config = ConfigDict(populate_by_name=True)


class EscrowAccountRead(BaseModel):
    id: int
    user_id: int
    account_type: EscrowAccountType
    status: EscrowAccountStatus
    balance: Decimal
    currency: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ProcessorAccountRead(BaseModel):
    charges_enabled: bool
    payouts_enabled: bool
    details_submitted: bool


class EscrowAccountCreated(BaseModel):
    escrow_account: EscrowAccountRead = Field(alias="escrowAccount")
    onboarding_url: str = Field(alias="onboardingUrl")

    model_config = ConfigDict(populate_by_name=True)


class EscrowAccountStatusRead(BaseModel):
    escrow_account: EscrowAccountRead = Field(alias="escrowAccount")
    processor_account: ProcessorAccountRead = Field(alias="processorAccount")

    model_config = ConfigDict(populate_by_name=True)


class OnboardingLinkRead(BaseModel):
    onboarding_url: str = Field(alias="onboardingUrl")

    model_config = ConfigDict(populate_by_name=True)


class PayoutMethodCreate(BaseModel):
    type: PayoutMethodType
    external_payment_method_id: str = Field(alias="externalPaymentMethodId", min_length=1, max_length=255)
    is_default: bool = Field(default=False, alias="isDefault")

    model_config = ConfigDict(populate_by_name=True)


class PayoutMethodRead(BaseModel):
    id: int
    type: PayoutMethodType
    status: PayoutMethodStatus
    is_default: bool
    last4: str | None
    brand: str | None
    bank_name: str | None
    country: str | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class PayoutMethodResponse(BaseModel):
    payout_method: PayoutMethodRead = Field(alias="payoutMethod")

    model_config = ConfigDict(populate_by_name=True)
