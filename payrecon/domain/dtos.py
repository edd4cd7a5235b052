from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from .enums import BillingCycle, ProviderName, ResponseShape
from .statuses import OrderStatus, SubscriptionStatus


class CustomerAddress(BaseModel):
    street: str
    building_number: str = Field(..., alias="buildingNumber")
    apartment_number: str | None = Field(default=None, alias="apartmentNumber")
    city: str
    zip_code: str = Field(..., alias="zipCode")

    model_config = ConfigDict(populate_by_name=True)


class CustomerData(BaseModel):
    email: str = Field(..., min_length=3)
    first_name: str | None = Field(default=None, alias="firstName")
    company_name: str | None = Field(default=None, alias="companyName")
    address: CustomerAddress | None = None

    model_config = ConfigDict(populate_by_name=True)


class CheckoutRequest(BaseModel):
    """Request body for starting a subscription checkout."""

    plan_id: str = Field(..., min_length=1, alias="planId")
    billing_cycle: BillingCycle = Field(..., alias="billingCycle")
    amount: int = Field(..., description="Gross amount in minor currency units (grosz)")
    customer_data: CustomerData = Field(..., alias="customerData")
    provider: ProviderName | None = Field(
        default=None,
        description="Selected provider (payu|stripe). Defaults to config",
    )

    model_config = ConfigDict(populate_by_name=True)


class CheckoutResponse(BaseModel):
    """Response returned when a checkout was started."""

    external_order_id: str = Field(..., alias="externalOrderId")
    provider_order_id: str | None = Field(default=None, alias="providerOrderId")
    redirect_uri: str = Field(..., alias="redirectUri")
    outcome: ResponseShape
    status: OrderStatus = OrderStatus.PENDING

    model_config = ConfigDict(populate_by_name=True)


class ProviderStatusInfo(BaseModel):
    status: str | None = None
    mapped_status: OrderStatus | None = Field(default=None, alias="mappedStatus")
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)


class OrderStatusResponse(BaseModel):
    external_order_id: str = Field(..., alias="externalOrderId")
    provider_order_id: str | None = Field(default=None, alias="providerOrderId")
    provider: ProviderName
    status: OrderStatus
    amount: int
    currency: str
    plan_id: str = Field(..., alias="planId")
    billing_cycle: BillingCycle = Field(..., alias="billingCycle")
    redirect_uri: str | None = Field(default=None, alias="redirectUri")
    created_at: datetime | None = Field(default=None, alias="createdAt")
    updated_at: datetime | None = Field(default=None, alias="updatedAt")
    provider_status: ProviderStatusInfo | None = Field(default=None, alias="providerStatus")

    model_config = ConfigDict(populate_by_name=True)


class ReconcileResponse(BaseModel):
    external_order_id: str | None = Field(default=None, alias="externalOrderId")
    result: str
    status: OrderStatus | None = None

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionInfo(BaseModel):
    plan_id: str = Field(..., alias="planId")
    billing_cycle: BillingCycle = Field(..., alias="billingCycle")
    status: SubscriptionStatus
    provider: ProviderName | None = None
    current_period_start: datetime = Field(..., alias="currentPeriodStart")
    current_period_end: datetime = Field(..., alias="currentPeriodEnd")
    trial_start: datetime | None = Field(default=None, alias="trialStart")
    trial_end: datetime | None = Field(default=None, alias="trialEnd")
    payment_attempts: int = Field(default=0, alias="paymentAttempts")
    canceled_at: datetime | None = Field(default=None, alias="canceledAt")

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    """The caller's active subscription, or null when there is none."""

    subscription: SubscriptionInfo | None = None


class WebhookAck(BaseModel):
    success: bool = True
    result: str | None = None
    message: str | None = None
