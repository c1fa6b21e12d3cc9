"""Typed views over provider objects.

Only the fields the reconciliation handlers read are declared; everything
else in the provider payload is ignored. Timestamps stay as Unix seconds
here and are converted when written to the store.

References to other objects (``customer``, ``product``, ...) arrive either
as a bare id or as an expanded object depending on the request; ``Ref``
fields collapse both forms to the id.
"""

from __future__ import annotations

from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field


def _collapse_ref(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("id")
    return value


Ref = Annotated[str | None, BeforeValidator(_collapse_ref)]


class ProviderObject(BaseModel):
    """Base for provider payload models."""

    model_config = ConfigDict(extra="ignore")

    id: str


class InvoiceSettings(BaseModel):
    model_config = ConfigDict(extra="ignore")

    default_payment_method: Ref = None


class ProviderCustomer(ProviderObject):
    email: str | None = None
    name: str | None = None
    balance: int = 0
    delinquent: bool = False
    deleted: bool = False
    currency: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)
    invoice_settings: InvoiceSettings = Field(default_factory=InvoiceSettings)

    @property
    def default_payment_method_id(self) -> str | None:
        return self.invoice_settings.default_payment_method

    @property
    def tenant_id(self) -> str | None:
        return self.metadata.get("tenant_id") or None


class ProviderProduct(ProviderObject):
    name: str = ""
    description: str | None = None
    active: bool = True
    metadata: dict[str, str] = Field(default_factory=dict)


class Recurring(BaseModel):
    model_config = ConfigDict(extra="ignore")

    interval: str
    interval_count: int = 1
    usage_type: str = "licensed"
    meter: str | None = None


class ProviderPrice(ProviderObject):
    product: Ref = None
    active: bool = True
    currency: str = "usd"
    unit_amount: int | None = None
    type: str = "recurring"
    recurring: Recurring | None = None
    nickname: str | None = None
    lookup_key: str | None = None
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def usage_type(self) -> str | None:
        if self.recurring is None:
            return None
        return "metered" if self.recurring.meter else self.recurring.usage_type


class SubscriptionItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    price: ProviderPrice
    quantity: int | None = None
    current_period_start: int | None = None
    current_period_end: int | None = None


class ItemList(BaseModel):
    model_config = ConfigDict(extra="ignore")

    data: list[SubscriptionItem] = Field(default_factory=list)


class PauseCollection(BaseModel):
    model_config = ConfigDict(extra="ignore")

    behavior: str | None = None
    resumes_at: int | None = None


class ProviderSubscription(ProviderObject):
    customer: Ref = None
    status: str
    cancel_at_period_end: bool = False
    canceled_at: int | None = None
    cancel_at: int | None = None
    trial_start: int | None = None
    trial_end: int | None = None
    pause_collection: PauseCollection | None = None
    items: ItemList = Field(default_factory=ItemList)

    @property
    def first_item(self) -> SubscriptionItem | None:
        return self.items.data[0] if self.items.data else None


class SubscriptionDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription: Ref = None


class InvoiceParent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    subscription_details: SubscriptionDetails | None = None


class StatusTransitions(BaseModel):
    model_config = ConfigDict(extra="ignore")

    paid_at: int | None = None
    finalized_at: int | None = None
    voided_at: int | None = None


class ProviderInvoice(ProviderObject):
    customer: Ref = None
    number: str | None = None
    status: str | None = None
    currency: str = "usd"
    amount_due: int = 0
    amount_paid: int = 0
    amount_remaining: int = 0
    subtotal: int = 0
    total: int = 0
    total_excluding_tax: int | None = None
    period_start: int | None = None
    period_end: int | None = None
    due_date: int | None = None
    attempt_count: int = 0
    attempted: bool = False
    hosted_invoice_url: str | None = None
    invoice_pdf: str | None = None
    customer_email: str | None = None
    customer_name: str | None = None
    subscription: Ref = None
    parent: InvoiceParent | None = None
    status_transitions: StatusTransitions = Field(default_factory=StatusTransitions)

    @property
    def subscription_id(self) -> str | None:
        if self.parent and self.parent.subscription_details:
            nested = self.parent.subscription_details.subscription
            if nested:
                return nested
        return self.subscription

    @property
    def tax(self) -> int | None:
        """total - total_excluding_tax, or None when the exclusive total is absent."""
        if self.total_excluding_tax is None:
            return None
        return self.total - self.total_excluding_tax


class MeterEvent(BaseModel):
    """Acknowledgement of a usage-meter submission."""

    model_config = ConfigDict(extra="ignore")

    identifier: str
    event_name: str
    timestamp: str | None = None


class MeterEventSummary(ProviderObject):
    aggregated_value: float = 0
    start_time: int
    end_time: int
    meter: str | None = None


class Meter(ProviderObject):
    display_name: str | None = None
    event_name: str | None = None
    status: str | None = None
