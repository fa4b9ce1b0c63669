"""Provider-neutral shapes exchanged between gateway clients and billing logic."""

from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional


class EventType(str, Enum):
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    CHECKOUT_COMPLETED = "checkout_completed"
    CHARGE_REFUNDED = "charge_refunded"
    UNRECOGNIZED = "unrecognized"


@dataclass
class GatewaySubscription:
    id: str
    status: str
    price_id: Optional[str]
    current_period_start: Optional[datetime.datetime]
    current_period_end: Optional[datetime.datetime]
    customer_id: Optional[str] = None


@dataclass
class GatewayInvoice:
    id: str
    subscription_id: Optional[str]
    status: str
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = ""
    created_at: Optional[datetime.datetime] = None
    paid_at: Optional[datetime.datetime] = None
    period_start: Optional[datetime.datetime] = None
    period_end: Optional[datetime.datetime] = None
    price_id: Optional[str] = None
    customer_id: Optional[str] = None


@dataclass
class GatewayTransaction:
    """A single charge attempt; ``status`` uses the Payment status vocabulary."""

    id: str
    status: str
    amount: Optional[Decimal] = None
    currency: str = ""
    reference: Optional[str] = None
    redirect_url: Optional[str] = None
    message: Optional[str] = None
    form_data: dict = field(default_factory=dict)


@dataclass
class GatewayCharge:
    """A (possibly partially) refunded charge.  Amounts are in minor units."""

    id: str
    amount: int
    amount_refunded: int
    currency: str = ""
    invoice_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class CheckoutSession:
    id: str
    subscription_id: Optional[str]
    customer_id: Optional[str]
    payment_status: str
    metadata: dict = field(default_factory=dict)


@dataclass
class WebhookEvent:
    """A verified provider event.

    ``data`` is one of the gateway shapes above, chosen by ``type``.
    """

    id: str
    type: EventType
    data: Any
    provider: str
    created_at: Optional[datetime.datetime] = None
    raw_type: str = ""
    raw: dict = field(default_factory=dict)

    @property
    def object_id(self) -> Optional[str]:
        return getattr(self.data, "id", None)
