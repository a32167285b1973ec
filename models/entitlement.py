"""
Entitlement domain types: statuses, access decisions and billing event variants
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    CANCELED = "canceled"
    EXPIRED = "expired"
    INACTIVE = "inactive"


class AccessStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    EXPIRED = "expired"


class AccessDecision(BaseModel):
    entitled: bool
    status: AccessStatus
    days_remaining: int = 0
    reason: str = ""


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Plain copy of an Entitlement row, safe to evaluate outside a session."""
    user_id: int
    subscription_status: SubscriptionStatus
    trial_ends_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "EntitlementSnapshot":
        return cls(
            user_id=row.user_id,
            subscription_status=SubscriptionStatus(row.subscription_status),
            trial_ends_at=row.trial_ends_at,
            subscription_ends_at=row.subscription_ends_at,
            billing_customer_ref=row.billing_customer_ref,
            billing_subscription_ref=row.billing_subscription_ref,
        )


# Billing event variants (already signature-verified)

@dataclass(frozen=True)
class SubscriptionCreatedOrUpdated:
    customer_ref: str
    subscription_ref: str
    status: SubscriptionStatus
    period_end: Optional[datetime]


@dataclass(frozen=True)
class SubscriptionCanceled:
    customer_ref: str


@dataclass(frozen=True)
class PaymentSucceeded:
    subscription_ref: str


@dataclass(frozen=True)
class PaymentFailed:
    customer_ref: str


@dataclass(frozen=True)
class CheckoutCompleted:
    user_id: int
    customer_ref: str
    subscription_ref: Optional[str]


BillingEvent = Union[
    SubscriptionCreatedOrUpdated,
    SubscriptionCanceled,
    PaymentSucceeded,
    PaymentFailed,
    CheckoutCompleted,
]


class ApplyResult(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ApplyOutcome:
    result: ApplyResult
    message: str
    user_id: Optional[int] = None


@dataclass(frozen=True)
class BillingSubscription:
    """Authoritative subscription state as reported by Stripe."""
    subscription_ref: str
    customer_ref: str
    status: SubscriptionStatus
    period_end: Optional[datetime]
