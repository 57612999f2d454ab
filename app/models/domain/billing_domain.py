# app/models/domain/billing_domain.py
"""
Billing domain models: seats, subscription state, pricing and webhook results.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel

from app.models.domain.errors import ErrorKind

FREE_TIER = "free"


class Tier(str, Enum):
    BASIC = "basic"
    ADVANCED = "advanced"
    ELITE = "elite"

    @property
    def rank(self) -> int:
        return list(Tier).index(self)


class SeatStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"
    REMOVED = "removed"

    @property
    def is_billable(self) -> bool:
        return self in (SeatStatus.ACTIVE, SeatStatus.PENDING)


class SubscriptionStatus(str, Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"

    @classmethod
    def parse(cls, value: str | None) -> "SubscriptionStatus":
        try:
            return cls(value)
        except ValueError:
            return cls.INCOMPLETE

    @property
    def is_lapsed(self) -> bool:
        return self in (SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED)

    @property
    def is_ended(self) -> bool:
        """No further seat changes can be billed on a subscription in this status."""
        return self.is_lapsed or self is SubscriptionStatus.INCOMPLETE_EXPIRED

    @property
    def is_live(self) -> bool:
        return self in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)


class SeatRecord(BaseModel):
    """One tenant member's billable access grant."""

    id: str
    tenant_id: str
    tier: Tier
    status: SeatStatus
    member_id: str | None = None
    email: str | None = None
    invite_token: str | None = None
    is_owner: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SubscriptionState(BaseModel):
    """Canonical subscription state, one row per tenant."""

    tenant_id: str
    tier: str = FREE_TIER
    status: SubscriptionStatus
    provider_customer_id: str | None = None
    provider_subscription_id: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    trial_start: datetime | None = None
    trial_end: datetime | None = None
    retention_expires_at: datetime | None = None
    retention_reason: str | None = None
    data_cleared_at: datetime | None = None
    last_event_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_paid_tier(self) -> bool:
        return self.tier not in (FREE_TIER, "data_cleared")

    def retention_status(self, now: datetime | None = None) -> dict:
        """Retention window summary for banners and the cleanup job."""
        now = now or datetime.now(UTC)
        expires_at = self.retention_expires_at
        days_remaining = None
        is_expired = False
        if expires_at:
            seconds = (expires_at - now).total_seconds()
            days_remaining = max(0, -int(-seconds // 86400))
            is_expired = seconds <= 0
        return {
            "has_window": expires_at is not None,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "days_remaining": days_remaining,
            "reason": self.retention_reason,
            "is_expired": is_expired,
            "is_data_cleared": self.data_cleared_at is not None,
        }


@dataclass(frozen=True)
class TierLine:
    count: int
    unit_price: Decimal
    subtotal: Decimal


@dataclass(frozen=True)
class PricingBreakdown:
    total_seats: int
    per_tier: dict[Tier, TierLine]
    discount_percent: Decimal
    list_subtotal: Decimal
    discount_amount: Decimal
    final_total: Decimal

    def to_dict(self) -> dict:
        return {
            "total_seats": self.total_seats,
            "per_tier": {
                tier.value: {
                    "count": line.count,
                    "unit_price": str(line.unit_price),
                    "subtotal": str(line.subtotal),
                }
                for tier, line in self.per_tier.items()
            },
            "discount_percent": str(self.discount_percent),
            "list_subtotal": str(self.list_subtotal),
            "discount_amount": str(self.discount_amount),
            "final_total": str(self.final_total),
        }


@dataclass(frozen=True)
class LineItemDiff:
    """Per-tier quantity changes that turn one tier map into another."""

    to_create: dict[Tier, int] = field(default_factory=dict)
    to_update: dict[Tier, int] = field(default_factory=dict)
    to_delete: frozenset[Tier] = frozenset()

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)


@dataclass(frozen=True)
class BillingLineItem:
    """A subscription line item as currently held by the billing provider."""

    item_id: str
    price_id: str
    quantity: int


class WebhookStatus(str, Enum):
    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class NotificationOutcome:
    kind: str
    delivered: bool
    error: str | None = None


@dataclass
class WebhookResult:
    """
    Result of handling one pushed event.

    `state_committed` reports the canonical state effects; notification
    outcomes are reported separately and never change `status`.
    """

    status: WebhookStatus
    event_id: str | None = None
    event_type: str | None = None
    error: ErrorKind | None = None
    state_committed: bool = False
    stale: bool = False
    notifications: list[NotificationOutcome] = field(default_factory=list)
