"""
Subscription state derivation shared by the webhook engine and the
correcting pull.

Every new state is computed from the provider's own subscription payload
plus the previous canonical state (only for the retention window), so
independent events converge regardless of arrival order.
"""

from datetime import UTC, datetime, timedelta

from app.config import settings
from app.models.domain.billing_domain import (
    FREE_TIER,
    SubscriptionState,
    SubscriptionStatus,
    Tier,
)
from app.services.billing.price_catalog import PriceCatalog
from app.services.billing.stripe_client import subscription_line_items
from app.services.reconciliation.revision import is_newer

DATA_CLEARED_TIER = "data_cleared"


def from_timestamp(value) -> datetime | None:
    """Stripe epoch seconds -> aware datetime."""
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _revision(moment: datetime | None) -> str | None:
    return moment.isoformat() if moment else None


def is_stale(event_at: datetime | None, state: SubscriptionState | None) -> bool:
    """
    True when the event is strictly older than what produced the stored state.

    Event times are compared as revision markers, the same way entity
    mappings compare remote revisions; equal times are not stale.
    """
    if state is None or state.last_event_at is None or event_at is None:
        return False
    return is_newer(_revision(state.last_event_at), _revision(event_at))


def _period_bounds(subscription: dict) -> tuple[datetime | None, datetime | None]:
    start = subscription.get("current_period_start")
    end = subscription.get("current_period_end")
    if start is None or end is None:
        # Newer API versions carry billing periods on the items
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            start = start or items[0].get("current_period_start")
            end = end or items[0].get("current_period_end")
    return from_timestamp(start), from_timestamp(end)


def derive_tier(subscription: dict, catalog: PriceCatalog) -> str:
    """Highest tier among line-item prices, else `metadata.tier`, else free."""
    tier = catalog.highest_tier(item.price_id for item in subscription_line_items(subscription))
    if tier is not None:
        return tier.value
    metadata_tier = (subscription.get("metadata") or {}).get("tier")
    if metadata_tier in {t.value for t in Tier}:
        return metadata_tier
    return FREE_TIER


def derive_from_subscription(
    tenant_id: str,
    subscription: dict,
    previous: SubscriptionState | None,
    catalog: PriceCatalog,
    *,
    customer_id: str | None = None,
    trial_conversion: bool = False,
) -> SubscriptionState:
    """Canonical state described by a provider subscription object."""
    period_start, period_end = _period_bounds(subscription)
    trial_start = from_timestamp(subscription.get("trial_start"))
    trial_end = from_timestamp(subscription.get("trial_end"))
    if trial_conversion:
        trial_start = trial_end = None

    customer = subscription.get("customer")
    if isinstance(customer, dict):
        customer = customer.get("id")

    base = previous or SubscriptionState(tenant_id=tenant_id, status=SubscriptionStatus.INCOMPLETE)
    return base.model_copy(
        update={
            "tier": derive_tier(subscription, catalog),
            "status": SubscriptionStatus.parse(subscription.get("status")),
            "provider_customer_id": customer_id or customer or base.provider_customer_id,
            "provider_subscription_id": subscription.get("id") or base.provider_subscription_id,
            "current_period_start": period_start,
            "current_period_end": period_end,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "canceled_at": from_timestamp(subscription.get("canceled_at")),
            "trial_start": trial_start,
            "trial_end": trial_end,
        }
    )


def with_status(state: SubscriptionState, status: SubscriptionStatus) -> SubscriptionState:
    return state.model_copy(update={"status": status})


def clear_retention_window(state: SubscriptionState) -> SubscriptionState:
    return state.model_copy(update={"retention_expires_at": None, "retention_reason": None})


def apply_retention(
    previous: SubscriptionState | None,
    state: SubscriptionState,
    now: datetime | None = None,
    window_days: int | None = None,
) -> SubscriptionState:
    """
    Start, keep or clear the retention window for a status transition.

    - paid and not lapsed -> canceled/paused: window opens for `window_days`
    - already lapsed -> still lapsed: the open window is kept, not extended
    - -> active/trialing: window and any data-cleared marker are cleared
    """
    now = now or datetime.now(UTC)
    window_days = window_days if window_days is not None else settings.RETENTION_WINDOW_DAYS

    if state.status.is_live:
        return state.model_copy(
            update={"retention_expires_at": None, "retention_reason": None, "data_cleared_at": None}
        )

    if not state.status.is_lapsed:
        return state

    was_lapsed = previous is not None and previous.status.is_lapsed
    if was_lapsed:
        return state.model_copy(
            update={
                "retention_expires_at": previous.retention_expires_at,
                "retention_reason": previous.retention_reason,
                "data_cleared_at": previous.data_cleared_at,
            }
        )

    was_paid = previous.is_paid_tier if previous is not None else state.is_paid_tier
    if not was_paid:
        return state

    reason = "paid_paused" if state.status == SubscriptionStatus.PAUSED else "paid_canceled"
    return state.model_copy(
        update={
            "retention_expires_at": now + timedelta(days=window_days),
            "retention_reason": reason,
            "data_cleared_at": None,
        }
    )


def retention_started(previous: SubscriptionState | None, state: SubscriptionState) -> bool:
    return state.retention_expires_at is not None and (
        previous is None or previous.retention_expires_at is None
    )


def reactivated(previous: SubscriptionState | None, state: SubscriptionState) -> bool:
    if previous is None or not state.status.is_live:
        return False
    return previous.status == SubscriptionStatus.PAST_DUE or previous.status.is_lapsed
