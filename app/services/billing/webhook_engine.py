"""
Push-event reconciliation for billing webhooks.

Order of operations for one delivery:

1. verify the signature and parse the event (rejected events never touch state)
2. pre-fetch anything the event needs from Stripe, outside the transaction
3. in one transaction: insert the event id into the ledger (a conflict means
   duplicate, stop), derive the new subscription state, upsert it
4. after commit: best-effort notifications, reported on the result only

A crash between ledger insert and state write cannot happen because both
commit together; a crash before commit rolls back the ledger row and the
provider's redelivery is processed normally.
"""

from dataclasses import dataclass
from datetime import datetime

from structlog.contextvars import bound_contextvars

from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import (
    NotificationOutcome,
    SubscriptionState,
    SubscriptionStatus,
    Tier,
    WebhookResult,
    WebhookStatus,
)
from app.models.domain.errors import ErrorKind, WebhookRejectedError
from app.services.billing import notifications
from app.services.billing.notifications import NotificationSender, notification_sender
from app.services.billing.price_catalog import PriceCatalog
from app.services.billing.stripe_client import StripeBillingClient, stripe_billing_client
from app.services.billing.subscription_state import (
    apply_retention,
    clear_retention_window,
    derive_from_subscription,
    from_timestamp,
    is_stale,
    reactivated,
    retention_started,
    with_status,
)

logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_EVENTS = frozenset(
    {
        "customer.subscription.created",
        "customer.subscription.updated",
        "customer.subscription.deleted",
        "customer.subscription.paused",
        "customer.subscription.resumed",
    }
)
INVOICE_PAID_EVENTS = frozenset({"invoice.paid", "invoice.payment_succeeded"})
INVOICE_FAILED = "invoice.payment_failed"


@dataclass
class Transition:
    """What one event did to one tenant's subscription state."""

    tenant_id: str | None = None
    previous: SubscriptionState | None = None
    state: SubscriptionState | None = None
    stale: bool = False

    @property
    def applied(self) -> bool:
        return self.state is not None and not self.stale


def _customer_id(obj: dict) -> str | None:
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer


def _checkout_tenant(obj: dict) -> str | None:
    return (obj.get("metadata") or {}).get("tenant_id") or obj.get("client_reference_id")


def _latest(first: datetime | None, second: datetime | None) -> datetime | None:
    candidates = [moment for moment in (first, second) if moment is not None]
    return max(candidates) if candidates else None


class PushEventEngine:
    """Applies verified Stripe events to canonical subscription state exactly once."""

    def __init__(
        self,
        store=None,
        stripe_client: StripeBillingClient | None = None,
        catalog: PriceCatalog | None = None,
        notifier: NotificationSender | None = None,
    ):
        self._store = store or default_store
        self._stripe = stripe_client or stripe_billing_client
        self._catalog = catalog or PriceCatalog()
        self._notifier = notifier or notification_sender

    async def handle_event(self, raw_payload: bytes, signature_header: str | None) -> WebhookResult:
        """
        Verify, deduplicate and apply one pushed event.

        Raises:
            ConfigurationError: no webhook signing secret configured
            ProviderError: Stripe unavailable while pre-fetching (nothing committed)
            DatabaseError: ledger/state transaction failed (nothing committed)
        """
        try:
            event = self._stripe.verify_event(raw_payload, signature_header)
        except WebhookRejectedError as e:
            logger.warning("Webhook rejected", error_kind=e.kind.value, error=str(e))
            return WebhookResult(status=WebhookStatus.REJECTED, error=e.kind)

        event_id = event["id"]
        event_type = event["type"]
        with bound_contextvars(event_id=event_id, event_type=event_type):
            return await self._handle_verified(event)

    async def _handle_verified(self, event: dict) -> WebhookResult:
        event_id = event["id"]
        event_type = event["type"]
        obj = event["data"]["object"]
        event_at = from_timestamp(event.get("created"))

        subscription = await self._prefetch_subscription(event_type, obj)

        async with self._store.transaction() as session:
            if not await session.ledger.record(event_id, event_type):
                logger.info("Duplicate webhook event, skipping")
                return WebhookResult(
                    status=WebhookStatus.DUPLICATE, event_id=event_id, event_type=event_type
                )

            transition = await self._apply(session, event_type, obj, event_at, subscription)

        result = WebhookResult(
            status=WebhookStatus.ACCEPTED,
            event_id=event_id,
            event_type=event_type,
            state_committed=True,
            stale=transition.stale,
        )
        if transition.stale:
            result.error = ErrorKind.CONFLICT_STALE

        if transition.applied:
            logger.info(
                "Subscription state reconciled",
                tenant_id=transition.tenant_id,
                status=transition.state.status.value,
                tier=transition.state.tier,
                retention_expires_at=transition.state.retention_expires_at,
            )
            result.notifications = await self._notify(event_type, transition)
        return result

    async def _prefetch_subscription(self, event_type: str, obj: dict) -> dict | None:
        if event_type != CHECKOUT_COMPLETED:
            return None
        subscription_id = obj.get("subscription")
        if isinstance(subscription_id, dict):
            return subscription_id
        if not subscription_id or not self._stripe.enabled:
            return None
        return await self._stripe.retrieve_subscription(subscription_id)

    # ------------------------------------------------------------------
    # State transitions (run inside the ledger transaction)
    # ------------------------------------------------------------------

    async def _apply(
        self,
        session,
        event_type: str,
        obj: dict,
        event_at: datetime | None,
        subscription: dict | None,
    ) -> Transition:
        if event_type == CHECKOUT_COMPLETED:
            return await self._apply_checkout(session, obj, event_at, subscription)
        if event_type in SUBSCRIPTION_EVENTS:
            return await self._apply_subscription(session, obj, event_at)
        if event_type in INVOICE_PAID_EVENTS:
            return await self._apply_invoice(session, obj, event_at, SubscriptionStatus.ACTIVE)
        if event_type == INVOICE_FAILED:
            return await self._apply_invoice(session, obj, event_at, SubscriptionStatus.PAST_DUE)

        logger.info("Unhandled webhook event type accepted")
        return Transition()

    async def _resolve_tenant(self, session, obj: dict, fallback: str | None = None) -> str | None:
        customer_id = _customer_id(obj)
        if customer_id:
            tenant_id = await session.credentials.find_tenant_by_customer(customer_id)
            if tenant_id:
                return tenant_id
        return fallback or (obj.get("metadata") or {}).get("tenant_id")

    async def _load(
        self, session, tenant_id: str, event_at: datetime | None
    ) -> tuple[SubscriptionState | None, bool]:
        previous = await session.subscriptions.get_for_update(tenant_id)
        stale = is_stale(event_at, previous)
        if stale:
            logger.info(
                "Stale subscription event ignored",
                tenant_id=tenant_id,
                error_kind=ErrorKind.CONFLICT_STALE.value,
                event_at=event_at,
                last_event_at=previous.last_event_at,
            )
        return previous, stale

    async def _save(
        self,
        session,
        previous: SubscriptionState | None,
        state: SubscriptionState,
        event_at: datetime | None,
    ) -> Transition:
        state = apply_retention(previous, state)
        state = state.model_copy(
            update={"last_event_at": _latest(previous.last_event_at if previous else None, event_at)}
        )
        await session.subscriptions.upsert(state)
        return Transition(tenant_id=state.tenant_id, previous=previous, state=state)

    async def _apply_checkout(
        self, session, obj: dict, event_at: datetime | None, subscription: dict | None
    ) -> Transition:
        metadata = obj.get("metadata") or {}
        customer_id = _customer_id(obj)
        tenant_id = await self._resolve_tenant(session, obj, fallback=_checkout_tenant(obj))
        if not tenant_id:
            logger.warning("Checkout completed without a tenant reference", customer_id=customer_id)
            return Transition()

        if customer_id:
            await session.credentials.set_billing_customer(tenant_id, customer_id)

        previous, stale = await self._load(session, tenant_id, event_at)
        if stale:
            return Transition(tenant_id=tenant_id, previous=previous, stale=True)

        if subscription:
            state = derive_from_subscription(
                tenant_id,
                subscription,
                previous,
                self._catalog,
                customer_id=customer_id,
                trial_conversion=metadata.get("is_trial_conversion") == "true",
            )
        else:
            # No subscription object to read: the completed checkout itself confirms payment
            base = previous or SubscriptionState(tenant_id=tenant_id, status=SubscriptionStatus.ACTIVE)
            update = {
                "status": SubscriptionStatus.ACTIVE,
                "provider_customer_id": customer_id or base.provider_customer_id,
                "provider_subscription_id": obj.get("subscription") or base.provider_subscription_id,
            }
            if metadata.get("tier") in {tier.value for tier in Tier}:
                update["tier"] = metadata["tier"]
            state = base.model_copy(update=update)

        # A completed checkout closes any pending window whatever status Stripe reports
        state = clear_retention_window(state)
        return await self._save(session, previous, state, event_at)

    async def _apply_subscription(self, session, obj: dict, event_at: datetime | None) -> Transition:
        tenant_id = await self._resolve_tenant(session, obj)
        if not tenant_id:
            logger.warning(
                "Subscription event for unknown customer",
                customer_id=_customer_id(obj),
                subscription_id=obj.get("id"),
            )
            return Transition()

        previous, stale = await self._load(session, tenant_id, event_at)
        if stale:
            return Transition(tenant_id=tenant_id, previous=previous, stale=True)

        state = derive_from_subscription(tenant_id, obj, previous, self._catalog)
        return await self._save(session, previous, state, event_at)

    async def _apply_invoice(
        self, session, obj: dict, event_at: datetime | None, status: SubscriptionStatus
    ) -> Transition:
        tenant_id = await self._resolve_tenant(session, obj)
        if not tenant_id:
            logger.warning("Invoice event for unknown customer", customer_id=_customer_id(obj))
            return Transition()

        previous, stale = await self._load(session, tenant_id, event_at)
        if stale:
            return Transition(tenant_id=tenant_id, previous=previous, stale=True)
        if previous is None:
            logger.warning("Invoice event before any subscription state", tenant_id=tenant_id)
            return Transition(tenant_id=tenant_id)

        return await self._save(session, previous, with_status(previous, status), event_at)

    # ------------------------------------------------------------------
    # Notifications (after commit)
    # ------------------------------------------------------------------

    def _notification_kinds(self, event_type: str, transition: Transition) -> list[str]:
        previous, state = transition.previous, transition.state
        kinds = []
        if event_type == INVOICE_FAILED:
            kinds.append(notifications.PAYMENT_FAILED)
        if state.status == SubscriptionStatus.CANCELED and (
            previous is None or previous.status != SubscriptionStatus.CANCELED
        ):
            kinds.append(notifications.SUBSCRIPTION_CANCELED)
        if retention_started(previous, state):
            kinds.append(notifications.RETENTION_STARTED)
        if reactivated(previous, state):
            kinds.append(notifications.REACTIVATED)
        return kinds

    async def _notify(self, event_type: str, transition: Transition) -> list[NotificationOutcome]:
        state = transition.state
        payload = {
            "status": state.status.value,
            "tier": state.tier,
            "retention_expires_at": (
                state.retention_expires_at.isoformat() if state.retention_expires_at else None
            ),
        }
        outcomes = []
        for kind in self._notification_kinds(event_type, transition):
            try:
                outcomes.append(await self._notifier.send(kind, state.tenant_id, payload))
            except Exception as e:
                # State is already committed; a notification can only be reported
                logger.error(
                    "Notification raised",
                    kind=kind,
                    tenant_id=state.tenant_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                outcomes.append(NotificationOutcome(kind=kind, delivered=False, error=str(e)))
        return outcomes


push_event_engine = PushEventEngine()