"""
Stripe client wrapper.

The official SDK is blocking, so every call runs in a worker thread. SDK
exception classes are mapped to ErrorKind here, at the boundary, and plain
dicts are returned so nothing above this module depends on StripeObject.
"""

import asyncio
import json
from typing import Any

import stripe

from app.config import settings
from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import BillingLineItem
from app.models.domain.errors import (
    ConfigurationError,
    ErrorKind,
    ProviderError,
    WebhookRejectedError,
)

logger = get_logger(__name__)


def _as_dict(obj: Any) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not isinstance(obj, stripe.StripeObject):
        return obj
    return obj.to_dict()


def _classify(error: stripe.StripeError, operation: str) -> ProviderError:
    if isinstance(error, (stripe.AuthenticationError, stripe.PermissionError)):
        kind = ErrorKind.CONFIGURATION_ERROR
    elif isinstance(error, stripe.InvalidRequestError):
        kind = ErrorKind.INTERNAL_ERROR
    else:
        # APIConnectionError, RateLimitError, APIError and anything newer
        kind = ErrorKind.PROVIDER_UNAVAILABLE

    logger.warning(
        "Stripe call failed",
        operation=operation,
        error_type=type(error).__name__,
        http_status=error.http_status,
        stripe_code=error.code,
        error_kind=kind.value,
    )
    return ProviderError(
        f"Stripe {operation} failed: {error.user_message or type(error).__name__}",
        kind=kind,
        status_code=error.http_status,
        provider="stripe",
        code=error.code,
    )


def subscription_line_items(subscription: dict) -> list[BillingLineItem]:
    items = (subscription.get("items") or {}).get("data") or []
    line_items = []
    for item in items:
        price = item.get("price") or {}
        price_id = price.get("id") if isinstance(price, dict) else price
        line_items.append(
            BillingLineItem(item_id=item["id"], price_id=price_id, quantity=item.get("quantity") or 0)
        )
    return line_items


class StripeBillingClient:
    """Thin async facade over the stripe SDK."""

    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        tolerance_seconds: int | None = None,
    ):
        self._api_key = api_key or settings.STRIPE_SECRET_KEY
        self._webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET
        self._tolerance = tolerance_seconds or settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    def verify_event(self, payload: bytes, signature_header: str | None) -> dict:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookRejectedError: bad_signature or malformed_payload
            ConfigurationError: no signing secret configured
        """
        if not self._webhook_secret:
            raise ConfigurationError("STRIPE_WEBHOOK_SECRET not configured")
        if not signature_header:
            raise WebhookRejectedError("Missing signature header", ErrorKind.BAD_SIGNATURE)

        try:
            payload_text = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookRejectedError("Payload is not UTF-8", ErrorKind.BAD_SIGNATURE) from e

        try:
            stripe.WebhookSignature.verify_header(
                payload_text, signature_header, self._webhook_secret, self._tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise WebhookRejectedError(
                "Webhook signature verification failed", ErrorKind.BAD_SIGNATURE
            ) from e

        try:
            event = json.loads(payload_text)
        except ValueError as e:
            raise WebhookRejectedError(
                "Webhook payload is not JSON", ErrorKind.MALFORMED_PAYLOAD
            ) from e

        if (
            not isinstance(event, dict)
            or not isinstance(event.get("id"), str)
            or not isinstance(event.get("type"), str)
            or not isinstance((event.get("data") or {}).get("object"), dict)
        ):
            raise WebhookRejectedError(
                "Webhook payload missing id, type or data.object", ErrorKind.MALFORMED_PAYLOAD
            )
        return event

    async def _call(self, operation: str, func, *args, **kwargs) -> dict:
        if not self._api_key:
            raise ConfigurationError("STRIPE_SECRET_KEY not configured")
        try:
            result = await asyncio.to_thread(func, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as e:
            raise _classify(e, operation) from e
        return _as_dict(result)

    async def retrieve_subscription(self, subscription_id: str) -> dict:
        return await self._call("retrieve_subscription", stripe.Subscription.retrieve, subscription_id)

    async def create_customer(self, tenant_id: str, email: str | None = None) -> str:
        params: dict = {"metadata": {"tenant_id": tenant_id}}
        if email:
            params["email"] = email
        customer = await self._call("create_customer", stripe.Customer.create, **params)
        logger.info("Stripe customer created", tenant_id=tenant_id, customer_id=customer["id"])
        return customer["id"]

    async def create_subscription(
        self, customer_id: str, items: list[dict], metadata: dict[str, str]
    ) -> dict:
        return await self._call(
            "create_subscription",
            stripe.Subscription.create,
            customer=customer_id,
            items=items,
            metadata=metadata,
        )

    async def modify_subscription(
        self, subscription_id: str, items: list[dict], metadata: dict[str, str]
    ) -> dict:
        return await self._call(
            "modify_subscription",
            stripe.Subscription.modify,
            subscription_id,
            items=items,
            proration_behavior="create_prorations",
            metadata=metadata,
        )

    async def cancel_subscription(self, subscription_id: str) -> dict:
        return await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)

    async def apply_coupon(self, subscription_id: str, coupon_id: str) -> bool:
        """
        Attach a pre-created coupon. A coupon missing from the Stripe account
        is logged and reported as False, never raised.
        """
        try:
            await self._call(
                "apply_coupon",
                stripe.Subscription.modify,
                subscription_id,
                discounts=[{"coupon": coupon_id}],
                metadata={"team_discount_coupon": coupon_id},
            )
        except ProviderError as e:
            if e.code == "resource_missing" or e.status_code == 404:
                logger.warning(
                    "Team discount coupon not found in Stripe",
                    coupon_id=coupon_id,
                    subscription_id=subscription_id,
                )
                return False
            raise
        return True

    async def remove_discount(self, subscription_id: str) -> None:
        await self._call(
            "remove_discount", stripe.Subscription.delete_discount, subscription_id
        )
        await self._call(
            "clear_coupon_metadata",
            stripe.Subscription.modify,
            subscription_id,
            metadata={"team_discount_coupon": ""},
        )


stripe_billing_client = StripeBillingClient()
