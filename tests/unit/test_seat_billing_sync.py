from unittest.mock import AsyncMock

import pytest

from app.models.domain.billing_domain import SubscriptionState, SubscriptionStatus, Tier
from app.services.billing.seat_billing_sync import SeatBillingSync, coupon_for, seat_metadata

TENANT = "tenant-1"


@pytest.fixture
def stripe_mock():
    client = AsyncMock()
    client.enabled = True
    client.create_customer.return_value = "cus_new"
    client.create_subscription.return_value = {"id": "sub_new", "metadata": {}}
    return client


@pytest.fixture
def seat_sync(store, stripe_mock, catalog):
    return SeatBillingSync(store=store, stripe_client=stripe_mock, catalog=catalog)


def live_subscription(store, status=SubscriptionStatus.ACTIVE):
    store.data["customers"][TENANT] = "cus_1"
    store.data["subscriptions"][TENANT] = SubscriptionState(
        tenant_id=TENANT,
        tier="advanced",
        status=status,
        provider_customer_id="cus_1",
        provider_subscription_id="sub_1",
    )


def remote(items, coupon=None):
    return {
        "id": "sub_1",
        "items": {
            "data": [
                {"id": item_id, "price": {"id": price_id}, "quantity": qty}
                for item_id, price_id, qty in items
            ]
        },
        "metadata": {"team_discount_coupon": coupon} if coupon else {},
    }


def test_coupon_follows_discount_steps():
    assert coupon_for(4) is None
    assert coupon_for(5) == "team_discount_10"
    assert coupon_for(12) == "team_discount_20"
    assert coupon_for(40, prefix="team_") == "team_25"


def test_seat_metadata_lists_every_tier():
    assert seat_metadata(TENANT, {Tier.ELITE: 2}) == {
        "tenant_id": TENANT,
        "total_seats": "2",
        "basic_seats": "0",
        "advanced_seats": "0",
        "elite_seats": "2",
    }


@pytest.mark.asyncio
async def test_disabled_billing_skips(store, catalog, add_seats):
    client = AsyncMock()
    client.enabled = False
    await add_seats(TENANT, Tier.BASIC)

    summary = await SeatBillingSync(store=store, stripe_client=client, catalog=catalog).sync_tenant(TENANT)

    assert summary["action"] == "skipped"
    client.create_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_first_seats_create_customer_and_subscription(seat_sync, stripe_mock, store, add_seats):
    await add_seats(TENANT, Tier.BASIC, 3)
    await add_seats(TENANT, Tier.ADVANCED, 2)

    summary = await seat_sync.sync_tenant(TENANT, email="owner@example.com")

    assert summary == {"tenant_id": TENANT, "action": "created", "total_seats": 5, "coupon": "team_discount_10"}
    stripe_mock.create_customer.assert_awaited_once_with(TENANT, "owner@example.com")
    assert store.data["customers"][TENANT] == "cus_new"
    assert store.data["billing_subscriptions"][TENANT] == "sub_new"

    customer_id, items, metadata = stripe_mock.create_subscription.await_args.args
    assert customer_id == "cus_new"
    assert sorted(items, key=lambda item: item["price"]) == [
        {"price": "price_advanced", "quantity": 2},
        {"price": "price_basic", "quantity": 3},
    ]
    assert metadata["total_seats"] == "5"
    stripe_mock.apply_coupon.assert_awaited_once_with("sub_new", "team_discount_10")


@pytest.mark.asyncio
async def test_matching_items_are_left_alone(seat_sync, stripe_mock, store, add_seats):
    live_subscription(store)
    await add_seats(TENANT, Tier.ADVANCED, 2)
    stripe_mock.retrieve_subscription.return_value = remote([("si_a", "price_advanced", 2)])

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "unchanged"
    stripe_mock.modify_subscription.assert_not_awaited()
    stripe_mock.apply_coupon.assert_not_awaited()
    stripe_mock.remove_discount.assert_not_awaited()


@pytest.mark.asyncio
async def test_changed_seats_update_create_and_delete_items(seat_sync, stripe_mock, store, add_seats):
    live_subscription(store)
    await add_seats(TENANT, Tier.BASIC, 3)
    await add_seats(TENANT, Tier.ADVANCED, 1)
    stripe_mock.retrieve_subscription.return_value = remote(
        [("si_basic", "price_basic", 2), ("si_elite", "price_elite", 1)]
    )

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "updated"
    subscription_id, items, _ = stripe_mock.modify_subscription.await_args.args
    assert subscription_id == "sub_1"
    assert items == [
        {"id": "si_basic", "quantity": 3},
        {"price": "price_advanced", "quantity": 1},
        {"id": "si_elite", "deleted": True},
    ]


@pytest.mark.asyncio
async def test_dropping_below_threshold_removes_discount(seat_sync, stripe_mock, store, add_seats):
    live_subscription(store)
    await add_seats(TENANT, Tier.BASIC, 4)
    stripe_mock.retrieve_subscription.return_value = remote(
        [("si_basic", "price_basic", 5)], coupon="team_discount_10"
    )

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["coupon"] is None
    stripe_mock.remove_discount.assert_awaited_once_with("sub_1")


@pytest.mark.asyncio
async def test_no_seats_cancels_live_subscription(seat_sync, stripe_mock, store):
    live_subscription(store)
    stripe_mock.retrieve_subscription.return_value = remote([("si_a", "price_advanced", 1)])

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "canceled"
    stripe_mock.cancel_subscription.assert_awaited_once_with("sub_1")


@pytest.mark.asyncio
async def test_no_seats_and_no_subscription_does_nothing(seat_sync, stripe_mock):
    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "none"
    stripe_mock.cancel_subscription.assert_not_awaited()


@pytest.mark.asyncio
async def test_canceled_subscription_is_replaced_not_modified(seat_sync, stripe_mock, store, add_seats):
    live_subscription(store, status=SubscriptionStatus.CANCELED)
    await add_seats(TENANT, Tier.ELITE)

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "created"
    stripe_mock.create_customer.assert_not_awaited()
    assert stripe_mock.create_subscription.await_args.args[0] == "cus_1"
    stripe_mock.modify_subscription.assert_not_awaited()
    # Stripe confirms the new subscription by webhook; local state is untouched
    assert store.data["subscriptions"][TENANT].status == SubscriptionStatus.CANCELED


@pytest.mark.asyncio
async def test_second_sync_before_webhook_modifies_new_subscription(seat_sync, stripe_mock, store, add_seats):
    await add_seats(TENANT, Tier.BASIC)
    first = await seat_sync.sync_tenant(TENANT)

    await add_seats(TENANT, Tier.BASIC)
    stripe_mock.retrieve_subscription.return_value = {
        "id": "sub_new",
        "status": "incomplete",
        "items": {"data": [{"id": "si_new", "price": {"id": "price_basic"}, "quantity": 1}]},
        "metadata": {},
    }
    second = await seat_sync.sync_tenant(TENANT)

    assert first["action"] == "created"
    assert second["action"] == "updated"
    stripe_mock.create_subscription.assert_awaited_once()
    stripe_mock.create_customer.assert_awaited_once()
    stripe_mock.retrieve_subscription.assert_awaited_once_with("sub_new")
    subscription_id, items, _ = stripe_mock.modify_subscription.await_args.args
    assert subscription_id == "sub_new"
    assert items == [{"id": "si_new", "quantity": 2}]
    assert TENANT not in store.data["subscriptions"]
    assert store.billing_locks.count(TENANT) == 4


@pytest.mark.asyncio
async def test_stale_live_state_falls_through_to_newer_subscription(seat_sync, stripe_mock, store, add_seats):
    live_subscription(store)
    store.data["billing_subscriptions"][TENANT] = "sub_2"
    await add_seats(TENANT, Tier.ADVANCED)
    replacement = {
        "id": "sub_2",
        "status": "active",
        "items": {"data": [{"id": "si_2", "price": {"id": "price_advanced"}, "quantity": 1}]},
        "metadata": {},
    }
    stripe_mock.retrieve_subscription.side_effect = [{"id": "sub_1", "status": "canceled"}, replacement]

    summary = await seat_sync.sync_tenant(TENANT)

    assert summary["action"] == "unchanged"
    assert [call.args[0] for call in stripe_mock.retrieve_subscription.await_args_list] == ["sub_1", "sub_2"]
    stripe_mock.create_subscription.assert_not_awaited()
