"""
Seat mutations for the team settings API.

Each mutation commits locally and returns the recomputed pricing. The push
to Stripe runs afterwards (`sync_billing_safely`, scheduled as a background
task); its failure never undoes the seat change and is corrected by the
next billing reconciliation pass.
"""

import secrets

from app.db.helpers import DatabaseError, is_unique_violation, with_db_retry
from app.db.store import store as default_store
from app.infrastructure.observability.logging import get_logger
from app.models.domain.billing_domain import PricingBreakdown, SeatRecord, SeatStatus, Tier
from app.models.domain.errors import SeatNotFoundError, SeatValidationError
from app.services.billing.pricing import price
from app.services.billing.seat_aggregator import aggregate
from app.services.billing.seat_billing_sync import SeatBillingSync, seat_billing_sync

logger = get_logger(__name__)


def parse_tier(value: str | Tier) -> Tier:
    try:
        return Tier(value)
    except ValueError as e:
        raise SeatValidationError(f"Unknown seat tier '{value}'") from e


class SeatService:
    def __init__(self, store=None, billing_sync: SeatBillingSync | None = None):
        self._store = store or default_store
        self._billing_sync = billing_sync or seat_billing_sync

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def list_seats(self, tenant_id: str) -> tuple[list[SeatRecord], PricingBreakdown]:
        async with self._store.transaction() as session:
            seats = await session.seats.list_for_tenant(tenant_id)
        return seats, price(aggregate(seats))

    async def _pricing(self, session, tenant_id: str) -> PricingBreakdown:
        return price(aggregate(await session.seats.list_for_tenant(tenant_id)))

    async def add_seat(
        self,
        tenant_id: str,
        tier: str | Tier,
        email: str | None = None,
        member_id: str | None = None,
    ) -> tuple[SeatRecord, PricingBreakdown]:
        """
        Add an active seat for an existing member, or a pending invite by email.
        """
        tier = parse_tier(tier)
        if not email and not member_id:
            raise SeatValidationError("A seat needs an email or a member id", tenant_id)

        async with self._store.transaction() as session:
            existing = await session.seats.list_for_tenant(tenant_id)
            normalized = email.strip().lower() if email else None
            if normalized and any((seat.email or "").lower() == normalized for seat in existing):
                raise SeatValidationError(f"{email} already has a seat", tenant_id)
            if member_id and any(seat.member_id == member_id for seat in existing):
                raise SeatValidationError(f"Member {member_id} already has a seat", tenant_id)

            try:
                seat = await session.seats.create(
                    tenant_id,
                    tier,
                    status=SeatStatus.ACTIVE if member_id else SeatStatus.PENDING,
                    email=normalized,
                    member_id=member_id,
                    invite_token=None if member_id else secrets.token_urlsafe(24),
                )
            except DatabaseError as e:
                # A concurrent add claimed the same email or member after the check above
                if is_unique_violation(e):
                    raise SeatValidationError(
                        f"{email or member_id} already has a seat", tenant_id
                    ) from e
                raise
            breakdown = await self._pricing(session, tenant_id)

        logger.info(
            "Seat added",
            tenant_id=tenant_id,
            seat_id=seat.id,
            tier=tier.value,
            status=seat.status.value,
            total_seats=breakdown.total_seats,
        )
        return seat, breakdown

    async def update_seat_tier(
        self, tenant_id: str, seat_id: str, tier: str | Tier
    ) -> tuple[SeatRecord, PricingBreakdown]:
        tier = parse_tier(tier)
        async with self._store.transaction() as session:
            seat = await session.seats.update_tier(tenant_id, seat_id, tier)
            if seat is None:
                raise SeatNotFoundError(seat_id, tenant_id)
            breakdown = await self._pricing(session, tenant_id)

        logger.info("Seat tier changed", tenant_id=tenant_id, seat_id=seat_id, tier=tier.value)
        return seat, breakdown

    async def remove_seat(self, tenant_id: str, seat_id: str) -> PricingBreakdown:
        async with self._store.transaction() as session:
            seat = await session.seats.get(tenant_id, seat_id)
            if seat is None or seat.status == SeatStatus.REMOVED:
                raise SeatNotFoundError(seat_id, tenant_id)
            if seat.is_owner:
                raise SeatValidationError("The owner's seat cannot be removed", tenant_id)
            await session.seats.mark_removed(tenant_id, seat_id)
            breakdown = await self._pricing(session, tenant_id)

        logger.info(
            "Seat removed", tenant_id=tenant_id, seat_id=seat_id, total_seats=breakdown.total_seats
        )
        return breakdown

    async def sync_billing_safely(self, tenant_id: str) -> dict | None:
        """Background billing push. Failures are logged and left to reconciliation."""
        try:
            return await self._billing_sync.sync_tenant(tenant_id)
        except Exception as e:
            logger.error(
                "Seat billing sync failed",
                tenant_id=tenant_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None


seat_service = SeatService()
