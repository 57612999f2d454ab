"""
Team seat and pricing routes.

Seat mutations answer with the recomputed price straight away; the Stripe
update is scheduled as a background task and can fail without affecting
the response.
"""

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, status

from app.auth.verify import tenant_dependency
from app.infrastructure.observability.logging import get_logger
from app.models.api.seat_request import AddSeatRequest, UpdateSeatTierRequest
from app.models.api.seat_response import (
    PricingResponse,
    SeatListResponse,
    SeatMutationResponse,
    SeatResponse,
)
from app.models.domain.billing_domain import Tier
from app.models.domain.errors import SeatNotFoundError, SeatValidationError
from app.services.billing.pricing import price
from app.services.billing.retention_service import RetentionService, retention_service
from app.services.billing.seat_service import SeatService, seat_service

logger = get_logger(__name__)

router = APIRouter(tags=["team"])


def get_seat_service() -> SeatService:
    return seat_service


def get_retention_service() -> RetentionService:
    return retention_service


def _seat_error(error: Exception) -> HTTPException:
    if isinstance(error, SeatNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))


@router.get("/team/seats", response_model=SeatListResponse)
async def list_seats(
    tenant_id: str = Depends(tenant_dependency),
    seats: SeatService = Depends(get_seat_service),
):
    records, breakdown = await seats.list_seats(tenant_id)
    return SeatListResponse(
        seats=[SeatResponse.from_seat(seat) for seat in records],
        pricing=PricingResponse.from_breakdown(breakdown),
    )


@router.post("/team/seats", response_model=SeatMutationResponse, status_code=status.HTTP_201_CREATED)
async def add_seat(
    request: AddSeatRequest,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(tenant_dependency),
    seats: SeatService = Depends(get_seat_service),
):
    try:
        seat, breakdown = await seats.add_seat(
            tenant_id, request.tier, email=request.email, member_id=request.member_id
        )
    except (SeatValidationError, SeatNotFoundError) as e:
        raise _seat_error(e) from e

    background_tasks.add_task(seats.sync_billing_safely, tenant_id)
    return SeatMutationResponse(
        seat=SeatResponse.from_seat(seat), pricing=PricingResponse.from_breakdown(breakdown)
    )


@router.patch("/team/seats/{seat_id}", response_model=SeatMutationResponse)
async def update_seat_tier(
    seat_id: str,
    request: UpdateSeatTierRequest,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(tenant_dependency),
    seats: SeatService = Depends(get_seat_service),
):
    try:
        seat, breakdown = await seats.update_seat_tier(tenant_id, seat_id, request.tier)
    except (SeatValidationError, SeatNotFoundError) as e:
        raise _seat_error(e) from e

    background_tasks.add_task(seats.sync_billing_safely, tenant_id)
    return SeatMutationResponse(
        seat=SeatResponse.from_seat(seat), pricing=PricingResponse.from_breakdown(breakdown)
    )


@router.delete("/team/seats/{seat_id}", response_model=SeatMutationResponse)
async def remove_seat(
    seat_id: str,
    background_tasks: BackgroundTasks,
    tenant_id: str = Depends(tenant_dependency),
    seats: SeatService = Depends(get_seat_service),
):
    try:
        breakdown = await seats.remove_seat(tenant_id, seat_id)
    except (SeatValidationError, SeatNotFoundError) as e:
        raise _seat_error(e) from e

    background_tasks.add_task(seats.sync_billing_safely, tenant_id)
    return SeatMutationResponse(pricing=PricingResponse.from_breakdown(breakdown))


@router.get("/pricing/preview", response_model=PricingResponse)
async def pricing_preview(
    basic: int = Query(0, ge=0, le=10_000),
    advanced: int = Query(0, ge=0, le=10_000),
    elite: int = Query(0, ge=0, le=10_000),
):
    """Price a hypothetical seat mix. No authentication, no I/O."""
    breakdown = price({Tier.BASIC: basic, Tier.ADVANCED: advanced, Tier.ELITE: elite})
    return PricingResponse.from_breakdown(breakdown)


@router.get("/billing/retention")
async def retention_status(
    tenant_id: str = Depends(tenant_dependency),
    retention: RetentionService = Depends(get_retention_service),
):
    """Retention window banner data for a lapsed tenant."""
    return await retention.get_status(tenant_id)
