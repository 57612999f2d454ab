# app/models/api/seat_response.py
"""
Team seat and pricing API response models.
Amounts are decimal strings so no float rounding reaches the client.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from app.models.domain.billing_domain import PricingBreakdown, SeatRecord


class TierLineResponse(BaseModel):
    count: int
    unit_price: str
    subtotal: str


class PricingResponse(BaseModel):
    total_seats: int
    per_tier: dict[str, TierLineResponse]
    discount_percent: str = Field(..., description="Fraction, e.g. 0.10")
    list_subtotal: str
    discount_amount: str
    final_total: str

    @classmethod
    def from_breakdown(cls, breakdown: PricingBreakdown) -> "PricingResponse":
        return cls(**breakdown.to_dict())


class SeatResponse(BaseModel):
    id: str
    tier: str
    status: str
    email: str | None = None
    member_id: str | None = None
    is_owner: bool = False
    created_at: datetime | None = None

    @classmethod
    def from_seat(cls, seat: SeatRecord) -> "SeatResponse":
        return cls(
            id=seat.id,
            tier=seat.tier.value,
            status=seat.status.value,
            email=seat.email,
            member_id=seat.member_id,
            is_owner=seat.is_owner,
            created_at=seat.created_at,
        )


class SeatListResponse(BaseModel):
    seats: list[SeatResponse]
    pricing: PricingResponse


class SeatMutationResponse(BaseModel):
    seat: SeatResponse | None = None
    pricing: PricingResponse
    billing_sync_scheduled: bool = True
