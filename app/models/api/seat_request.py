# app/models/api/seat_request.py
"""
Team seat API request models.
"""

from pydantic import BaseModel, Field


class AddSeatRequest(BaseModel):
    tier: str = Field(..., description="basic, advanced or elite")
    email: str | None = Field(None, description="Invite email for a pending seat")
    member_id: str | None = Field(None, description="Existing member for an active seat")


class UpdateSeatTierRequest(BaseModel):
    tier: str = Field(..., description="basic, advanced or elite")
