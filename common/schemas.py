"""Pydantic schemas shared across the services."""
from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import AwareDatetime, BaseModel, Field

from .models import BookingStatus, VehicleStatus


class SchedulingPolicy(BaseModel):
    buffer_hours: int = Field(0, ge=0, description="Turnover gap kept before and after every booking")
    min_notice_hours: int = Field(0, ge=0, description="Lead time between the request and the booking start")
    buffer_applies_to_blackouts: bool = False


class PolicyRead(SchedulingPolicy):
    vehicle_id: int


class VehicleCreate(SchedulingPolicy):
    name: str = Field(..., min_length=1, max_length=100)


class VehicleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    status: Optional[VehicleStatus] = None


class VehicleRead(SchedulingPolicy):
    id: int
    owner_id: int
    name: str
    status: VehicleStatus

    model_config = {"from_attributes": True}


class BlackoutCreate(BaseModel):
    start_time: AwareDatetime
    end_time: AwareDatetime
    reason: Optional[str] = Field(None, max_length=255)


class BlackoutRead(BaseModel):
    id: int
    vehicle_id: int
    start_time: datetime
    end_time: datetime
    reason: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}


class BookingCreate(BaseModel):
    vehicle_id: int
    start_time: AwareDatetime
    end_time: AwareDatetime


class BookingRead(BaseModel):
    id: int
    vehicle_id: int
    renter_id: int
    start_time: datetime
    end_time: datetime
    status: BookingStatus
    expires_at: Optional[datetime]
    created_at: datetime
    cancelled_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class BookingCancel(BaseModel):
    reason: Optional[str] = Field(None, max_length=255)


class BookingStatusUpdate(BaseModel):
    status: Literal["confirmed", "active", "completed"]


class IntervalRead(BaseModel):
    start: datetime
    end: datetime

    model_config = {"from_attributes": True}


class BusyIntervalRead(IntervalRead):
    kind: Literal["booking", "blackout", "notice"]


class AvailabilityRead(BaseModel):
    vehicle_id: int
    start: datetime
    end: datetime
    free: List[IntervalRead]
    busy: List[BusyIntervalRead]

    model_config = {"from_attributes": True}
