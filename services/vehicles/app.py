from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from common.app_factory import create_service_app, limiter
from common.auth import Principal
from common.database import get_db
from common.dependencies import allow_roles, get_current_principal, get_now
from common.events import blackout_event, publish_event
from common.models import BlackoutPeriod, Booking, RoleEnum, Vehicle
from common.schemas import (
    BlackoutCreate,
    BlackoutRead,
    BookingRead,
    PolicyRead,
    SchedulingPolicy,
    VehicleCreate,
    VehicleRead,
    VehicleUpdate,
)
from scheduling import blackouts, cache, policy
from scheduling.policy import ensure_owner, get_vehicle

app = create_service_app(
    "Vehicles Service",
    "vehicles",
    description="Vehicle registry, scheduling policy and owner blackout periods",
)


def _policy_read(vehicle_id: int, current: policy.Policy) -> PolicyRead:
    return PolicyRead(
        vehicle_id=vehicle_id,
        buffer_hours=current.buffer_hours,
        min_notice_hours=current.min_notice_hours,
        buffer_applies_to_blackouts=current.buffer_applies_to_blackouts,
    )


@app.post("/vehicles", response_model=VehicleRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def register_vehicle(
    request: Request,
    vehicle_in: VehicleCreate,
    principal: Principal = Depends(allow_roles(RoleEnum.OWNER, RoleEnum.ADMIN)),
    db: Session = Depends(get_db),
) -> Vehicle:
    vehicle = Vehicle(owner_id=principal.user_id, **vehicle_in.model_dump())
    db.add(vehicle)
    db.commit()
    db.refresh(vehicle)
    return vehicle


@app.get("/vehicles/{vehicle_id}", response_model=VehicleRead)
@limiter.limit("60/minute")
def read_vehicle(request: Request, vehicle_id: int, db: Session = Depends(get_db)) -> Vehicle:
    return get_vehicle(db, vehicle_id)


@app.put("/vehicles/{vehicle_id}", response_model=VehicleRead)
@limiter.limit("15/minute")
def update_vehicle(
    request: Request,
    vehicle_id: int,
    vehicle_update: VehicleUpdate,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Vehicle:
    vehicle = get_vehicle(db, vehicle_id)
    ensure_owner(vehicle, principal)
    for key, value in vehicle_update.model_dump(exclude_unset=True, mode="json").items():
        setattr(vehicle, key, value)
    db.commit()
    db.refresh(vehicle)
    cache.invalidate_vehicle(vehicle_id)
    return vehicle


@app.get("/vehicles/{vehicle_id}/scheduling", response_model=PolicyRead)
@limiter.limit("60/minute")
def read_scheduling(request: Request, vehicle_id: int, db: Session = Depends(get_db)) -> PolicyRead:
    return _policy_read(vehicle_id, policy.get(db, vehicle_id))


@app.put("/vehicles/{vehicle_id}/scheduling", response_model=PolicyRead)
@limiter.limit("15/minute")
def update_scheduling(
    request: Request,
    vehicle_id: int,
    policy_in: SchedulingPolicy,
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> PolicyRead:
    return _policy_read(vehicle_id, policy.update(db, vehicle_id, policy_in, principal, now))


@app.get("/vehicles/{vehicle_id}/blackouts", response_model=List[BlackoutRead])
@limiter.limit("60/minute")
def list_blackouts(
    request: Request,
    vehicle_id: int,
    start: datetime = Query(...),
    end: datetime = Query(...),
    db: Session = Depends(get_db),
) -> List[BlackoutPeriod]:
    return blackouts.list_periods(db, vehicle_id, start, end)


@app.post("/vehicles/{vehicle_id}/blackouts", response_model=BlackoutRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def create_blackout(
    request: Request,
    vehicle_id: int,
    blackout_in: BlackoutCreate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> BlackoutPeriod:
    ensure_owner(get_vehicle(db, vehicle_id), principal)
    blackout = blackouts.create(db, vehicle_id, blackout_in.start_time, blackout_in.end_time, blackout_in.reason, now)
    background_tasks.add_task(publish_event, blackout_event("blackout_created", blackout))
    return blackout


@app.delete("/vehicles/{vehicle_id}/blackouts/{blackout_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("20/minute")
def delete_blackout(
    request: Request,
    vehicle_id: int,
    blackout_id: int,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> None:
    ensure_owner(get_vehicle(db, vehicle_id), principal)
    removed = blackouts.delete(db, blackout_id, vehicle_id=vehicle_id)
    if removed is not None:
        background_tasks.add_task(publish_event, blackout_event("blackout_deleted", removed))


@app.get("/vehicles/{vehicle_id}/bookings", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_vehicle_bookings(
    request: Request,
    vehicle_id: int,
    booking_status: Optional[str] = Query(None, alias="status"),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> List[Booking]:
    ensure_owner(get_vehicle(db, vehicle_id), principal)
    stmt = select(Booking).where(Booking.vehicle_id == vehicle_id).order_by(Booking.start_time)
    if booking_status:
        stmt = stmt.where(Booking.status == booking_status)
    return list(db.scalars(stmt))
