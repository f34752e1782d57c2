from datetime import datetime
from typing import List, Optional

from fastapi import BackgroundTasks, Depends, Query, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from common.app_factory import create_service_app, limiter
from common.auth import Principal
from common.database import get_db
from common.dependencies import allow_roles, get_current_principal, get_now
from common.errors import Forbidden
from common.events import booking_event, publish_event
from common.models import TERMINAL_STATUSES, Booking, BookingStatus, RoleEnum
from common.schemas import AvailabilityRead, BookingCancel, BookingCreate, BookingRead, BookingStatusUpdate
from scheduling import admission
from scheduling.availability import get_availability
from scheduling.policy import ensure_owner, get_vehicle

app = create_service_app(
    "Bookings Service",
    "bookings",
    description="Vehicle availability, reservation admission and booking lifecycle",
)


def _ensure_party(db: Session, booking: Booking, principal: Principal) -> None:
    """Renter, vehicle owner or admin."""
    if booking.renter_id == principal.user_id:
        return
    ensure_owner(get_vehicle(db, booking.vehicle_id), principal)


@app.get("/bookings/availability", response_model=AvailabilityRead)
@limiter.limit("60/minute")
def check_availability(
    request: Request,
    vehicle_id: int,
    start: datetime = Query(...),
    end: datetime = Query(...),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> AvailabilityRead:
    return AvailabilityRead.model_validate(get_availability(db, vehicle_id, start, end, now))


@app.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
@limiter.limit("20/minute")
def reserve_booking(
    request: Request,
    booking_in: BookingCreate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> Booking:
    booking = admission.reserve(
        db,
        booking_in.vehicle_id,
        principal.user_id,
        booking_in.start_time,
        booking_in.end_time,
        now,
    )
    background_tasks.add_task(publish_event, booking_event("booking_created", booking))
    return booking


@app.get("/bookings/me", response_model=List[BookingRead])
@limiter.limit("30/minute")
def list_my_bookings(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> List[Booking]:
    stmt = select(Booking).where(Booking.renter_id == principal.user_id).order_by(Booking.start_time.desc())
    return list(db.scalars(stmt))


@app.post("/bookings/expire-holds", response_model=List[BookingRead])
@limiter.limit("5/minute")
def expire_holds(
    request: Request,
    background_tasks: BackgroundTasks,
    _: Principal = Depends(allow_roles(RoleEnum.ADMIN)),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> List[Booking]:
    expired = admission.expire_stale_holds(db, now)
    for booking in expired:
        background_tasks.add_task(publish_event, booking_event("booking_expired", booking))
    return expired


@app.get("/bookings/{booking_id}", response_model=BookingRead)
@limiter.limit("60/minute")
def read_booking(
    request: Request,
    booking_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
) -> Booking:
    booking = admission.get_booking(db, booking_id)
    _ensure_party(db, booking, principal)
    return booking


@app.post("/bookings/{booking_id}/cancel", response_model=BookingRead)
@limiter.limit("20/minute")
def cancel_booking(
    request: Request,
    booking_id: int,
    background_tasks: BackgroundTasks,
    cancel_in: Optional[BookingCancel] = None,
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> Booking:
    booking = admission.get_booking(db, booking_id)
    _ensure_party(db, booking, principal)
    already_final = BookingStatus(booking.status) in TERMINAL_STATUSES

    booking = admission.cancel(db, booking_id, now, reason=cancel_in.reason if cancel_in else None)
    if not already_final and booking.status == BookingStatus.CANCELLED.value:
        background_tasks.add_task(publish_event, booking_event("booking_cancelled", booking))
    return booking


@app.post("/bookings/{booking_id}/status", response_model=BookingRead)
@limiter.limit("20/minute")
def change_status(
    request: Request,
    booking_id: int,
    status_in: BookingStatusUpdate,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_current_principal),
    now: datetime = Depends(get_now),
    db: Session = Depends(get_db),
) -> Booking:
    booking = admission.get_booking(db, booking_id)
    vehicle = get_vehicle(db, booking.vehicle_id)
    if vehicle.owner_id != principal.user_id and not principal.is_admin:
        raise Forbidden("Only the vehicle owner may advance a booking")
    previous = booking.status

    booking = admission.transition(db, booking_id, BookingStatus(status_in.status), now)
    if booking.status != previous:
        background_tasks.add_task(
            publish_event, booking_event("booking_status_changed", booking, previous_status=previous)
        )
    return booking
