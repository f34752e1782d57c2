"""Vehicle-scoped write lock for check-then-write sequences."""
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from common.errors import Conflict, NotFound
from common.models import Vehicle

logger = logging.getLogger(__name__)


def lock_vehicle(db: Session, vehicle_id: int) -> None:
    """Serialize writers of one vehicle's busy set until the transaction ends.

    Bumping ``lock_version`` takes a row lock on PostgreSQL and the database
    write lock on SQLite; plain reads are never blocked by it. The busy set
    must be re-read after this call, inside the same transaction.
    """
    result = db.execute(
        update(Vehicle)
        .where(Vehicle.id == vehicle_id)
        .values(lock_version=Vehicle.lock_version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        raise NotFound("Vehicle not found")


@contextmanager
def vehicle_locked(db: Session, vehicle_id: int) -> Iterator[None]:
    """Hold the vehicle lock for the enclosed block.

    A lock wait that times out, or a commit refused by the database, rolls the
    transaction back and surfaces as a retryable ``Conflict``.
    """
    try:
        lock_vehicle(db, vehicle_id)
        yield
    except OperationalError as exc:
        db.rollback()
        logger.warning("Write on vehicle %s gave up waiting for the lock: %s", vehicle_id, exc.orig)
        raise Conflict("Vehicle is being updated, please retry") from exc
