#!/usr/bin/env python3
"""Cancel pending bookings whose hold has lapsed; meant to run from cron."""
import logging

from common.database import SessionLocal
from common.events import booking_event, publish_event
from common.models import utcnow
from scheduling.admission import expire_stale_holds


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    db = SessionLocal()
    try:
        expired = expire_stale_holds(db, utcnow())
        for booking in expired:
            publish_event(booking_event("booking_expired", booking))
    finally:
        db.close()
    print(f"Expired {len(expired)} pending holds.")
    return len(expired)


if __name__ == "__main__":
    main()
