#!/usr/bin/env python3
"""Add the PostgreSQL-only indexes and the overlap exclusion constraint.

The constraint rejects two confirmed/active/completed bookings of one vehicle
whose raw ranges overlap. Buffers stay an application rule because they change
with the vehicle's policy. tsrange '[)' matches the half-open interval check.
"""
from sqlalchemy import create_engine, text

from common.config import get_settings

STATEMENTS = [
    "CREATE EXTENSION IF NOT EXISTS btree_gist;",
    "CREATE INDEX IF NOT EXISTS idx_bookings_renter_id ON bookings (renter_id);",
    "CREATE INDEX IF NOT EXISTS idx_bookings_pending_expiry ON bookings (expires_at) WHERE status = 'pending';",
    """
    DO $$
    BEGIN
        IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'no_vehicle_booking_overlap') THEN
            ALTER TABLE bookings ADD CONSTRAINT no_vehicle_booking_overlap
                EXCLUDE USING gist (vehicle_id WITH =, tsrange(start_time, end_time, '[)') WITH &&)
                WHERE (status IN ('confirmed', 'active', 'completed'));
        END IF;
    END $$;
    """,
]


def add_indexes(database_url: str) -> None:
    engine = create_engine(database_url)
    if engine.dialect.name != "postgresql":
        print(f"Skipping: {engine.dialect.name} has no exclusion constraints.")
        return
    with engine.begin() as conn:
        for statement in STATEMENTS:
            conn.execute(text(statement))
    print("Indexes and overlap constraint added successfully.")


if __name__ == "__main__":
    add_indexes(get_settings().database_url)
