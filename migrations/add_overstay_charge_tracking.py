"""
Add charge tracking fields to storage_overstay_records

Migration to add:
- frozen_days_overdue (days overdue when the penalty was approved or waived)
- consecutive_terminal_failures (drives escalation)
- charge_attempts_at_reopen (retry budget after a manager reopens an escalation)
- pending_idempotency_key (key of an in-flight charge, for crash recovery)
- uq_overstay_active_booking partial unique index (one open case per booking)

Run with: python migrations/add_overstay_charge_tracking.py
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlalchemy import inspect, text  # noqa: E402

from kitchenhub.database import engine  # noqa: E402

TABLE = "storage_overstay_records"

COLUMNS = {
    "frozen_days_overdue": "INTEGER",
    "consecutive_terminal_failures": "INTEGER NOT NULL DEFAULT 0",
    "charge_attempts_at_reopen": "INTEGER NOT NULL DEFAULT 0",
    "pending_idempotency_key": "VARCHAR(120)",
}

ACTIVE_INDEX = (
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_overstay_active_booking "
    f"ON {TABLE} (storage_booking_id) "
    "WHERE status NOT IN ('resolved', 'charge_succeeded', 'penalty_waived')"
)


def upgrade():
    """Add charge tracking fields"""
    existing_columns = {col["name"] for col in inspect(engine).get_columns(TABLE)}

    with engine.connect() as conn:
        for name, ddl in COLUMNS.items():
            if name not in existing_columns:
                conn.execute(text(f"ALTER TABLE {TABLE} ADD COLUMN {name} {ddl}"))
                print(f"✅ Added {name} column")
            else:
                print(f"ℹ️  {name} column already exists")

        conn.execute(text(ACTIVE_INDEX))
        print("✅ Ensured uq_overstay_active_booking index")

        conn.commit()
        print("\n✅ Migration completed successfully!")


def downgrade():
    """Remove charge tracking fields"""
    with engine.connect() as conn:
        conn.execute(text("DROP INDEX IF EXISTS uq_overstay_active_booking"))
        for name in COLUMNS:
            conn.execute(text(f"ALTER TABLE {TABLE} DROP COLUMN IF EXISTS {name}"))
        conn.commit()
        print("✅ Migration rolled back successfully!")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Manage overstay charge tracking migration")
    parser.add_argument("--down", action="store_true", help="Rollback the migration")
    args = parser.parse_args()

    if args.down:
        print("Rolling back migration...")
        downgrade()
    else:
        print("Running migration...")
        upgrade()
