#!/usr/bin/env python3
"""
Schema runner for the billing tables

Usage:
    python run_migration.py up    # Create missing tables
    python run_migration.py check # Report which billing tables exist
    python run_migration.py seed  # Upsert the Free/Lite/Pro plan catalog
"""

import sys
from pathlib import Path

# Add app directory to path
sys.path.insert(0, str(Path(__file__).parent / "studioapp"))

from sqlalchemy import func, inspect, select
from sqlalchemy.exc import SQLAlchemyError

from studio import create_app, db

BILLING_TABLES = (
    "users",
    "subscription_plans",
    "subscriptions",
    "invoices",
    "payments",
    "stripe_events",
)


def check_tables(app=None):
    """Print existence and row count of each billing table."""
    app = app or create_app()
    with app.app_context():
        existing = set(inspect(db.engine).get_table_names())
        all_present = True
        for name in BILLING_TABLES:
            if name in existing:
                table = db.metadata.tables[name]
                rows = db.session.execute(select(func.count()).select_from(table)).scalar()
                print(f"✅ {name}: {rows} rows")
            else:
                all_present = False
                print(f"❌ {name}: missing")
        return all_present


def run_up():
    """Create any tables that do not exist yet (existing tables are left alone)."""
    print("Creating missing billing tables...")
    app = create_app()
    with app.app_context():
        try:
            db.create_all()
            print("✅ Tables created")
        except SQLAlchemyError as e:
            print(f"❌ Migration failed: {e}")
            return False
    return check_tables(app)


def run_seed():
    from studio.services.plans import seed_subscription_plans
    from studio.errors import BillingError

    app = create_app()
    with app.app_context():
        try:
            result = seed_subscription_plans()
        except BillingError as e:
            print(f"❌ Seeding failed: {e}")
            return False
    print(f"✅ Plans created: {', '.join(result['created']) or 'none (already present)'}")
    return True


def main():
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    command = sys.argv[1].lower()

    if command == "up":
        success = run_up()
    elif command == "check":
        success = check_tables()
    elif command == "seed":
        success = run_seed()
    else:
        print(f"❌ Unknown command: {command}")
        print(__doc__)
        sys.exit(1)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
