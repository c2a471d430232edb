"""
Seed the default Day Shift (06:00-18:00) and Night Shift (18:00-06:00).

Usage:
  python scripts/seed_default_shifts.py

This script is idempotent: existing shifts with the same name are left alone.
"""

import sys
import os

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from patrolhub.db import Base, SessionLocal, engine
from patrolhub.models.models import Shift
from patrolhub.services.shift_window import DEFAULT_SHIFTS, parse_time_of_day


def seed_default_shifts():
    """Create any default shift that does not exist yet"""
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        for default in DEFAULT_SHIFTS:
            if db.query(Shift).filter(Shift.name == default["name"]).first():
                print(f"Shift already exists: {default['name']}")
                continue
            db.add(Shift(
                name=default["name"],
                start_time=parse_time_of_day(default["start_time"], "start_time"),
                end_time=parse_time_of_day(default["end_time"], "end_time"),
                color_code=default["color_code"],
                description=default["description"],
                is_active=True,
            ))
            print(f"Created shift: {default['name']} ({default['start_time']} - {default['end_time']})")
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    seed_default_shifts()
