#!/usr/bin/env python3
"""
Window Close Runner
Runs due window closes and the stale-record sweep. Intended for cron,
as a fallback to the in-process timer.

Usage:
    python -m scripts.run_window_close
    python -m scripts.run_window_close --remind <user_id> [<user_id> ...]

Example (every minute):
    * * * * * cd backend && python -m scripts.run_window_close
"""
import sys
import os
import json

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy.orm import Session
from teatime.database import SessionLocal, init_db
from teatime.services.compliance import WindowScheduler


def run(remind_user_ids=None) -> dict:
    """Run one scheduler pass."""
    init_db()

    db: Session = SessionLocal()
    try:
        scheduler = WindowScheduler(db)
        result = {
            "scheduled": scheduler.run_due_transitions(),
            "sweep": scheduler.sweep_stale_submissions(),
        }
        if remind_user_ids:
            result["reminders"] = scheduler.send_reminders(remind_user_ids)
        return result
    finally:
        db.close()


if __name__ == "__main__":
    args = sys.argv[1:]
    user_ids = None
    if args:
        if args[0] != "--remind" or len(args) < 2:
            print(__doc__)
            sys.exit(1)
        user_ids = args[1:]

    print(json.dumps(run(user_ids), indent=2, default=str))
