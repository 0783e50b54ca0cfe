"""
Repair report statuses that drifted from their assignments.

Usage:
  python scripts/reconcile_reports.py
"""

from safetyhub.db import SessionLocal
from safetyhub.logging import setup_logging
from safetyhub.services.lifecycle import reconcile_all


def main():
    setup_logging()
    db = SessionLocal()
    try:
        repaired = reconcile_all(db)
        print(f"Reconciled {len(repaired)} report(s)")
        for report_id in repaired:
            print(f"  {report_id}")
    finally:
        db.close()


if __name__ == "__main__":
    main()
