#!/usr/bin/env python3
"""
Run the overstay detection sweep once, outside the API scheduler.

Usage: run_overstay_detection.py [YYYY-MM-DD]
"""
import sys
import os
import logging
from datetime import date

# Add the project root to the Python path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from overstay_engine.core.database import SessionLocal
from overstay_engine.services.overstay_detection_service import OverstayDetectionService

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

def run_overstay_detection(run_date=None):
    """Detect overstays as of run_date (defaults to today in OVERSTAY_TIMEZONE)"""
    db = SessionLocal()

    try:
        results = OverstayDetectionService.detect_overstays(db, today=run_date)

        if not results:
            print("No overstayed bookings found")
            return

        print(f"Processed {len(results)} overstayed bookings:")
        for result in results:
            print(
                f"  booking {result.booking_id}: record {result.overstay_record_id}, "
                f"{result.days_overdue} days overdue, {result.status}, "
                f"penalty ${result.calculated_penalty_cents / 100:.2f}"
            )
    except Exception as e:
        print(f"Error: {str(e)}")
        db.rollback()
        sys.exit(1)
    finally:
        db.close()

if __name__ == "__main__":
    run_date = date.fromisoformat(sys.argv[1]) if len(sys.argv) > 1 else None
    run_overstay_detection(run_date)
