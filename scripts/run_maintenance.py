"""
Periodic housekeeping, meant to be run from cron or a scheduler:

  * expire lapsed waitlist offers (and re-offer their seats),
  * mark past bookings completed,
  * send reminders for tomorrow's bookings.
"""

import argparse
import logging
import os
from datetime import datetime, timedelta, timezone

from src.application.booking_service import BookingService
from src.application.side_effects import CompositeDispatcher, LoggingDispatcher, OutboxDispatcher
from src.application.waitlist_service import WaitlistService
from src.infrastructure.db.session import SessionLocal, get_db_session, wait_for_database


logger = logging.getLogger("maintenance")


def run(skip_reminders: bool = False) -> dict:
    dispatcher = CompositeDispatcher([LoggingDispatcher(), OutboxDispatcher(SessionLocal)])
    today = datetime.now(timezone.utc).date()
    tomorrow = today + timedelta(days=1)

    with get_db_session() as db:
        bookings = BookingService(db, dispatcher=dispatcher)
        waitlist = WaitlistService(db, dispatcher=dispatcher, booking_service=bookings)

        summary = {
            "expired_offers": len(waitlist.expire_offers()),
            "completed_bookings": bookings.complete_past_bookings(today.isoformat()),
            "reminders_sent": 0,
        }
        if not skip_reminders:
            summary["reminders_sent"] = bookings.send_reminders(tomorrow.isoformat())

    logger.info("Maintenance finished: %s", summary)
    return summary


def main() -> None:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    parser = argparse.ArgumentParser(description="Booking core housekeeping")
    parser.add_argument("--skip-reminders", action="store_true")
    args = parser.parse_args()
    wait_for_database()
    run(skip_reminders=args.skip_reminders)


if __name__ == "__main__":
    main()
