"""Scheduled maintenance worker (lottery lifecycle + package expiry).

Run this as a background worker service:
  python lottery_worker.py          # loop forever
  python lottery_worker.py --once   # single pass (cron)

Environment:
- DATABASE_URL
- LOTTERY_WORKER_INTERVAL_SECONDS (default 60)
"""

from datetime import datetime
import os
import sys
import time

from extensions import db
from lottery import LotteryActionError, activate_lottery, cancel_lottery, draw_lottery
from models_lottery import LOTTERY_ACTIVE, LOTTERY_UPCOMING, Lottery
from models_users import PACKAGE_FREE, User
from packages import expire_package_if_due
from app import app

INTERVAL = int(os.getenv("LOTTERY_WORKER_INTERVAL_SECONDS", "60"))


def _activate_due(now: datetime) -> int:
    count = 0
    for lottery in Lottery.query.filter(Lottery.status == LOTTERY_UPCOMING, Lottery.start_date <= now).all():
        activate_lottery(lottery)
        app.logger.info("Lottery %s activated", lottery.id)
        count += 1
    return count


def _draw_due(now: datetime) -> int:
    count = 0
    for lottery in Lottery.query.filter(Lottery.status == LOTTERY_ACTIVE, Lottery.draw_date <= now).all():
        try:
            if not lottery.tickets_sold:
                # Nothing sold; nothing to draw or refund.
                cancel_lottery(lottery)
                app.logger.info("Lottery %s cancelled at draw time: no tickets sold", lottery.id)
            else:
                winners = draw_lottery(lottery)
                app.logger.info("Lottery %s drawn: %d winners", lottery.id, len(winners))
            count += 1
        except LotteryActionError as e:
            db.session.rollback()
            app.logger.warning("Lottery %s skipped: %s", lottery.id, e.message)
    return count


def _expire_packages(now: datetime) -> int:
    users = User.query.filter(
        User.package_tier != PACKAGE_FREE,
        User.package_expires_at.isnot(None),
        User.package_expires_at <= now,
    ).all()
    changed = sum(1 for u in users if expire_package_if_due(u, now))
    db.session.commit()
    return changed


def run_once() -> dict:
    now = datetime.utcnow()
    return {
        "activated": _activate_due(now),
        "drawn": _draw_due(now),
        "packages_expired": _expire_packages(now),
    }


def main():
    once = "--once" in sys.argv[1:]
    print("Lottery worker started")
    while True:
        with app.app_context():
            try:
                print(run_once())
            except Exception:
                db.session.rollback()
                app.logger.exception("Worker pass failed")
        if once:
            break
        time.sleep(INTERVAL)


if __name__ == "__main__":
    main()
