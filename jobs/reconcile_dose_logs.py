#!/usr/bin/env python3
"""
Find dose instances that are still pending although a dose log already
exists for them (log written, status update lost) and set their status from
the log. Never writes or edits a log. Intended to run from cron.
Uses NK_DSN env or --dsn.
"""
import argparse
import logging

from app.nk_doses.service import DoseService
from app.nk_doses.store import PgDoseStore


def main(argv=None):
    ap = argparse.ArgumentParser()
    ap.add_argument("--dsn", default=None)
    ap.add_argument(
        "--dry-run", action="store_true", help="list stuck instances, change nothing"
    )
    args = ap.parse_args(argv)
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    store = PgDoseStore(args.dsn)
    if args.dry_run:
        stuck = store.list_stuck_instances()
        for inst, log in stuck:
            outcome = "given" if log.was_given else "skipped"
            print(f"{inst.id} due={inst.due_datetime.isoformat()} log={log.id} -> {outcome}")
        print(f"reconcile_dose_logs: {len(stuck)} stuck instances (dry run)")
        return len(stuck)

    n = DoseService(store).repair_all()
    print(f"reconcile_dose_logs: repaired {n} stuck instances")
    return n


if __name__ == "__main__":
    main()
