from __future__ import annotations
import argparse
import logging
import os
import time

from app.db import SessionLocal
from app.services.aggregates import get_writer
from app.services.exceptions import ItemNotFound
from app.services.reconciliation import find_drift, recompute_all, recompute_one


def sweep(writer_name: str | None = None, dry_run: bool = False) -> int:
    with SessionLocal() as db:
        if dry_run:
            drifted = find_drift(db)
            for d in drifted:
                print(
                    f"• item #{d.item_id}: stored {d.stored.count}/{d.stored.average} "
                    f"-> actual {d.actual.count}/{d.actual.average}"
                )
            print(f"Drift check complete — drifted: {len(drifted)}")
            return len(drifted)

        report = recompute_all(db, writer=get_writer(writer_name))
        for err in report.errors:
            print(f"• item #{err['item_id']} failed: {err['error']}")
        print(
            f"Recompute complete — updated: {report.updated}, "
            f"skipped: {report.skipped}, errors: {len(report.errors)}"
        )
        return len(report.errors)


def recompute_item(item_id: int, writer_name: str | None = None) -> int:
    with SessionLocal() as db:
        try:
            agg = recompute_one(db, item_id, writer=get_writer(writer_name))
        except ItemNotFound as e:
            print(str(e))
            return 1
    print(f"Item #{item_id} — count: {agg.count}, average: {agg.average}")
    return 0


if __name__ == "__main__":
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
    ap = argparse.ArgumentParser(description="Rebuild item rating aggregates from review rows")
    ap.add_argument("--item-id", type=int, default=None, help="Recompute a single item")
    ap.add_argument("--writer", choices=["lock", "statement"], default=None)
    ap.add_argument("--dry-run", action="store_true", help="Only report items whose aggregate drifted")
    ap.add_argument("--interval", type=float, default=0.0, help="Repeat the sweep every N seconds")
    args = ap.parse_args()

    if args.item_id is not None:
        raise SystemExit(recompute_item(args.item_id, args.writer))

    while True:
        failures = sweep(args.writer, dry_run=args.dry_run)
        if args.interval <= 0:
            raise SystemExit(1 if failures and not args.dry_run else 0)
        time.sleep(args.interval)
