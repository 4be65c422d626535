"""Cron entry points for periodic ledger work."""
from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone


def _parse_cutoff(raw: str):
    if not raw:
        return None
    cutoff = datetime.fromisoformat(raw)
    if cutoff.tzinfo is None:
        cutoff = cutoff.replace(tzinfo=timezone.utc)
    return cutoff


def collect_fees_main(argv=None):
    parser = argparse.ArgumentParser(description="Collect platform fees and delivery cuts that are due.")
    parser.add_argument("--cutoff", default="", help="Only collect records at or before this ISO-8601 instant.")
    args = parser.parse_args(argv)

    from ledger.database import Base, SessionLocal, engine
    from ledger.writer import collect_fees

    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        result = collect_fees(db, cutoff=_parse_cutoff(args.cutoff))
    finally:
        db.close()

    print(json.dumps(result.to_dict(), indent=2))
    return 0


def process_outbox_main(argv=None):
    parser = argparse.ArgumentParser(description="Dispatch pending post-commit ledger events.")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args(argv)

    from ledger.database import Base, SessionLocal, engine
    from ledger.outbox import process_outbox

    logging.basicConfig(level=logging.INFO)
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        run = process_outbox(db, limit=args.limit)
    finally:
        db.close()

    print(json.dumps(run.to_dict(), indent=2))
    return 0 if run.failed == 0 else 2


if __name__ == "__main__":
    sys.exit(collect_fees_main())
