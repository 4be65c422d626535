"""Post-commit side effects for ledger writes.

Ledger writes append an ``OutboxEvent`` in the same database transaction.
A separate worker (``process_outbox``) hands pending events to a handler, so a
failing notification can neither roll back nor block the write that caused it.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Callable

from sqlalchemy import update

from ledger.models import OutboxEvent, OutboxStatus, utcnow

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


def _encode(payload: dict) -> str:
    return json.dumps(payload or {}, separators=(",", ":"), sort_keys=True, default=str)


def enqueue(db, topic: str, payload: dict) -> OutboxEvent:
    """Add an event to the current session; the caller owns the commit."""
    event = OutboxEvent(topic=topic, payload_json=_encode(payload), status=OutboxStatus.PENDING.value)
    db.add(event)
    return event


@dataclass
class OutboxRun:
    dispatched: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self):
        return {"dispatched": self.dispatched, "failed": self.failed, "skipped": self.skipped}


def log_handler(topic: str, payload: dict) -> None:
    logger.info("outbox event %s: %s", topic, payload)


def _claim(db, event_id: int, attempts: int) -> bool:
    result = db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id == event_id, OutboxEvent.attempts == attempts)
        .where(OutboxEvent.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]))
        .values(attempts=attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def process_outbox(db, handler: Callable[[str, dict], None] = log_handler, limit: int = 100) -> OutboxRun:
    run = OutboxRun()
    rows = (
        db.query(OutboxEvent.id, OutboxEvent.topic, OutboxEvent.payload_json, OutboxEvent.attempts)
        .filter(OutboxEvent.status.in_([OutboxStatus.PENDING.value, OutboxStatus.FAILED.value]))
        .filter(OutboxEvent.attempts < MAX_ATTEMPTS)
        .order_by(OutboxEvent.id.asc())
        .limit(int(limit))
        .all()
    )

    for event_id, topic, payload_json, attempts in rows:
        # Another worker got there first.
        if not _claim(db, event_id, attempts):
            run.skipped += 1
            continue
        try:
            handler(topic, json.loads(payload_json))
        except Exception as exc:
            logger.warning("outbox event %s (%s) failed: %s", event_id, topic, exc)
            db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == event_id)
                .values(status=OutboxStatus.FAILED.value, last_error=str(exc)[:1000])
                .execution_options(synchronize_session=False)
            )
            db.commit()
            run.failed += 1
            continue
        db.execute(
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .values(status=OutboxStatus.DISPATCHED.value, dispatched_at=utcnow(), last_error=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        run.dispatched += 1

    return run
