import logging

import stripe
from fastapi import FastAPI, Request, Header, HTTPException

from ledger.cache import TTLCache
from ledger.config import cache_max_entries, cache_ttl_seconds, log_level
from ledger.database import Base, engine, SessionLocal
from ledger.ingest import (
    OrderCreated,
    PayoutConfirmed,
    Rejected,
    ReversalRecorded,
    StatusUpdated,
    handle_provider_event,
)
from ledger.routes import router
from ledger.stripe_service import construct_event

logging.basicConfig(
    level=log_level(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

LEDGER_WRITES = (OrderCreated, StatusUpdated, PayoutConfirmed, ReversalRecorded)

app = FastAPI(title="Marketplace Payment Ledger")

app.include_router(router)
app.state.summary_cache = TTLCache(cache_ttl_seconds(), max_entries=cache_max_entries())

Base.metadata.create_all(bind=engine)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = construct_event(payload, stripe_signature)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")
    except stripe.SignatureVerificationError:
        raise HTTPException(status_code=400, detail="Invalid signature")

    db = SessionLocal()
    try:
        outcome = handle_provider_event(db, event)
    finally:
        db.close()

    if isinstance(outcome, Rejected):
        raise HTTPException(status_code=400, detail=outcome.reason)
    if isinstance(outcome, LEDGER_WRITES):
        request.app.state.summary_cache.invalidate()
    logger.info("webhook %s -> %s", event["type"], outcome)
    return {"received": True}
