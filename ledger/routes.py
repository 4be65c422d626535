import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError

from ledger.auth import ensure_self_or_operator, require_operator, verify_token
from ledger.database import SessionLocal
from ledger.errors import (
    DisbursementError,
    InvalidTransition,
    InvariantViolation,
    PayoutBelowMinimum,
    ReferenceConflict,
    TransactionNotFound,
)
from ledger.models import DeliveryOrder, Order
from ledger.modes import current_mode
from ledger.outbox import process_outbox
from ledger.reader import (
    ReconciliationFilter,
    empty_page,
    empty_summary,
    financial_summary,
    list_payouts,
    list_refunds,
    list_transactions,
)
from ledger.schemas import (
    CollectFeesRequest,
    DeliveryStatusRequest,
    PayoutRequest,
    RefundRequest,
    SellerPayoutRequest,
)
from ledger.stripe_service import get_dispatcher
from ledger.writer import (
    collect_fees,
    fee_collection_history,
    record_payout,
    record_refund,
    request_seller_payout,
    seller_balance,
    transition_delivery,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def reconciliation_filter(
    user_id: Optional[str] = Query(None, alias="userId"),
    seller_id: Optional[str] = Query(None, alias="sellerId"),
    buyer_id: Optional[str] = Query(None, alias="buyerId"),
    date_from: Optional[datetime] = Query(None, alias="dateFrom"),
    date_to: Optional[datetime] = Query(None, alias="dateTo"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    return ReconciliationFilter(
        user_id=user_id,
        seller_id=seller_id,
        buyer_id=buyer_id,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )


def _invalidate_summary(request: Request):
    cache = getattr(request.app.state, "summary_cache", None)
    if cache is not None:
        cache.invalidate()


def _read_page(reader, filters: ReconciliationFilter):
    db = SessionLocal()
    try:
        return reader(db, filters).to_dict()
    except SQLAlchemyError:
        logger.exception("%s failed, serving empty page", reader.__name__)
        return empty_page(filters).to_dict()
    finally:
        db.close()


@router.get("/transactions")
def get_transactions(filters: ReconciliationFilter = Depends(reconciliation_filter), auth=Depends(verify_token)):
    return _read_page(list_transactions, filters)


@router.get("/payouts")
def get_payouts(filters: ReconciliationFilter = Depends(reconciliation_filter), auth=Depends(verify_token)):
    return _read_page(list_payouts, filters)


@router.get("/refunds")
def get_refunds(filters: ReconciliationFilter = Depends(reconciliation_filter), auth=Depends(verify_token)):
    return _read_page(list_refunds, filters)


@router.get("/admin/financial")
def get_financial_summary(request: Request, auth=Depends(require_operator)):
    db = SessionLocal()
    try:
        return financial_summary(db, cache=getattr(request.app.state, "summary_cache", None))
    except SQLAlchemyError:
        logger.exception("financial summary failed, serving zeroed aggregates")
        return empty_summary(current_mode())
    finally:
        db.close()


@router.post("/admin/fees/collect")
def post_collect_fees(
    request: Request,
    body: Optional[CollectFeesRequest] = None,
    auth=Depends(require_operator),
):
    db = SessionLocal()
    try:
        result = collect_fees(db, cutoff=body.cutoff if body else None)
    finally:
        db.close()
    _invalidate_summary(request)
    return result.to_dict()


@router.get("/admin/fees/collections")
def get_fee_collections(limit: int = Query(50, ge=1, le=500), auth=Depends(require_operator)):
    db = SessionLocal()
    try:
        return fee_collection_history(db, limit=limit)
    except SQLAlchemyError:
        logger.exception("fee collection history failed, serving zeroed totals")
        return {
            "mode": current_mode().value,
            "collections": [],
            "totals": {"platformFeesCollected": 0, "deliveryCutsCollected": 0, "total": 0},
        }
    finally:
        db.close()


@router.post("/transactions/{transaction_id}/payouts")
def post_payout(
    transaction_id: str,
    body: PayoutRequest,
    request: Request,
    auth=Depends(require_operator),
    dispatcher=Depends(get_dispatcher),
):
    db = SessionLocal()
    try:
        payout = record_payout(
            db,
            transaction_id,
            body.recipient_id,
            body.amount,
            dispatcher=dispatcher,
            destination=body.destination,
        )
        return payout.to_dict()
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except InvariantViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except DisbursementError as exc:
        raise HTTPException(status_code=502, detail=f"Disbursement failed for payout {exc.payout_id}")
    finally:
        db.close()
        _invalidate_summary(request)


@router.post("/transactions/{transaction_id}/refunds")
def post_refund(transaction_id: str, body: RefundRequest, request: Request, auth=Depends(require_operator)):
    db = SessionLocal()
    try:
        refund = record_refund(db, transaction_id, body.amount, body.provider_ref)
        return refund.to_dict()
    except TransactionNotFound:
        raise HTTPException(status_code=404, detail="Transaction not found")
    except (InvariantViolation, ReferenceConflict) as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    finally:
        db.close()
        _invalidate_summary(request)


@router.get("/sellers/{seller_id}/balance")
def get_seller_balance(seller_id: str, auth=Depends(verify_token)):
    ensure_self_or_operator(auth, seller_id)
    db = SessionLocal()
    try:
        return seller_balance(db, seller_id).to_dict()
    finally:
        db.close()


@router.post("/sellers/{seller_id}/payouts")
def post_seller_payout(
    seller_id: str,
    request: Request,
    body: Optional[SellerPayoutRequest] = None,
    auth=Depends(verify_token),
    dispatcher=Depends(get_dispatcher),
):
    ensure_self_or_operator(auth, seller_id)
    db = SessionLocal()
    try:
        payouts = request_seller_payout(
            db,
            seller_id,
            dispatcher=dispatcher,
            destination=body.destination if body else None,
        )
        return {
            "sellerId": seller_id,
            "total": sum(int(p.amount) for p in payouts),
            "payouts": [p.to_dict() for p in payouts],
        }
    except PayoutBelowMinimum as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except InvariantViolation as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    except DisbursementError as exc:
        raise HTTPException(status_code=502, detail=f"Disbursement failed for payout {exc.payout_id}")
    finally:
        db.close()
        _invalidate_summary(request)


@router.post("/deliveries/{delivery_id}/status")
def post_delivery_status(
    delivery_id: str,
    body: DeliveryStatusRequest,
    request: Request,
    auth=Depends(require_operator),
):
    db = SessionLocal()
    try:
        delivery = (
            db.query(DeliveryOrder)
            .join(Order, Order.id == DeliveryOrder.order_id)
            .filter(DeliveryOrder.id == delivery_id, Order.mode == current_mode().value)
            .one_or_none()
        )
        if delivery is None:
            raise HTTPException(status_code=404, detail="Delivery order not found")
        try:
            transition_delivery(db, delivery, body.status)
        except InvalidTransition as exc:
            db.rollback()
            raise HTTPException(status_code=409, detail=str(exc))
        db.commit()
        _invalidate_summary(request)
        return delivery.to_dict()
    finally:
        db.close()


@router.post("/admin/outbox/process")
def post_process_outbox(limit: int = Query(100, ge=1, le=1000), auth=Depends(require_operator)):
    db = SessionLocal()
    try:
        return process_outbox(db, limit=limit).to_dict()
    finally:
        db.close()
