"""Ledger writes: fee collection, payouts, refunds and status transitions.

Every flag flip and sum check here has to hold up under overlapping cron runs
and concurrent requests. Flags are flipped with conditional updates whose row
count is checked; payout and refund sums are checked while holding a row lock
on the parent transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import exists, func, or_, update
from sqlalchemy.exc import IntegrityError

from ledger.config import min_payout_amount
from ledger.errors import (
    DisbursementError,
    InvalidTransition,
    InvariantViolation,
    PayoutBelowMinimum,
    PayoutNotFound,
    ReferenceConflict,
    TransactionNotFound,
)
from ledger.fees import bps_of, compute_platform_fee, split_delivery_fee
from ledger.models import (
    DeliveryOrder,
    DeliveryStatus,
    FeeCollection,
    Order,
    OrderStatus,
    Payout,
    PayoutStatus,
    Refund,
    Transaction,
    TransactionKind,
    utcnow,
)
from ledger.modes import Mode, classify, current_mode, matches_current_mode
from ledger.outbox import enqueue

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS = {
    OrderStatus.CREATED.value: {OrderStatus.PAID.value, OrderStatus.CANCELLED.value},
    OrderStatus.PAID.value: {OrderStatus.REFUNDED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CANCELLED.value: set(),
    OrderStatus.REFUNDED.value: set(),
}

DELIVERY_TRANSITIONS = {
    DeliveryStatus.PENDING.value: {DeliveryStatus.ACCEPTED.value, DeliveryStatus.CANCELLED.value},
    DeliveryStatus.ACCEPTED.value: {DeliveryStatus.PICKED_UP.value, DeliveryStatus.CANCELLED.value},
    DeliveryStatus.PICKED_UP.value: {DeliveryStatus.DELIVERED.value, DeliveryStatus.CANCELLED.value},
    DeliveryStatus.DELIVERED.value: set(),
    DeliveryStatus.CANCELLED.value: set(),
}


@dataclass
class CollectionResult:
    platform_fees_collected: int = 0
    delivery_cuts_collected: int = 0
    processed_order_count: int = 0
    processed_delivery_count: int = 0
    collection_id: int | None = None

    def to_dict(self):
        return {
            "platformFeesCollected": self.platform_fees_collected,
            "deliveryCutsCollected": self.delivery_cuts_collected,
            "processedOrderCount": self.processed_order_count,
            "processedDeliveryCount": self.processed_delivery_count,
            "collectionId": self.collection_id,
        }


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def transition_order(db, order: Order, status) -> Order:
    target = _value(status)
    if target not in ORDER_TRANSITIONS.get(order.status, set()):
        raise InvalidTransition("order", order.status, target)
    order.status = target
    db.flush()
    return order


def transition_delivery(db, delivery: DeliveryOrder, status, now: datetime | None = None) -> DeliveryOrder:
    target = _value(status)
    if target not in DELIVERY_TRANSITIONS.get(delivery.status, set()):
        raise InvalidTransition("delivery order", delivery.status, target)
    now = now or utcnow()
    delivery.status = target
    if target == DeliveryStatus.PICKED_UP.value:
        delivery.picked_up_at = now
    elif target == DeliveryStatus.DELIVERED.value:
        delivery.delivered_at = now
    db.flush()
    return delivery


# --- fee collection ---------------------------------------------------------

def eligible_order_ids(db, mode: Mode, cutoff: datetime | None = None):
    q = (
        db.query(Order.id, Order.products_total, Order.provider_ref)
        .filter(Order.mode == mode.value)
        .filter(Order.status == OrderStatus.PAID.value)
        .filter(Order.platform_fee_collected.is_(False))
    )
    if cutoff is not None:
        q = q.filter(Order.created_at <= cutoff)
    rows = q.order_by(Order.created_at.asc()).all()
    return [(row.id, row.products_total) for row in rows if matches_current_mode(row.provider_ref, mode)]


def eligible_delivery_ids(db, mode: Mode, cutoff: datetime | None = None):
    q = (
        db.query(DeliveryOrder.id, DeliveryOrder.delivery_fee)
        .join(Order, Order.id == DeliveryOrder.order_id)
        .filter(Order.mode == mode.value)
        .filter(DeliveryOrder.status == DeliveryStatus.DELIVERED.value)
        .filter(DeliveryOrder.delivery_fee_collected.is_(False))
    )
    if cutoff is not None:
        q = q.filter(DeliveryOrder.delivered_at <= cutoff)
    return q.order_by(DeliveryOrder.delivered_at.asc()).all()


def claim_order_fee(db, order_id: str, fee: int, now: datetime) -> bool:
    result = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == OrderStatus.PAID.value,
            Order.platform_fee_collected.is_(False),
        )
        .values(platform_fee_collected=True, platform_fee_amount=fee, platform_fee_collected_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def claim_delivery_fee(db, delivery_id: str, now: datetime) -> bool:
    result = db.execute(
        update(DeliveryOrder)
        .where(
            DeliveryOrder.id == delivery_id,
            DeliveryOrder.status == DeliveryStatus.DELIVERED.value,
            DeliveryOrder.delivery_fee_collected.is_(False),
        )
        .values(delivery_fee_collected=True, delivery_fee_collected_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def collect_fees(db, cutoff: datetime | None = None, mode: Mode | None = None) -> CollectionResult:
    mode = mode or current_mode()
    now = utcnow()
    result = CollectionResult()

    for order_id, products_total in eligible_order_ids(db, mode, cutoff):
        fee = compute_platform_fee(int(products_total or 0)).platform_fee
        if not claim_order_fee(db, order_id, fee, now):
            logger.info("platform fee for order %s already collected or order no longer paid", order_id)
            continue
        result.platform_fees_collected += fee
        result.processed_order_count += 1

    for delivery_id, delivery_fee in eligible_delivery_ids(db, mode, cutoff):
        _, platform_cut = split_delivery_fee(int(delivery_fee or 0))
        if not claim_delivery_fee(db, delivery_id, now):
            logger.info("delivery cut for %s already collected or delivery no longer delivered", delivery_id)
            continue
        result.delivery_cuts_collected += platform_cut
        result.processed_delivery_count += 1

    row = FeeCollection(
        mode=mode.value,
        cutoff=cutoff,
        platform_fees_collected=result.platform_fees_collected,
        delivery_cuts_collected=result.delivery_cuts_collected,
        processed_order_count=result.processed_order_count,
        processed_delivery_count=result.processed_delivery_count,
        created_at=now,
    )
    db.add(row)
    if result.processed_order_count or result.processed_delivery_count:
        enqueue(db, "fees.collected", {"mode": mode.value, **result.to_dict()})
    db.commit()
    result.collection_id = int(row.id)

    logger.info(
        "fee collection %s (%s): %s platform over %s orders, %s delivery over %s deliveries",
        row.id,
        mode.value,
        result.platform_fees_collected,
        result.processed_order_count,
        result.delivery_cuts_collected,
        result.processed_delivery_count,
    )
    return result


def fee_collection_history(db, mode: Mode | None = None, limit: int = 50) -> dict:
    mode = mode or current_mode()
    rows = (
        db.query(FeeCollection)
        .filter(FeeCollection.mode == mode.value)
        .order_by(FeeCollection.id.desc())
        .limit(int(limit))
        .all()
    )
    platform_total, delivery_total = (
        db.query(
            func.coalesce(func.sum(FeeCollection.platform_fees_collected), 0),
            func.coalesce(func.sum(FeeCollection.delivery_cuts_collected), 0),
        )
        .filter(FeeCollection.mode == mode.value)
        .one()
    )
    return {
        "mode": mode.value,
        "collections": [r.to_dict() for r in rows],
        "totals": {
            "platformFeesCollected": int(platform_total or 0),
            "deliveryCutsCollected": int(delivery_total or 0),
            "total": int(platform_total or 0) + int(delivery_total or 0),
        },
    }


# --- payouts and refunds ----------------------------------------------------

def _lock_transaction(db, transaction_id: str, mode: Mode) -> Transaction:
    txn = (
        db.query(Transaction)
        .filter(Transaction.id == transaction_id)
        .with_for_update()
        .one_or_none()
    )
    if txn is None or txn.mode != mode.value:
        db.rollback()
        raise TransactionNotFound(transaction_id)
    return txn


def paid_out_amount(db, transaction_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(Payout.amount - Payout.reversed_amount), 0))
        .filter(Payout.transaction_id == transaction_id)
        .filter(Payout.status != PayoutStatus.FAILED.value)
        .scalar()
    )
    return int(total or 0)


def refunded_amount(db, transaction_id: str) -> int:
    total = (
        db.query(func.coalesce(func.sum(Refund.amount), 0))
        .filter(Refund.transaction_id == transaction_id)
        .scalar()
    )
    return int(total or 0)


def available_amount(db, txn: Transaction) -> int:
    return int(txn.amount) - paid_out_amount(db, txn.id) - refunded_amount(db, txn.id)


def _positive(amount) -> int:
    amount = int(amount)
    if amount <= 0:
        raise ValueError(f"Amount must be positive, got {amount}")
    return amount


def record_payout(
    db,
    transaction_id: str,
    recipient_id: str,
    amount: int,
    dispatcher=None,
    destination: str | None = None,
    mode: Mode | None = None,
) -> Payout:
    mode = mode or current_mode()
    amount = _positive(amount)

    txn = _lock_transaction(db, transaction_id, mode)
    available = available_amount(db, txn)
    if amount > available:
        db.rollback()
        raise InvariantViolation(transaction_id, amount, available, "payout")

    payout = Payout(
        transaction_id=txn.id,
        recipient_id=recipient_id,
        amount=amount,
        status=PayoutStatus.PENDING.value,
        mode=txn.mode,
    )
    db.add(payout)
    db.flush()
    enqueue(db, "payout.recorded", {"payoutId": payout.id, "transactionId": txn.id, "amount": amount})
    db.commit()

    if dispatcher is None or not destination:
        return payout

    try:
        transfer_ref = dispatcher.dispatch(payout, destination)
    except Exception as exc:
        logger.error("disbursement for payout %s failed: %s", payout.id, exc)
        payout.status = PayoutStatus.FAILED.value
        payout.failure_reason = str(exc)[:1000]
        db.commit()
        raise DisbursementError(payout.id, str(exc)) from exc

    payout.status = PayoutStatus.PAID.value
    payout.provider_ref = transfer_ref
    db.commit()
    return payout


def record_refund(db, transaction_id: str, amount: int, provider_ref: str, mode: Mode | None = None) -> Refund:
    mode = mode or current_mode()
    amount = _positive(amount)

    existing = db.query(Refund).filter(Refund.provider_ref == provider_ref).one_or_none()
    if existing is not None:
        if existing.transaction_id != transaction_id:
            raise ReferenceConflict(provider_ref)
        return existing

    # A refund reference from the other environment cannot belong to this ledger.
    if classify(provider_ref) != mode:
        raise TransactionNotFound(transaction_id)

    txn = _lock_transaction(db, transaction_id, mode)
    available = available_amount(db, txn)
    if amount > available:
        db.rollback()
        raise InvariantViolation(transaction_id, amount, available, "refund")

    refund = Refund(transaction_id=txn.id, amount=amount, provider_ref=provider_ref, mode=txn.mode)
    db.add(refund)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = db.query(Refund).filter(Refund.provider_ref == provider_ref).one()
        if existing.transaction_id != transaction_id:
            raise ReferenceConflict(provider_ref)
        return existing
    enqueue(db, "refund.recorded", {"refundId": refund.id, "transactionId": txn.id, "amount": amount})
    db.commit()
    return refund


# --- provider transfer callbacks --------------------------------------------

def _payout_by_transfer(db, transfer_ref: str, mode: Mode) -> Payout | None:
    return (
        db.query(Payout)
        .filter(Payout.provider_ref == transfer_ref, Payout.mode == mode.value)
        .order_by(Payout.created_at.asc())
        .first()
    )


def confirm_transfer(db, transfer_ref: str, payout_id: str | None = None, mode: Mode | None = None):
    """Mark the payout behind a provider transfer as paid.

    The payout is found by its stored transfer id, or by ``payout_id`` when the
    transfer was created before the dispatcher could store the id. Returns
    ``(payout, changed)``; a repeated confirmation returns ``changed=False``.
    """
    mode = mode or current_mode()
    payout = _payout_by_transfer(db, transfer_ref, mode)
    if payout is None and payout_id:
        payout = (
            db.query(Payout)
            .filter(Payout.id == payout_id, Payout.mode == mode.value)
            .one_or_none()
        )
    if payout is None:
        raise PayoutNotFound(transfer_ref)

    if payout.status == PayoutStatus.PAID.value:
        if payout.provider_ref != transfer_ref:
            raise ReferenceConflict(transfer_ref)
        return payout, False

    result = db.execute(
        update(Payout)
        .where(Payout.id == payout.id, Payout.status == PayoutStatus.PENDING.value)
        .values(status=PayoutStatus.PAID.value, provider_ref=transfer_ref)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidTransition("payout", payout.status, PayoutStatus.PAID.value)
    enqueue(db, "payout.confirmed", {"payoutId": payout.id, "transferRef": transfer_ref})
    db.commit()
    db.refresh(payout)
    logger.info("payout %s confirmed by transfer %s", payout.id, transfer_ref)
    return payout, True


def record_transfer_reversal(
    db,
    transfer_ref: str,
    reversal_ref: str,
    amount: int,
    mode: Mode | None = None,
) -> Refund:
    """Record money pulled back from a payout as a refund on its transaction.

    The payout's ``reversed_amount`` grows by the same amount the refund adds,
    so payouts plus refunds on the transaction stay within its amount.
    """
    mode = mode or current_mode()
    amount = _positive(amount)

    payout = _payout_by_transfer(db, transfer_ref, mode)
    if payout is None:
        raise PayoutNotFound(transfer_ref)

    existing = db.query(Refund).filter(Refund.provider_ref == reversal_ref).one_or_none()
    if existing is not None:
        if existing.transaction_id != payout.transaction_id:
            raise ReferenceConflict(reversal_ref)
        return existing

    txn = _lock_transaction(db, payout.transaction_id, mode)
    db.refresh(payout, with_for_update=True)
    reversible = int(payout.amount) - int(payout.reversed_amount or 0)
    if amount > reversible:
        db.rollback()
        raise InvariantViolation(txn.id, amount, reversible, "reversal")

    payout.reversed_amount = int(payout.reversed_amount or 0) + amount
    refund = Refund(transaction_id=txn.id, amount=amount, provider_ref=reversal_ref, mode=txn.mode)
    db.add(refund)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        existing = db.query(Refund).filter(Refund.provider_ref == reversal_ref).one()
        if existing.transaction_id != txn.id:
            raise ReferenceConflict(reversal_ref)
        return existing
    enqueue(db, "payout.reversed", {
        "payoutId": payout.id,
        "refundId": refund.id,
        "transactionId": txn.id,
        "amount": amount,
    })
    db.commit()
    logger.info("transfer %s reversed by %s on payout %s", transfer_ref, amount, payout.id)
    return refund


# --- seller payout requests -------------------------------------------------

@dataclass
class SellerBalance:
    seller_id: str
    mode: Mode
    available: int = 0
    entries: list = field(default_factory=list)     # (transaction_id, amount)

    def to_dict(self):
        return {
            "sellerId": self.seller_id,
            "mode": self.mode.value,
            "available": self.available,
            "minimumPayout": min_payout_amount(),
            "transactions": [
                {"transactionId": transaction_id, "amount": amount}
                for transaction_id, amount in self.entries
            ],
        }


def seller_share(txn: Transaction) -> int:
    amount = int(txn.amount)
    if txn.kind == TransactionKind.DELIVERY.value:
        return split_delivery_fee(amount)[0]
    return amount - bps_of(amount, int(txn.platform_fee_bps or 0))


def seller_balance(db, seller_id: str, mode: Mode | None = None) -> SellerBalance:
    """What a seller (or courier) can still be paid, per transaction.

    Only legs of paid orders count; courier legs wait for the delivery to be
    delivered. Each leg owes its share net of platform fees, less what has
    already gone out, and never more than the leg's remaining headroom.
    """
    mode = mode or current_mode()
    delivered = exists().where(
        DeliveryOrder.order_id == Transaction.order_id,
        DeliveryOrder.status == DeliveryStatus.DELIVERED.value,
    )
    txns = (
        db.query(Transaction)
        .join(Order, Order.id == Transaction.order_id)
        .filter(Transaction.seller_id == seller_id)
        .filter(Transaction.mode == mode.value, Order.mode == mode.value)
        .filter(Order.status == OrderStatus.PAID.value)
        .filter(or_(Transaction.kind != TransactionKind.DELIVERY.value, delivered))
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )

    balance = SellerBalance(seller_id=seller_id, mode=mode)
    for txn in txns:
        if not matches_current_mode(txn.provider_ref, mode):
            continue
        owed = seller_share(txn) - paid_out_amount(db, txn.id)
        payable = min(owed, available_amount(db, txn))
        if payable <= 0:
            continue
        balance.entries.append((txn.id, payable))
        balance.available += payable
    return balance


def request_seller_payout(
    db,
    seller_id: str,
    dispatcher=None,
    destination: str | None = None,
    mode: Mode | None = None,
) -> list:
    mode = mode or current_mode()
    balance = seller_balance(db, seller_id, mode)
    minimum = min_payout_amount()
    if balance.available < minimum:
        raise PayoutBelowMinimum(seller_id, balance.available, minimum)

    payouts = [
        record_payout(db, transaction_id, seller_id, amount, dispatcher, destination, mode)
        for transaction_id, amount in balance.entries
    ]
    logger.info(
        "seller %s requested %s over %s payouts (%s)",
        seller_id,
        balance.available,
        len(payouts),
        mode.value,
    )
    return payouts
