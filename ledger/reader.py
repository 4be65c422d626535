"""Financial read models for operator and seller dashboards.

Rows are joined to their Order through the typed ``order_id`` and restricted
to the process's payment mode in SQL. The mode classifier is then applied to
every matching row's provider reference, and only rows it accepts count
towards ``total``, ``totalAmount`` and ``hasMore``. The page itself is cut
from the accepted rows, so counts and items always agree.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy import or_

from ledger.cache import build_cache_key
from ledger.fees import bps_of, round_minor, split_delivery_fee
from ledger.models import (
    Order,
    OrderStatus,
    Payout,
    PayoutStatus,
    Refund,
    Transaction,
    TransactionKind,
)
from ledger.modes import Mode, current_mode, matches_current_mode

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 50
MAX_LIMIT = 200


@dataclass
class ReconciliationFilter:
    user_id: str | None = None
    seller_id: str | None = None
    buyer_id: str | None = None
    date_from: datetime | None = None
    date_to: datetime | None = None
    limit: int = DEFAULT_LIMIT
    offset: int = 0

    def __post_init__(self):
        self.limit = min(max(int(self.limit or DEFAULT_LIMIT), 1), MAX_LIMIT)
        self.offset = max(int(self.offset or 0), 0)


@dataclass
class Page:
    items: list = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    total_amount: int = 0
    has_more: bool = False

    def to_dict(self):
        return {
            "items": [item.to_dict() for item in self.items],
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "hasMore": self.has_more,
            "totalAmount": self.total_amount,
        }


def empty_page(filters: ReconciliationFilter) -> Page:
    return Page(limit=filters.limit, offset=filters.offset)


def _apply_common(q, filters: ReconciliationFilter, seller_col, buyer_col, created_col):
    if filters.seller_id:
        q = q.filter(seller_col == filters.seller_id)
    if filters.buyer_id:
        q = q.filter(buyer_col == filters.buyer_id)
    if filters.user_id:
        q = q.filter(or_(seller_col == filters.user_id, buyer_col == filters.user_id))
    if filters.date_from is not None:
        q = q.filter(created_col >= filters.date_from)
    if filters.date_to is not None:
        q = q.filter(created_col <= filters.date_to)
    return q


def _page(q, model, filters: ReconciliationFilter, mode: Mode, ref_col) -> Page:
    ordered = q.order_by(model.created_at.desc(), model.id.desc())
    scan = ordered.with_entities(model.id, model.amount, ref_col).all()
    kept = [(row_id, amount) for row_id, amount, ref in scan if matches_current_mode(ref, mode)]
    if len(kept) != len(scan):
        logger.warning(
            "%s: dropped %s rows whose provider ref is outside %s mode",
            model.__tablename__,
            len(scan) - len(kept),
            mode.value,
        )

    window = [row_id for row_id, _ in kept[filters.offset: filters.offset + filters.limit]]
    by_id = {row.id: row for row in q.filter(model.id.in_(window)).all()} if window else {}
    items = [by_id[row_id] for row_id in window if row_id in by_id]
    total = len(kept)
    return Page(
        items=items,
        total=total,
        limit=filters.limit,
        offset=filters.offset,
        total_amount=sum(int(amount or 0) for _, amount in kept),
        has_more=filters.offset + len(items) < total,
    )


def list_transactions(db, filters: ReconciliationFilter, mode: Mode | None = None) -> Page:
    mode = mode or current_mode()
    q = (
        db.query(Transaction)
        .join(Order, Order.id == Transaction.order_id)
        .filter(Transaction.mode == mode.value, Order.mode == mode.value)
    )
    q = _apply_common(q, filters, Transaction.seller_id, Transaction.buyer_id, Transaction.created_at)
    return _page(q, Transaction, filters, mode, Transaction.provider_ref)


def list_payouts(db, filters: ReconciliationFilter, mode: Mode | None = None) -> Page:
    mode = mode or current_mode()
    q = (
        db.query(Payout)
        .join(Transaction, Transaction.id == Payout.transaction_id)
        .join(Order, Order.id == Transaction.order_id)
        .filter(Payout.mode == mode.value, Order.mode == mode.value)
    )
    q = _apply_common(q, filters, Payout.recipient_id, Transaction.buyer_id, Payout.created_at)
    return _page(q, Payout, filters, mode, Transaction.provider_ref)


def list_refunds(db, filters: ReconciliationFilter, mode: Mode | None = None) -> Page:
    mode = mode or current_mode()
    q = (
        db.query(Refund)
        .join(Transaction, Transaction.id == Refund.transaction_id)
        .join(Order, Order.id == Transaction.order_id)
        .filter(Refund.mode == mode.value, Order.mode == mode.value)
    )
    q = _apply_common(q, filters, Transaction.seller_id, Transaction.buyer_id, Refund.created_at)
    return _page(q, Refund, filters, mode, Transaction.provider_ref)


def empty_summary(mode: Mode) -> dict:
    return {
        "mode": mode.value,
        "totalOrders": 0,
        "totalRevenue": 0,
        "platformFees": 0,
        "platformFeesProduct": 0,
        "platformFeesDelivery": 0,
        "collectedPlatformFees": 0,
        "totalPayouts": 0,
        "totalRefunds": 0,
        "averageOrderValue": 0,
    }


def compute_financial_summary(db, mode: Mode) -> dict:
    """Aggregate the mode's ledger; every row is classifier-checked before it counts."""
    summary = empty_summary(mode)
    settled = [OrderStatus.PAID.value, OrderStatus.REFUNDED.value]

    orders = [
        row
        for row in db.query(
            Order.provider_ref,
            Order.status,
            Order.total_amount,
            Order.platform_fee_collected,
            Order.platform_fee_amount,
        )
        .filter(Order.mode == mode.value)
        .all()
        if matches_current_mode(row.provider_ref, mode)
    ]
    settled_orders = [row for row in orders if row.status in settled]
    order_count = len(settled_orders)
    revenue = sum(int(row.total_amount or 0) for row in settled_orders)
    collected = sum(int(row.platform_fee_amount or 0) for row in orders if row.platform_fee_collected)

    product_fees = 0
    delivery_fees = 0
    legs = (
        db.query(Transaction.kind, Transaction.amount, Transaction.platform_fee_bps, Transaction.provider_ref)
        .join(Order, Order.id == Transaction.order_id)
        .filter(Transaction.mode == mode.value, Order.mode == mode.value, Order.status.in_(settled))
        .all()
    )
    for kind, amount, fee_bps, provider_ref in legs:
        if not matches_current_mode(provider_ref, mode):
            continue
        if kind == TransactionKind.DELIVERY.value:
            delivery_fees += split_delivery_fee(int(amount))[1]
        else:
            product_fees += bps_of(int(amount), int(fee_bps or 0))

    payouts = (
        db.query(Payout.amount, Payout.reversed_amount, Transaction.provider_ref)
        .join(Transaction, Transaction.id == Payout.transaction_id)
        .filter(Payout.mode == mode.value, Payout.status != PayoutStatus.FAILED.value)
        .all()
    )
    refunds = (
        db.query(Refund.amount, Transaction.provider_ref)
        .join(Transaction, Transaction.id == Refund.transaction_id)
        .filter(Refund.mode == mode.value)
        .all()
    )
    total_payouts = sum(
        int(amount) - int(reversed_amount or 0)
        for amount, reversed_amount, ref in payouts
        if matches_current_mode(ref, mode)
    )
    total_refunds = sum(int(amount) for amount, ref in refunds if matches_current_mode(ref, mode))

    summary.update({
        "totalOrders": order_count,
        "totalRevenue": revenue,
        "platformFees": product_fees + delivery_fees,
        "platformFeesProduct": product_fees,
        "platformFeesDelivery": delivery_fees,
        "collectedPlatformFees": collected,
        "totalPayouts": total_payouts,
        "totalRefunds": total_refunds,
        "averageOrderValue": round_minor(Decimal(revenue) / order_count) if order_count else 0,
    })
    return summary


def financial_summary(db, mode: Mode | None = None, cache=None) -> dict:
    mode = mode or current_mode()
    if cache is None:
        return compute_financial_summary(db, mode)
    key = build_cache_key("financial_summary", {"mode": mode.value})
    return cache.get_or_compute(key, lambda: compute_financial_summary(db, mode))
