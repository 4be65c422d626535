"""Turns payment-provider webhook events into ledger rows.

The provider delivers events at least once, so every handler here is
idempotent: checkout events on the session id, refunds and reversals on
their provider references, transfer confirmations on the payout status.
Order creation relies on the unique constraint on ``orders.provider_ref``: a
concurrent duplicate loses the insert and is reported as a no-op.
"""
from __future__ import annotations

import json
import logging
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field

from sqlalchemy.exc import IntegrityError

from ledger.errors import (
    InvalidTransition,
    InvariantViolation,
    MalformedEventError,
    PayoutNotFound,
    ReferenceConflict,
    TransactionNotFound,
)
from ledger.fees import PLATFORM_FEE_BPS, split_delivery_fee
from ledger.models import (
    CourierProfile,
    DeliveryMode,
    DeliveryOrder,
    DeliveryStatus,
    Order,
    OrderItem,
    OrderStatus,
    Transaction,
    TransactionKind,
    utcnow,
)
from ledger.modes import Mode, classify, current_mode
from ledger.outbox import enqueue
from ledger.writer import (
    available_amount,
    confirm_transfer,
    record_refund,
    record_transfer_reversal,
    transition_order,
)

logger = logging.getLogger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
CHECKOUT_EXPIRED = "checkout.session.expired"
CHARGE_REFUNDED = "charge.refunded"
TRANSFER_CREATED = "transfer.created"
TRANSFER_REVERSED = "transfer.reversed"

DELIVERY_ALIASES = {"DELIVERY", "LOCAL_DELIVERY", "TEEN_DELIVERY"}
PAID_STATUSES = {"paid", "no_payment_required"}


@dataclass(frozen=True)
class OrderCreated:
    order_id: str
    order_number: str
    delivery_order_id: str | None = None


@dataclass(frozen=True)
class Ignored:
    reason: str


@dataclass(frozen=True)
class Rejected:
    reason: str


@dataclass(frozen=True)
class StatusUpdated:
    order_id: str
    status: str
    refund_ids: tuple = ()


@dataclass(frozen=True)
class PayoutConfirmed:
    payout_id: str
    transfer_ref: str


@dataclass(frozen=True)
class ReversalRecorded:
    payout_ref: str
    refund_ids: tuple


@dataclass(frozen=True)
class LineItem:
    product_id: str
    quantity: int
    unit_price: int
    seller_id: str | None = None

    @property
    def subtotal(self) -> int:
        return self.quantity * self.unit_price


@dataclass
class CheckoutMetadata:
    buyer_id: str
    items: list
    delivery_mode: str = DeliveryMode.PICKUP.value
    address: str | None = None
    amount_paid: int = 0
    products_total: int = 0
    delivery_fee: int = 0
    breakdown: dict = field(default_factory=dict)


def _as_dict(obj) -> dict:
    if obj is None:
        return {}
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj)


def _int(raw, default: int = 0) -> int:
    if raw is None or raw == "":
        return default
    try:
        return int(str(raw).strip())
    except ValueError:
        return default


def _line_item(product_id, quantity, price, seller_id) -> LineItem | None:
    qty = _int(quantity)
    unit_price = _int(price, -1)
    if not product_id or qty <= 0 or unit_price < 0:
        return None
    return LineItem(product_id=str(product_id), quantity=qty, unit_price=unit_price, seller_id=seller_id or None)


def parse_items(metadata: dict, session_id: str | None = None) -> list:
    items = []
    raw = metadata.get("items")
    if raw:
        try:
            decoded = json.loads(raw) if isinstance(raw, str) else raw
        except ValueError:
            logger.warning("unparseable items JSON for session %s", session_id)
            decoded = []
        for entry in decoded if isinstance(decoded, list) else []:
            if not isinstance(entry, dict):
                continue
            item = _line_item(entry.get("productId"), entry.get("quantity"), entry.get("priceCents"), entry.get("sellerId"))
            if item is not None:
                items.append(item)

    if not items:
        chunks = sorted(
            ((_int(key[len("items_compact_"):]), value)
             for key, value in metadata.items() if key.startswith("items_compact_") and value),
            key=lambda chunk: chunk[0],
        )
        for chunk in ";".join(value for _, value in chunks).split(";"):
            if not chunk:
                continue
            parts = chunk.split("|") + [None] * 4
            item = _line_item(parts[0], parts[1], parts[2], parts[3])
            if item is not None:
                items.append(item)
    return items


def parse_checkout_metadata(session: dict) -> CheckoutMetadata:
    session_id = session.get("id")
    metadata = _as_dict(session.get("metadata"))

    buyer_id = (metadata.get("buyerId") or "").strip()
    if not buyer_id:
        raise MalformedEventError("missing_buyer_id", session_id)

    items = parse_items(metadata, session_id)
    if not items:
        raise MalformedEventError("missing_items", session_id)

    raw_mode = (metadata.get("deliveryMode") or "").strip().upper()
    if raw_mode in DELIVERY_ALIASES:
        delivery_mode = DeliveryMode.DELIVERY.value
    elif raw_mode == DeliveryMode.SHIPPING.value:
        delivery_mode = DeliveryMode.SHIPPING.value
    else:
        delivery_mode = DeliveryMode.PICKUP.value

    breakdown = {}
    if metadata.get("deliveryFeeBreakdown"):
        try:
            breakdown = json.loads(metadata["deliveryFeeBreakdown"]) or {}
        except ValueError:
            logger.warning("unparseable deliveryFeeBreakdown for session %s", session_id)
        if not isinstance(breakdown, dict):
            breakdown = {}

    products_total = _int(metadata.get("productsTotalCents"), sum(i.subtotal for i in items))
    delivery_fee = _int(metadata.get("deliveryFeeCents"))
    amount_paid = _int(metadata.get("amountPaidCents"), _int(session.get("amount_total"), products_total + delivery_fee))
    if min(products_total, delivery_fee, amount_paid) < 0:
        raise MalformedEventError("negative_amount", session_id)

    return CheckoutMetadata(
        buyer_id=buyer_id,
        items=items,
        delivery_mode=delivery_mode,
        address=metadata.get("address") or None,
        amount_paid=amount_paid,
        products_total=products_total,
        delivery_fee=delivery_fee,
        breakdown=breakdown,
    )


def generate_order_number() -> str:
    return f"ORD-{utcnow():%Y%m%d}-{secrets.token_hex(4).upper()}"


def find_order(db, provider_ref: str, mode: Mode) -> Order | None:
    return (
        db.query(Order)
        .filter(Order.provider_ref == provider_ref, Order.mode == mode.value)
        .one_or_none()
    )


def first_active_courier(db) -> CourierProfile | None:
    # Placeholder assignment: no distance, load or fairness weighting.
    return (
        db.query(CourierProfile)
        .filter(CourierProfile.is_active.is_(True))
        .order_by(CourierProfile.created_at.asc(), CourierProfile.id.asc())
        .first()
    )


def _build_order(db, session: dict, parsed: CheckoutMetadata, mode: Mode):
    session_id = session["id"]
    paid = (session.get("payment_status") or "") in PAID_STATUSES
    order = Order(
        order_number=generate_order_number(),
        buyer_id=parsed.buyer_id,
        total_amount=parsed.amount_paid,
        products_total=parsed.products_total,
        delivery_fee=parsed.delivery_fee,
        status=OrderStatus.PAID.value if paid else OrderStatus.CREATED.value,
        provider_ref=session_id,
        payment_intent_ref=session.get("payment_intent") or None,
        customer_ref=session.get("customer") or None,
        delivery_mode=parsed.delivery_mode,
        address=parsed.address,
        mode=mode.value,
    )
    db.add(order)
    db.flush()

    by_seller = OrderedDict()
    for item in parsed.items:
        db.add(OrderItem(
            order_id=order.id,
            product_id=item.product_id,
            seller_id=item.seller_id,
            quantity=item.quantity,
            unit_price=item.unit_price,
        ))
        by_seller[item.seller_id] = by_seller.get(item.seller_id, 0) + item.subtotal

    for seller_id, amount in by_seller.items():
        db.add(Transaction(
            order_id=order.id,
            kind=TransactionKind.SALE.value,
            amount=amount,
            seller_id=seller_id,
            buyer_id=parsed.buyer_id,
            provider_ref=session_id,
            platform_fee_bps=PLATFORM_FEE_BPS,
            mode=mode.value,
        ))

    delivery = None
    if parsed.delivery_mode == DeliveryMode.DELIVERY.value:
        delivery = _build_delivery(db, order, parsed, session_id, mode)

    enqueue(db, "order.created", {
        "orderId": order.id,
        "orderNumber": order.order_number,
        "buyerId": order.buyer_id,
        "totalAmount": order.total_amount,
        "deliveryOrderId": delivery.id if delivery is not None else None,
    })
    return order, delivery


def _build_delivery(db, order: Order, parsed: CheckoutMetadata, session_id: str, mode: Mode) -> DeliveryOrder:
    courier_cut, platform_cut = split_delivery_fee(parsed.delivery_fee)
    quoted_cut = parsed.breakdown.get("homecheffCut")
    if quoted_cut is not None and _int(quoted_cut, -1) != platform_cut:
        logger.warning(
            "session %s quoted platform cut %s, ledger uses %s", session_id, quoted_cut, platform_cut
        )

    courier = first_active_courier(db)
    delivery = DeliveryOrder(
        order_id=order.id,
        courier_profile_id=courier.id if courier is not None else None,
        delivery_fee=parsed.delivery_fee,
        courier_cut=courier_cut,
        platform_cut=platform_cut,
        status=DeliveryStatus.PENDING.value,
        delivery_address=parsed.address,
    )
    db.add(delivery)
    db.flush()

    if courier is None:
        logger.warning("no active courier for order %s", order.id)
    elif parsed.delivery_fee > 0:
        db.add(Transaction(
            order_id=order.id,
            kind=TransactionKind.DELIVERY.value,
            amount=parsed.delivery_fee,
            seller_id=courier.user_id,
            buyer_id=parsed.buyer_id,
            provider_ref=session_id,
            platform_fee_bps=PLATFORM_FEE_BPS,
            mode=mode.value,
        ))
    return delivery


def _checkout_completed(db, session: dict, mode: Mode):
    session_id = session.get("id")
    if not session_id:
        return Rejected("missing_session_id")
    if session.get("mode") == "subscription":
        return Ignored("subscription")
    if classify(session_id) != mode:
        logger.info("ignoring %s session %s in %s mode", classify(session_id).value, session_id, mode.value)
        return Ignored("mode_mismatch")
    if find_order(db, session_id, mode) is not None:
        logger.info("order already exists for session %s", session_id)
        return Ignored("duplicate")

    try:
        parsed = parse_checkout_metadata(session)
    except MalformedEventError as exc:
        logger.warning("rejecting session %s: %s", session_id, exc.reason)
        return Rejected(exc.reason)

    try:
        order, delivery = _build_order(db, session, parsed, mode)
        db.commit()
    except IntegrityError:
        db.rollback()
        if find_order(db, session_id, mode) is not None:
            logger.info("concurrent delivery already created the order for session %s", session_id)
            return Ignored("duplicate")
        raise
    except Exception:
        db.rollback()
        raise

    logger.info("order %s created for session %s", order.order_number, session_id)
    return OrderCreated(
        order_id=order.id,
        order_number=order.order_number,
        delivery_order_id=delivery.id if delivery is not None else None,
    )


def _transition_session(target: OrderStatus):
    def handler(db, session: dict, mode: Mode):
        session_id = session.get("id")
        order = find_order(db, session_id, mode) if session_id else None
        if order is None:
            return Ignored("unknown_order")
        try:
            transition_order(db, order, target)
        except InvalidTransition as exc:
            logger.info("ignoring %s for session %s: %s", target.value, session_id, exc)
            db.rollback()
            return Ignored("invalid_transition")
        db.commit()
        return StatusUpdated(order.id, order.status)
    return handler


def _refund_legs(db, order: Order, charge_ref: str, mode: Mode) -> tuple:
    """Write a Refund for whatever each leg of a fully refunded order still holds."""
    refund_ids = []
    legs = (
        db.query(Transaction)
        .filter(Transaction.order_id == order.id, Transaction.mode == mode.value)
        .order_by(Transaction.created_at.asc(), Transaction.id.asc())
        .all()
    )
    for txn in legs:
        remaining = available_amount(db, txn)
        if remaining <= 0:
            continue
        if remaining < int(txn.amount):
            logger.warning(
                "refund of order %s covers %s of leg %s; %s was already paid out",
                order.order_number,
                remaining,
                txn.id,
                int(txn.amount) - remaining,
            )
        ref = f"{charge_ref}:{txn.id}"
        try:
            refund = record_refund(db, txn.id, remaining, ref, mode)
        except (InvariantViolation, ReferenceConflict, TransactionNotFound) as exc:
            logger.error("could not record refund %s for order %s: %s", ref, order.order_number, exc)
            continue
        refund_ids.append(refund.id)
    return tuple(refund_ids)


def _charge_refunded(db, charge: dict, mode: Mode):
    if not charge.get("refunded"):
        return Ignored("partial_refund")
    payment_intent = charge.get("payment_intent")
    if not payment_intent:
        return Ignored("unknown_order")
    order = (
        db.query(Order)
        .filter(Order.payment_intent_ref == payment_intent, Order.mode == mode.value)
        .one_or_none()
    )
    if order is None:
        return Ignored("unknown_order")
    charge_ref = charge.get("id") or payment_intent

    if order.status == OrderStatus.REFUNDED.value:
        # Redelivery: fill in any leg an interrupted earlier delivery missed.
        _refund_legs(db, order, charge_ref, mode)
        return Ignored("duplicate")
    try:
        transition_order(db, order, OrderStatus.REFUNDED)
    except InvalidTransition as exc:
        logger.info("ignoring refund for %s: %s", payment_intent, exc)
        db.rollback()
        return Ignored("invalid_transition")
    db.commit()

    refund_ids = _refund_legs(db, order, charge_ref, mode)
    logger.info("order %s refunded with %s refund rows", order.order_number, len(refund_ids))
    return StatusUpdated(order.id, order.status, refund_ids)


def _transfer_ref(value):
    if isinstance(value, str):
        return value or None
    return _as_dict(value).get("id") or None


def _transfer_created(db, transfer: dict, mode: Mode):
    transfer_ref = transfer.get("id")
    if not transfer_ref:
        return Ignored("unknown_payout")
    payout_id = _as_dict(transfer.get("metadata")).get("payoutId")
    try:
        payout, changed = confirm_transfer(db, transfer_ref, payout_id=payout_id, mode=mode)
    except PayoutNotFound:
        logger.info("transfer %s does not belong to a %s payout", transfer_ref, mode.value)
        return Ignored("unknown_payout")
    except (InvalidTransition, ReferenceConflict) as exc:
        logger.warning("cannot confirm transfer %s: %s", transfer_ref, exc)
        return Ignored("invalid_transition")
    if not changed:
        return Ignored("duplicate")
    return PayoutConfirmed(payout.id, transfer_ref)


def _reversals(obj: dict) -> list:
    """(reversal id, transfer id, amount) for a reversal object or a transfer carrying reversals."""
    if obj.get("object") == "transfer":
        transfer_ref = obj.get("id")
        data = _as_dict(obj.get("reversals")).get("data") or []
        return [
            (_as_dict(item).get("id"), transfer_ref, _int(_as_dict(item).get("amount")))
            for item in data
        ]
    return [(obj.get("id"), _transfer_ref(obj.get("transfer")), _int(obj.get("amount")))]


def _transfer_reversed(db, obj: dict, mode: Mode):
    reversals = _reversals(obj)
    if not reversals or any(not ref or not transfer or amount <= 0 for ref, transfer, amount in reversals):
        logger.warning("transfer reversal event without id, transfer or amount")
        return Ignored("malformed_reversal")

    refund_ids = []
    for reversal_ref, transfer_ref, amount in reversals:
        try:
            refund = record_transfer_reversal(db, transfer_ref, reversal_ref, amount, mode)
        except PayoutNotFound:
            logger.info("reversal %s targets unknown transfer %s", reversal_ref, transfer_ref)
            return Ignored("unknown_payout")
        except (InvariantViolation, ReferenceConflict) as exc:
            logger.error("cannot record reversal %s: %s", reversal_ref, exc)
            return Ignored("invalid_reversal")
        refund_ids.append(refund.id)
    return ReversalRecorded(reversals[0][1], tuple(refund_ids))


_HANDLERS = {
    CHECKOUT_COMPLETED: _checkout_completed,
    ASYNC_PAYMENT_SUCCEEDED: _transition_session(OrderStatus.PAID),
    ASYNC_PAYMENT_FAILED: _transition_session(OrderStatus.CANCELLED),
    CHECKOUT_EXPIRED: _transition_session(OrderStatus.CANCELLED),
    CHARGE_REFUNDED: _charge_refunded,
    TRANSFER_CREATED: _transfer_created,
    TRANSFER_REVERSED: _transfer_reversed,
}


def handle_provider_event(db, event, mode: Mode | None = None):
    mode = mode or current_mode()
    event = _as_dict(event)
    event_type = event.get("type") or ""
    obj = _as_dict((_as_dict(event.get("data"))).get("object"))

    handler = _HANDLERS.get(event_type)
    if handler is None:
        logger.debug("ignoring event type %s", event_type)
        return Ignored("unhandled_event_type")
    return handler(db, obj, mode)
