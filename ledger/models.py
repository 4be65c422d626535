import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    CheckConstraint,
)
from sqlalchemy.orm import relationship

from ledger.database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class OrderStatus(str, enum.Enum):
    CREATED = "created"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class DeliveryMode(str, enum.Enum):
    PICKUP = "PICKUP"
    DELIVERY = "DELIVERY"
    SHIPPING = "SHIPPING"


class TransactionKind(str, enum.Enum):
    SALE = "sale"
    DELIVERY = "delivery"


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


class OutboxStatus(str, enum.Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    FAILED = "failed"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: new_id("ord"))
    order_number = Column(String, unique=True, nullable=False)
    buyer_id = Column(String, index=True, nullable=False)
    total_amount = Column(Integer, nullable=False, default=0)       # minor units paid by the buyer
    products_total = Column(Integer, nullable=False, default=0)
    delivery_fee = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=OrderStatus.CREATED.value)
    provider_ref = Column(String, unique=True, nullable=True)       # checkout session id, verbatim
    payment_intent_ref = Column(String, index=True, nullable=True)
    customer_ref = Column(String, nullable=True)
    delivery_mode = Column(String, nullable=False, default=DeliveryMode.PICKUP.value)
    address = Column(Text, nullable=True)
    mode = Column(String, nullable=False, index=True)              # test | live, fixed at creation
    platform_fee_collected = Column(Boolean, nullable=False, default=False)
    platform_fee_amount = Column(Integer, nullable=True)
    platform_fee_collected_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    transactions = relationship("Transaction", back_populates="order")
    delivery_orders = relationship("DeliveryOrder", back_populates="order")

    def to_dict(self):
        return {
            "id": self.id,
            "orderNumber": self.order_number,
            "buyerId": self.buyer_id,
            "totalAmount": int(self.total_amount or 0),
            "productsTotal": int(self.products_total or 0),
            "deliveryFee": int(self.delivery_fee or 0),
            "status": self.status,
            "providerRef": self.provider_ref,
            "deliveryMode": self.delivery_mode,
            "mode": self.mode,
            "platformFeeCollected": bool(self.platform_fee_collected),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    product_id = Column(String, nullable=False)
    seller_id = Column(String, index=True, nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_transactions_amount_non_negative"),
        Index("ix_transactions_mode_created", "mode", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: new_id("txn"))
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    kind = Column(String, nullable=False, default=TransactionKind.SALE.value)
    amount = Column(Integer, nullable=False)
    seller_id = Column(String, index=True, nullable=True)            # courier user for delivery legs
    buyer_id = Column(String, index=True, nullable=False)
    provider_ref = Column(String, index=True, nullable=True)
    platform_fee_bps = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="captured")
    mode = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    order = relationship("Order", back_populates="transactions")
    payouts = relationship("Payout", back_populates="transaction")
    refunds = relationship("Refund", back_populates="transaction")

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "kind": self.kind,
            "amount": int(self.amount or 0),
            "sellerId": self.seller_id,
            "buyerId": self.buyer_id,
            "providerRef": self.provider_ref,
            "platformFeeBps": int(self.platform_fee_bps or 0),
            "status": self.status,
            "mode": self.mode,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Payout(Base):
    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payouts_amount_positive"),
        CheckConstraint("reversed_amount >= 0 AND reversed_amount <= amount", name="ck_payouts_reversed_within_amount"),
    )

    id = Column(String, primary_key=True, default=lambda: new_id("payout"))
    transaction_id = Column(String, ForeignKey("transactions.id"), index=True, nullable=False)
    recipient_id = Column(String, index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(String, nullable=False, default=PayoutStatus.PENDING.value)
    reversed_amount = Column(Integer, nullable=False, default=0)   # clawed back by transfer reversals
    provider_ref = Column(String, index=True, nullable=True)        # transfer id once confirmed
    failure_reason = Column(Text, nullable=True)
    mode = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="payouts")

    def to_dict(self):
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "recipientId": self.recipient_id,
            "amount": int(self.amount or 0),
            "reversedAmount": int(self.reversed_amount or 0),
            "status": self.status,
            "providerRef": self.provider_ref,
            "mode": self.mode,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Refund(Base):
    __tablename__ = "refunds"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_refunds_amount_positive"),
    )

    id = Column(String, primary_key=True, default=lambda: new_id("refund"))
    transaction_id = Column(String, ForeignKey("transactions.id"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)
    provider_ref = Column(String, unique=True, nullable=False)
    mode = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    transaction = relationship("Transaction", back_populates="refunds")

    def to_dict(self):
        return {
            "id": self.id,
            "transactionId": self.transaction_id,
            "amount": int(self.amount or 0),
            "providerRef": self.provider_ref,
            "mode": self.mode,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class CourierProfile(Base):
    __tablename__ = "courier_profiles"

    id = Column(String, primary_key=True, default=lambda: new_id("courier"))
    user_id = Column(String, unique=True, nullable=False)
    is_active = Column(Boolean, nullable=False, default=False)
    payout_account = Column(String, nullable=True)                  # connected account for transfers
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class DeliveryOrder(Base):
    __tablename__ = "delivery_orders"

    id = Column(String, primary_key=True, default=lambda: new_id("delivery"))
    order_id = Column(String, ForeignKey("orders.id"), index=True, nullable=False)
    courier_profile_id = Column(String, ForeignKey("courier_profiles.id"), nullable=True)
    delivery_fee = Column(Integer, nullable=False, default=0)
    courier_cut = Column(Integer, nullable=False, default=0)
    platform_cut = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default=DeliveryStatus.PENDING.value)
    delivery_address = Column(Text, nullable=True)
    delivery_fee_collected = Column(Boolean, nullable=False, default=False)
    delivery_fee_collected_at = Column(DateTime(timezone=True), nullable=True)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = relationship("Order", back_populates="delivery_orders")
    courier = relationship("CourierProfile")

    def to_dict(self):
        return {
            "id": self.id,
            "orderId": self.order_id,
            "courierProfileId": self.courier_profile_id,
            "deliveryFee": int(self.delivery_fee or 0),
            "courierCut": int(self.courier_cut or 0),
            "platformCut": int(self.platform_cut or 0),
            "status": self.status,
            "deliveryFeeCollected": bool(self.delivery_fee_collected),
            "pickedUpAt": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "deliveredAt": self.delivered_at.isoformat() if self.delivered_at else None,
        }


class FeeCollection(Base):
    __tablename__ = "fee_collections"

    id = Column(Integer, primary_key=True, autoincrement=True)
    mode = Column(String, nullable=False, index=True)
    cutoff = Column(DateTime(timezone=True), nullable=True)
    platform_fees_collected = Column(Integer, nullable=False, default=0)
    delivery_cuts_collected = Column(Integer, nullable=False, default=0)
    processed_order_count = Column(Integer, nullable=False, default=0)
    processed_delivery_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            "id": int(self.id),
            "mode": self.mode,
            "cutoff": self.cutoff.isoformat() if self.cutoff else None,
            "platformFeesCollected": int(self.platform_fees_collected or 0),
            "deliveryCutsCollected": int(self.delivery_cuts_collected or 0),
            "processedOrderCount": int(self.processed_order_count or 0),
            "processedDeliveryCount": int(self.processed_delivery_count or 0),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class OutboxEvent(Base):
    __tablename__ = "outbox_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String, nullable=False, index=True)
    payload_json = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=OutboxStatus.PENDING.value, index=True)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    dispatched_at = Column(DateTime(timezone=True), nullable=True)
