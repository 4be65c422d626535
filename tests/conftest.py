import json
import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_ledger_app.db")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["LEDGER_CACHE_TTL_SECONDS"] = "0"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import ledger.auth
import ledger.stripe_service
from ledger.database import Base
from ledger.main import app as fastapi_app
from ledger.models import CourierProfile, Order, OrderStatus, Transaction, TransactionKind
from ledger.modes import classify

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_ledger.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db(monkeypatch):
    monkeypatch.setenv("PAYMENTS_MODE", "live")
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    # Point every route at the test database
    monkeypatch.setattr("ledger.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("ledger.main.SessionLocal", TestingSessionLocal)

    # Bypass auth verification for tests
    fastapi_app.dependency_overrides[ledger.auth.verify_token] = lambda: {"sub": "user-1"}
    fastapi_app.dependency_overrides[ledger.auth.require_operator] = lambda: {"sub": "op-1", "role": "ADMIN"}
    fastapi_app.dependency_overrides[ledger.stripe_service.get_dispatcher] = lambda: None

    with TestClient(fastapi_app) as c:
        yield c

    fastapi_app.dependency_overrides.clear()


def checkout_event(session_id, items=None, event_type="checkout.session.completed", **metadata):
    if items is None:
        items = [{"productId": "prod-1", "quantity": 2, "priceCents": 1000, "sellerId": "seller-1"}]
    meta = {"buyerId": "buyer-1", "items": json.dumps(items), "deliveryMode": "PICKUP"}
    meta.update({k: v for k, v in metadata.items() if v is not None})
    for key in [k for k, v in metadata.items() if v is None]:
        meta.pop(key, None)
    return {
        "id": f"evt_{session_id}",
        "type": event_type,
        "data": {
            "object": {
                "id": session_id,
                "mode": "payment",
                "payment_status": "paid",
                "payment_intent": f"pi_{session_id}",
                "customer": "cus_123",
                "amount_total": 2000,
                "metadata": meta,
            }
        },
    }


def seed_order(db, provider_ref, products_total=10000, status=OrderStatus.PAID, buyer_id="buyer-1",
               seller_id="seller-1", created_at=None):
    mode = classify(provider_ref)
    order = Order(
        order_number=f"ORD-TEST-{provider_ref}",
        buyer_id=buyer_id,
        total_amount=products_total,
        products_total=products_total,
        status=status.value,
        provider_ref=provider_ref,
        mode=mode.value,
    )
    if created_at is not None:
        order.created_at = created_at
    db.add(order)
    db.flush()
    txn = Transaction(
        order_id=order.id,
        kind=TransactionKind.SALE.value,
        amount=products_total,
        seller_id=seller_id,
        buyer_id=buyer_id,
        provider_ref=provider_ref,
        platform_fee_bps=1200,
        mode=mode.value,
    )
    if created_at is not None:
        txn.created_at = created_at
    db.add(txn)
    db.commit()
    return order, txn


def add_courier(db, user_id="courier-user-1", is_active=True):
    courier = CourierProfile(user_id=user_id, is_active=is_active, payout_account="acct_courier")
    db.add(courier)
    db.commit()
    return courier
