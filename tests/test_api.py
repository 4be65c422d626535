import stripe
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy.exc import SQLAlchemyError

import ledger.routes
from conftest import TestingSessionLocal, checkout_event, seed_order
from ledger.cache import TTLCache
from ledger.config import jwt_secret
from ledger.main import app as fastapi_app
from ledger.models import DeliveryOrder, DeliveryStatus, Order, Payout


def test_stripe_webhook_creates_order(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event("sess_live_abc"))

    response = client.post(
        "/webhook",
        content="raw_payload",
        headers={"stripe-signature": "fake_sig"}
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}

    db = TestingSessionLocal()
    order = db.query(Order).filter_by(provider_ref="sess_live_abc").first()
    assert order is not None
    assert order.status == "paid"
    db.close()


def test_stripe_webhook_redelivery_is_acknowledged(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event("sess_live_abc"))

    client.post("/webhook", content="raw_payload", headers={"stripe-signature": "fake_sig"})
    response = client.post("/webhook", content="raw_payload", headers={"stripe-signature": "fake_sig"})

    assert response.status_code == 200
    db = TestingSessionLocal()
    assert db.query(Order).count() == 1
    db.close()


def test_stripe_webhook_invalid_signature(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=stripe.SignatureVerificationError("Invalid", "sig"))

    response = client.post(
        "/webhook",
        headers={"stripe-signature": "invalid_sig"}
    )

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid signature"


def test_stripe_webhook_invalid_payload(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", side_effect=ValueError("not json"))

    response = client.post("/webhook", content="{", headers={"stripe-signature": "sig"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Invalid payload"


def test_stripe_webhook_malformed_metadata(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event("sess_live_bad", buyerId=None))

    response = client.post("/webhook", content="raw", headers={"stripe-signature": "sig"})

    assert response.status_code == 400
    assert response.json()["detail"] == "missing_buyer_id"


def test_stripe_webhook_other_mode_is_acknowledged(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event("cs_test_abc"))

    response = client.post("/webhook", content="raw", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    db = TestingSessionLocal()
    assert db.query(Order).count() == 0
    db.close()


def test_list_transactions(client):
    db = TestingSessionLocal()
    seed_order(db, "sess_live_1", seller_id="seller-1")
    seed_order(db, "sess_live_2", seller_id="seller-2")
    seed_order(db, "cs_test_3", seller_id="seller-1")
    db.close()

    response = client.get("/transactions", params={"sellerId": "seller-1"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["items"][0]["providerRef"] == "sess_live_1"
    assert body["hasMore"] is False


def test_list_transactions_rejects_bad_limit(client):
    response = client.get("/transactions", params={"limit": 0})

    assert response.status_code == 422


def test_list_transactions_degrades_to_empty_page(client, monkeypatch):
    def broken(db, filters):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(ledger.routes, "list_transactions", broken)

    response = client.get("/transactions", params={"limit": 10})

    assert response.status_code == 200
    assert response.json() == {
        "items": [], "total": 0, "limit": 10, "offset": 0, "hasMore": False, "totalAmount": 0,
    }


def test_financial_summary(client):
    db = TestingSessionLocal()
    seed_order(db, "sess_live_1", products_total=10000)
    db.close()

    response = client.get("/admin/financial")

    assert response.status_code == 200
    assert response.json()["totalOrders"] == 1
    assert response.json()["platformFees"] == 1200


def test_financial_summary_degrades_to_zeros(client, monkeypatch):
    def broken(db, mode=None, cache=None):
        raise SQLAlchemyError("database unavailable")

    monkeypatch.setattr(ledger.routes, "financial_summary", broken)

    response = client.get("/admin/financial")

    assert response.status_code == 200
    assert response.json()["totalOrders"] == 0
    assert response.json()["mode"] == "live"


def test_collect_fees_endpoint(client):
    db = TestingSessionLocal()
    seed_order(db, "sess_live_1", products_total=10000)
    db.close()

    first = client.post("/admin/fees/collect")
    second = client.post("/admin/fees/collect", json={})
    history = client.get("/admin/fees/collections")

    assert first.status_code == 200
    assert first.json()["platformFeesCollected"] == 1200
    assert first.json()["processedOrderCount"] == 1
    assert second.json()["processedOrderCount"] == 0
    assert len(history.json()["collections"]) == 2
    assert history.json()["totals"]["total"] == 1200


def test_payout_endpoint(client):
    db = TestingSessionLocal()
    _, txn = seed_order(db, "sess_live_1", products_total=10000)
    txn_id = txn.id
    db.close()

    ok = client.post(f"/transactions/{txn_id}/payouts", json={"recipient_id": "seller-1", "amount": 8800})
    over = client.post(f"/transactions/{txn_id}/payouts", json={"recipient_id": "seller-1", "amount": 1201})
    missing = client.post("/transactions/txn_nope/payouts", json={"recipient_id": "seller-1", "amount": 1})
    invalid = client.post(f"/transactions/{txn_id}/payouts", json={"recipient_id": "seller-1", "amount": 0})

    assert ok.status_code == 200
    assert ok.json()["status"] == "pending"
    assert over.status_code == 409
    assert missing.status_code == 404
    assert invalid.status_code == 422


def test_payout_disbursement_failure(client, mocker):
    dispatcher = mocker.Mock()
    dispatcher.dispatch.side_effect = stripe.StripeError("insufficient funds")
    fastapi_app.dependency_overrides[ledger.routes.get_dispatcher] = lambda: dispatcher
    db = TestingSessionLocal()
    _, txn = seed_order(db, "sess_live_1", products_total=10000)
    txn_id = txn.id
    db.close()

    response = client.post(
        f"/transactions/{txn_id}/payouts",
        json={"recipient_id": "seller-1", "amount": 5000, "destination": "acct_1"},
    )

    assert response.status_code == 502
    db = TestingSessionLocal()
    assert db.query(Payout).one().status == "failed"
    db.close()


def test_refund_endpoint(client):
    db = TestingSessionLocal()
    _, txn_a = seed_order(db, "sess_live_1", products_total=10000)
    _, txn_b = seed_order(db, "sess_live_2", products_total=10000)
    a_id, b_id = txn_a.id, txn_b.id
    db.close()

    first = client.post(f"/transactions/{a_id}/refunds", json={"amount": 2500, "provider_ref": "re_1"})
    repeat = client.post(f"/transactions/{a_id}/refunds", json={"amount": 2500, "provider_ref": "re_1"})
    conflict = client.post(f"/transactions/{b_id}/refunds", json={"amount": 2500, "provider_ref": "re_1"})

    assert first.status_code == 200
    assert repeat.json()["id"] == first.json()["id"]
    assert conflict.status_code == 409


def test_delivery_status_endpoint(client):
    db = TestingSessionLocal()
    order, _ = seed_order(db, "sess_live_1")
    delivery = DeliveryOrder(order_id=order.id, delivery_fee=600)
    db.add(delivery)
    db.commit()
    delivery_id = delivery.id
    db.close()

    accepted = client.post(f"/deliveries/{delivery_id}/status", json={"status": "accepted"})
    skipped = client.post(f"/deliveries/{delivery_id}/status", json={"status": "delivered"})
    missing = client.post("/deliveries/delivery_nope/status", json={"status": "accepted"})

    assert accepted.status_code == 200
    assert accepted.json()["status"] == DeliveryStatus.ACCEPTED.value
    assert skipped.status_code == 409
    assert missing.status_code == 404


def test_writes_refresh_the_cached_summary(client, monkeypatch):
    monkeypatch.setattr(fastapi_app.state, "summary_cache", TTLCache(60))
    db = TestingSessionLocal()
    _, txn = seed_order(db, "sess_live_1", products_total=10000)
    txn_id = txn.id
    db.close()

    assert client.get("/admin/financial").json()["collectedPlatformFees"] == 0

    client.post("/admin/fees/collect")
    assert client.get("/admin/financial").json()["collectedPlatformFees"] == 1200

    client.post(f"/transactions/{txn_id}/payouts", json={"recipient_id": "seller-1", "amount": 5000})
    assert client.get("/admin/financial").json()["totalPayouts"] == 5000

    client.post(f"/transactions/{txn_id}/refunds", json={"amount": 1000, "provider_ref": "re_1"})
    assert client.get("/admin/financial").json()["totalRefunds"] == 1000


def test_delivery_status_change_invalidates_summary(client, mocker):
    db = TestingSessionLocal()
    order, _ = seed_order(db, "sess_live_1")
    delivery = DeliveryOrder(order_id=order.id, delivery_fee=600)
    db.add(delivery)
    db.commit()
    delivery_id = delivery.id
    db.close()
    invalidate = mocker.spy(fastapi_app.state.summary_cache, "invalidate")

    client.post(f"/deliveries/{delivery_id}/status", json={"status": "accepted"})

    invalidate.assert_called_once()


def test_seller_balance_and_payout_request(client):
    db = TestingSessionLocal()
    seed_order(db, "sess_live_1", products_total=10000, seller_id="user-1")
    seed_order(db, "sess_live_2", products_total=5000, seller_id="user-1")
    db.close()

    balance = client.get("/sellers/user-1/balance")
    requested = client.post("/sellers/user-1/payouts", json={"destination": None})
    again = client.post("/sellers/user-1/payouts")

    assert balance.status_code == 200
    assert balance.json()["available"] == 13200
    assert len(balance.json()["transactions"]) == 2
    assert requested.status_code == 200
    assert requested.json()["total"] == 13200
    assert {p["recipientId"] for p in requested.json()["payouts"]} == {"user-1"}
    assert again.status_code == 400
    assert client.get("/sellers/user-1/balance").json()["available"] == 0


def test_seller_routes_are_limited_to_the_seller(client):
    assert client.get("/sellers/seller-2/balance").status_code == 403
    assert client.post("/sellers/seller-2/payouts").status_code == 403


def test_transfer_webhook_confirms_payout(client, mocker):
    db = TestingSessionLocal()
    _, txn = seed_order(db, "sess_live_1", products_total=10000)
    txn_id = txn.id
    db.close()
    payout_id = client.post(
        f"/transactions/{txn_id}/payouts", json={"recipient_id": "seller-1", "amount": 8800}
    ).json()["id"]
    mocker.patch("stripe.Webhook.construct_event", return_value={
        "type": "transfer.created",
        "data": {"object": {"id": "tr_live_1", "object": "transfer", "metadata": {"payoutId": payout_id}}},
    })
    invalidate = mocker.spy(fastapi_app.state.summary_cache, "invalidate")

    response = client.post("/webhook", content="raw", headers={"stripe-signature": "sig"})

    assert response.status_code == 200
    invalidate.assert_called_once()
    listed = client.get("/payouts").json()["items"][0]
    assert listed["status"] == "paid"
    assert listed["providerRef"] == "tr_live_1"


def test_process_outbox_endpoint(client, mocker):
    mocker.patch("stripe.Webhook.construct_event", return_value=checkout_event("sess_live_abc"))
    client.post("/webhook", content="raw", headers={"stripe-signature": "sig"})

    response = client.post("/admin/outbox/process")

    assert response.status_code == 200
    assert response.json()["dispatched"] == 1


def _bearer(role=None):
    claims = {"sub": "user-42"}
    if role:
        claims["role"] = role
    return {"Authorization": f"Bearer {jwt.encode(claims, jwt_secret(), algorithm='HS256')}"}


def test_auth_is_enforced(monkeypatch):
    monkeypatch.setattr("ledger.routes.SessionLocal", TestingSessionLocal)

    with TestClient(fastapi_app) as c:
        assert c.get("/transactions").status_code == 422
        assert c.get("/transactions", headers={"Authorization": "Bearer garbage"}).status_code == 401
        assert c.get("/transactions", headers=_bearer()).status_code == 200
        assert c.get("/admin/financial", headers=_bearer()).status_code == 403
        assert c.get("/admin/financial", headers=_bearer("SUPERADMIN")).status_code == 200
        assert c.get("/admin/financial", headers=_bearer("admin")).status_code == 200
        assert c.get("/sellers/user-42/balance", headers=_bearer()).status_code == 200
        assert c.get("/sellers/someone-else/balance", headers=_bearer()).status_code == 403
        assert c.get("/sellers/someone-else/balance", headers=_bearer("ADMIN")).status_code == 200
