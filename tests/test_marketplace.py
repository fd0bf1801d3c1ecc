"""Marketplace listings, purchases and disputes.

Invariants:
    - A purchase debits the buyer the full price and credits the seller price minus the 5% fee
    - A listing can be sold once
    - Only the buyer or seller may open a dispute, and only one unresolved dispute per purchase
    - A buyer-favoured refund is capped at the purchase amount
"""

import pytest

from extensions import db
from models_marketplace import (
    DISPUTE_CLOSED,
    DISPUTE_IN_REVIEW,
    DISPUTE_RESOLVED_BUYER,
    LISTING_ACTIVE,
    LISTING_SOLD,
    PURCHASE_REFUNDED,
    MarketplaceDispute,
    MarketplaceListing,
    MarketplacePurchase,
)
from models_users import User
from models_wallet import TX_EARNING, TX_PURCHASE, TX_REFUND, Transaction

DESCRIPTION = "The item never showed up after two weeks of waiting."


@pytest.fixture
def listing(make_user):
    seller = make_user(name="Seller")
    row = MarketplaceListing(
        seller_id=seller.id, title="Game key", description="Steam key for a nice game",
        category="GAMES", price=10.0, status=LISTING_ACTIVE,
    )
    db.session.add(row)
    db.session.commit()
    return row


@pytest.fixture
def purchase(client, login, make_user, listing):
    buyer = login(make_user(points=15000, name="Buyer"))
    res = client.post("/api/marketplace/orders", json={"listing_id": listing.id})
    assert res.status_code == 201
    return db.session.get(MarketplacePurchase, res.get_json()["purchase"]["id"]), buyer


def _open_dispute(client, purchase_id, **overrides):
    payload = {"purchase_id": purchase_id, "reason": "ITEM_NOT_RECEIVED", "description": DESCRIPTION}
    payload.update(overrides)
    return client.post("/api/marketplace/disputes", json=payload)


def test_create_listing_validation(client, login, make_user):
    login(make_user())
    ok = client.post("/api/marketplace/listings", json={
        "title": "Gift card", "description": "A $5 gift card code", "price": 4.5,
    })
    assert ok.status_code == 201
    assert ok.get_json()["listing"]["status"] == LISTING_ACTIVE

    assert client.post("/api/marketplace/listings", json={
        "title": "ab", "description": "long enough text", "price": 1,
    }).status_code == 400
    assert client.post("/api/marketplace/listings", json={
        "title": "Valid", "description": "short", "price": 1,
    }).status_code == 400
    assert client.post("/api/marketplace/listings", json={
        "title": "Valid", "description": "long enough text", "price": 0,
    }).status_code == 400
    assert client.post("/api/marketplace/listings", json={
        "title": "Valid", "description": "long enough text", "price": 20000,
    }).status_code == 400


def test_purchase_moves_points(purchase, listing):
    p, buyer = purchase

    assert p.points == 10000
    assert p.fee == 0.5
    assert p.seller_amount == 9.5
    assert db.session.get(User, buyer.id).points_balance == 5000
    assert db.session.get(User, listing.seller_id).points_balance == 9500
    assert db.session.get(MarketplaceListing, listing.id).status == LISTING_SOLD
    assert Transaction.query.filter_by(user_id=buyer.id, type=TX_PURCHASE).one().points == -10000
    assert Transaction.query.filter_by(user_id=listing.seller_id, type=TX_EARNING).one().points == 9500


def test_sold_listing_cannot_be_bought_again(client, login, make_user, purchase, listing):
    login(make_user(points=50000))
    res = client.post("/api/marketplace/orders", json={"listing_id": listing.id})
    assert res.status_code == 400


def test_cannot_buy_own_listing_or_without_funds(client, login, make_user, listing):
    login(db.session.get(User, listing.seller_id))
    assert client.post("/api/marketplace/orders", json={"listing_id": listing.id}).status_code == 400

    poor = login(make_user(points=9999))
    res = client.post("/api/marketplace/orders", json={"listing_id": listing.id})
    assert res.status_code == 400
    assert res.get_json()["error"] == "Insufficient balance"
    assert db.session.get(User, poor.id).points_balance == 9999

    assert client.post("/api/marketplace/orders", json={"listing_id": 9999}).status_code == 404


def test_open_dispute_once(client, purchase):
    p, _ = purchase

    assert _open_dispute(client, p.id, description="too short").status_code == 400
    assert _open_dispute(client, p.id, reason="BORED").status_code == 400

    res = _open_dispute(client, p.id)
    assert res.status_code == 201
    body = res.get_json()["dispute"]
    assert body["initiator_type"] == "BUYER"
    assert body["messages"][0]["sender_type"] == "SYSTEM"

    assert _open_dispute(client, p.id).status_code == 409


def test_outsider_cannot_dispute(client, login, make_user, purchase):
    p, _ = purchase
    login(make_user())
    assert _open_dispute(client, p.id).status_code == 403


def test_admin_resolves_for_buyer_with_refund(client, login, admin, purchase):
    p, buyer = purchase
    dispute_id = _open_dispute(client, p.id).get_json()["dispute"]["id"]
    login(admin)
    url = f"/api/admin/disputes/{dispute_id}"

    assigned = client.post(url, json={"action": "assign"})
    assert assigned.get_json()["status"] == DISPUTE_IN_REVIEW

    too_much = client.post(url, json={
        "action": "resolve", "in_favor_of": "BUYER", "resolution": "Refund", "resolved_amount": 11,
    })
    assert too_much.status_code == 400

    res = client.post(url, json={
        "action": "resolve", "in_favor_of": "BUYER", "resolution": "Seller never shipped", "resolved_amount": 10,
    })
    assert res.status_code == 200
    assert db.session.get(MarketplaceDispute, dispute_id).status == DISPUTE_RESOLVED_BUYER
    assert db.session.get(MarketplacePurchase, p.id).status == PURCHASE_REFUNDED
    assert db.session.get(User, buyer.id).points_balance == 15000
    refund = Transaction.query.filter_by(user_id=buyer.id, type=TX_REFUND).one()
    assert refund.reference == f"dispute_refund_{dispute_id}"

    again = client.post(url, json={"action": "close"})
    assert again.status_code == 400


def test_admin_close_without_refund(client, login, admin, purchase):
    p, buyer = purchase
    dispute_id = _open_dispute(client, p.id).get_json()["dispute"]["id"]
    login(admin)

    res = client.post(f"/api/admin/disputes/{dispute_id}", json={"action": "close"})

    assert res.status_code == 200
    assert db.session.get(MarketplaceDispute, dispute_id).status == DISPUTE_CLOSED
    assert db.session.get(User, buyer.id).points_balance == 5000


def test_regular_user_cannot_use_admin_disputes(client, purchase):
    assert client.get("/api/admin/disputes").status_code == 403
