# tests/test_api.py
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from carmarket import config, crud
from carmarket.db import get_db
from carmarket.errors import ValidationError
from carmarket.main import create_app
from carmarket.verification import VerificationCodeIssuer, InMemoryCodeStore
from conftest import CAR, T0

PHONE = "+35799000009"


@pytest.fixture
def app(session_factory, engine, clock):
    application = create_app(session_factory=session_factory, bind=engine, start_scheduler=False)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = override_get_db
    application.state.issuer = VerificationCodeIssuer(
        InMemoryCodeStore(), clock=clock, code_factory=lambda: "424242"
    )
    yield application
    application.state.issuer.shutdown()

@pytest.fixture
def client(app):
    return TestClient(app)

def auth(user):
    return {"X-User-Id": str(user.id)}


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_fetch_listing(client, seller):
    res = client.post("/listings", json=CAR, headers=auth(seller))
    assert res.status_code == 201
    body = res.json()
    assert body["status"] == "available"
    assert body["view_count"] == 0

    res = client.get("/listings/%s" % body["id"])
    assert res.status_code == 200
    assert client.get("/listings/%s" % body["id"]).json()["view_count"] >= 1


def test_create_requires_user(client):
    assert client.post("/listings", json=CAR).status_code == 401
    assert client.post("/listings", json=CAR, headers={"X-User-Id": "999"}).status_code == 401


def test_create_validation_error(client, seller):
    res = client.post("/listings", json=dict(CAR, price=0), headers=auth(seller))
    assert res.status_code == 422


def test_quota_exceeded_returns_payment_required(client, seller):
    for _ in range(5):
        assert client.post("/listings", json=CAR, headers=auth(seller)).status_code == 201
    res = client.post("/listings", json=CAR, headers=auth(seller))
    assert res.status_code == 402
    assert res.json()["payment_required"] is True

    quota = client.get("/users/me/quota", headers=auth(seller)).json()
    assert quota["allowed"] is False
    assert quota["free_listings_used"] == 5


def test_payment_hook_upgrades_user(client, seller, monkeypatch):
    monkeypatch.setattr(config, "PAYMENT_WEBHOOK_SECRET", "s3cret")
    assert client.post("/users/%s/premium" % seller.id).status_code == 403
    res = client.post("/users/%s/premium" % seller.id, headers={"X-Payment-Secret": "s3cret"})
    assert res.status_code == 200
    assert res.json()["plan"] == "premium"


def test_search_endpoint(client, seller):
    client.post("/listings", json=CAR, headers=auth(seller))
    client.post("/listings", json=dict(CAR, make="BMW", model="X5", price=30000), headers=auth(seller))
    res = client.get("/listings", params={"make": "bmw", "sort_by": "price_desc"})
    assert res.status_code == 200
    assert res.json()["total"] == 1
    assert res.json()["items"][0]["model"] == "X5"
    assert client.get("/listings", params={"sort_by": "cheapest"}).status_code == 422


def test_owner_actions(client, seller, buyer):
    listing_id = client.post("/listings", json=CAR, headers=auth(seller)).json()["id"]

    assert client.post("/listings/%s/sold" % listing_id, headers=auth(buyer)).status_code == 403
    res = client.post("/listings/%s/sold" % listing_id, headers=auth(seller))
    assert res.json()["status"] == "sold"
    assert client.get("/listings").json()["total"] == 0

    res = client.post("/listings/%s/available" % listing_id, headers=auth(seller))
    assert res.json()["status"] == "available"

    res = client.post("/listings/%s/renew" % listing_id, headers=auth(seller))
    assert res.status_code == 200

    res = client.patch("/listings/%s" % listing_id, json={"price": 11000}, headers=auth(seller))
    assert res.json()["price"] == 11000

    assert client.delete("/listings/%s" % listing_id, headers=auth(seller)).status_code == 200
    assert client.get("/listings/%s" % listing_id).status_code == 404
    assert client.post("/listings/%s/sold" % listing_id, headers=auth(seller)).status_code == 409
    assert client.post("/listings/999/sold", headers=auth(seller)).status_code == 404


def test_registration_flow(client):
    res = client.post("/verification/request", json={"phone": PHONE})
    assert res.status_code == 200
    assert res.json()["code"] is None

    user = {"username": "newbie", "email": "newbie@example.com", "name": "New",
            "phone": PHONE, "verification_code": "000000"}
    assert client.post("/users", json=user).status_code == 400

    res = client.post("/users", json=dict(user, verification_code="424242"))
    assert res.status_code == 201
    assert res.json()["phone_verified"] is True
    assert res.json()["plan"] == "free"

    # code was consumed by the successful registration
    again = dict(user, username="newbie2", email="n2@example.com", phone="+35799000010",
                 verification_code="424242")
    assert client.post("/users", json=again).status_code == 400


def test_registration_rejects_taken_phone(client, seller):
    client.post("/verification/request", json={"phone": seller.phone})
    user = {"username": "dupe", "email": "dupe@example.com", "name": "Dupe",
            "phone": seller.phone, "verification_code": "424242"}
    assert client.post("/users", json=user).status_code == 400


def test_codes_exposed_only_in_development_mode(client, monkeypatch):
    monkeypatch.setattr(config, "EXPOSE_VERIFICATION_CODES", True)
    assert client.post("/verification/request", json={"phone": PHONE}).json()["code"] == "424242"


def test_verification_confirm_endpoint(client, clock):
    client.post("/verification/request", json={"phone": PHONE})
    clock.advance(minutes=11)
    res = client.post("/verification/confirm", json={"phone": PHONE, "code": "424242"})
    assert res.json() == {"verified": False}
    assert client.post("/verification/request", json={"phone": "abc123"}).status_code == 422


def test_change_phone(client, seller):
    new_phone = "+35799000077"
    client.post("/verification/request", json={"phone": new_phone})
    res = client.post("/users/me/phone", json={"phone": new_phone, "verification_code": "424242"},
                      headers=auth(seller))
    assert res.status_code == 200
    assert res.json()["phone"] == new_phone


def test_favorites_and_messages(client, seller, buyer):
    listing_id = client.post("/listings", json=CAR, headers=auth(seller)).json()["id"]

    fav = client.post("/users/me/favorites", json={"listing_id": listing_id}, headers=auth(buyer))
    assert fav.status_code == 201
    assert len(client.get("/users/me/favorites", headers=auth(buyer)).json()) == 1
    assert client.delete("/users/me/favorites/%s" % fav.json()["id"], headers=auth(buyer)).status_code == 204

    msg = client.post("/messages", json={"listing_id": listing_id, "receiver_id": seller.id,
                                         "content": "Still for sale?"}, headers=auth(buyer))
    assert msg.status_code == 201
    thread = client.get("/listings/%s/messages/%s" % (listing_id, buyer.id), headers=auth(seller)).json()
    assert [m["content"] for m in thread] == ["Still for sale?"]
    res = client.post("/messages/%s/read" % msg.json()["id"], headers=auth(seller))
    assert res.json()["is_read"] is True


def test_admin_sweep(client, db, seller, monkeypatch):
    monkeypatch.setattr(config, "ADMIN_TOKEN", "admin")
    listing = crud.create_listing(db, seller.id, dict(CAR), now=T0 - timedelta(days=60))
    assert client.post("/admin/sweep").status_code == 403
    res = client.post("/admin/sweep", headers={"X-Admin-Token": "admin"})
    assert res.json() == {"status": "ok", "expired": 1}
    db.expire_all()
    assert crud.get_listing(db, listing.id).status.value == "expired"


def test_search_returns_twenty_per_page_by_default(client, db, seller):
    for i in range(25):
        crud.create_listing(db, seller.id, dict(CAR), now=T0 + timedelta(minutes=i))
    body = client.get("/listings").json()
    assert body["total"] == 25
    assert len(body["items"]) == 20
    assert len(client.get("/listings", params={"skip": 20}).json()["items"]) == 5
    assert client.get("/listings", params={"limit": 0}).status_code == 422


def test_listing_images(client, seller, buyer):
    listing_id = client.post("/listings", json=CAR, headers=auth(seller)).json()["id"]
    url = "/listings/%s/images" % listing_id

    first = client.post(url, json={"image_url": "/uploads/front.jpg"}, headers=auth(seller))
    assert first.status_code == 201
    assert first.json()["is_primary"] is True
    second = client.post(url, json={"image_url": "https://cdn.example.com/side.jpg"}, headers=auth(seller))
    assert second.json()["is_primary"] is False

    assert client.post(url, json={"image_url": "/uploads/x.jpg"}, headers=auth(buyer)).status_code == 403
    assert client.post(url, json={"image_url": "not a url"}, headers=auth(seller)).status_code == 422

    res = client.put("%s/%s/primary" % (url, second.json()["id"]), headers=auth(seller))
    assert res.json()["is_primary"] is True
    images = client.get(url).json()
    assert [img["is_primary"] for img in images] == [False, True]

    assert client.delete("%s/%s" % (url, first.json()["id"]), headers=auth(buyer)).status_code == 403
    assert client.delete("%s/%s" % (url, first.json()["id"]), headers=auth(seller)).status_code == 204
    assert [img["id"] for img in client.get(url).json()] == [second.json()["id"]]
    assert client.put("%s/999/primary" % url, headers=auth(seller)).status_code == 404


def test_failed_registration_write_sends_a_fresh_code(client, app, monkeypatch):
    def conflict(*args, **kwargs):
        raise ValidationError("Username already exists", ["username: taken"])

    client.post("/verification/request", json={"phone": PHONE})
    monkeypatch.setattr(crud, "create_user", conflict)
    user = {"username": "racer", "email": "racer@example.com", "name": "Racer",
            "phone": PHONE, "verification_code": "424242"}
    res = client.post("/users", json=user)
    assert res.status_code == 400
    assert "new verification code" in res.json()["detail"]
    assert app.state.issuer.store.get(PHONE) is not None
