# tests/test_quota.py
import pytest
from carmarket import crud, quota, services
from carmarket.errors import NotFoundError, ValidationError
from carmarket.models import User, Plan
from conftest import CAR, T0


def test_can_create_free_tier_boundary():
    user = User(plan=Plan.free, free_listings_used=0)
    assert quota.can_create(user, 4, limit=5).allowed
    denied = quota.can_create(user, 5, limit=5)
    assert not denied.allowed
    assert denied.payment_required
    assert not quota.can_create(user, 9, limit=5).allowed


def test_can_create_premium_ignores_count():
    user = User(plan=Plan.premium, free_listings_used=0)
    decision = quota.can_create(user, 500)
    assert decision.allowed
    assert not decision.payment_required
    assert decision.limit is None


def test_record_creation_only_counts_free_tier():
    free = User(plan=Plan.free, free_listings_used=2)
    premium = User(plan=Plan.premium, free_listings_used=2)
    quota.record_creation(free)
    quota.record_creation(premium)
    assert free.free_listings_used == 3
    assert premium.free_listings_used == 2


def test_sixth_listing_requires_payment_until_one_is_sold(db, seller):
    for _ in range(5):
        decision, listing = services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
        assert decision.allowed and listing is not None

    decision, listing = services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
    assert not decision.allowed
    assert decision.payment_required
    assert decision.active_count == 5
    assert listing is None
    assert crud.count_active_listings(db, seller.id) == 5

    first = crud.list_user_listings(db, seller.id)[0]
    crud.mark_sold(db, first.id)
    decision, listing = services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
    assert decision.allowed
    assert listing is not None


def test_gate_uses_active_count_not_cumulative_counter(db, seller):
    for _ in range(5):
        services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
    for listing in crud.list_user_listings(db, seller.id):
        crud.mark_sold(db, listing.id)

    decision, listing = services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
    assert decision.allowed
    db.refresh(seller)
    # counter has gone past the limit while the gate still lets the user post
    assert seller.free_listings_used == 6


def test_premium_user_has_no_ceiling_and_no_counter(db, seller):
    crud.set_premium(db, seller.id)
    for _ in range(7):
        decision, listing = services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
        assert decision.allowed
    db.refresh(seller)
    assert seller.free_listings_used == 0
    assert crud.count_active_listings(db, seller.id) == 7


def test_invalid_payload_does_not_bump_counter(db, seller):
    with pytest.raises(ValidationError):
        services.create_listing_for_user(db, seller.id, dict(CAR, price=0), now=T0)
    db.refresh(seller)
    assert seller.free_listings_used == 0


def test_unknown_user(db):
    with pytest.raises(NotFoundError):
        services.create_listing_for_user(db, 42, dict(CAR), now=T0)


def test_quota_status(db, seller):
    services.create_listing_for_user(db, seller.id, dict(CAR), now=T0)
    status = services.quota_status(db, seller.id)
    assert status == {
        "allowed": True,
        "payment_required": False,
        "active_count": 1,
        "limit": 5,
        "free_listings_used": 1,
    }
