# carmarket/crud.py
"""CRUD operations for listings, users, favorites and messages.

Listing helpers enforce the status transition table:

    available -> sold, sold -> available, available -> expired (sweeper),
    any status except deleted -> deleted

Everything else raises `InvalidTransitionError`. Ownership is checked only
when the caller passes `owner_id`.
"""
from datetime import datetime
from typing import Dict, Any, List, Optional, Union
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update, and_, or_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from . import config, schemas
from .errors import (
    ValidationError, InvalidTransitionError, NotFoundError, ForbiddenError, TransientStoreError,
)
from .models import Listing, ListingImage, ListingStatus, User, Plan, Favorite, Message
from .utils import utcnow, add_months, logger

_SORTS = {
    schemas.SortKey.price_asc: (Listing.price.asc(),),
    schemas.SortKey.price_desc: (Listing.price.desc(),),
    schemas.SortKey.year_desc: (Listing.year.desc(),),
    schemas.SortKey.mileage_asc: (Listing.mileage.asc(),),
    schemas.SortKey.newest: (Listing.created_at.desc(),),
}


def commit_or_raise(db: Session):
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise ValidationError("conflicts with an existing record") from e
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientStoreError(str(e)) from e


def _parse(model, data):
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data or {})
    except PydanticValidationError as e:
        messages = [
            "%s: %s" % (".".join(str(p) for p in err["loc"]), err["msg"]) for err in e.errors()
        ]
        raise ValidationError("invalid %s" % model.__name__, messages) from e


def expiry_from(now: datetime) -> datetime:
    return add_months(now, config.LISTING_TTL_MONTHS)


# ---- Listings ----

def get_listing(db: Session, listing_id: int) -> Optional[Listing]:
    return db.get(Listing, listing_id)

def _owned_listing(db: Session, listing_id: int, owner_id: Optional[int]) -> Listing:
    obj = get_listing(db, listing_id)
    if obj is None:
        raise NotFoundError("Listing %s not found" % listing_id)
    if owner_id is not None and obj.user_id != owner_id:
        raise ForbiddenError("Not authorized to modify listing %s" % listing_id)
    return obj

def create_listing(db: Session, owner_id: int, attrs: Union[Dict[str, Any], schemas.ListingCreate],
                   now: Optional[datetime] = None, commit: bool = True) -> Listing:
    data = _parse(schemas.ListingCreate, attrs)
    if db.get(User, owner_id) is None:
        raise NotFoundError("User %s not found" % owner_id)
    now = now or utcnow()
    obj = Listing(
        user_id=owner_id,
        status=ListingStatus.available,
        view_count=0,
        created_at=now,
        expires_at=expiry_from(now),
        **data.model_dump(),
    )
    db.add(obj)
    if commit:
        commit_or_raise(db)
        db.refresh(obj)
    else:
        db.flush()
    return obj

def search_listings(db: Session, criteria: Union[Dict[str, Any], schemas.ListingSearch, None] = None):
    c = _parse(schemas.ListingSearch, criteria)
    conds = [Listing.status == ListingStatus.available]
    if c.make:
        conds.append(func.lower(Listing.make).contains(c.make.strip().lower(), autoescape=True))
    if c.model:
        conds.append(func.lower(Listing.model).contains(c.model.strip().lower(), autoescape=True))
    if c.min_year is not None:
        conds.append(Listing.year >= c.min_year)
    if c.max_year is not None:
        conds.append(Listing.year <= c.max_year)
    if c.min_price is not None:
        conds.append(Listing.price >= c.min_price)
    if c.max_price is not None:
        conds.append(Listing.price <= c.max_price)
    if c.min_mileage is not None:
        conds.append(Listing.mileage >= c.min_mileage)
    if c.max_mileage is not None:
        conds.append(Listing.mileage <= c.max_mileage)
    if c.condition is not None:
        conds.append(Listing.condition == c.condition)
    if c.location:
        conds.append(Listing.location == c.location)
    if c.fuel_type:
        conds.append(Listing.fuel_type == c.fuel_type)
    if c.transmission:
        conds.append(Listing.transmission == c.transmission)
    if c.body_type:
        conds.append(Listing.body_type == c.body_type)

    where = and_(*conds)
    total = db.scalar(select(func.count()).select_from(Listing).where(where))
    q = select(Listing).where(where).order_by(*_SORTS[c.sort_by], Listing.id.asc()).offset(c.skip)
    if c.limit is not None:
        q = q.limit(c.limit)
    items = db.execute(q).scalars().all()
    return {"total": total, "items": items}

def list_user_listings(db: Session, owner_id: int) -> List[Listing]:
    return db.execute(
        select(Listing)
        .where(Listing.user_id == owner_id, Listing.status != ListingStatus.deleted)
        .order_by(Listing.created_at.desc(), Listing.id.asc())
    ).scalars().all()

def count_active_listings(db: Session, owner_id: int) -> int:
    return db.scalar(
        select(func.count()).select_from(Listing)
        .where(Listing.user_id == owner_id, Listing.status == ListingStatus.available)
    )

def update_listing(db: Session, listing_id: int, updates, owner_id: Optional[int] = None) -> Listing:
    data = _parse(schemas.ListingUpdate, updates)
    obj = _owned_listing(db, listing_id, owner_id)
    if obj.status == ListingStatus.deleted:
        raise InvalidTransitionError("Listing %s is deleted" % listing_id)
    for k, v in data.model_dump(exclude_unset=True).items():
        if v is None and k in ("make", "model", "year", "price", "mileage", "condition", "color", "location"):
            raise ValidationError("%s cannot be cleared" % k, ["%s: required" % k])
        setattr(obj, k, v)
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def _transition(db: Session, listing_id: int, source: ListingStatus, target: ListingStatus,
                owner_id: Optional[int]) -> Listing:
    obj = _owned_listing(db, listing_id, owner_id)
    if obj.status == target:
        return obj
    if obj.status != source:
        raise InvalidTransitionError(
            "Cannot change listing %s from %s to %s" % (listing_id, obj.status.value, target.value)
        )
    obj.status = target
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def mark_sold(db: Session, listing_id: int, owner_id: Optional[int] = None) -> Listing:
    return _transition(db, listing_id, ListingStatus.available, ListingStatus.sold, owner_id)

def mark_available(db: Session, listing_id: int, owner_id: Optional[int] = None) -> Listing:
    return _transition(db, listing_id, ListingStatus.sold, ListingStatus.available, owner_id)

def renew_listing(db: Session, listing_id: int, now: Optional[datetime] = None,
                  owner_id: Optional[int] = None) -> Listing:
    obj = _owned_listing(db, listing_id, owner_id)
    obj.expires_at = expiry_from(now or utcnow())
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def delete_listing(db: Session, listing_id: int, owner_id: Optional[int] = None) -> Listing:
    obj = _owned_listing(db, listing_id, owner_id)
    if obj.status == ListingStatus.deleted:
        raise NotFoundError("Listing %s not found" % listing_id)
    obj.status = ListingStatus.deleted
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def increment_view(db: Session, listing_id: int) -> bool:
    res = db.execute(
        update(Listing)
        .where(Listing.id == listing_id)
        .values(view_count=Listing.view_count + 1)
        .execution_options(synchronize_session=False)
    )
    count = res.rowcount
    commit_or_raise(db)
    return count > 0

def expire_listings(db: Session, now: datetime) -> int:
    res = db.execute(
        update(Listing)
        .where(Listing.status == ListingStatus.available, Listing.expires_at <= now)
        .values(status=ListingStatus.expired)
        .execution_options(synchronize_session=False)
    )
    count = res.rowcount
    commit_or_raise(db)
    return count


# ---- Listing images ----

def list_images(db: Session, listing_id: int) -> List[ListingImage]:
    listing = get_listing(db, listing_id)
    if listing is None or listing.status == ListingStatus.deleted:
        raise NotFoundError("Listing %s not found" % listing_id)
    return db.execute(
        select(ListingImage).where(ListingImage.listing_id == listing_id).order_by(ListingImage.id.asc())
    ).scalars().all()

def add_image(db: Session, listing_id: int, payload, owner_id: Optional[int] = None) -> ListingImage:
    data = _parse(schemas.ImageCreate, payload)
    listing = _owned_listing(db, listing_id, owner_id)
    if listing.status == ListingStatus.deleted:
        raise InvalidTransitionError("Listing %s is deleted" % listing_id)
    has_images = db.scalar(
        select(func.count()).select_from(ListingImage).where(ListingImage.listing_id == listing_id)
    )
    obj = ListingImage(listing_id=listing_id, image_url=data.image_url, is_primary=not has_images)
    db.add(obj)
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def _listing_image(db: Session, listing_id: int, image_id: int, owner_id: Optional[int]) -> ListingImage:
    _owned_listing(db, listing_id, owner_id)
    obj = db.get(ListingImage, image_id)
    if obj is None or obj.listing_id != listing_id:
        raise NotFoundError("Image %s not found" % image_id)
    return obj

def set_primary_image(db: Session, listing_id: int, image_id: int,
                      owner_id: Optional[int] = None) -> ListingImage:
    obj = _listing_image(db, listing_id, image_id, owner_id)
    db.execute(
        update(ListingImage)
        .where(ListingImage.listing_id == listing_id, ListingImage.id != image_id)
        .values(is_primary=False)
        .execution_options(synchronize_session=False)
    )
    obj.is_primary = True
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def delete_image(db: Session, listing_id: int, image_id: int, owner_id: Optional[int] = None) -> None:
    obj = _listing_image(db, listing_id, image_id, owner_id)
    was_primary = obj.is_primary
    db.delete(obj)
    db.flush()
    if was_primary:
        # oldest remaining image takes over
        nxt = db.execute(
            select(ListingImage).where(ListingImage.listing_id == listing_id).order_by(ListingImage.id.asc())
        ).scalars().first()
        if nxt is not None:
            nxt.is_primary = True
    commit_or_raise(db)


# ---- Users ----

def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.get(User, user_id)

def get_user_by_phone(db: Session, phone: str) -> Optional[User]:
    return db.execute(select(User).where(User.phone == phone)).scalars().first()

def get_user_by_username(db: Session, username: str) -> Optional[User]:
    return db.execute(select(User).where(User.username == username)).scalars().first()

def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.execute(select(User).where(func.lower(User.email) == email.lower())).scalars().first()

def create_user(db: Session, username: str, email: str, name: str, phone: Optional[str] = None,
                phone_verified: bool = False, plan: Plan = Plan.free) -> User:
    if get_user_by_username(db, username):
        raise ValidationError("Username already exists", ["username: taken"])
    if get_user_by_email(db, email):
        raise ValidationError("Email already in use", ["email: taken"])
    if phone and get_user_by_phone(db, phone):
        raise ValidationError("This phone number is already registered", ["phone: taken"])
    obj = User(
        username=username, email=email, name=name, phone=phone,
        phone_verified=phone_verified, plan=plan, free_listings_used=0,
    )
    db.add(obj)
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def set_premium(db: Session, user_id: int) -> User:
    obj = get_user(db, user_id)
    if obj is None:
        raise NotFoundError("User %s not found" % user_id)
    if not obj.is_premium:
        obj.plan = Plan.premium
        commit_or_raise(db)
        db.refresh(obj)
        logger.info("User %s upgraded to premium", user_id)
    return obj

def set_phone(db: Session, user_id: int, phone: str) -> User:
    obj = get_user(db, user_id)
    if obj is None:
        raise NotFoundError("User %s not found" % user_id)
    other = get_user_by_phone(db, phone)
    if other is not None and other.id != user_id:
        raise ValidationError("This phone number is already registered", ["phone: taken"])
    obj.phone = phone
    obj.phone_verified = True
    commit_or_raise(db)
    db.refresh(obj)
    return obj


# ---- Favorites ----

def list_favorites(db: Session, user_id: int) -> List[Favorite]:
    return db.execute(
        select(Favorite).where(Favorite.user_id == user_id).order_by(Favorite.created_at.desc(), Favorite.id.desc())
    ).scalars().all()

def add_favorite(db: Session, user_id: int, listing_id: int) -> Favorite:
    listing = get_listing(db, listing_id)
    if listing is None or listing.status == ListingStatus.deleted:
        raise NotFoundError("Listing %s not found" % listing_id)
    existing = db.execute(
        select(Favorite).where(Favorite.user_id == user_id, Favorite.listing_id == listing_id)
    ).scalars().first()
    if existing is not None:
        return existing
    obj = Favorite(user_id=user_id, listing_id=listing_id)
    db.add(obj)
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def remove_favorite(db: Session, user_id: int, favorite_id: int) -> None:
    obj = db.get(Favorite, favorite_id)
    if obj is None:
        raise NotFoundError("Favorite %s not found" % favorite_id)
    if obj.user_id != user_id:
        raise ForbiddenError("Not authorized to remove this favorite")
    db.delete(obj)
    commit_or_raise(db)


# ---- Messages ----

def create_message(db: Session, sender_id: int, payload) -> Message:
    data = _parse(schemas.MessageCreate, payload)
    if data.receiver_id == sender_id:
        raise ValidationError("Cannot message yourself", ["receiver_id: same as sender"])
    if get_user(db, data.receiver_id) is None:
        raise NotFoundError("User %s not found" % data.receiver_id)
    listing = get_listing(db, data.listing_id)
    if listing is None or listing.status == ListingStatus.deleted:
        raise NotFoundError("Listing %s not found" % data.listing_id)
    if sender_id != listing.user_id and data.receiver_id != listing.user_id:
        raise ForbiddenError("Messages about a listing must involve its owner")
    obj = Message(
        sender_id=sender_id,
        receiver_id=data.receiver_id,
        listing_id=data.listing_id,
        content=data.content,
        is_read=False,
    )
    db.add(obj)
    commit_or_raise(db)
    db.refresh(obj)
    return obj

def list_messages(db: Session, user_id: int) -> List[Message]:
    return db.execute(
        select(Message)
        .where(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
        .order_by(Message.created_at.desc(), Message.id.desc())
    ).scalars().all()

def conversation(db: Session, listing_id: int, user_a: int, user_b: int) -> List[Message]:
    return db.execute(
        select(Message)
        .where(
            Message.listing_id == listing_id,
            or_(
                and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                and_(Message.sender_id == user_b, Message.receiver_id == user_a),
            ),
        )
        .order_by(Message.created_at.asc(), Message.id.asc())
    ).scalars().all()

def mark_message_read(db: Session, message_id: int, user_id: int) -> Message:
    obj = db.get(Message, message_id)
    if obj is None:
        raise NotFoundError("Message %s not found" % message_id)
    if obj.receiver_id != user_id:
        raise ForbiddenError("Only the receiver can mark a message as read")
    if not obj.is_read:
        obj.is_read = True
        commit_or_raise(db)
        db.refresh(obj)
    return obj
