# carmarket/api/routes.py
import hmac
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from typing import List, Optional
from .. import config, crud, schemas, services
from ..db import get_db
from ..errors import ValidationError
from ..models import ListingStatus
from ..scheduler import ExpirationSweeper
from ..utils import logger
from ..verification import VerificationCodeIssuer, normalize_phone

router = APIRouter()


def current_user_id(x_user_id: Optional[int] = Header(None), db: Session = Depends(get_db)) -> int:
    # session handling lives in front of this service; it forwards the caller id
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    if crud.get_user(db, x_user_id) is None:
        raise HTTPException(status_code=401, detail="Unknown user")
    return x_user_id

def get_issuer(request: Request) -> VerificationCodeIssuer:
    return request.app.state.issuer

def get_sweeper(request: Request) -> ExpirationSweeper:
    return request.app.state.sweeper

def _resend_code(issuer: VerificationCodeIssuer, phone: str, exc: ValidationError):
    # the submitted code was consumed before the write failed; send a fresh one
    issuer.issue(phone)
    logger.info("Re-sent verification code after failed write: %s", exc)
    raise HTTPException(status_code=400, detail="%s. A new verification code has been sent." % exc)


def _check_secret(expected: Optional[str], given: Optional[str]):
    if not expected or not given or not hmac.compare_digest(expected, given):
        raise HTTPException(status_code=403, detail="Forbidden")


@router.get("/health")
def health():
    return {"status": "ok"}


# ---- Listings ----

@router.get("/listings", response_model=schemas.ListingPage)
def listings(
    skip: int = 0,
    limit: int = Query(20, ge=1, le=500),
    make: str | None = Query(None),
    model: str | None = Query(None),
    min_year: int | None = Query(None),
    max_year: int | None = Query(None),
    min_price: int | None = Query(None),
    max_price: int | None = Query(None),
    min_mileage: int | None = Query(None),
    max_mileage: int | None = Query(None),
    condition: str | None = Query(None),
    location: str | None = Query(None),
    fuel_type: str | None = Query(None),
    transmission: str | None = Query(None),
    body_type: str | None = Query(None),
    sort_by: str | None = Query(None),
    db: Session = Depends(get_db)
):
    criteria = {
        "skip": skip,
        "limit": limit,
        "make": make,
        "model": model,
        "min_year": min_year,
        "max_year": max_year,
        "min_price": min_price,
        "max_price": max_price,
        "min_mileage": min_mileage,
        "max_mileage": max_mileage,
        "condition": condition or None,
        "location": location,
        "fuel_type": fuel_type,
        "transmission": transmission,
        "body_type": body_type,
    }
    if sort_by:
        criteria["sort_by"] = sort_by
    return crud.search_listings(db, criteria)


@router.get("/listings/{listing_id}", response_model=schemas.ListingOut)
def get_listing(listing_id: int, db: Session = Depends(get_db)):
    obj = crud.get_listing(db, listing_id)
    if not obj or obj.status == ListingStatus.deleted:
        raise HTTPException(status_code=404, detail="Listing not found")
    try:
        crud.increment_view(db, listing_id)
    except Exception as e:
        logger.warning("View count for listing %s not updated: %s", listing_id, e)
    return obj


@router.post("/listings", response_model=schemas.ListingOut, status_code=201)
def create_listing(payload: schemas.ListingCreate, user_id: int = Depends(current_user_id),
                   db: Session = Depends(get_db)):
    decision, obj = services.create_listing_for_user(db, user_id, payload)
    if not decision.allowed:
        return JSONResponse(status_code=402, content={
            "detail": "Free listing limit reached, upgrade to premium to post more listings",
            "payment_required": True,
            "active_count": decision.active_count,
            "limit": decision.limit,
        })
    return obj


@router.patch("/listings/{listing_id}", response_model=schemas.ListingOut)
def update_listing(listing_id: int, payload: schemas.ListingUpdate,
                   user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.update_listing(db, listing_id, payload, owner_id=user_id)


@router.delete("/listings/{listing_id}")
def delete_listing(listing_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    crud.delete_listing(db, listing_id, owner_id=user_id)
    return {"status": "deleted"}


@router.post("/listings/{listing_id}/sold", response_model=schemas.ListingOut)
def mark_sold(listing_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.mark_sold(db, listing_id, owner_id=user_id)


@router.post("/listings/{listing_id}/available", response_model=schemas.ListingOut)
def mark_available(listing_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.mark_available(db, listing_id, owner_id=user_id)


@router.post("/listings/{listing_id}/renew", response_model=schemas.ListingOut)
def renew_listing(listing_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.renew_listing(db, listing_id, owner_id=user_id)


@router.get("/listings/{listing_id}/images", response_model=List[schemas.ImageOut])
def listing_images(listing_id: int, db: Session = Depends(get_db)):
    return crud.list_images(db, listing_id)


@router.post("/listings/{listing_id}/images", response_model=schemas.ImageOut, status_code=201)
def add_listing_image(listing_id: int, payload: schemas.ImageCreate,
                      user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.add_image(db, listing_id, payload, owner_id=user_id)


@router.put("/listings/{listing_id}/images/{image_id}/primary", response_model=schemas.ImageOut)
def set_primary_image(listing_id: int, image_id: int, user_id: int = Depends(current_user_id),
                      db: Session = Depends(get_db)):
    return crud.set_primary_image(db, listing_id, image_id, owner_id=user_id)


@router.delete("/listings/{listing_id}/images/{image_id}", status_code=204)
def delete_listing_image(listing_id: int, image_id: int, user_id: int = Depends(current_user_id),
                         db: Session = Depends(get_db)):
    crud.delete_image(db, listing_id, image_id, owner_id=user_id)


# ---- Users ----

@router.post("/verification/request", response_model=schemas.VerificationIssued)
def request_verification(payload: schemas.VerificationRequest,
                         issuer: VerificationCodeIssuer = Depends(get_issuer)):
    phone = normalize_phone(payload.phone)
    code = issuer.issue(phone)
    return schemas.VerificationIssued(
        phone=phone,
        expires_in_minutes=int(issuer.ttl.total_seconds() // 60),
        code=code if config.EXPOSE_VERIFICATION_CODES else None,
    )


@router.post("/verification/confirm", response_model=schemas.VerificationResult)
def confirm_verification(payload: schemas.VerificationConfirm,
                         issuer: VerificationCodeIssuer = Depends(get_issuer)):
    return {"verified": issuer.confirm(payload.phone, payload.code)}


@router.post("/users", response_model=schemas.UserOut, status_code=201)
def register(payload: schemas.UserCreate, db: Session = Depends(get_db),
             issuer: VerificationCodeIssuer = Depends(get_issuer)):
    phone = normalize_phone(payload.phone)
    if crud.get_user_by_phone(db, phone):
        raise HTTPException(status_code=400, detail="This phone number is already registered to another account")
    if crud.get_user_by_username(db, payload.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if crud.get_user_by_email(db, payload.email):
        raise HTTPException(status_code=400, detail="Email already in use")
    if not issuer.confirm(phone, payload.verification_code):
        raise HTTPException(status_code=400, detail="Invalid or expired verification code")
    try:
        user = crud.create_user(
            db, username=payload.username, email=payload.email, name=payload.name,
            phone=phone, phone_verified=True,
        )
    except ValidationError as e:
        _resend_code(issuer, phone, e)
    logger.info("Registered user %s", user.id)
    return user


@router.get("/users/me", response_model=schemas.UserOut)
def me(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.get_user(db, user_id)


@router.post("/users/me/phone", response_model=schemas.UserOut)
def change_phone(payload: schemas.PhoneChange, user_id: int = Depends(current_user_id),
                 db: Session = Depends(get_db), issuer: VerificationCodeIssuer = Depends(get_issuer)):
    phone = normalize_phone(payload.phone)
    other = crud.get_user_by_phone(db, phone)
    if other is not None and other.id != user_id:
        raise HTTPException(status_code=400, detail="This phone number is already registered to another account")
    if not issuer.confirm(phone, payload.verification_code):
        raise HTTPException(status_code=400, detail="Invalid or expired verification code")
    try:
        return crud.set_phone(db, user_id, phone)
    except ValidationError as e:
        _resend_code(issuer, phone, e)


@router.get("/users/me/listings", response_model=List[schemas.ListingOut])
def my_listings(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.list_user_listings(db, user_id)


@router.get("/users/me/quota", response_model=schemas.QuotaOut)
def my_quota(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return services.quota_status(db, user_id)


@router.post("/users/{user_id}/premium", response_model=schemas.UserOut)
def confirm_payment(user_id: int, x_payment_secret: Optional[str] = Header(None),
                    db: Session = Depends(get_db)):
    _check_secret(config.PAYMENT_WEBHOOK_SECRET, x_payment_secret)
    return crud.set_premium(db, user_id)


# ---- Favorites ----

@router.get("/users/me/favorites", response_model=List[schemas.FavoriteOut])
def favorites(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.list_favorites(db, user_id)


@router.post("/users/me/favorites", response_model=schemas.FavoriteOut, status_code=201)
def add_favorite(payload: schemas.FavoriteCreate, user_id: int = Depends(current_user_id),
                 db: Session = Depends(get_db)):
    return crud.add_favorite(db, user_id, payload.listing_id)


@router.delete("/users/me/favorites/{favorite_id}", status_code=204)
def remove_favorite(favorite_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    crud.remove_favorite(db, user_id, favorite_id)


# ---- Messages ----

@router.get("/users/me/messages", response_model=List[schemas.MessageOut])
def messages(user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.list_messages(db, user_id)


@router.post("/messages", response_model=schemas.MessageOut, status_code=201)
def send_message(payload: schemas.MessageCreate, user_id: int = Depends(current_user_id),
                 db: Session = Depends(get_db)):
    return crud.create_message(db, user_id, payload)


@router.get("/listings/{listing_id}/messages/{other_id}", response_model=List[schemas.MessageOut])
def conversation(listing_id: int, other_id: int, user_id: int = Depends(current_user_id),
                 db: Session = Depends(get_db)):
    return crud.conversation(db, listing_id, user_id, other_id)


@router.post("/messages/{message_id}/read", response_model=schemas.MessageOut)
def read_message(message_id: int, user_id: int = Depends(current_user_id), db: Session = Depends(get_db)):
    return crud.mark_message_read(db, message_id, user_id)


# ---- Admin ----

@router.post("/admin/sweep")
def trigger_sweep(x_admin_token: Optional[str] = Header(None),
                  sweeper: ExpirationSweeper = Depends(get_sweeper)):
    _check_secret(config.ADMIN_TOKEN, x_admin_token)
    try:
        expired = sweeper.sweep()
    except Exception as e:
        logger.exception("Sweep failed: %s", e)
        raise HTTPException(status_code=500, detail="Sweep failed")
    return {"status": "ok", "expired": expired}
