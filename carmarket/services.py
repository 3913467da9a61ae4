# carmarket/services.py
from datetime import datetime
from typing import Dict, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.orm import Session
from . import crud, quota
from .errors import NotFoundError
from .models import Listing, User
from .utils import logger


def create_listing_for_user(db: Session, user_id: int, payload: Dict,
                            now: Optional[datetime] = None) -> Tuple[quota.QuotaDecision, Optional[Listing]]:
    """Quota check and insert in a single transaction.

    The user row is locked with SELECT ... FOR UPDATE (a no-op on SQLite), so
    two concurrent creations by the same user cannot both pass the count.
    """
    user = db.execute(select(User).where(User.id == user_id).with_for_update()).scalars().first()
    if user is None:
        db.rollback()
        raise NotFoundError("User %s not found" % user_id)
    decision = quota.can_create(user, crud.count_active_listings(db, user_id))
    if not decision.allowed:
        db.rollback()
        logger.info("User %s hit the free listing limit (%s active)", user_id, decision.active_count)
        return decision, None
    try:
        listing = crud.create_listing(db, user_id, payload, now=now, commit=False)
    except Exception:
        db.rollback()
        raise
    quota.record_creation(user)
    crud.commit_or_raise(db)
    db.refresh(listing)
    logger.info("Created listing %s for user %s", listing.id, user_id)
    return decision, listing


def quota_status(db: Session, user_id: int) -> Dict:
    user = crud.get_user(db, user_id)
    if user is None:
        raise NotFoundError("User %s not found" % user_id)
    decision = quota.can_create(user, crud.count_active_listings(db, user_id))
    return {
        "allowed": decision.allowed,
        "payment_required": decision.payment_required,
        "active_count": decision.active_count,
        "limit": decision.limit,
        "free_listings_used": user.free_listings_used,
    }
