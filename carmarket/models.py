# carmarket/models.py
"""SQLAlchemy ORM models for persisted entities.

Listings and their image records, owners, verification codes for the
database-backed code store, favorites and buyer/seller messages.
"""
import enum
from sqlalchemy import (
    Column, Integer, Text, Boolean, DateTime, ForeignKey, Enum, Index, UniqueConstraint,
)
from sqlalchemy.orm import relationship
from .db import Base
from .utils import utcnow


class ListingStatus(str, enum.Enum):
    available = "available"
    sold = "sold"
    expired = "expired"
    deleted = "deleted"


class Condition(str, enum.Enum):
    new = "new"
    excellent = "excellent"
    good = "good"
    fair = "fair"
    poor = "poor"


class Plan(str, enum.Enum):
    free = "free"
    premium = "premium"


class User(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    username = Column(Text, nullable=False, unique=True)
    email = Column(Text, nullable=False, unique=True)
    name = Column(Text, nullable=False)
    phone = Column(Text, unique=True)
    phone_verified = Column(Boolean, nullable=False, default=False)
    plan = Column(Enum(Plan, native_enum=False), nullable=False, default=Plan.free)
    # cumulative, informational only; the quota gate uses the live active count
    free_listings_used = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    listings = relationship("Listing", back_populates="owner")

    @property
    def is_premium(self) -> bool:
        return self.plan == Plan.premium


class Listing(Base):
    __tablename__ = "listings"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    year = Column(Integer, nullable=False)
    price = Column(Integer, nullable=False)
    mileage = Column(Integer, nullable=False)
    condition = Column(Enum(Condition, native_enum=False), nullable=False)
    color = Column(Text, nullable=False)
    fuel_type = Column(Text)
    transmission = Column(Text)
    body_type = Column(Text)
    description = Column(Text)
    location = Column(Text, nullable=False)
    status = Column(
        Enum(ListingStatus, native_enum=False), nullable=False, default=ListingStatus.available
    )
    view_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)

    owner = relationship("User", back_populates="listings")
    images = relationship("ListingImage", back_populates="listing", order_by="ListingImage.id")

Index("idx_listings_status_expires", Listing.status, Listing.expires_at)
Index("idx_listings_price", Listing.price)
Index("idx_listings_year", Listing.year)


class ListingImage(Base):
    __tablename__ = "listing_images"
    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False, index=True)
    # files live with the upload host; only their URL is kept here
    image_url = Column(Text, nullable=False)
    is_primary = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    listing = relationship("Listing", back_populates="images")


class VerificationCode(Base):
    __tablename__ = "verification_codes"
    phone = Column(Text, primary_key=True)
    code = Column(Text, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Favorite(Base):
    __tablename__ = "favorites"
    __table_args__ = (UniqueConstraint("user_id", "listing_id", name="uq_favorite_user_listing"),)
    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class Message(Base):
    __tablename__ = "messages"
    id = Column(Integer, primary_key=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
