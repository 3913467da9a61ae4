# carmarket/schemas.py
import enum
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field, field_validator
from .models import Condition, ListingStatus, Plan
from .utils import utcnow


class ListingBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    make: str = Field(..., min_length=1, max_length=100)
    model: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1900)
    price: int = Field(..., ge=1)
    mileage: int = Field(..., ge=0)
    condition: Condition
    color: str = Field(..., min_length=1, max_length=50)
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    body_type: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    location: str = Field(..., min_length=1, max_length=200)

    @field_validator("year")
    @classmethod
    def year_not_in_future(cls, v):
        if v > utcnow().year + 1:
            raise ValueError("year is too far in the future")
        return v

class ListingCreate(ListingBase):
    pass

class ListingUpdate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    make: Optional[str] = Field(None, min_length=1, max_length=100)
    model: Optional[str] = Field(None, min_length=1, max_length=100)
    year: Optional[int] = Field(None, ge=1900)
    price: Optional[int] = Field(None, ge=1)
    mileage: Optional[int] = Field(None, ge=0)
    condition: Optional[Condition] = None
    color: Optional[str] = Field(None, min_length=1, max_length=50)
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    body_type: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    location: Optional[str] = Field(None, min_length=1, max_length=200)

class ListingOut(ListingBase):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    status: ListingStatus
    view_count: int
    created_at: datetime
    expires_at: datetime


class ImageCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    image_url: str = Field(..., min_length=2, max_length=1000, pattern=r"^(https?://|/)\S+$")

class ImageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    listing_id: int
    image_url: str
    is_primary: bool


class SortKey(str, enum.Enum):
    price_asc = "price_asc"
    price_desc = "price_desc"
    year_desc = "year_desc"
    mileage_asc = "mileage_asc"
    newest = "newest"

class ListingSearch(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None
    min_year: Optional[int] = None
    max_year: Optional[int] = None
    min_price: Optional[int] = None
    max_price: Optional[int] = None
    min_mileage: Optional[int] = None
    max_mileage: Optional[int] = None
    condition: Optional[Condition] = None
    location: Optional[str] = None
    fuel_type: Optional[str] = None
    transmission: Optional[str] = None
    body_type: Optional[str] = None
    sort_by: SortKey = SortKey.newest
    skip: int = Field(0, ge=0)
    limit: Optional[int] = Field(None, ge=1, le=500)

class ListingPage(BaseModel):
    total: int
    items: List[ListingOut]


class UserCreate(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., min_length=3, max_length=200, pattern=r"^[^@\s]+@[^@\s]+$")
    name: str = Field(..., min_length=1, max_length=100)
    phone: str = Field(..., min_length=6, max_length=20)
    verification_code: str = Field(..., min_length=6, max_length=6)

class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    username: str
    email: str
    name: str
    phone: Optional[str]
    phone_verified: bool
    plan: Plan
    free_listings_used: int
    created_at: datetime

class PhoneChange(BaseModel):
    phone: str = Field(..., min_length=6, max_length=20)
    verification_code: str = Field(..., min_length=6, max_length=6)


class VerificationRequest(BaseModel):
    phone: str = Field(..., min_length=6, max_length=20)

class VerificationConfirm(BaseModel):
    phone: str = Field(..., min_length=6, max_length=20)
    code: str = Field(..., min_length=1, max_length=12)

class VerificationIssued(BaseModel):
    phone: str
    expires_in_minutes: int
    # populated only when EXPOSE_VERIFICATION_CODES is on
    code: Optional[str] = None

class VerificationResult(BaseModel):
    verified: bool


class QuotaOut(BaseModel):
    allowed: bool
    payment_required: bool
    active_count: int
    limit: Optional[int]
    free_listings_used: int


class FavoriteCreate(BaseModel):
    listing_id: int

class FavoriteOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    listing_id: int
    created_at: datetime


class MessageCreate(BaseModel):
    listing_id: int
    receiver_id: int
    content: str = Field(..., min_length=1, max_length=2000)

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sender_id: int
    receiver_id: int
    listing_id: int
    content: str
    is_read: bool
    created_at: datetime
