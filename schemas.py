"""
Database Schemas for AppOrbit

MongoDB collections are defined below using Pydantic models. Field names are
the stored (and wire) names, so they keep the product's mixed casing.

Collections:
- apps: submitted applications
- users: signed-in users and their role
- reviews: append-only reviews of an application
- reports: user complaints about an application, one per (appId, userEmail)
- coupons: discount coupons managed by admins
"""

from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

Role = Literal["user", "moderator", "admin"]
Status = Literal["pending", "approved", "rejected"]
DiscountType = Literal["percent", "amount"]

ROLE_RANK = {"user": 0, "moderator": 1, "admin": 2}

# Moderation-queue order: unmoderated items first
STATUS_RANK = {"pending": 0, "approved": 1, "rejected": 2}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_naive_utc(value: datetime) -> datetime:
    """BSON dates carry no zone; aware values are normalized to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def unique_strings(values: List[str]) -> List[str]:
    seen = []
    for v in values:
        v = v.strip()
        if v and v not in seen:
            seen.append(v)
    return seen


class Person(BaseModel):
    name: Optional[str] = None
    email: EmailStr
    image: Optional[str] = None


class Application(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    title: Optional[str] = Field(None, max_length=200)
    website: Optional[str] = None
    description: Optional[str] = Field(None, max_length=5000)
    tags: List[str] = Field(default_factory=list)
    image: Optional[str] = None
    owner: Person
    upvotes: int = Field(0, ge=0)
    voters: List[EmailStr] = Field(default_factory=list)
    status: Status = "pending"
    isFeatured: bool = False
    createdAt: datetime = Field(default_factory=utcnow)

    @field_validator("tags")
    @classmethod
    def dedupe_tags(cls, v: List[str]) -> List[str]:
        return unique_strings(v)


class User(BaseModel):
    email: EmailStr
    name: Optional[str] = None
    image: Optional[str] = None
    role: Role = "user"
    created_at: datetime = Field(default_factory=utcnow)
    last_loggedIn: datetime = Field(default_factory=utcnow)


class Review(BaseModel):
    productId: str
    reviewer: Person
    rating: Optional[int] = Field(None, ge=1, le=5)
    body: str = Field(..., min_length=1, max_length=5000)
    createdAt: datetime = Field(default_factory=utcnow)


class Report(BaseModel):
    appId: str
    userEmail: EmailStr
    productName: Optional[str] = None
    createdAt: datetime = Field(default_factory=utcnow)


class Coupon(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)
    description: Optional[str] = None
    discountType: DiscountType = "percent"
    discountValue: float = Field(..., gt=0)
    isActive: bool = True
    expiryDate: datetime
    createdAt: datetime = Field(default_factory=utcnow)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @field_validator("expiryDate")
    @classmethod
    def store_as_utc(cls, v: datetime) -> datetime:
        return as_naive_utc(v)
