from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field


class ListingUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    city: Optional[str] = None
    rating: Optional[float] = Field(default=None, ge=0, le=5)
    price_level: Optional[int] = Field(default=None, ge=1, le=4)
    tags: Optional[List[str]] = None


class ReviewCreate(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    title: str = Field(..., min_length=1, max_length=120)
    body: str = Field(default="", max_length=4000)


class Review(ReviewCreate):
    review_id: str
    user_id: str
    entity_type: str
    listing_id: str
    created_at: datetime


class InvalidationRequest(BaseModel):
    scope: Literal["all", "search", "entity", "user"]
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    user_id: Optional[str] = None
