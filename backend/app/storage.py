from datetime import datetime, timezone
from typing import Dict, List
from uuid import uuid4

from .models import Review, ReviewCreate

# In-memory storage; reviews are lost on restart like the response cache.
_reviews: Dict[str, Review] = {}


def create_review(user_id: str, entity_type: str, listing_id: str, payload: ReviewCreate) -> Review:
    review = Review(
        review_id=str(uuid4()),
        user_id=user_id,
        entity_type=entity_type,
        listing_id=listing_id,
        created_at=datetime.now(timezone.utc),
        **payload.model_dump(),
    )
    _reviews[review.review_id] = review
    return review


def list_user_reviews(user_id: str) -> List[Review]:
    reviews = [review for review in _reviews.values() if review.user_id == user_id]
    return sorted(reviews, key=lambda review: review.created_at)


def list_listing_reviews(entity_type: str, listing_id: str) -> List[Review]:
    return [
        review
        for review in _reviews.values()
        if review.entity_type == entity_type and review.listing_id == listing_id
    ]


def clear_reviews() -> None:
    _reviews.clear()
