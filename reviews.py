import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import List
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from database import save
from exceptions import NotFoundException, ValidationException
from models import Actor, Facility, Review

logger = logging.getLogger(__name__)

MIN_RATING = 1
MAX_RATING = 5
MAX_REVIEW_LENGTH = 1000


@dataclass
class RatingSummary:
    average: float
    count: int


def round_rating(total: int, count: int) -> float:
    """Mean to one decimal place, halves rounded up. An empty set averages 0.0."""
    if count == 0:
        return 0.0
    mean = Decimal(total) / Decimal(count)
    return float(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


async def add_review(
    session: AsyncSession, actor: Actor, facility_id: UUID, rating: int, review_text: str
) -> Review:
    if await session.get(Facility, facility_id) is None:
        raise NotFoundException("Facility not found", details={"facility_id": str(facility_id)})

    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise ValidationException(
            f"rating must be a whole number from {MIN_RATING} to {MAX_RATING}",
            details={"rating": rating},
        )
    text = (review_text or "").strip()
    if not text or len(text) > MAX_REVIEW_LENGTH:
        raise ValidationException(
            f"review_text must be 1 to {MAX_REVIEW_LENGTH} characters",
            details={"length": len(text)},
        )

    review = Review(facility_id=facility_id, user_id=actor.user_id, rating=rating, review_text=text)
    await save(session, review)
    logger.info(f"Review {review.id} added to facility {facility_id} with rating {rating}")
    return review


async def average_rating(session: AsyncSession, facility_id: UUID) -> RatingSummary:
    statement = select(func.coalesce(func.sum(Review.rating), 0), func.count(Review.id)).where(
        Review.facility_id == facility_id
    )
    total, count = (await session.execute(statement)).one()
    return RatingSummary(average=round_rating(int(total), int(count)), count=int(count))


async def list_reviews(session: AsyncSession, facility_id: UUID) -> List[Review]:
    statement = (
        select(Review)
        .where(Review.facility_id == facility_id)
        .order_by(Review.created_at.desc())
    )
    result = await session.execute(statement)
    return list(result.scalars().all())
