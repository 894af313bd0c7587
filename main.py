import logging
from datetime import date, time
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from fastapi import Depends, FastAPI, Header, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

import community
import facilities
import reviews
from booking_service import BookingService
from config import CORS_ORIGINS, LOG_LEVEL
from database import get_session, init_db
from exceptions import DomainException, ForbiddenException, NotFoundException, UnauthorizedException
from models import (
    Actor,
    Booking,
    Facility,
    FacilityStatus,
    PlayerPreference,
    Profile,
    Review,
    Team,
    TeamMember,
)
from payments import StripeGateway
from pricing_advisor import AIAdvisor, FacilityRecommendation, PlayerMatch, PriceSuggestion

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

app = FastAPI(title="Sports Facility Booking Service")

MATCH_CANDIDATE_LIMIT = 50
RECOMMENDATION_HISTORY_LIMIT = 10


# Pydantic Schemas for Request/Response
class BookingCreate(BaseModel):
    facility_id: UUID
    booking_date: date
    start_time: time
    end_time: time
    team_size: int = 1
    special_requests: Optional[str] = Field(default=None, max_length=500)
    use_dynamic_pricing: bool = False


class PaymentConfirm(BaseModel):
    payment_id: str = Field(min_length=1)


class PaymentIntentOut(BaseModel):
    payment_id: str
    client_secret: str


class QuoteOut(BaseModel):
    base_price_per_hour: Decimal
    hours: int
    base_total: Decimal
    price_per_hour: Decimal
    total: Decimal
    suggestion: Optional[PriceSuggestion] = None


class ReviewCreate(BaseModel):
    rating: int
    review_text: str


class RatingOut(BaseModel):
    average: float
    count: int


class ModerationUpdate(BaseModel):
    status: FacilityStatus


class CompletionOut(BaseModel):
    completed: int


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException):
    http_exc = exc.to_http_exception()
    if http_exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.on_event("startup")
async def on_startup():
    await init_db()


# --- Dependencies ---

async def get_actor(
    x_user_id: Optional[UUID] = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> Actor:
    """Identity comes from the upstream auth layer through the X-User-Id header."""
    if x_user_id is None:
        raise UnauthorizedException("Missing X-User-Id header")
    profile = await session.get(Profile, x_user_id)
    if profile is None:
        raise UnauthorizedException("Unknown user")
    return Actor(user_id=profile.id, role=profile.role)


def get_advisor() -> AIAdvisor:
    return AIAdvisor()


def get_gateway() -> StripeGateway:
    return StripeGateway()


def get_booking_service(
    session: AsyncSession = Depends(get_session),
    advisor: AIAdvisor = Depends(get_advisor),
    gateway: StripeGateway = Depends(get_gateway),
) -> BookingService:
    return BookingService(session, advisor=advisor, gateway=gateway)


# --- Facilities ---

@app.get("/facilities", response_model=List[Facility])
async def list_facilities(city: Optional[str] = None, session: AsyncSession = Depends(get_session)):
    return await facilities.list_approved_facilities(session, city)


@app.post("/facilities", response_model=Facility, status_code=status.HTTP_201_CREATED)
async def register_facility(
    data: facilities.FacilityCreate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await facilities.register_facility(session, actor, data)


@app.get("/facilities/recommendations", response_model=List[FacilityRecommendation])
async def recommend_facilities(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
    advisor: AIAdvisor = Depends(get_advisor),
):
    """Best-effort picks among approved facilities; an empty list when the advisor has no answer."""
    me = await session.get(Profile, actor.user_id)
    preferences = await community.get_preferences(session, actor.user_id)
    history = (
        await session.execute(
            select(Booking, Facility)
            .join(Facility, Booking.facility_id == Facility.id)
            .where(Booking.user_id == actor.user_id)
            .order_by(Booking.created_at.desc())
            .limit(RECOMMENDATION_HISTORY_LIMIT)
        )
    ).all()
    available = await facilities.list_approved_facilities(session)

    bookings = [
        {
            "facility_id": str(b.facility_id),
            "facility_name": f.name,
            "city": f.city,
            "sports": f.sports,
            "booking_date": b.booking_date.isoformat(),
            "start_time": b.start_time.isoformat(),
            "price_per_hour": str(b.price_per_hour),
            "status": b.status.value,
        }
        for b, f in history
    ]
    candidates = [
        {
            "id": str(f.id),
            "name": f.name,
            "city": f.city,
            "sports": f.sports,
            "amenities": f.amenities,
            "base_price_per_hour": str(f.base_price_per_hour),
            "capacity": f.capacity,
        }
        for f in available
    ]
    picks = await advisor.recommend_facilities(
        {"id": str(me.id), "full_name": me.full_name, "skill_level": me.skill_level},
        preferences.describe() if preferences else None,
        bookings,
        candidates,
    )
    return picks or []


@app.get("/facilities/{facility_id}", response_model=Facility)
async def get_facility(facility_id: UUID, session: AsyncSession = Depends(get_session)):
    return await facilities.get_facility(session, facility_id)


@app.patch("/facilities/{facility_id}/status", response_model=Facility)
async def moderate_facility(
    facility_id: UUID,
    update: ModerationUpdate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await facilities.moderate_facility(session, actor, facility_id, update.status)


@app.get("/facilities/{facility_id}/quote", response_model=QuoteOut)
async def quote_price(
    facility_id: UUID,
    booking_date: date,
    start_time: time,
    end_time: time,
    dynamic: bool = False,
    service: BookingService = Depends(get_booking_service),
):
    quote = await service.quote_price(facility_id, booking_date, start_time, end_time, dynamic)
    return QuoteOut(
        base_price_per_hour=quote.base_price_per_hour,
        hours=quote.hours,
        base_total=quote.base_total,
        price_per_hour=quote.price_per_hour,
        total=quote.total,
        suggestion=quote.suggestion,
    )


@app.get("/facilities/{facility_id}/bookings", response_model=List[Booking])
async def list_facility_bookings(
    facility_id: UUID,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_facility_bookings(actor, facility_id)


# --- Reviews ---

@app.get("/facilities/{facility_id}/reviews", response_model=List[Review])
async def list_reviews(facility_id: UUID, session: AsyncSession = Depends(get_session)):
    return await reviews.list_reviews(session, facility_id)


@app.post("/facilities/{facility_id}/reviews", response_model=Review, status_code=status.HTTP_201_CREATED)
async def add_review(
    facility_id: UUID,
    data: ReviewCreate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await reviews.add_review(session, actor, facility_id, data.rating, data.review_text)


@app.get("/facilities/{facility_id}/rating", response_model=RatingOut)
async def get_rating(facility_id: UUID, session: AsyncSession = Depends(get_session)):
    summary = await reviews.average_rating(session, facility_id)
    return RatingOut(average=summary.average, count=summary.count)


# --- Bookings ---

@app.post("/bookings", response_model=Booking, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreate,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.create_booking(
        actor,
        data.facility_id,
        data.booking_date,
        data.start_time,
        data.end_time,
        data.team_size,
        special_requests=data.special_requests,
        use_dynamic_pricing=data.use_dynamic_pricing,
    )


@app.get("/bookings/me", response_model=List[Booking])
async def my_bookings(
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_user_bookings(actor)


@app.post("/bookings/{booking_id}/payment-intent", response_model=PaymentIntentOut)
async def start_payment(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    handle = await service.start_payment(actor, booking_id)
    return PaymentIntentOut(payment_id=handle.payment_id, client_secret=handle.client_secret)


@app.post("/bookings/{booking_id}/confirm", response_model=Booking)
async def confirm_payment(
    booking_id: UUID,
    data: PaymentConfirm,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.confirm_payment(actor, booking_id, data.payment_id)


@app.post("/bookings/{booking_id}/cancel", response_model=Booking)
async def cancel_booking(
    booking_id: UUID,
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.cancel_booking(actor, booking_id)


@app.post("/admin/bookings/complete-elapsed", response_model=CompletionOut)
async def complete_elapsed_bookings(
    actor: Actor = Depends(get_actor),
    service: BookingService = Depends(get_booking_service),
):
    if not actor.is_admin:
        raise ForbiddenException("Admin access required")
    return CompletionOut(completed=await service.complete_elapsed_bookings())


# --- Community ---

@app.post("/teams", response_model=Team, status_code=status.HTTP_201_CREATED)
async def create_team(
    data: community.TeamCreate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await community.create_team(session, actor, data)


@app.get("/teams/{team_id}/members", response_model=List[TeamMember])
async def team_members(team_id: UUID, session: AsyncSession = Depends(get_session)):
    return await community.list_members(session, team_id)


@app.post("/teams/{team_id}/join", response_model=TeamMember, status_code=status.HTTP_201_CREATED)
async def join_team(
    team_id: UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await community.join_team(session, actor, team_id)


@app.post("/teams/{team_id}/leave", status_code=status.HTTP_204_NO_CONTENT)
async def leave_team(
    team_id: UUID,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    await community.leave_team(session, actor, team_id)


@app.put("/players/me/preferences", response_model=PlayerPreference)
async def set_preferences(
    data: community.PreferencesUpdate,
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    return await community.set_preferences(session, actor, data)


@app.get("/players/me/preferences", response_model=PlayerPreference)
async def get_preferences(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
):
    preferences = await community.get_preferences(session, actor.user_id)
    if preferences is None:
        raise NotFoundException("No preferences saved yet")
    return preferences


@app.post("/players/matches", response_model=List[PlayerMatch])
async def match_players(
    actor: Actor = Depends(get_actor),
    session: AsyncSession = Depends(get_session),
    advisor: AIAdvisor = Depends(get_advisor),
):
    """Best-effort suggestions; an empty list when the advisor has no answer."""
    me = await session.get(Profile, actor.user_id)
    statement = select(Profile).where(Profile.id != actor.user_id).limit(MATCH_CANDIDATE_LIMIT)
    others = (await session.execute(statement)).scalars().all()
    preferences = await community.preferences_by_user(session, [me.id] + [p.id for p in others])

    def describe(p: Profile) -> dict:
        return {"id": str(p.id), "full_name": p.full_name, "skill_level": p.skill_level}

    def preferences_of(p: Profile) -> Optional[dict]:
        found = preferences.get(p.id)
        return found.describe() if found else None

    candidates = [{**describe(p), "preferences": preferences_of(p)} for p in others]
    matches = await advisor.match_players(describe(me), preferences_of(me), candidates)
    return matches or []


app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
