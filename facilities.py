import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from database import save
from exceptions import ForbiddenException, NotFoundException, ValidationException
from models import Actor, Facility, FacilityStatus, OperatingHours, Role, SportType, utcnow

logger = logging.getLogger(__name__)


class FacilityCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    description: Optional[str] = None
    address: str
    city: str
    state: str
    pincode: str
    sports: List[SportType] = Field(min_length=1)
    base_price_per_hour: Decimal = Field(gt=0, max_digits=10, decimal_places=2)
    capacity: int = Field(default=1, ge=1)
    amenities: List[str] = []
    images: List[str] = []
    operating_hours: Optional[OperatingHours] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)


async def get_facility(session: AsyncSession, facility_id: UUID) -> Facility:
    facility = await session.get(Facility, facility_id)
    if facility is None:
        raise NotFoundException("Facility not found", details={"facility_id": str(facility_id)})
    return facility


async def register_facility(session: AsyncSession, actor: Actor, data: FacilityCreate) -> Facility:
    """New facilities start out pending until an admin approves them."""
    if actor.role not in (Role.FACILITY_OWNER, Role.ADMIN):
        raise ForbiddenException("Only facility owners can register facilities")

    facility = Facility(
        owner_id=actor.user_id,
        status=FacilityStatus.PENDING,
        **data.model_dump(exclude={"sports", "operating_hours"}),
        sports=[s.value for s in data.sports],
        operating_hours=(
            data.operating_hours.model_dump(mode="json", exclude_none=True)
            if data.operating_hours
            else None
        ),
    )
    await save(session, facility)
    logger.info(f"Facility {facility.id} registered by {actor.user_id}")
    return facility


async def moderate_facility(
    session: AsyncSession, actor: Actor, facility_id: UUID, status: FacilityStatus
) -> Facility:
    if not actor.is_admin:
        raise ForbiddenException("Only admins can moderate facilities")
    if status == FacilityStatus.PENDING:
        raise ValidationException("Moderation must approve or reject a facility")

    facility = await get_facility(session, facility_id)
    facility.status = status
    facility.updated_at = utcnow()
    await save(session, facility)
    logger.info(f"Facility {facility.id} set to {status.value} by {actor.user_id}")
    return facility


async def list_approved_facilities(session: AsyncSession, city: Optional[str] = None) -> List[Facility]:
    statement = select(Facility).where(Facility.status == FacilityStatus.APPROVED)
    if city:
        statement = statement.where(Facility.city == city)
    result = await session.execute(statement.order_by(Facility.name))
    return list(result.scalars().all())
