from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, model_validator
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    FACILITY_OWNER = "facility_owner"
    ADMIN = "admin"

    @classmethod
    def _missing_(cls, value):
        # Older rows use the short name
        if value == "owner":
            return cls.FACILITY_OWNER
        return None


class FacilityStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


TERMINAL_STATUSES = frozenset({BookingStatus.CANCELLED, BookingStatus.COMPLETED})


class SportType(str, Enum):
    FOOTBALL = "football"
    BASKETBALL = "basketball"
    TENNIS = "tennis"
    CRICKET = "cricket"
    BADMINTON = "badminton"
    VOLLEYBALL = "volleyball"
    TABLE_TENNIS = "table_tennis"
    SWIMMING = "swimming"
    GYM = "gym"
    OTHER = "other"


class TeamRole(str, Enum):
    CAPTAIN = "captain"
    MEMBER = "member"


# --- Operating hours: one entry per weekday, either open with a window or closed ---

class OpenDay(BaseModel):
    kind: Literal["open"] = "open"
    open: time
    close: time

    @model_validator(mode="after")
    def check_window(self):
        if self.open >= self.close:
            raise ValueError("opening time must be before closing time")
        return self

    def covers(self, start: time, end: time) -> bool:
        return self.open <= start and end <= self.close


class ClosedDay(BaseModel):
    kind: Literal["closed"] = "closed"


DayHours = Annotated[Union[OpenDay, ClosedDay], PydanticField(discriminator="kind")]


class OperatingHours(BaseModel):
    """Weekly schedule. A weekday left out places no restriction on bookings."""

    monday: Optional[DayHours] = None
    tuesday: Optional[DayHours] = None
    wednesday: Optional[DayHours] = None
    thursday: Optional[DayHours] = None
    friday: Optional[DayHours] = None
    saturday: Optional[DayHours] = None
    sunday: Optional[DayHours] = None

    def for_date(self, day: date) -> Optional[Union[OpenDay, ClosedDay]]:
        return getattr(self, WEEKDAYS[day.weekday()])


# --- Tables ---

class Profile(SQLModel, table=True):
    __tablename__ = "profiles"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    full_name: str
    email: str = Field(index=True)
    role: Role = Field(default=Role.USER)
    skill_level: Optional[int] = None
    wallet_balance: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    loyalty_points: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class Facility(SQLModel, table=True):
    __tablename__ = "facilities"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    owner_id: UUID = Field(foreign_key="profiles.id", index=True)
    name: str
    description: Optional[str] = None
    address: str
    city: str = Field(index=True)
    state: str
    pincode: str
    sports: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    base_price_per_hour: Decimal = Field(max_digits=10, decimal_places=2)
    capacity: int = 1
    status: FacilityStatus = Field(default=FacilityStatus.PENDING, index=True)
    amenities: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    images: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    operating_hours: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_bookable(self) -> bool:
        return self.status == FacilityStatus.APPROVED

    def schedule(self) -> Optional[OperatingHours]:
        if self.operating_hours is None:
            return None
        return OperatingHours.model_validate(self.operating_hours)


class Booking(SQLModel, table=True):
    __tablename__ = "bookings"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="profiles.id", index=True)
    facility_id: UUID = Field(foreign_key="facilities.id", index=True)
    booking_date: date = Field(index=True)
    start_time: time
    end_time: time
    team_size: int = 1
    price_per_hour: Decimal = Field(max_digits=10, decimal_places=2)
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)
    pricing_explanation: Optional[str] = None
    status: BookingStatus = Field(default=BookingStatus.PENDING, index=True)
    payment_id: Optional[str] = None
    special_requests: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class Review(SQLModel, table=True):
    __tablename__ = "facility_reviews"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    facility_id: UUID = Field(foreign_key="facilities.id", index=True)
    user_id: UUID = Field(foreign_key="profiles.id", index=True)
    rating: int
    review_text: str
    created_at: datetime = Field(default_factory=utcnow)


class Team(SQLModel, table=True):
    __tablename__ = "teams"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    sport: str
    captain_id: UUID = Field(foreign_key="profiles.id", index=True)
    max_members: int = 10
    skill_level: Optional[int] = None
    description: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class TeamMember(SQLModel, table=True):
    __tablename__ = "team_members"
    __table_args__ = (
        UniqueConstraint("team_id", "user_id", name="unique_team_member"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    team_id: UUID = Field(foreign_key="teams.id", index=True)
    user_id: UUID = Field(foreign_key="profiles.id", index=True)
    role: TeamRole = Field(default=TeamRole.MEMBER)
    joined_at: datetime = Field(default_factory=utcnow)


class BudgetRange(BaseModel):
    min: Decimal = PydanticField(ge=0)
    max: Decimal = PydanticField(ge=0)

    @model_validator(mode="after")
    def check_range(self):
        if self.min > self.max:
            raise ValueError("budget min must not exceed max")
        return self


class PlayerPreference(SQLModel, table=True):
    __tablename__ = "player_preferences"

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    user_id: UUID = Field(foreign_key="profiles.id", unique=True, index=True)
    preferred_sports: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    preferred_locations: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    preferred_times: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    budget_range: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def describe(self) -> dict:
        return {
            "preferred_sports": self.preferred_sports,
            "preferred_locations": self.preferred_locations,
            "preferred_times": self.preferred_times,
            "budget_range": self.budget_range,
        }


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, passed explicitly into every service call."""

    user_id: UUID
    role: Role = Role.USER

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
