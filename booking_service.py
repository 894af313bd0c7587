"""
Booking Engine: slot validation, pricing and the booking status lifecycle.

    pending --confirm_payment--> confirmed
    pending | confirmed --cancel--> cancelled
    confirmed --slot elapsed (complete_elapsed_bookings)--> completed

``cancelled`` and ``completed`` are terminal. Billing is by whole hours: both
ends of a slot must fall on the hour.

Overlapping bookings for the same facility and time are accepted; no
exclusivity check is made here or at the storage layer.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from zoneinfo import ZoneInfo

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

import config
from database import save
from exceptions import (
    ForbiddenException,
    InvalidTransitionException,
    NotBookableException,
    NotFoundException,
    PaymentException,
    ValidationException,
)
from models import Actor, Booking, BookingStatus, ClosedDay, Facility, utcnow
from payments import PaymentHandle, StripeGateway
from pricing_advisor import AIAdvisor, PriceSuggestion

logger = logging.getLogger(__name__)

DEMAND_LOOKBACK_DAYS = 30


@dataclass
class PriceQuote:
    base_price_per_hour: Decimal
    hours: int
    base_total: Decimal
    suggestion: Optional[PriceSuggestion] = None

    @property
    def price_per_hour(self) -> Decimal:
        if self.suggestion is not None:
            return self.suggestion.adjusted_price
        return self.base_price_per_hour

    @property
    def total(self) -> Decimal:
        return self.price_per_hour * self.hours


def facility_today() -> date:
    return datetime.now(ZoneInfo(config.FACILITY_TIMEZONE)).date()


def billable_hours(start_time: time, end_time: time) -> int:
    """Whole hours between two on-the-hour times."""
    for label, value in (("start_time", start_time), ("end_time", end_time)):
        if value.tzinfo is not None:
            raise ValidationException(
                f"{label} must be a local wall-clock time without a UTC offset",
                details={label: value.isoformat()},
            )
        if value.minute or value.second or value.microsecond:
            raise ValidationException(
                f"{label} must be on the hour; bookings are billed in whole hours",
                details={label: value.isoformat()},
            )
    if end_time <= start_time:
        raise ValidationException(
            "end_time must be after start_time",
            details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
        )
    return end_time.hour - start_time.hour


def check_operating_hours(facility: Facility, booking_date: date, start_time: time, end_time: time):
    schedule = facility.schedule()
    if schedule is None:
        return
    day = schedule.for_date(booking_date)
    if day is None:
        return
    if isinstance(day, ClosedDay):
        raise ValidationException(
            "Facility is closed on the requested day",
            details={"booking_date": booking_date.isoformat()},
        )
    if not day.covers(start_time, end_time):
        raise ValidationException(
            f"Requested slot is outside operating hours "
            f"({day.open.strftime('%H:%M')}-{day.close.strftime('%H:%M')})",
            details={"open": day.open.isoformat(), "close": day.close.isoformat()},
        )


class BookingService:
    def __init__(
        self,
        session: AsyncSession,
        advisor: Optional[AIAdvisor] = None,
        gateway: Optional[StripeGateway] = None,
    ) -> None:
        self.session = session
        self.advisor = advisor
        self.gateway = gateway

    # --- lookups ---

    async def _get_facility(self, facility_id: UUID) -> Facility:
        facility = await self.session.get(Facility, facility_id)
        if facility is None:
            raise NotFoundException("Facility not found", details={"facility_id": str(facility_id)})
        return facility

    async def _get_booking(self, booking_id: UUID) -> Booking:
        booking = await self.session.get(Booking, booking_id)
        if booking is None:
            raise NotFoundException("Booking not found", details={"booking_id": str(booking_id)})
        return booking

    async def _get_bookable_facility(self, facility_id: UUID) -> Facility:
        facility = await self._get_facility(facility_id)
        if not facility.is_bookable:
            raise NotBookableException(
                "Facility is not open for booking",
                details={"facility_id": str(facility_id), "status": facility.status.value},
            )
        return facility

    async def _demand_counts(self, facility_id: UUID, booking_date: date) -> Tuple[int, int]:
        same_day = select(func.count(Booking.id)).where(
            Booking.facility_id == facility_id,
            Booking.booking_date == booking_date,
            Booking.status != BookingStatus.CANCELLED,
        )
        history = select(func.count(Booking.id)).where(
            Booking.facility_id == facility_id,
            Booking.booking_date >= booking_date - timedelta(days=DEMAND_LOOKBACK_DAYS),
            Booking.booking_date < booking_date,
        )
        existing = (await self.session.execute(same_day)).scalar_one()
        historical = (await self.session.execute(history)).scalar_one()
        return existing, historical

    # --- pricing ---

    async def _quote(
        self,
        facility: Facility,
        booking_date: date,
        start_time: time,
        end_time: time,
        use_dynamic_pricing: bool,
    ) -> PriceQuote:
        hours = billable_hours(start_time, end_time)
        base = Decimal(facility.base_price_per_hour)
        quote = PriceQuote(base_price_per_hour=base, hours=hours, base_total=base * hours)

        if use_dynamic_pricing and self.advisor is not None:
            existing, historical = await self._demand_counts(facility.id, booking_date)
            quote.suggestion = await self.advisor.suggest_price(
                facility, booking_date, start_time, end_time, existing, historical
            )
            if quote.suggestion is None:
                logger.warning(f"Falling back to base price for facility {facility.id}")
        return quote

    async def quote_price(
        self,
        facility_id: UUID,
        booking_date: date,
        start_time: time,
        end_time: time,
        use_dynamic_pricing: bool = False,
    ) -> PriceQuote:
        facility = await self._get_bookable_facility(facility_id)
        return await self._quote(facility, booking_date, start_time, end_time, use_dynamic_pricing)

    # --- lifecycle ---

    async def create_booking(
        self,
        actor: Actor,
        facility_id: UUID,
        booking_date: date,
        start_time: time,
        end_time: time,
        team_size: int,
        special_requests: Optional[str] = None,
        use_dynamic_pricing: bool = False,
        today: Optional[date] = None,
    ) -> Booking:
        facility = await self._get_bookable_facility(facility_id)

        hours = billable_hours(start_time, end_time)
        if not 1 <= team_size <= facility.capacity:
            raise ValidationException(
                f"team_size must be between 1 and {facility.capacity}",
                details={"team_size": team_size, "capacity": facility.capacity},
            )
        today = today or facility_today()
        if booking_date < today:
            raise ValidationException(
                "booking_date cannot be in the past",
                details={"booking_date": booking_date.isoformat(), "today": today.isoformat()},
            )
        check_operating_hours(facility, booking_date, start_time, end_time)

        quote = await self._quote(facility, booking_date, start_time, end_time, use_dynamic_pricing)

        booking = Booking(
            user_id=actor.user_id,
            facility_id=facility.id,
            booking_date=booking_date,
            start_time=start_time,
            end_time=end_time,
            team_size=team_size,
            price_per_hour=quote.price_per_hour,
            total_amount=quote.total,
            pricing_explanation=quote.suggestion.explanation if quote.suggestion else None,
            special_requests=(special_requests or "").strip() or None,
            status=BookingStatus.PENDING,
        )
        await save(self.session, booking)
        logger.info(
            f"Booking {booking.id} created for facility {facility.id}: "
            f"{hours}h on {booking_date} total {booking.total_amount}"
        )
        return booking

    async def start_payment(self, actor: Actor, booking_id: UUID) -> PaymentHandle:
        booking = await self._get_booking(booking_id)
        if booking.user_id != actor.user_id:
            raise ForbiddenException("You can only pay for your own bookings")
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransitionException(booking.status.value, BookingStatus.CONFIRMED.value)
        if self.gateway is None:
            raise PaymentException("Payments are not configured")

        facility = await self._get_facility(booking.facility_id)
        return await self.gateway.create_payment_intent(booking, f"Booking for {facility.name}")

    async def confirm_payment(
        self, actor: Actor, booking_id: UUID, payment_reference: str
    ) -> Booking:
        booking = await self._get_booking(booking_id)
        if booking.user_id != actor.user_id:
            raise ForbiddenException("You can only confirm your own bookings")

        if booking.status == BookingStatus.CONFIRMED:
            return booking
        if booking.status != BookingStatus.PENDING:
            raise InvalidTransitionException(booking.status.value, BookingStatus.CONFIRMED.value)

        if self.gateway is None:
            raise PaymentException("Payments are not configured")
        payment = await self.gateway.retrieve_payment_intent(payment_reference)
        if not payment.succeeded:
            raise PaymentException(
                "Payment has not succeeded",
                details={"payment_id": payment_reference, "payment_status": payment.status},
            )
        if payment.booking_id != str(booking.id):
            raise PaymentException(
                "Payment does not belong to this booking",
                details={"payment_id": payment_reference},
            )

        booking.status = BookingStatus.CONFIRMED
        booking.payment_id = payment_reference
        booking.updated_at = utcnow()
        await save(self.session, booking)
        logger.info(f"Booking {booking.id} confirmed with payment {payment_reference}")
        return booking

    async def cancel_booking(self, actor: Actor, booking_id: UUID) -> Booking:
        booking = await self._get_booking(booking_id)
        if booking.user_id != actor.user_id and not actor.is_admin:
            facility = await self._get_facility(booking.facility_id)
            if facility.owner_id != actor.user_id:
                raise ForbiddenException("You cannot cancel this booking")

        if booking.is_terminal:
            raise InvalidTransitionException(booking.status.value, BookingStatus.CANCELLED.value)

        # TODO: refund for bookings cancelled after payment once a refund policy exists
        booking.status = BookingStatus.CANCELLED
        booking.updated_at = utcnow()
        await save(self.session, booking)
        logger.info(f"Booking {booking.id} cancelled by {actor.user_id}")
        return booking

    async def complete_elapsed_bookings(self, now: Optional[datetime] = None) -> int:
        """Mark confirmed bookings whose slot has ended as completed. Returns the count."""
        tz = ZoneInfo(config.FACILITY_TIMEZONE)
        now = now or datetime.now(tz)
        if now.tzinfo is not None:
            now = now.astimezone(tz).replace(tzinfo=None)

        statement = select(Booking).where(
            Booking.status == BookingStatus.CONFIRMED,
            Booking.booking_date <= now.date(),
        )
        result = await self.session.execute(statement)
        elapsed = [
            b for b in result.scalars().all()
            if datetime.combine(b.booking_date, b.end_time) <= now
        ]
        if not elapsed:
            return 0

        stamp = utcnow()
        for booking in elapsed:
            booking.status = BookingStatus.COMPLETED
            booking.updated_at = stamp
        await save(self.session, *elapsed)
        logger.info(f"Completed {len(elapsed)} elapsed bookings")
        return len(elapsed)

    # --- listings ---

    async def list_user_bookings(self, actor: Actor) -> List[Booking]:
        statement = (
            select(Booking)
            .where(Booking.user_id == actor.user_id)
            .order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())

    async def list_facility_bookings(self, actor: Actor, facility_id: UUID) -> List[Booking]:
        facility = await self._get_facility(facility_id)
        if facility.owner_id != actor.user_id and not actor.is_admin:
            raise ForbiddenException("Only the facility owner can view its bookings")
        statement = (
            select(Booking)
            .where(Booking.facility_id == facility_id)
            .order_by(Booking.booking_date.desc(), Booking.start_time.desc())
        )
        result = await self.session.execute(statement)
        return list(result.scalars().all())
