import asyncio
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest

from booking_service import BookingService, billable_hours
from exceptions import (
    ForbiddenException,
    InvalidTransitionException,
    NotBookableException,
    NotFoundException,
    PaymentException,
    ValidationException,
)
from models import BookingStatus, FacilityStatus, Role
from pricing_advisor import PriceSuggestion
from tests.conftest import BOOKING_DAY, actor_for, make_facility, make_profile

TODAY = BOOKING_DAY - timedelta(days=3)


class FakeAdvisor:
    def __init__(self, suggestion=None):
        self.suggestion = suggestion
        self.calls = []

    async def suggest_price(self, facility, booking_date, start_time, end_time, existing, historical):
        self.calls.append((existing, historical))
        return self.suggestion


async def book(service, player, facility, start=10, end=12, team_size=4, day=BOOKING_DAY, **kwargs):
    return await service.create_booking(
        actor_for(player),
        facility.id,
        day,
        time(start),
        time(end),
        team_size,
        today=TODAY,
        **kwargs,
    )


async def test_total_is_hours_times_base_price(session, player, facility):
    service = BookingService(session)

    booking = await book(service, player, facility, start=10, end=12)

    assert booking.status == BookingStatus.PENDING
    assert booking.total_amount == Decimal("2000")
    assert booking.price_per_hour == Decimal("1000")
    assert booking.payment_id is None


@pytest.mark.parametrize("start,end,price", [(6, 7, "750"), (8, 11, "1200.50"), (18, 22, "999")])
async def test_total_matches_duration_for_other_windows(session, owner, player, start, end, price):
    facility = await make_facility(session, owner, price=price)
    booking = await book(BookingService(session), player, facility, start=start, end=end)

    assert booking.total_amount == Decimal(price) * (end - start)


@pytest.mark.parametrize("status", [FacilityStatus.PENDING, FacilityStatus.REJECTED])
async def test_unapproved_facility_is_not_bookable(session, owner, player, status):
    facility = await make_facility(session, owner, status=status)

    with pytest.raises(NotBookableException):
        await book(BookingService(session), player, facility)


async def test_unknown_facility_is_not_found(session, player):
    missing = SimpleNamespace(id=uuid4())

    with pytest.raises(NotFoundException):
        await book(BookingService(session), player, missing)


@pytest.mark.parametrize("start,end", [(12, 10), (10, 10)])
async def test_end_must_follow_start(session, player, facility, start, end):
    with pytest.raises(ValidationException):
        await book(BookingService(session), player, facility, start=start, end=end)


def test_sub_hour_times_are_rejected():
    with pytest.raises(ValidationException):
        billable_hours(time(10, 30), time(12))
    with pytest.raises(ValidationException):
        billable_hours(time(10), time(11, 15))
    assert billable_hours(time(6), time(19)) == 13


@pytest.mark.parametrize("team_size", [0, -1, 11])
async def test_team_size_must_fit_capacity(session, player, facility, team_size):
    with pytest.raises(ValidationException):
        await book(BookingService(session), player, facility, team_size=team_size)


async def test_team_size_at_capacity_is_fine(session, player, facility):
    booking = await book(BookingService(session), player, facility, team_size=10)
    assert booking.team_size == 10


async def test_past_dates_are_rejected_but_today_is_allowed(session, player, facility):
    service = BookingService(session)

    with pytest.raises(ValidationException):
        await book(service, player, facility, day=TODAY - timedelta(days=1))

    booking = await book(service, player, facility, day=TODAY)
    assert booking.booking_date == TODAY


async def test_operating_hours_are_enforced(session, owner, player):
    hours = {
        "monday": {"kind": "open", "open": "08:00", "close": "20:00"},
        "tuesday": {"kind": "closed"},
    }
    facility = await make_facility(session, owner, operating_hours=hours)
    service = BookingService(session)

    booking = await book(service, player, facility, start=8, end=20)
    assert booking.total_amount == Decimal("12000")

    with pytest.raises(ValidationException):
        await book(service, player, facility, start=7, end=9)
    with pytest.raises(ValidationException):
        await book(service, player, facility, start=19, end=21)
    with pytest.raises(ValidationException):
        await book(service, player, facility, day=BOOKING_DAY + timedelta(days=1))

    # Wednesday is not in the schedule, so it is unrestricted
    wednesday = await book(service, player, facility, start=5, end=6, day=BOOKING_DAY + timedelta(days=2))
    assert wednesday.status == BookingStatus.PENDING


async def test_times_with_utc_offset_are_rejected(session, owner, player):
    hours = {"monday": {"kind": "open", "open": "08:00", "close": "20:00"}}
    facility = await make_facility(session, owner, operating_hours=hours)

    with pytest.raises(ValidationException):
        await BookingService(session).create_booking(
            actor_for(player),
            facility.id,
            BOOKING_DAY,
            time(10, tzinfo=timezone.utc),
            time(12, tzinfo=timezone.utc),
            4,
            today=TODAY,
        )
    with pytest.raises(ValidationException):
        billable_hours(time(10), time(12, tzinfo=timezone.utc))


async def test_overlapping_bookings_are_both_accepted(session, player, facility):
    other = await make_profile(session, name="Ravi Player")
    service = BookingService(session)

    first = await book(service, player, facility, start=10, end=12)
    second = await book(service, other, facility, start=11, end=13)

    assert first.status == second.status == BookingStatus.PENDING
    assert first.id != second.id


async def test_concurrent_requests_for_same_slot_both_succeed(session, player, facility):
    from database import async_session

    async def attempt():
        async with async_session() as s:
            return await book(BookingService(s), player, facility)

    first, second = await asyncio.gather(attempt(), attempt())

    assert {first.status, second.status} == {BookingStatus.PENDING}


async def test_dynamic_pricing_adjusts_hourly_rate(session, player, facility):
    suggestion = PriceSuggestion(
        adjusted_price=Decimal("1200.00"),
        multiplier=1.2,
        factors=["weekend"],
        explanation="High demand",
    )
    advisor = FakeAdvisor(suggestion)
    service = BookingService(session, advisor=advisor)

    await book(service, player, facility, start=8, end=9)
    booking = await book(service, player, facility, start=10, end=12, use_dynamic_pricing=True)

    assert booking.price_per_hour == Decimal("1200.00")
    assert booking.total_amount == Decimal("2400")
    assert booking.pricing_explanation == "High demand"
    assert advisor.calls == [(1, 0)]


async def test_dynamic_pricing_falls_back_to_base_price(session, player, facility):
    service = BookingService(session, advisor=FakeAdvisor(None))

    booking = await book(service, player, facility, start=10, end=12, use_dynamic_pricing=True)

    assert booking.total_amount == Decimal("2000")
    assert booking.pricing_explanation is None


async def test_quote_always_exposes_base_price(session, facility):
    service = BookingService(session, advisor=FakeAdvisor(None))

    quote = await service.quote_price(facility.id, BOOKING_DAY, time(9), time(12), use_dynamic_pricing=True)

    assert quote.hours == 3
    assert quote.base_total == Decimal("3000")
    assert quote.suggestion is None
    assert quote.total == Decimal("3000")


async def test_confirm_payment_is_idempotent(session, player, facility, gateway):
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility)
    gateway.succeed("pi_123", booking.id)

    first = await service.confirm_payment(actor_for(player), booking.id, "pi_123")
    second = await service.confirm_payment(actor_for(player), booking.id, "pi_123")

    assert first.status == second.status == BookingStatus.CONFIRMED
    assert second.payment_id == "pi_123"
    assert gateway.lookups == ["pi_123"]


async def test_confirm_payment_requires_owner(session, player, facility, gateway):
    stranger = await make_profile(session, name="Stranger")
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility)
    gateway.succeed("pi_123", booking.id)

    with pytest.raises(ForbiddenException):
        await service.confirm_payment(actor_for(stranger), booking.id, "pi_123")


async def test_unknown_booking_is_not_found(session, player, gateway):
    service = BookingService(session, gateway=gateway)
    with pytest.raises(NotFoundException):
        await service.confirm_payment(actor_for(player), uuid4(), "pi_123")
    with pytest.raises(NotFoundException):
        await service.cancel_booking(actor_for(player), uuid4())


@pytest.mark.parametrize("setup", ["unpaid", "other_booking", "provider_down"])
async def test_failed_payment_leaves_booking_pending(session, player, facility, gateway, setup):
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility)
    if setup == "unpaid":
        gateway.payments["pi_123"] = ("requires_payment_method", str(booking.id))
    elif setup == "other_booking":
        gateway.payments["pi_123"] = ("succeeded", "someone-elses-booking")
    else:
        gateway.fail = True

    with pytest.raises(PaymentException):
        await service.confirm_payment(actor_for(player), booking.id, "pi_123")

    await session.refresh(booking)
    assert booking.status == BookingStatus.PENDING
    assert booking.payment_id is None


async def test_start_payment_returns_handle_for_pending_booking(session, player, facility, gateway):
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility)

    handle = await service.start_payment(actor_for(player), booking.id)

    assert handle.client_secret.startswith(handle.payment_id)


async def test_cancel_permissions(session, owner, admin, player, facility):
    stranger = await make_profile(session, name="Stranger")
    service = BookingService(session)

    booking = await book(service, player, facility)
    with pytest.raises(ForbiddenException):
        await service.cancel_booking(actor_for(stranger), booking.id)

    assert (await service.cancel_booking(actor_for(player), booking.id)).status == BookingStatus.CANCELLED

    by_owner = await book(service, player, facility)
    assert (await service.cancel_booking(actor_for(owner), by_owner.id)).status == BookingStatus.CANCELLED

    by_admin = await book(service, player, facility)
    assert (await service.cancel_booking(actor_for(admin), by_admin.id)).status == BookingStatus.CANCELLED


async def test_other_facility_owner_cannot_cancel(session, player, facility):
    rival = await make_profile(session, Role.FACILITY_OWNER, "Rival Owner")
    service = BookingService(session)
    booking = await book(service, player, facility)

    with pytest.raises(ForbiddenException):
        await service.cancel_booking(actor_for(rival), booking.id)


async def test_cancelled_booking_is_terminal(session, player, facility, gateway):
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility, start=10, end=12)
    assert booking.total_amount == Decimal("2000")

    cancelled = await service.cancel_booking(actor_for(player), booking.id)
    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.total_amount == Decimal("2000")

    gateway.succeed("pi_late", booking.id)
    with pytest.raises(InvalidTransitionException):
        await service.confirm_payment(actor_for(player), booking.id, "pi_late")
    with pytest.raises(InvalidTransitionException):
        await service.cancel_booking(actor_for(player), booking.id)
    with pytest.raises(InvalidTransitionException):
        await service.start_payment(actor_for(player), booking.id)

    await session.refresh(booking)
    assert booking.status == BookingStatus.CANCELLED
    assert gateway.lookups == []


async def test_confirmed_booking_can_be_cancelled(session, player, facility, gateway):
    service = BookingService(session, gateway=gateway)
    booking = await book(service, player, facility)
    gateway.succeed("pi_1", booking.id)
    await service.confirm_payment(actor_for(player), booking.id, "pi_1")

    cancelled = await service.cancel_booking(actor_for(player), booking.id)

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.payment_id == "pi_1"


async def test_complete_elapsed_bookings(session, player, facility, gateway):
    service = BookingService(session, gateway=gateway)
    done = await book(service, player, facility, start=8, end=10)
    later = await book(service, player, facility, start=18, end=20)
    unpaid = await book(service, player, facility, start=6, end=7)
    for b in (done, later):
        gateway.succeed(f"pi_{b.id.hex}", b.id)
        await service.confirm_payment(actor_for(player), b.id, f"pi_{b.id.hex}")

    count = await service.complete_elapsed_bookings(now=datetime.combine(BOOKING_DAY, time(12)))

    assert count == 1
    for b in (done, later, unpaid):
        await session.refresh(b)
    assert done.status == BookingStatus.COMPLETED
    assert later.status == BookingStatus.CONFIRMED
    assert unpaid.status == BookingStatus.PENDING

    with pytest.raises(InvalidTransitionException):
        await service.cancel_booking(actor_for(player), done.id)


async def test_booking_listings(session, owner, player, facility):
    service = BookingService(session)
    early = await book(service, player, facility, day=BOOKING_DAY)
    late = await book(service, player, facility, day=BOOKING_DAY + timedelta(days=7))

    mine = await service.list_user_bookings(actor_for(player))
    assert [b.id for b in mine] == [late.id, early.id]

    assert len(await service.list_facility_bookings(actor_for(owner), facility.id)) == 2
    with pytest.raises(ForbiddenException):
        await service.list_facility_bookings(actor_for(player), facility.id)


def test_booking_day_is_a_monday():
    assert BOOKING_DAY.weekday() == 0
    assert BOOKING_DAY > date(2026, 1, 1)
