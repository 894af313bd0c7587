import logging
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from database import remove, save
from exceptions import ConflictException, NotFoundException, ValidationException
from models import Actor, BudgetRange, PlayerPreference, SportType, Team, TeamMember, TeamRole, utcnow

logger = logging.getLogger(__name__)


class TeamCreate(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    sport: SportType
    max_members: int = Field(default=10, ge=2, le=100)
    skill_level: Optional[int] = Field(default=None, ge=1, le=10)
    description: Optional[str] = None


class PreferencesUpdate(BaseModel):
    preferred_sports: List[SportType] = []
    preferred_locations: List[str] = []
    preferred_times: List[str] = []
    budget_range: Optional[BudgetRange] = None


async def _get_team(session: AsyncSession, team_id: UUID) -> Team:
    team = await session.get(Team, team_id)
    if team is None:
        raise NotFoundException("Team not found", details={"team_id": str(team_id)})
    return team


async def _membership(session: AsyncSession, team_id: UUID, user_id: UUID) -> Optional[TeamMember]:
    statement = select(TeamMember).where(TeamMember.team_id == team_id, TeamMember.user_id == user_id)
    result = await session.execute(statement)
    return result.scalars().first()


async def create_team(session: AsyncSession, actor: Actor, data: TeamCreate) -> Team:
    team = Team(
        name=data.name,
        sport=data.sport.value,
        captain_id=actor.user_id,
        max_members=data.max_members,
        skill_level=data.skill_level,
        description=data.description,
    )
    # Team and captain go in one commit
    captain = TeamMember(team_id=team.id, user_id=actor.user_id, role=TeamRole.CAPTAIN)
    await save(session, team, captain)
    logger.info(f"Team {team.id} created by {actor.user_id}")
    return team


async def list_members(session: AsyncSession, team_id: UUID) -> List[TeamMember]:
    await _get_team(session, team_id)
    statement = select(TeamMember).where(TeamMember.team_id == team_id).order_by(TeamMember.joined_at)
    result = await session.execute(statement)
    return list(result.scalars().all())


async def join_team(session: AsyncSession, actor: Actor, team_id: UUID) -> TeamMember:
    team = await _get_team(session, team_id)
    if await _membership(session, team_id, actor.user_id) is not None:
        raise ConflictException("Already a member of this team")

    count = (
        await session.execute(select(func.count(TeamMember.id)).where(TeamMember.team_id == team_id))
    ).scalar_one()
    if count >= team.max_members:
        raise ValidationException("Team is full", details={"max_members": team.max_members})

    member = TeamMember(team_id=team_id, user_id=actor.user_id, role=TeamRole.MEMBER)
    await save(session, member)
    logger.info(f"User {actor.user_id} joined team {team_id}")
    return member


async def leave_team(session: AsyncSession, actor: Actor, team_id: UUID) -> None:
    team = await _get_team(session, team_id)
    if team.captain_id == actor.user_id:
        raise ValidationException("The captain cannot leave the team")

    member = await _membership(session, team_id, actor.user_id)
    if member is None:
        raise NotFoundException("Not a member of this team")

    await remove(session, member)
    logger.info(f"User {actor.user_id} left team {team_id}")


async def get_preferences(session: AsyncSession, user_id: UUID) -> Optional[PlayerPreference]:
    statement = select(PlayerPreference).where(PlayerPreference.user_id == user_id)
    result = await session.execute(statement)
    return result.scalars().first()


async def preferences_by_user(session: AsyncSession, user_ids: List[UUID]) -> dict:
    if not user_ids:
        return {}
    statement = select(PlayerPreference).where(PlayerPreference.user_id.in_(user_ids))
    result = await session.execute(statement)
    return {p.user_id: p for p in result.scalars().all()}


async def set_preferences(session: AsyncSession, actor: Actor, data: PreferencesUpdate) -> PlayerPreference:
    """Create or replace the caller's matching preferences."""
    preferences = await get_preferences(session, actor.user_id)
    if preferences is None:
        preferences = PlayerPreference(user_id=actor.user_id)
    preferences.preferred_sports = [s.value for s in data.preferred_sports]
    preferences.preferred_locations = data.preferred_locations
    preferences.preferred_times = data.preferred_times
    preferences.budget_range = data.budget_range.model_dump(mode="json") if data.budget_range else None
    preferences.updated_at = utcnow()
    await save(session, preferences)
    return preferences
