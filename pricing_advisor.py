"""
Advisory AI calls: demand-based price suggestions, player matching and
facility recommendations.

All go through an OpenAI-compatible chat completions endpoint and expect a
JSON object back. The answer is advisory only. Any failure (no key, network,
timeout, bad status, unparseable or out-of-range reply) is logged and reported
as ``None`` so callers can fall back to their deterministic path.
"""

import json
import logging
from datetime import date, time
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import config
from exceptions import AdvisorUnavailable
from models import WEEKDAYS, Facility

logger = logging.getLogger(__name__)

PRICING_SYSTEM_PROMPT = (
    "You are a dynamic pricing engine for sports facilities. Calculate optimal pricing "
    "based on demand, time of day, day of week, historical data, and current bookings. "
    "Consider peak hours, weekends, and booking density. Return JSON only."
)

MATCHING_SYSTEM_PROMPT = (
    "You are a sports player matching assistant. Analyze player profiles and return the "
    "top 5 best matches based on skill level, preferred sports, location, and availability. "
    "Return JSON only."
)

RECOMMENDATION_SYSTEM_PROMPT = (
    "You are a sports facility recommendation engine. Analyze user preferences and booking "
    "history to recommend the top 5 most suitable facilities. Consider sports preferences, "
    "location, budget, and past bookings. Return JSON only."
)

MAX_MATCHES = 5
MAX_RECOMMENDATIONS = 5
CENTS = Decimal("0.01")


class PriceSuggestion(BaseModel):
    """Hourly price proposed by the advisor for one slot."""

    adjusted_price: Decimal
    multiplier: float
    factors: List[str] = []
    explanation: str = ""


class PlayerMatch(BaseModel):
    id: str
    score: int = Field(ge=0, le=100)
    reason: str = ""


class _PricingReply(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    adjusted_price: Optional[Decimal] = Field(default=None, alias="adjustedPrice", allow_inf_nan=False)
    multiplier: Optional[float] = Field(default=None, allow_inf_nan=False)
    factors: List[str] = []
    explanation: str = ""


class FacilityRecommendation(BaseModel):
    facility_id: str
    score: int = Field(ge=0, le=100)
    reason: str = ""


class _MatchingReply(BaseModel):
    matches: List[PlayerMatch]


class _RecommendationReply(BaseModel):
    recommendations: List[FacilityRecommendation]


def extract_json(content: str) -> Dict[str, Any]:
    """Parse a JSON object out of a completion, tolerating a Markdown code fence."""
    text = content.strip()
    if text.startswith("```"):
        text = text.split("\n", 1)[1] if "\n" in text else ""
        if text.rstrip().endswith("```"):
            text = text.rstrip()[:-3]
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise AdvisorUnavailable(f"reply is not JSON: {e}") from e
    if not isinstance(data, dict):
        raise AdvisorUnavailable("reply is not a JSON object")
    return data


class AIAdvisor:
    def __init__(
        self,
        api_key: Optional[str] = None,
        url: Optional[str] = None,
        model: Optional[str] = None,
        timeout: Optional[float] = None,
        min_multiplier: Optional[float] = None,
        max_multiplier: Optional[float] = None,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else config.AI_API_KEY
        self.url = url or config.AI_GATEWAY_URL
        self.model = model or config.AI_MODEL
        self.timeout = timeout if timeout is not None else config.ADVISOR_TIMEOUT_SECONDS
        self.min_multiplier = (
            min_multiplier if min_multiplier is not None else config.PRICING_MIN_MULTIPLIER
        )
        self.max_multiplier = (
            max_multiplier if max_multiplier is not None else config.PRICING_MAX_MULTIPLIER
        )
        self._http = http

    async def _complete(self, system_prompt: str, user_prompt: str) -> str:
        if not self.api_key:
            raise AdvisorUnavailable("AI_API_KEY is not configured")

        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            if self._http is not None:
                response = await self._http.post(
                    self.url, json=payload, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise AdvisorUnavailable("AI request timed out") from e
        except httpx.HTTPError as e:
            raise AdvisorUnavailable(f"AI request failed: {e}") from e

        if response.status_code >= 400:
            raise AdvisorUnavailable(f"AI request failed with status {response.status_code}")

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise AdvisorUnavailable("unexpected completion payload") from e

    def _to_suggestion(self, data: Dict[str, Any], base_price: Decimal) -> PriceSuggestion:
        try:
            reply = _PricingReply.model_validate(data)
        except ValidationError as e:
            raise AdvisorUnavailable(f"pricing reply failed validation: {e}") from e

        if reply.adjusted_price is None and reply.multiplier is None:
            raise AdvisorUnavailable("pricing reply has neither adjustedPrice nor multiplier")

        try:
            if reply.adjusted_price is None:
                adjusted = base_price * Decimal(str(reply.multiplier))
            else:
                adjusted = reply.adjusted_price
            if not adjusted.is_finite():
                raise AdvisorUnavailable("pricing reply has a non-finite price")
            adjusted = adjusted.quantize(CENTS, rounding=ROUND_HALF_UP)
        except InvalidOperation as e:
            raise AdvisorUnavailable("pricing reply has a non-numeric price") from e

        if adjusted <= 0:
            raise AdvisorUnavailable(f"non-positive adjusted price {adjusted}")

        multiplier = float(adjusted / base_price)
        if not self.min_multiplier <= multiplier <= self.max_multiplier:
            raise AdvisorUnavailable(
                f"multiplier {multiplier:.2f} outside "
                f"[{self.min_multiplier}, {self.max_multiplier}]"
            )

        return PriceSuggestion(
            adjusted_price=adjusted,
            multiplier=round(multiplier, 4),
            factors=reply.factors,
            explanation=reply.explanation,
        )

    async def suggest_price(
        self,
        facility: Facility,
        booking_date: date,
        start_time: time,
        end_time: time,
        existing_booking_count: int,
        historical_booking_count: int,
    ) -> Optional[PriceSuggestion]:
        base_price = Decimal(facility.base_price_per_hour)
        prompt = (
            "Calculate dynamic price for:\n"
            f"Facility: {facility.name} ({', '.join(facility.sports)}) in {facility.city}\n"
            f"Base Price: {base_price}/hour\n"
            f"Requested Time: {booking_date.isoformat()} ({WEEKDAYS[booking_date.weekday()]}) "
            f"{start_time.strftime('%H:%M')} - {end_time.strftime('%H:%M')}\n"
            f"Current Day Bookings: {existing_booking_count}\n"
            f"Historical Bookings (30 days): {historical_booking_count}\n\n"
            'Return format: { "adjustedPrice": number, "multiplier": number, '
            '"factors": ["list of pricing factors"], "explanation": "brief explanation" }\n'
            "adjustedPrice is the price per hour."
        )
        try:
            content = await self._complete(PRICING_SYSTEM_PROMPT, prompt)
            return self._to_suggestion(extract_json(content), base_price)
        except AdvisorUnavailable as e:
            logger.warning(f"Pricing advisor unavailable for facility {facility.id}: {e}")
            return None

    async def match_players(
        self,
        player: Dict[str, Any],
        preferences: Optional[Dict[str, Any]],
        candidates: Sequence[Dict[str, Any]],
    ) -> Optional[List[PlayerMatch]]:
        """
        Rank candidate players for ``player``. Each candidate dict carries its own
        ``preferences``. Unknown ids in the reply are dropped.
        """
        if not candidates:
            return []

        current = {"profile": player, "preferences": preferences}
        prompt = (
            "Find the best player matches for:\n"
            f"Current Player: {json.dumps(current, default=str)}\n"
            f"Available Players: {json.dumps(list(candidates), default=str)}\n\n"
            'Return format: { "matches": [{ "id": "uuid", "score": 0-100, '
            '"reason": "brief explanation" }] }'
        )
        try:
            content = await self._complete(MATCHING_SYSTEM_PROMPT, prompt)
            reply = _MatchingReply.model_validate(extract_json(content))
        except ValidationError as e:
            logger.warning(f"Player matching reply failed validation: {e}")
            return None
        except AdvisorUnavailable as e:
            logger.warning(f"Player matching unavailable: {e}")
            return None

        known = {str(c.get("id")) for c in candidates}
        matches = [m for m in reply.matches if m.id in known]
        matches.sort(key=lambda m: m.score, reverse=True)
        return matches[:MAX_MATCHES]

    async def recommend_facilities(
        self,
        user: Dict[str, Any],
        preferences: Optional[Dict[str, Any]],
        bookings: Sequence[Dict[str, Any]],
        facilities: Sequence[Dict[str, Any]],
    ) -> Optional[List[FacilityRecommendation]]:
        """Rank ``facilities`` (approved ones only) for ``user``; ids outside that list are dropped."""
        if not facilities:
            return []

        prompt = (
            "Recommend facilities for:\n"
            f"User: {json.dumps(user, default=str)}\n"
            f"User Preferences: {json.dumps(preferences, default=str)}\n"
            f"Booking History: {json.dumps(list(bookings), default=str)}\n"
            f"Available Facilities: {json.dumps(list(facilities), default=str)}\n\n"
            'Return format: { "recommendations": [{ "facility_id": "uuid", "score": 0-100, '
            '"reason": "personalized explanation" }] }'
        )
        try:
            content = await self._complete(RECOMMENDATION_SYSTEM_PROMPT, prompt)
            reply = _RecommendationReply.model_validate(extract_json(content))
        except ValidationError as e:
            logger.warning(f"Facility recommendation reply failed validation: {e}")
            return None
        except AdvisorUnavailable as e:
            logger.warning(f"Facility recommendations unavailable: {e}")
            return None

        known = {str(f.get("id")) for f in facilities}
        picks = [r for r in reply.recommendations if r.facility_id in known]
        picks.sort(key=lambda r: r.score, reverse=True)
        return picks[:MAX_RECOMMENDATIONS]
