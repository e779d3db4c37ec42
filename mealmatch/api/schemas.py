"""
MealMatch API request/response schemas (Pydantic).

Every HTTP endpoint returning structured data uses these models, so the
OpenAPI document doubles as the client contract.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from mealmatch.domain.enums import OutcomeKind, SwipeDirection
from mealmatch.domain.models import MatchRecord, PreferenceEvent, SubmissionResult


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class PreferenceSubmit(BaseModel):
    actor_id: str = Field(..., min_length=1, max_length=64)
    item_id: str = Field(..., min_length=1, max_length=64)
    direction: SwipeDirection


class FavoriteUpdate(BaseModel):
    is_favorite: bool


class PushTokenUpdate(BaseModel):
    token: str = Field(..., min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class PreferenceResponse(BaseModel):
    id: str
    actor_id: str
    item_id: str
    group_id: str
    direction: SwipeDirection
    created_at: datetime

    @classmethod
    def from_event(cls, event: PreferenceEvent) -> "PreferenceResponse":
        return cls(
            id=event.id,
            actor_id=event.actor_id,
            item_id=event.item_id,
            group_id=event.group_id,
            direction=event.direction,
            created_at=event.created_at,
        )


class MatchResponse(BaseModel):
    id: str
    group_id: str
    item_id: str
    is_favorite: bool = False
    matched_at: datetime

    @classmethod
    def from_record(cls, record: MatchRecord) -> "MatchResponse":
        return cls(
            id=record.id,
            group_id=record.group_id,
            item_id=record.item_id,
            is_favorite=record.is_favorite,
            matched_at=record.matched_at,
        )


class SubmissionResponse(BaseModel):
    """Result of ``POST /api/groups/{group_id}/preferences``."""

    preference: PreferenceResponse
    outcome: OutcomeKind
    match: Optional[MatchResponse] = None
    duplicate: bool = False

    @classmethod
    def from_result(cls, result: SubmissionResult) -> "SubmissionResponse":
        match = result.outcome.match
        return cls(
            preference=PreferenceResponse.from_event(result.preference),
            outcome=result.outcome.kind,
            match=MatchResponse.from_record(match) if match is not None else None,
            duplicate=result.duplicate,
        )


class MatchListResponse(BaseModel):
    group_id: str
    count: int
    matches: List[MatchResponse] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str
    version: str
    db: str = "ok"
    realtime_subscribers: int = 0
    pending_side_effects: int = 0
    metrics: Dict[str, int] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
