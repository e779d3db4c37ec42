"""
MealMatch: centralised router registration.

Import and call ``register_routes(app)`` once in ``mealmatch.app``.

  POST   /api/groups/{group_id}/preferences   record a like/dislike, run detection
  GET    /api/groups/{group_id}/matches       authoritative match list
  PATCH  /api/matches/{match_id}              set the favorite flag
  PUT    /api/actors/{actor_id}/push-token    register push endpoint
  DELETE /api/actors/{actor_id}/push-token    clear push endpoint
  GET    /api/health                          health check
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, FastAPI, HTTPException, Query, Response
from sqlalchemy import text

from mealmatch import __version__
from mealmatch.api.schemas import (
    FavoriteUpdate,
    HealthResponse,
    MatchListResponse,
    MatchResponse,
    PreferenceSubmit,
    PushTokenUpdate,
    SubmissionResponse,
)
from mealmatch.domain.errors import (
    ActorNotInGroup,
    MatchNotFound,
    MealMatchError,
    StorageUnavailable,
    UnknownGroup,
)
from mealmatch.metrics import metrics_snapshot
from mealmatch.notifications import NotificationDispatcher, build_gateway_from_settings
from mealmatch.service import PreferenceService
from mealmatch.websocket import manager

logger = logging.getLogger(__name__)

STORAGE_RETRY_AFTER_SECONDS = 1

_service: Optional[PreferenceService] = None


def get_service() -> PreferenceService:
    """Return the process-wide service, building it on first use."""
    global _service
    if _service is None:
        _service = PreferenceService(
            channel=manager,
            dispatcher=NotificationDispatcher(build_gateway_from_settings()),
        )
    return _service


def set_service(service: Optional[PreferenceService]) -> None:
    """Swap the process-wide service (tests, alternative wiring)."""
    global _service
    _service = service


def _to_http(exc: MealMatchError) -> HTTPException:
    if isinstance(exc, (UnknownGroup, MatchNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ActorNotInGroup):
        return HTTPException(status_code=403, detail=str(exc))
    if isinstance(exc, StorageUnavailable):
        return HTTPException(
            status_code=503,
            detail="storage temporarily unavailable; retry the request",
            headers={"Retry-After": str(STORAGE_RETRY_AFTER_SECONDS)},
        )
    return HTTPException(status_code=400, detail=str(exc))


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------

group_router = APIRouter(prefix="/api/groups", tags=["groups"])
match_router = APIRouter(prefix="/api/matches", tags=["matches"])
actor_router = APIRouter(prefix="/api/actors", tags=["actors"])
system_router = APIRouter(prefix="/api", tags=["system"])


@group_router.post("/{group_id}/preferences", response_model=SubmissionResponse)
async def submit_preference(group_id: str, body: PreferenceSubmit):
    """Record one preference.  A resubmission answers 200 with ``duplicate: true``."""
    service = get_service()
    try:
        result = await service.submit_async(body.actor_id, group_id, body.item_id, body.direction)
    except MealMatchError as exc:
        raise _to_http(exc) from exc
    return SubmissionResponse.from_result(result)


@group_router.get("/{group_id}/matches", response_model=MatchListResponse)
async def list_matches(group_id: str, favorites_only: bool = Query(False)):
    service = get_service()
    try:
        matches = await asyncio.to_thread(service.list_matches, group_id, favorites_only)
    except MealMatchError as exc:
        raise _to_http(exc) from exc
    return MatchListResponse(
        group_id=group_id,
        count=len(matches),
        matches=[MatchResponse.from_record(m) for m in matches],
    )


@match_router.patch("/{match_id}", response_model=MatchResponse)
async def update_favorite(match_id: str, body: FavoriteUpdate):
    service = get_service()
    try:
        record = await asyncio.to_thread(service.set_favorite, match_id, body.is_favorite)
    except MealMatchError as exc:
        raise _to_http(exc) from exc
    return MatchResponse.from_record(record)


@actor_router.put("/{actor_id}/push-token", status_code=204)
async def register_push_token(actor_id: str, body: PushTokenUpdate):
    service = get_service()
    try:
        await asyncio.to_thread(service.register_push_token, actor_id, body.token)
    except MealMatchError as exc:
        raise _to_http(exc) from exc
    return Response(status_code=204)


@actor_router.delete("/{actor_id}/push-token", status_code=204)
async def clear_push_token(actor_id: str):
    service = get_service()
    try:
        await asyncio.to_thread(service.clear_push_token, actor_id)
    except MealMatchError as exc:
        raise _to_http(exc) from exc
    return Response(status_code=204)


@system_router.get("/health", response_model=HealthResponse)
async def health_check():
    service = get_service()

    def _ping():
        db = service.session_factory()
        try:
            db.execute(text("SELECT 1"))
        finally:
            db.close()

    db_status = "ok"
    try:
        await asyncio.to_thread(_ping)
    except Exception as exc:
        logger.warning("Health check database ping failed: %s", exc)
        db_status = "error"

    return HealthResponse(
        status="ok" if db_status == "ok" else "degraded",
        version=__version__,
        db=db_status,
        realtime_subscribers=service.channel.client_count,
        pending_side_effects=service.pending_side_effects,
        metrics=metrics_snapshot(),
    )


def register_routes(app: FastAPI) -> None:
    """Mount all routers onto ``app``."""
    app.include_router(group_router)
    app.include_router(match_router)
    app.include_router(actor_router)
    app.include_router(system_router)

    logger.info("Routes registered: %d total endpoints", len(app.routes))
