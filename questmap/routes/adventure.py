# questmap/routes/adventure.py
"""
Adventure JSON API.

Every response uses the envelope
    {"status": "success", "data": ...}
    {"status": "error", "message": ..., ["data": ...]}
Errors are raised as AdventureError subclasses and rendered by the handlers
registered in questmap.main.

The caller is identified by a trusted header (X-User-Id by default); an
optional X-Timezone header (IANA name) sets the user's calendar day.
"""

from datetime import tzinfo
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field

from .. import config
from ..engine.adventure import AdventureEngine
from ..errors import InvalidArgument, Unauthenticated
from ..logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix=config.API_PREFIX, tags=["adventure"])


# ============================================================================
# Dependencies
# ============================================================================

def get_engine_from_request(request: Request) -> AdventureEngine:
    """Get the AdventureEngine from app.state."""
    engine = getattr(request.app.state, "adventure_engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Adventure engine not initialized"
        )
    return engine


def get_current_user(request: Request) -> str:
    user_id = (request.headers.get(config.USER_HEADER) or "").strip()
    if not user_id:
        raise Unauthenticated()
    return user_id


def get_timezone(request: Request) -> Optional[tzinfo]:
    name = request.headers.get(config.TIMEZONE_HEADER)
    if not name:
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidArgument(f"Unknown timezone: {name}") from e


def success(data: Any) -> dict:
    return {"status": "success", "data": data}


# ============================================================================
# Request Models
# ============================================================================

class MoveRequest(BaseModel):
    node_id: str = Field(..., min_length=1, description="Position key of the target node, e.g. level_2")


# ============================================================================
# Worlds and Paths
# ============================================================================

@router.get("/worlds")
async def list_worlds(
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    """All worlds with this user's status and progress."""
    return success(await engine.list_worlds(user_id))


@router.get("/map")
async def get_map(
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.get_map(user_id))


@router.get("/worlds/{world_number}/path")
async def get_world_path(
    world_number: int,
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.get_world_path(user_id, world_number))


@router.put("/position")
async def move_to_node(
    body: MoveRequest,
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.move_to_node(user_id, body.node_id))


@router.post("/worlds/{world_number}/levels/{node_id}/complete")
async def complete_level(
    world_number: int,
    node_id: str,
    user_id: str = Depends(get_current_user),
    tz: Optional[tzinfo] = Depends(get_timezone),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    """Check a level's objectives and complete it. 400 with progress detail if unmet."""
    check = await engine.complete_level(user_id, world_number, node_id, tz=tz)
    return success(check.to_dict())


# ============================================================================
# Bosses
# ============================================================================

@router.get("/worlds/{world_number}/boss")
async def get_boss_challenge(
    world_number: int,
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.get_boss_challenge(user_id, world_number))


@router.post("/worlds/{world_number}/boss/complete")
async def complete_boss(
    world_number: int,
    user_id: str = Depends(get_current_user),
    tz: Optional[tzinfo] = Depends(get_timezone),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.complete_boss(user_id, world_number, tz=tz))


# ============================================================================
# Progress and Tasks
# ============================================================================

@router.get("/progress")
async def get_progress(
    user_id: str = Depends(get_current_user),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    return success(await engine.get_progress(user_id))


@router.post("/tasks/{task_id}/complete")
async def complete_task(
    task_id: str,
    user_id: str = Depends(get_current_user),
    tz: Optional[tzinfo] = Depends(get_timezone),
    engine: AdventureEngine = Depends(get_engine_from_request),
):
    """Mark a task done and re-check the current node."""
    return success(await engine.complete_task(user_id, task_id, tz=tz))


@router.get("/health")
async def health(engine: AdventureEngine = Depends(get_engine_from_request)):
    return success(await engine.health())
