"""Session and turn endpoints."""

from fastapi import APIRouter, Depends

from mindsieve.api.dependencies import get_session_service_dep, get_session_state
from mindsieve.api.schemas import (
    OkResponse,
    SessionPatchRequest,
    SessionResponse,
    TurnRequest,
    TurnResponse,
)
from mindsieve.services.session_service import SessionService, SessionState

router = APIRouter(tags=["Sessions"])


@router.post("/sessions", response_model=SessionResponse)
async def create_session(state: SessionState = Depends(get_session_state)):
    """Return the caller's session, creating it if needed."""
    return SessionResponse(session_id=state.session_id, session_key=state.session_key)


@router.patch("/sessions", response_model=OkResponse)
async def touch_session(
    body: SessionPatchRequest,
    sessions: SessionService = Depends(get_session_service_dep),
    state: SessionState = Depends(get_session_state),
):
    """Keep a session warm; resolving it already touched ``updatedAt``."""
    sessions.check_ownership(state, body.session_id, "sessions.patch")
    return OkResponse()


@router.post("/turns", response_model=TurnResponse)
async def create_turn(
    body: TurnRequest,
    sessions: SessionService = Depends(get_session_service_dep),
    state: SessionState = Depends(get_session_state),
):
    """Record a submitted question."""
    sessions.check_ownership(state, body.session_id, "turns.create")
    turn_id = await sessions.record_turn(body.session_id, body.query, turn_id=body.turn_id)
    return TurnResponse(id=turn_id)
