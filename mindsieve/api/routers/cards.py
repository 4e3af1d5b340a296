"""Study card endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from mindsieve.api.dependencies import (
    get_card_service_dep,
    get_dispatcher_dep,
    get_session_service_dep,
    get_session_state,
)
from mindsieve.api.schemas import CardEnqueueResponse, CardListResponse, CardRequestBody
from mindsieve.core.cards import CardRequest
from mindsieve.models import CardSource
from mindsieve.services.card_service import CardQuery, CardService, Cursor
from mindsieve.services.session_service import SessionService, SessionState
from mindsieve.services.task_dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cards", tags=["Cards"])


def to_card_request(body: CardRequestBody) -> CardRequest:
    return CardRequest(
        session_id=body.session_id,
        turn_id=body.turn_id,
        answer=body.answer,
        sources=[CardSource(id=s.id, title=s.title, arxiv_id=s.arxiv_id) for s in body.sources],
        topic=body.topic,
        from_query=body.from_query,
        owner_id=body.owner_uid,
    )


@router.post(
    "/enqueue",
    response_model=CardEnqueueResponse,
    response_model_exclude_none=True,
)
async def enqueue_card(
    body: CardRequestBody,
    dispatcher: TaskDispatcher = Depends(get_dispatcher_dep),
):
    """Queue card generation, or generate the card inline.

    Returns ``mode='async'`` with the task name and the card id the task
    will produce, or ``mode='sync'`` with the card.
    """
    result = await dispatcher.dispatch(to_card_request(body))
    return result.to_dict()


@router.get(
    "",
    response_model=CardListResponse,
    response_model_exclude_none=True,
)
async def list_cards(
    response: Response,
    session_id: Optional[str] = Query(None, alias="sessionId"),
    turn_id: Optional[str] = Query(None, alias="turnId"),
    pinned_only: bool = Query(False, alias="pinnedOnly"),
    since: Optional[int] = Query(None),
    limit: Optional[int] = Query(None),
    cursor_created_at: Optional[int] = Query(None, alias="cursorCreatedAt"),
    cursor_id: Optional[str] = Query(None, alias="cursorId"),
    service: CardService = Depends(get_card_service_dep),
    sessions: SessionService = Depends(get_session_service_dep),
    state: SessionState = Depends(get_session_state),
):
    """List a session's cards, newest first."""
    if not session_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "sessionId required"},
        )
    sessions.check_ownership(state, session_id, "cards.list")

    cursor = None
    if cursor_created_at is not None and cursor_id:
        cursor = Cursor(created_at=cursor_created_at, id=cursor_id)

    page = await service.list_cards(CardQuery(
        session_id=session_id,
        turn_id=turn_id,
        pinned_only=pinned_only,
        since=since,
        limit=limit,
        cursor=cursor,
    ))

    response.headers["Cache-Control"] = "no-store, must-revalidate"
    response.headers["Pragma"] = "no-cache"
    return page.to_dict()
