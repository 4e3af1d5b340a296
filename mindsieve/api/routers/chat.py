"""Chat endpoint."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from mindsieve.api.dependencies import (
    apply_session_cookies,
    get_app_context_dep,
    get_chat_service_dep,
    get_session_service_dep,
    get_session_state,
)
from mindsieve.api.schemas import ChatRequest
from mindsieve.observability import REQUEST_ID_HEADER, get_request_id
from mindsieve.services.bootstrap import AppContext
from mindsieve.services.chat_service import ChatService
from mindsieve.services.session_service import SessionService, SessionState

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Chat"])


@router.post("/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    service: ChatService = Depends(get_chat_service_dep),
    sessions: SessionService = Depends(get_session_service_dep),
    state: SessionState = Depends(get_session_state),
    context: AppContext = Depends(get_app_context_dep),
):
    """Answer a question as a text stream.

    The body is ``<json sources>|||SOURCES|||<json meta>|||META|||<answer>``.
    Blocked queries and failures before the first answer chunk are returned
    as JSON errors instead.
    """
    sessions.check_ownership(state, body.session_id, "chat")
    turn_id = body.turn_id or body.assistant_id

    result = await service.answer(body.query)

    if turn_id:
        try:
            await sessions.record_turn(state.session_id, body.query, turn_id=turn_id)
        except Exception as e:
            logger.warning(f"Could not record turn {turn_id}: {e}")

    request_id = getattr(request.state, "request_id", None) or get_request_id()
    headers = {
        REQUEST_ID_HEADER: request_id,
        "X-Session-Id": state.session_id,
        "X-Model": result.model,
        "Cache-Control": "no-store",
    }
    if turn_id:
        headers["X-Turn-Id"] = turn_id

    response = StreamingResponse(
        result.frames(),
        media_type="text/plain; charset=utf-8",
        headers=headers,
    )
    apply_session_cookies(response, state, context.settings)
    return response
