"""FastAPI dependency injection."""

from typing import Optional

from fastapi import Depends, Request, Response

from mindsieve.config import Settings, get_settings
from mindsieve.services.bootstrap import AppContext, get_app_context
from mindsieve.services.card_service import CardService
from mindsieve.services.chat_service import ChatService
from mindsieve.services.session_service import SessionService, SessionState
from mindsieve.services.task_dispatcher import TaskDispatcher

SESSION_ID_HEADER = "x-session-id"
SESSION_KEY_HEADER = "x-session-key"


def get_settings_dep() -> Settings:
    """Get application settings."""
    return get_settings()


def get_app_context_dep() -> AppContext:
    """Get the process-wide application context."""
    return get_app_context()


def get_chat_service_dep(context: AppContext = Depends(get_app_context_dep)) -> ChatService:
    """Get chat service dependency."""
    return ChatService(
        enhancer=context.enhancer,
        embedder=context.embedder,
        retriever_provider=context.get_retriever,
        prompts=context.prompts,
        synthesizer=context.synthesizer,
        settings=context.settings,
    )


def get_card_service_dep(context: AppContext = Depends(get_app_context_dep)) -> CardService:
    """Get card listing service dependency."""
    return CardService(context.store)


def get_dispatcher_dep(context: AppContext = Depends(get_app_context_dep)) -> TaskDispatcher:
    """Get card dispatcher dependency."""
    return context.dispatcher


def get_session_service_dep(context: AppContext = Depends(get_app_context_dep)) -> SessionService:
    """Get session service dependency."""
    return SessionService(context.store)


def apply_session_cookies(response: Response, state: SessionState, settings: Settings):
    """Set the session cookies that changed for this request."""
    cfg = settings.session
    options = dict(
        max_age=cfg.max_age,
        httponly=True,
        samesite="lax",
        secure=not settings.debug,
        path="/",
    )
    if state.anon_created:
        response.set_cookie(cfg.cookie_anon_id, state.anon_id, **options)
    if state.created:
        response.set_cookie(cfg.cookie_session_id, state.session_id, **options)
        response.set_cookie(cfg.cookie_session_key, state.session_key, **options)


async def get_session_state(
    request: Request,
    response: Response,
    sessions: SessionService = Depends(get_session_service_dep),
    context: AppContext = Depends(get_app_context_dep),
) -> SessionState:
    """Resolve the caller's session from headers or cookies.

    Headers take precedence over cookies. New cookies are set on the
    injected response; handlers that return their own response object
    must call ``apply_session_cookies`` themselves.
    """
    settings = context.settings
    cfg = settings.session
    session_id: Optional[str] = (
        request.headers.get(SESSION_ID_HEADER) or request.cookies.get(cfg.cookie_session_id)
    )
    session_key: Optional[str] = (
        request.headers.get(SESSION_KEY_HEADER) or request.cookies.get(cfg.cookie_session_key)
    )
    state = await sessions.ensure_session(
        session_id=session_id,
        session_key=session_key,
        anon_id=request.cookies.get(cfg.cookie_anon_id),
    )
    apply_session_cookies(response, state, settings)
    return state
