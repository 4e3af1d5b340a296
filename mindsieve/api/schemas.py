"""Pydantic schemas for API request/response validation.

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ==================== Chat Schemas ====================

class ChatRequest(CamelModel):
    """Request schema for POST /chat.

    An empty query is accepted here and rejected by the safety guard.
    """
    query: str = Field(..., max_length=10000)
    session_id: Optional[str] = None
    turn_id: Optional[str] = None
    assistant_id: Optional[str] = None


class BlockedResponse(CamelModel):
    """Response schema for a rejected query."""
    error: str = "blocked"
    reason: str
    req_id: str


# ==================== Card Schemas ====================

class SourceRef(BaseModel):
    """A source attached to a card request."""
    id: int
    title: str = ""
    arxiv_id: Optional[str] = None


class CardRequestBody(CamelModel):
    """Request schema for POST /cards/enqueue and POST /tasks/cards."""
    session_id: str = Field(..., min_length=1)
    turn_id: str = Field(..., min_length=1)
    answer: str = Field(..., min_length=1)
    sources: List[SourceRef] = Field(default_factory=list)
    topic: Optional[str] = None
    from_query: Optional[str] = None
    owner_uid: Optional[str] = None


class CardEnqueueResponse(CamelModel):
    """Response schema for POST /cards/enqueue."""
    ok: bool = True
    mode: str
    id: Optional[str] = None
    cached: Optional[bool] = None
    card: Optional[Dict[str, Any]] = None
    name: Optional[str] = None


class CardTaskResponse(CamelModel):
    """Response schema for POST /tasks/cards."""
    ok: bool = True
    id: str
    cached: bool
    card: Dict[str, Any]


class CursorResponse(CamelModel):
    created_at: int
    id: str


class CardListResponse(CamelModel):
    """Response schema for GET /cards."""
    cards: List[Dict[str, Any]]
    next_cursor: Optional[CursorResponse] = None
    warning: Optional[str] = None


# ==================== Session Schemas ====================

class SessionResponse(CamelModel):
    """Response schema for POST /sessions."""
    session_id: str
    session_key: str


class SessionPatchRequest(CamelModel):
    """Request schema for PATCH /sessions."""
    session_id: str = Field(..., min_length=1)


class OkResponse(BaseModel):
    ok: bool = True


class TurnRequest(CamelModel):
    """Request schema for POST /turns."""
    session_id: str = Field(..., min_length=1)
    query: str = Field(..., min_length=1, max_length=10000)
    turn_id: Optional[str] = None


class TurnResponse(BaseModel):
    """Response schema for POST /turns."""
    ok: bool = True
    id: str


# ==================== Health Schemas ====================

class HealthResponse(BaseModel):
    """Response schema for GET /health."""
    status: str
    version: str
    services: Dict[str, bool]
