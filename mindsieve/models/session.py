"""Session records."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from mindsieve.models.base import drop_none, now_ms


@dataclass
class Session:
    """Identity anchor for a browsing context.

    ``session_key`` is a server-side secret; it is returned to the owning
    browser as a cookie and never sent to the model or the search engine.
    """

    COLLECTION = "sessions"

    session_id: str
    session_key: str
    owner_id: Optional[str] = None
    anon_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)
    archived: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.session_id,
            "owner": drop_none({"uid": self.owner_id, "anonId": self.anon_id}),
            "sessionKey": self.session_key,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "archived": self.archived,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        owner = data.get("owner") or {}
        return cls(
            session_id=data["id"],
            session_key=data.get("sessionKey", ""),
            owner_id=owner.get("uid"),
            anon_id=owner.get("anonId"),
            created_at=data.get("createdAt") or 0,
            updated_at=data.get("updatedAt") or 0,
            archived=bool(data.get("archived", False)),
        )
