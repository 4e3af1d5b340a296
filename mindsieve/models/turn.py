"""Turn records."""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from mindsieve.models.base import now_ms


@dataclass
class Turn:
    """One question/answer exchange.

    ``id`` doubles as the client-visible assistant id.
    """

    COLLECTION = "turns"

    # Fields owned by the first write; later writes merge around them.
    CREATE_ONLY = ("createdAt", "cardCount", "preview")

    id: str
    session_id: str
    user_query: str = ""
    preview: str = ""
    card_count: int = 0
    owner_id: Optional[str] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "ownerUid": self.owner_id,
            "userQuery": self.user_query,
            "preview": self.preview,
            "cardCount": self.card_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
