"""Study card listing.

Cards are listed newest first with a stable ``(createdAt, id)`` cursor.
When the document store lacks the composite index for the ordered query,
listing degrades to an equality-only fetch that is filtered, sorted and
paged in memory, and the response carries ``warning='missing_index'``.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mindsieve.exceptions import MissingIndexError
from mindsieve.models import StudyCard
from mindsieve.services.document_store import DESCENDING, DocumentStore, Filter

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 60
MAX_LIMIT = 200
MISSING_INDEX_WARNING = "missing_index"

ORDER = [("createdAt", DESCENDING), ("id", DESCENDING)]


@dataclass
class Cursor:
    """Position after the last card of a page."""
    created_at: int
    id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"createdAt": self.created_at, "id": self.id}


@dataclass
class CardQuery:
    session_id: str
    turn_id: Optional[str] = None
    pinned_only: bool = False
    since: Optional[int] = None
    limit: Optional[int] = None
    cursor: Optional[Cursor] = None


@dataclass
class CardPage:
    cards: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[Cursor] = None
    warning: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"cards": self.cards}
        if self.next_cursor:
            result["nextCursor"] = self.next_cursor.to_dict()
        if self.warning:
            result["warning"] = self.warning
        return result


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return DEFAULT_LIMIT
    return max(1, min(int(limit), MAX_LIMIT))


def _sort_key(card: Dict[str, Any]):
    return (card.get("createdAt") or 0, card.get("id") or "")


class CardService:
    """Lists study cards for a session."""

    def __init__(self, store: DocumentStore):
        self.store = store

    @staticmethod
    def _equality_filters(query: CardQuery) -> List[Filter]:
        filters: List[Filter] = [("sessionId", "==", query.session_id)]
        if query.turn_id:
            filters.append(("turnId", "==", query.turn_id))
        if query.pinned_only:
            filters.append(("pinned", "==", True))
        return filters

    @staticmethod
    def _page(cards: List[Dict[str, Any]], limit: int, warning: Optional[str] = None) -> CardPage:
        next_cursor = None
        if len(cards) == limit:
            last = cards[-1]
            if last.get("createdAt") and last.get("id"):
                next_cursor = Cursor(created_at=last["createdAt"], id=last["id"])
        return CardPage(cards=cards, next_cursor=next_cursor, warning=warning)

    async def _indexed(self, query: CardQuery, limit: int) -> CardPage:
        filters = self._equality_filters(query)
        if query.since is not None:
            filters.append(("createdAt", ">=", query.since))

        cards = await self.store.query(
            StudyCard.COLLECTION,
            filters=filters,
            order_by=ORDER,
            start_after=query.cursor.to_dict() if query.cursor else None,
            limit=limit,
        )
        return self._page(cards, limit)

    async def _fallback(self, query: CardQuery, limit: int) -> CardPage:
        cards = await self.store.query(StudyCard.COLLECTION, filters=self._equality_filters(query))

        cards = [c for c in cards if isinstance(c.get("createdAt"), int)]
        if query.since is not None:
            cards = [c for c in cards if c["createdAt"] >= query.since]
        cards.sort(key=_sort_key, reverse=True)

        if query.cursor:
            bound = (query.cursor.created_at, query.cursor.id)
            cards = [c for c in cards if _sort_key(c) < bound]

        return self._page(cards[:limit], limit, warning=MISSING_INDEX_WARNING)

    async def list_cards(self, query: CardQuery) -> CardPage:
        """List one page of cards.

        Args:
            query: Filters, page size and cursor

        Returns:
            CardPage, flagged when served by the degraded path
        """
        limit = clamp_limit(query.limit)
        try:
            return await self._indexed(query, limit)
        except MissingIndexError:
            logger.warning(f"Missing composite index for card listing, session {query.session_id}")
            return await self._fallback(query, limit)
