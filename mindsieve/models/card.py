"""Source and study card records."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from mindsieve.models.base import now_ms


@dataclass
class SourceItem:
    """A ranked retrieval hit surfaced to the caller and the model.

    ``id`` is the 1-based rank within one response and is not stable
    across requests.
    """
    id: int
    title: str
    link: Optional[str] = None
    published: str = ""
    snippet: str = ""
    arxiv_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "link": self.link,
            "published": self.published,
            "snippet": self.snippet,
            "arxiv_id": self.arxiv_id,
        }

    def grounding(self) -> Dict[str, Any]:
        """The subset of fields embedded in the grounding prompt."""
        return {
            "id": self.id,
            "title": self.title,
            "snippet": self.snippet,
            "arxiv_id": self.arxiv_id,
        }


@dataclass
class CardSource:
    """A source reference copied by value into a study card."""
    id: int
    title: str
    arxiv_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "title": self.title, "arxiv_id": self.arxiv_id}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CardSource":
        return cls(
            id=int(data["id"]),
            title=str(data.get("title") or ""),
            arxiv_id=data.get("arxiv_id"),
        )


@dataclass
class QuizItem:
    q: str
    a: str

    def to_dict(self) -> Dict[str, str]:
        return {"q": self.q, "a": self.a}


@dataclass
class StudyCard:
    """A distilled artifact keyed by content, not by request."""

    COLLECTION = "study_cards"

    id: str
    session_id: str
    turn_id: str
    topic: str
    summary: str = ""
    bullets: List[str] = field(default_factory=list)
    key_terms: List[str] = field(default_factory=list)
    quiz: List[QuizItem] = field(default_factory=list)
    links: List[str] = field(default_factory=list)
    sources: List[CardSource] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    from_query: str = ""
    owner_id: Optional[str] = None
    pinned: bool = False
    created_at: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "turnId": self.turn_id,
            "ownerUid": self.owner_id,
            "topic": self.topic,
            "summary": self.summary,
            "bullets": list(self.bullets),
            "keyTerms": list(self.key_terms),
            "quiz": [q.to_dict() for q in self.quiz],
            "links": list(self.links),
            "sources": [s.to_dict() for s in self.sources],
            "tags": list(self.tags),
            "fromQuery": self.from_query,
            "pinned": self.pinned,
            "createdAt": self.created_at,
        }
