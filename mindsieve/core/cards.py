"""Study card generation.

A card distills one assistant answer and its sources into a compact study
artifact. Card ids are derived from content, so generating the same card
twice is a no-op that returns the stored card.
"""

import hashlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from mindsieve.config import CardConfig, get_settings
from mindsieve.core.generator import LLMClient
from mindsieve.exceptions import DocumentExistsError
from mindsieve.models import CardSource, QuizItem, StudyCard, Turn, now_ms
from mindsieve.services.document_store import SERVER_TIMESTAMP, DocumentStore, Increment, Write

logger = logging.getLogger(__name__)

DEFAULT_TOPIC = "Study Topic"
CARD_ID_LENGTH = 28

MAX_TOPIC_CHARS = 120
MAX_SUMMARY_CHARS = 1200
MAX_BULLETS = 5
MAX_KEY_TERMS = 8
MAX_QUIZ = 3
MAX_LINKS = 4
MAX_TAGS = 8
PREVIEW_CHARS = 140

CARD_PROMPT = """You are distilling a concise study card from an explanation and its sources.

TOPIC: {topic}

SOURCES (ID: title):
{sources}

EXPLANATION:
{answer}

Return ONLY valid JSON with keys exactly:
{{
  "topic": "...",
  "summary": "... (80-120 words, plain)",
  "bullets": ["...", "...", "..."],
  "keyTerms": ["...", "..."],
  "quiz": [{{"q": "...", "a": "..."}}],
  "tags": [],
  "links": []
}}"""

_HTTP_URL = TypeAdapter(AnyHttpUrl)


@dataclass
class CardRequest:
    """Input for one card: an answer, its sources and where it belongs."""
    session_id: str
    turn_id: str
    answer: str
    sources: List[CardSource] = field(default_factory=list)
    topic: Optional[str] = None
    from_query: Optional[str] = None
    owner_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON body for queued generation."""
        return {
            "sessionId": self.session_id,
            "turnId": self.turn_id,
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "topic": self.topic,
            "fromQuery": self.from_query,
            "ownerUid": self.owner_id,
        }


@dataclass
class CardResult:
    """Outcome of card generation."""
    id: str
    cached: bool
    card: Dict[str, Any]


def card_id(session_id: str, turn_id: str, answer: str, sources: List[CardSource]) -> str:
    """Content-derived card id.

    Source ids are sorted, so source order never changes the id.
    """
    ids = sorted(int(s.id) for s in sources)
    key = f"{session_id}|{turn_id}|{answer}|{json.dumps(ids, separators=(',', ':'))}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:CARD_ID_LENGTH]


def _strings(value: Any, limit: int) -> List[str]:
    if not isinstance(value, list):
        return []
    return [v.strip() for v in value if isinstance(v, str) and v.strip()][:limit]


def _quiz(value: Any) -> List[QuizItem]:
    if not isinstance(value, list):
        return []
    items = [
        QuizItem(q=item["q"].strip(), a=item["a"].strip())
        for item in value
        if isinstance(item, dict) and isinstance(item.get("q"), str) and isinstance(item.get("a"), str)
    ]
    return items[:MAX_QUIZ]


def _links(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    links = []
    for item in value:
        if not isinstance(item, str):
            continue
        try:
            links.append(str(_HTTP_URL.validate_python(item.strip())))
        except ValidationError:
            continue
    return links[:MAX_LINKS]


def parse_payload(text: Optional[str]) -> Dict[str, Any]:
    """Model output as a dict; anything else becomes ``{}``."""
    try:
        payload = json.loads(text or "{}")
    except (TypeError, ValueError):
        return {}
    return payload if isinstance(payload, dict) else {}


def sanitize(payload: Dict[str, Any], request: CardRequest, cid: str) -> StudyCard:
    """Clamp untrusted model output into a bounded card."""
    fallback_topic = request.topic or request.from_query or DEFAULT_TOPIC
    topic = payload.get("topic")
    topic = topic.strip() if isinstance(topic, str) and topic.strip() else fallback_topic
    summary = payload.get("summary")
    summary = summary.strip() if isinstance(summary, str) else ""

    return StudyCard(
        id=cid,
        session_id=request.session_id,
        turn_id=request.turn_id,
        owner_id=request.owner_id,
        topic=topic[:MAX_TOPIC_CHARS],
        summary=summary[:MAX_SUMMARY_CHARS],
        bullets=_strings(payload.get("bullets"), MAX_BULLETS),
        key_terms=_strings(payload.get("keyTerms"), MAX_KEY_TERMS),
        quiz=_quiz(payload.get("quiz")),
        links=_links(payload.get("links")),
        sources=[CardSource(id=s.id, title=s.title, arxiv_id=s.arxiv_id) for s in request.sources],
        tags=_strings(payload.get("tags"), MAX_TAGS),
        from_query=request.from_query or "",
        created_at=now_ms(),
    )


class CardGenerator:
    """Generates and stores study cards.

    The id check, the model call and the write are not one transaction;
    concurrent duplicates are resolved by the store's ``create`` semantics.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        store: DocumentStore,
        config: Optional[CardConfig] = None,
    ):
        """Initialize the card generator.

        Args:
            llm_client: Model client used to distill cards
            store: Document store for cards and turns
            config: Card configuration
        """
        self.llm = llm_client
        self.store = store
        self.config = config or get_settings().cards

    def build_prompt(self, request: CardRequest) -> str:
        return CARD_PROMPT.format(
            topic=request.topic or request.from_query or DEFAULT_TOPIC,
            sources="\n".join(f"[{s.id}] {s.title}" for s in request.sources),
            answer=request.answer,
        )

    async def _call_model(self, prompt: str) -> str:
        grounding = self.config.use_search_grounding
        try:
            return await self.llm.generate(
                prompt,
                temperature=self.config.temperature,
                json_output=True,
                grounding=grounding,
            )
        except Exception as e:
            logger.warning(f"Card model call failed, retrying without tools: {e}")

        try:
            return await self.llm.generate(
                prompt,
                temperature=self.config.temperature,
                json_output=True,
                grounding=False,
            )
        except Exception as e:
            logger.warning(f"Card model retry failed, storing a minimal card: {e}")
            return "{}"

    def _writes(self, card: StudyCard) -> List[Write]:
        preview = card.summary[:PREVIEW_CHARS] or (card.bullets[0] if card.bullets else "")
        return [
            Write("create", StudyCard.COLLECTION, card.id, card.to_dict()),
            Write(
                "set",
                Turn.COLLECTION,
                card.turn_id,
                {
                    "id": card.turn_id,
                    "sessionId": card.session_id,
                    "ownerUid": card.owner_id,
                    "preview": preview,
                    "cardCount": Increment(1),
                    "updatedAt": SERVER_TIMESTAMP,
                },
                merge=True,
            ),
        ]

    async def generate_card(self, request: CardRequest) -> CardResult:
        """Generate the card for an answer, or return the stored one.

        Args:
            request: Answer, sources and ownership of the card

        Returns:
            CardResult with ``cached=True`` when the card already existed
        """
        cid = card_id(request.session_id, request.turn_id, request.answer, request.sources)

        existing = await self.store.get(StudyCard.COLLECTION, cid)
        if existing is not None:
            logger.info(f"Card {cid} already exists")
            return CardResult(id=cid, cached=True, card=existing)

        text = await self._call_model(self.build_prompt(request))
        card = sanitize(parse_payload(text), request, cid)

        try:
            await self.store.commit(self._writes(card))
        except DocumentExistsError:
            logger.info(f"Card {cid} was created concurrently, returning stored card")
            stored = await self.store.get(StudyCard.COLLECTION, cid)
            return CardResult(id=cid, cached=True, card=stored or card.to_dict())

        logger.info(f"Stored card {cid} for turn {request.turn_id}")
        return CardResult(id=cid, cached=False, card=card.to_dict())
