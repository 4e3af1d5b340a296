"""Unit tests for study card generation."""

import asyncio
import json

import pytest

from conftest import ScriptedLLM

from mindsieve.config import CardConfig
from mindsieve.core.cards import (
    CardGenerator,
    CardRequest,
    card_id,
    parse_payload,
    sanitize,
)
from mindsieve.models import CardSource
from mindsieve.services.document_store import InMemoryDocumentStore


class YieldingLLM(ScriptedLLM):
    """Suspends inside the model call so concurrent callers interleave."""

    async def generate(self, prompt, **kwargs):
        await asyncio.sleep(0)
        return await super().generate(prompt, **kwargs)


def card_json(**overrides):
    payload = {
        "topic": "Self-attention",
        "summary": "Self-attention relates positions of a sequence.",
        "bullets": ["Queries, keys, values", "Scaled dot product"],
        "keyTerms": ["attention", "softmax"],
        "quiz": [{"q": "What is scaled?", "a": "The dot product."}],
        "tags": ["nlp"],
        "links": ["https://arxiv.org/abs/1706.03762"],
    }
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def card_request():
    return CardRequest(
        session_id="session-1",
        turn_id="turn-1",
        answer="Attention lets every token look at every other token [1].",
        sources=[CardSource(id=2, title="BERT"), CardSource(id=1, title="Attention", arxiv_id="1706.03762")],
        from_query="what is attention",
    )


# ====================
# Card Id Tests
# ====================

class TestCardId:
    """Tests for content-derived ids."""

    def test_length_and_determinism(self, card_request):
        first = card_id("s", "t", "answer", card_request.sources)
        second = card_id("s", "t", "answer", card_request.sources)

        assert first == second
        assert len(first) == 28
        assert all(c in "0123456789abcdef" for c in first)

    def test_source_order_does_not_matter(self):
        a = [CardSource(id=1, title="A"), CardSource(id=3, title="C")]
        b = [CardSource(id=3, title="C"), CardSource(id=1, title="A")]

        assert card_id("s", "t", "x", a) == card_id("s", "t", "x", b)

    def test_inputs_change_id(self):
        sources = [CardSource(id=1, title="A")]
        base = card_id("s", "t", "x", sources)

        assert card_id("s2", "t", "x", sources) != base
        assert card_id("s", "t2", "x", sources) != base
        assert card_id("s", "t", "y", sources) != base
        assert card_id("s", "t", "x", []) != base

    def test_known_value(self):
        import hashlib

        expected = hashlib.sha256(b"s|t|x|[1,3]").hexdigest()[:28]

        assert card_id("s", "t", "x", [CardSource(id=3, title=""), CardSource(id=1, title="")]) == expected


# ====================
# Sanitizer Tests
# ====================

class TestSanitize:
    """Tests for clamping model output."""

    @pytest.mark.parametrize("text", ["not json", "[1, 2]", "null", "", None])
    def test_parse_payload_non_objects(self, text):
        assert parse_payload(text) == {}

    def test_limits(self, card_request):
        payload = json.loads(card_json(
            topic="t" * 500,
            summary="s" * 5000,
            bullets=[f"b{i}" for i in range(10)],
            keyTerms=[f"k{i}" for i in range(20)],
            quiz=[{"q": f"q{i}", "a": f"a{i}"} for i in range(6)] + [{"q": 1, "a": "x"}],
            links=["https://a.example", "ftp://files.example", "not a url", 42,
                   "http://b.example/x", "https://c.example", "https://d.example", "https://e.example"],
            tags=[f"t{i}" for i in range(20)],
        ))

        card = sanitize(payload, card_request, "cid")

        assert len(card.topic) == 120
        assert len(card.summary) == 1200
        assert len(card.bullets) == 5
        assert len(card.key_terms) == 8
        assert len(card.quiz) == 3
        assert len(card.links) == 4
        assert all(link.startswith(("http://", "https://")) for link in card.links)
        assert len(card.tags) == 8

    def test_topic_fallbacks(self, card_request):
        assert sanitize({}, card_request, "cid").topic == "what is attention"

        card_request.topic = "Attention"
        assert sanitize({}, card_request, "cid").topic == "Attention"

        card_request.topic = None
        card_request.from_query = None
        assert sanitize({}, card_request, "cid").topic == "Study Topic"

    def test_wrong_types_dropped(self, card_request):
        card = sanitize(
            {"summary": 12, "bullets": "one", "quiz": "q", "links": {"a": 1}, "tags": [None, " ok "]},
            card_request,
            "cid",
        )

        assert card.summary == ""
        assert card.bullets == []
        assert card.quiz == []
        assert card.links == []
        assert card.tags == ["ok"]

    def test_sources_copied_by_value(self, card_request):
        card = sanitize({}, card_request, "cid")

        assert [s.to_dict() for s in card.sources] == [
            {"id": 2, "title": "BERT", "arxiv_id": None},
            {"id": 1, "title": "Attention", "arxiv_id": "1706.03762"},
        ]


# ====================
# Card Generator Tests
# ====================

class TestCardGenerator:
    """Tests for CardGenerator."""

    @pytest.mark.asyncio
    async def test_generates_and_stores(self, card_request):
        store = InMemoryDocumentStore()
        llm = ScriptedLLM(responses=[card_json()])
        generator = CardGenerator(llm, store, CardConfig())

        result = await generator.generate_card(card_request)

        assert result.cached is False
        assert result.card["topic"] == "Self-attention"
        assert result.card["sessionId"] == "session-1"
        stored = await store.get("study_cards", result.id)
        assert stored == result.card
        assert llm.generate_calls[0]["json_output"] is True

    @pytest.mark.asyncio
    async def test_second_call_is_cached_without_model_call(self, card_request):
        store = InMemoryDocumentStore()
        llm = ScriptedLLM(responses=[card_json(), card_json(topic="Other")])
        generator = CardGenerator(llm, store, CardConfig())

        first = await generator.generate_card(card_request)
        second = await generator.generate_card(card_request)

        assert second.id == first.id
        assert second.cached is True
        assert second.card == first.card
        assert len(llm.generate_calls) == 1

    @pytest.mark.asyncio
    async def test_turn_updated_once(self, card_request):
        store = InMemoryDocumentStore()
        generator = CardGenerator(ScriptedLLM(responses=[card_json()]), store, CardConfig())

        await generator.generate_card(card_request)
        await generator.generate_card(card_request)

        turn = await store.get("turns", "turn-1")
        assert turn["cardCount"] == 1
        assert turn["preview"] == "Self-attention relates positions of a sequence."

    @pytest.mark.asyncio
    async def test_preview_falls_back_to_first_bullet(self, card_request):
        store = InMemoryDocumentStore()
        llm = ScriptedLLM(responses=[card_json(summary="")])

        await CardGenerator(llm, store, CardConfig()).generate_card(card_request)

        turn = await store.get("turns", "turn-1")
        assert turn["preview"] == "Queries, keys, values"

    @pytest.mark.asyncio
    async def test_concurrent_duplicates_create_one_card(self, card_request):
        store = InMemoryDocumentStore()
        llm = YieldingLLM(responses=[card_json(), card_json(topic="Loser")])
        generator = CardGenerator(llm, store, CardConfig())

        first, second = await asyncio.gather(
            generator.generate_card(card_request),
            generator.generate_card(card_request),
        )

        assert first.id == second.id
        assert sorted([first.cached, second.cached]) == [False, True]
        assert len(llm.generate_calls) == 2
        assert first.card == second.card
        cards = await store.query("study_cards")
        assert len(cards) == 1
        turn = await store.get("turns", "turn-1")
        assert turn["cardCount"] == 1

    @pytest.mark.asyncio
    async def test_retries_without_tool_on_error(self, card_request):
        llm = ScriptedLLM(responses=[RuntimeError("400 googleSearch unsupported"), card_json()])
        generator = CardGenerator(llm, InMemoryDocumentStore(), CardConfig(use_search_grounding=True))

        result = await generator.generate_card(card_request)

        assert result.card["topic"] == "Self-attention"
        assert [c["grounding"] for c in llm.generate_calls] == [True, False]

    @pytest.mark.asyncio
    async def test_double_failure_stores_minimal_card(self, card_request):
        llm = ScriptedLLM(responses=[RuntimeError("down"), RuntimeError("still down")])
        generator = CardGenerator(llm, InMemoryDocumentStore(), CardConfig())

        result = await generator.generate_card(card_request)

        assert result.cached is False
        assert result.card["topic"] == "what is attention"
        assert result.card["summary"] == ""
        assert result.card["bullets"] == []

    @pytest.mark.asyncio
    async def test_prompt_lists_sources(self, card_request):
        llm = ScriptedLLM(responses=[card_json()])

        await CardGenerator(llm, InMemoryDocumentStore(), CardConfig()).generate_card(card_request)

        prompt = llm.generate_calls[0]["prompt"]
        assert "[2] BERT" in prompt
        assert "[1] Attention" in prompt
        assert "TOPIC: what is attention" in prompt
