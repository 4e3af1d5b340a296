"""Unit tests for hybrid retrieval and prompt assembly."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from elasticsearch import ConnectionError as ESConnectionError

from conftest import make_hit, make_search_client

from mindsieve.config import ElasticsearchConfig, PromptConfig, RetrievalConfig
from mindsieve.core.prompts import PromptAssembler, followups_from_keywords
from mindsieve.core.retrieval import HybridRetriever, apply_topic_filter
from mindsieve.exceptions import SearchUnavailableError


def make_retriever(client):
    return HybridRetriever(client, ElasticsearchConfig(), RetrievalConfig())


# ====================
# Hybrid Retriever Tests
# ====================

class TestHybridRetriever:
    """Tests for HybridRetriever."""

    @pytest.mark.asyncio
    async def test_request_shape(self, search_client):
        retriever = make_retriever(search_client)

        await retriever.search("attention", [0.1, 0.2], top_k=5)

        kwargs = search_client.search.call_args.kwargs
        rrf = kwargs["retriever"]["rrf"]
        assert kwargs["index"] == "arxiv_cs_articles"
        assert kwargs["size"] == 5
        assert rrf["rank_window_size"] == 128
        assert rrf["rank_constant"] == 20
        lexical = rrf["retrievers"][0]["standard"]["query"]["multi_match"]
        assert lexical["query"] == "attention"
        assert lexical["fields"] == ["title^3", "abstract", "summary"]
        assert lexical["fuzziness"] == "AUTO"
        knn = rrf["retrievers"][1]["knn"]
        assert knn == {
            "field": "abstract_vector",
            "query_vector": [0.1, 0.2],
            "k": 5,
            "num_candidates": 80,
        }
        assert kwargs["highlight"]["pre_tags"] == ["<mark>"]

    @pytest.mark.asyncio
    async def test_returns_hits_in_order(self, search_client, sample_hits):
        retriever = make_retriever(search_client)

        result = await retriever.search("attention", [0.1])

        assert result.hits == sample_hits
        assert result.total_hits == 3
        assert result.topic_filtered is False

    @pytest.mark.asyncio
    async def test_zero_hits_is_valid(self):
        retriever = make_retriever(make_search_client([]))

        result = await retriever.search("nothing", [0.1])

        assert result.hits == []
        assert result.total_hits == 0

    @pytest.mark.asyncio
    async def test_reads_body_from_response_object(self, sample_hits):
        client = MagicMock()
        response = MagicMock()
        response.body = {"hits": {"hits": sample_hits}}
        client.search = AsyncMock(return_value=response)

        result = await make_retriever(client).search("attention", [0.1])

        assert len(result.hits) == 3

    @pytest.mark.asyncio
    async def test_search_error_wrapped(self):
        client = MagicMock()
        client.search = AsyncMock(side_effect=ESConnectionError("connection refused"))

        with pytest.raises(SearchUnavailableError):
            await make_retriever(client).search("attention", [0.1])


class TestTopicFilter:
    """Tests for the domain filter."""

    def test_keeps_filtered_when_enough_remain(self):
        hits = [
            make_hit("Neural ranking"),
            make_hit("Graph partitioning"),
            make_hit("Compiler passes"),
            make_hit("Baking bread", abstract="Flour and water."),
        ]

        kept = apply_topic_filter(hits, 3)

        assert [h["_source"]["title"] for h in kept] == [
            "Neural ranking", "Graph partitioning", "Compiler passes",
        ]

    def test_keeps_all_when_too_few_remain(self):
        hits = [
            make_hit("Neural ranking"),
            make_hit("Baking bread"),
            make_hit("Gardening tips"),
        ]

        assert apply_topic_filter(hits, 3) == hits

    def test_matches_abstract_or_summary(self):
        hits = [
            make_hit("A", abstract="uses attention"),
            make_hit("B", summary="a database study"),
            make_hit("C", abstract="network protocol design"),
            make_hit("D", abstract="cooking"),
        ]

        assert len(apply_topic_filter(hits, 3)) == 3


# ====================
# Prompt Assembler Tests
# ====================

class TestPromptAssembler:
    """Tests for PromptAssembler."""

    def test_source_items(self, sample_hits):
        items = PromptAssembler(PromptConfig()).source_items(sample_hits)

        assert [i.id for i in items] == [1, 2, 3]
        assert items[0].title == "Attention Is All You Need"
        assert items[0].link == "https://arxiv.org/abs/1706.03762"
        assert items[0].published == "2017-06-12"
        assert items[0].arxiv_id == "1706.03762"

    def test_highlight_preferred_and_marks_converted(self, sample_hits):
        items = PromptAssembler(PromptConfig()).source_items(sample_hits)

        assert items[0].snippet == "sequence **transduction** models"
        assert items[1].snippet.startswith("We introduce")

    def test_snippet_truncated_with_ellipsis(self):
        hit = make_hit("Neural", abstract="a" * 2000)

        items = PromptAssembler(PromptConfig(max_chars_per_snippet=300)).source_items([hit])

        assert items[0].snippet == "a" * 300 + "..."

    def test_limits_are_clamped(self):
        low = PromptAssembler(PromptConfig(max_snippets=1, max_chars_per_snippet=10))
        high = PromptAssembler(PromptConfig(max_snippets=50, max_chars_per_snippet=99999))

        assert (low.max_snippets, low.max_chars) == (3, 280)
        assert (high.max_snippets, high.max_chars) == (10, 1200)

    def test_snippet_count_capped(self):
        hits = [make_hit(f"Neural {i}", abstract="text") for i in range(12)]

        items = PromptAssembler(PromptConfig(max_snippets=8)).source_items(hits)

        assert len(items) == 8

    def test_build_is_deterministic(self, sample_hits):
        assembler = PromptAssembler(PromptConfig())

        first, _ = assembler.build("What is attention?", sample_hits)
        second, _ = assembler.build("What is attention?", sample_hits)

        assert first == second

    def test_prompt_contents(self, sample_hits):
        prompt, items = PromptAssembler(PromptConfig()).build("What is attention?", sample_hits)

        grounding = prompt.split("SOURCES (JSON):\n", 1)[1].split("\n\nQUESTION:", 1)[0]
        assert json.loads(grounding) == {"sources": [i.grounding() for i in items]}
        assert prompt.rstrip().endswith("What is attention?")
        for label in ("**Introduction**", "**Core idea**", "**Expert notes**",
                      "**Quick check**", "**Suggested follow-ups**", "**General Knowledge:**"):
            assert label in prompt

    def test_followups_from_keywords(self):
        followups = followups_from_keywords(["RRF", " ", "BM25", "kNN", "a", "b", "c", "d"])

        assert followups[0] == "Foundations of RRF"
        assert followups[1] == "BM25: worked example"
        assert len(followups) == 6

    def test_followups_empty(self):
        assert followups_from_keywords(None) == []
