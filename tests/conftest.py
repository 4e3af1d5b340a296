"""Pytest fixtures for MindSieve tests."""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from mindsieve.config import FirestoreConfig, Settings, TasksConfig
from mindsieve.core.generator import LLMClient
from mindsieve.services.bootstrap import AppContext
from mindsieve.services.cache import MemoryCache
from mindsieve.services.document_store import InMemoryDocumentStore


class ScriptedLLM(LLMClient):
    """LLM client that replays scripted responses.

    ``responses`` feed ``generate`` in order; an exception instance is
    raised instead of returned. ``stream_scripts`` is a list of chunk lists,
    one per ``generate_stream`` call (the last one repeats).
    """

    def __init__(
        self,
        responses: Optional[List[Any]] = None,
        stream_scripts: Optional[List[List[Any]]] = None,
        model: str = "fake-model",
    ):
        self.model = model
        self.responses = list(responses or [])
        self.stream_scripts = list(stream_scripts or [["Hello", " world"]])
        self.generate_calls: List[Dict[str, Any]] = []
        self.stream_calls: List[Dict[str, Any]] = []
        self.chunks_pulled = 0
        self.streams_closed = 0

    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        json_output: bool = False,
        grounding: bool = False,
    ) -> str:
        self.generate_calls.append({
            "prompt": prompt,
            "json_output": json_output,
            "grounding": grounding,
            "temperature": temperature,
        })
        if not self.responses:
            return "{}"
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        grounding: bool = False,
    ):
        self.stream_calls.append({
            "prompt": prompt,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "top_p": top_p,
            "grounding": grounding,
        })
        script = self.stream_scripts.pop(0) if len(self.stream_scripts) > 1 else self.stream_scripts[0]
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                self.chunks_pulled += 1
                yield item
        finally:
            self.streams_closed += 1


class FakeEmbedder:
    """Embedder returning a fixed vector, or raising ``error``."""

    def __init__(self, vector: Optional[List[float]] = None, error: Optional[Exception] = None):
        self.vector = vector or [0.1, 0.2, 0.3]
        self.error = error
        self.calls: List[str] = []

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.error:
            raise self.error
        return self.vector

    async def close(self):
        pass


def make_hit(
    title: str,
    abstract: str = "",
    summary: str = "",
    highlight: Optional[Dict[str, List[str]]] = None,
    **source: Any,
) -> Dict[str, Any]:
    """An Elasticsearch hit in the shape the retriever returns."""
    hit: Dict[str, Any] = {
        "_source": {"title": title, "abstract": abstract, "summary": summary, **source},
    }
    if highlight:
        hit["highlight"] = highlight
    return hit


def make_search_client(hits: Optional[List[Dict[str, Any]]] = None) -> MagicMock:
    """A search client whose ``search`` returns ``hits``."""
    client = MagicMock()
    client.search = AsyncMock(return_value={"hits": {"hits": list(hits or [])}})
    client.close = AsyncMock()
    return client


# ====================
# Fixtures
# ====================

@pytest.fixture
def settings():
    """Settings for local, inline operation."""
    return Settings(
        debug=True,
        firestore=FirestoreConfig(backend="memory"),
        tasks=TasksConfig(enabled=False),
    )


@pytest.fixture
def store():
    """Empty in-memory document store."""
    return InMemoryDocumentStore()


@pytest.fixture
def llm():
    """Scripted chat model."""
    return ScriptedLLM()


@pytest.fixture
def card_llm():
    """Scripted card model."""
    return ScriptedLLM(responses=[])


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def sample_hits():
    """Three on-topic search hits."""
    return [
        make_hit(
            "Attention Is All You Need",
            abstract="The dominant sequence transduction models are based on neural networks.",
            highlight={"abstract": ["sequence <mark>transduction</mark> models"]},
            article_url="https://arxiv.org/abs/1706.03762",
            published="2017-06-12T17:57:34Z",
            arxiv_id="1706.03762",
        ),
        make_hit(
            "BERT: Pre-training of Deep Bidirectional Transformers",
            abstract="We introduce a new language representation model called BERT.",
            article_url="https://arxiv.org/abs/1810.04805",
            published="2018-10-11T00:50:01Z",
            arxiv_id="1810.04805",
        ),
        make_hit(
            "Graph Attention Networks",
            abstract="We present graph attention networks operating on graph-structured data.",
            article_url="https://arxiv.org/abs/1710.10903",
            published="2017-10-30T00:00:00Z",
            arxiv_id="1710.10903",
        ),
    ]


@pytest.fixture
def search_client(sample_hits):
    return make_search_client(sample_hits)


@pytest.fixture
def app_context(settings, llm, card_llm, store, embedder, search_client):
    """Application context wired to fakes."""

    async def connect():
        return search_client

    return AppContext(
        settings=settings,
        llm=llm,
        card_llm=card_llm,
        cache=MemoryCache(),
        store=store,
        embedder=embedder,
        secrets=MagicMock(),
        search_client_factory=connect,
    )


@pytest_asyncio.fixture
async def client(app_context):
    """HTTP client for the API, with the context overridden."""
    from mindsieve.api.dependencies import get_app_context_dep
    from mindsieve.api.main import create_app

    app = create_app()
    app.dependency_overrides[get_app_context_dep] = lambda: app_context
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
