"""Chat pipeline service.

This module orchestrates one grounded answer:
enhance -> embed -> hybrid search -> prompt -> streaming synthesis.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from mindsieve.config import Settings, get_settings
from mindsieve.core.embedder import Embedder
from mindsieve.core.generator import AnswerStream, StreamingSynthesizer, build_meta, frames
from mindsieve.core.prompts import PromptAssembler, followups_from_keywords
from mindsieve.core.query_enhancer import Blocked, QueryEnhancer
from mindsieve.core.retrieval import HybridRetriever
from mindsieve.exceptions import UnsafeInputError
from mindsieve.models import SourceItem
from mindsieve.observability import timed

logger = logging.getLogger(__name__)

NO_SOURCES_ANSWER = (
    "I couldn't find any specific documents in my arXiv knowledge base for your query. "
    "Please try rephrasing."
)

RetrieverProvider = Callable[[], Awaitable[HybridRetriever]]


@dataclass
class ChatResult:
    """A started answer: sources and metadata are final, text is streaming."""
    sources: List[SourceItem]
    meta: Dict[str, Any]
    answer: AnswerStream
    model: str
    keywords: List[str] = field(default_factory=list)

    def frames(self) -> AsyncIterator[bytes]:
        return frames(self.answer, self.sources, self.meta)


class ChatService:
    """High-level chat service.

    Orchestrates the complete answer pipeline. Errors before the stream
    starts propagate to the caller; errors after it starts end the stream
    with a marker.
    """

    def __init__(
        self,
        enhancer: QueryEnhancer,
        embedder: Embedder,
        retriever_provider: RetrieverProvider,
        prompts: PromptAssembler,
        synthesizer: StreamingSynthesizer,
        settings: Optional[Settings] = None,
    ):
        """Initialize the chat service.

        Args:
            enhancer: Query enhancement and safety
            embedder: Query embedding
            retriever_provider: Returns the hybrid retriever, bootstrapping
                the search client if needed
            prompts: Grounded prompt assembly
            synthesizer: Streaming answer generation
            settings: Application settings
        """
        self.enhancer = enhancer
        self.embedder = embedder
        self.retriever_provider = retriever_provider
        self.prompts = prompts
        self.synthesizer = synthesizer
        self.settings = settings or get_settings()

    async def answer(self, query: str) -> ChatResult:
        """Run the pipeline up to the first streamed chunk.

        Args:
            query: The user's question

        Returns:
            ChatResult ready to be streamed

        Raises:
            UnsafeInputError: The query was blocked
            UpstreamUnavailableError: Embedding or search failed
            BootstrapError: The search client could not be initialized
        """
        async with timed("query.enhance"):
            enhanced = await self.enhancer.enhance(query)
        if isinstance(enhanced, Blocked):
            raise UnsafeInputError(enhanced.reason)

        followups = followups_from_keywords(enhanced.keywords)
        model = self.synthesizer.llm.model
        char_cap = self.settings.generation.stream_char_cap

        async with timed("embedding.embed"):
            vector = await self.embedder.embed(enhanced.hypothetical)

        async with timed("search.hybrid"):
            retriever = await self.retriever_provider()
            result = await retriever.search(enhanced.hypothetical, vector, self.settings.retrieval.top_k)

        if not result.hits:
            logger.info("No sources found, returning fixed answer")
            return ChatResult(
                sources=[],
                meta=build_meta([], followups),
                answer=AnswerStream.static(NO_SOURCES_ANSWER, char_cap),
                model=model,
                keywords=enhanced.keywords,
            )

        prompt, sources = self.prompts.build(query, result.hits)

        async with timed("generation.start"):
            stream = await self.synthesizer.start(prompt)

        logger.info(f"Answer streaming with {len(sources)} sources")
        return ChatResult(
            sources=sources,
            meta=build_meta(sources, followups),
            answer=stream,
            model=model,
            keywords=enhanced.keywords,
        )
