"""Process-wide application context.

``AppContext`` owns every long-lived client. Model clients are created on
first use and need no secrets, so a query rejected by the safety guard
never touches the network. The search client needs secrets and a ping; it
is bootstrapped once, single-flight, and a failed bootstrap is forgotten so
the next request retries.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from elasticsearch import AsyncElasticsearch

from mindsieve.config import Settings, get_settings
from mindsieve.core.cards import CardGenerator
from mindsieve.core.embedder import Embedder
from mindsieve.core.generator import LLMClient, StreamingSynthesizer, create_llm_client
from mindsieve.core.prompts import PromptAssembler
from mindsieve.core.query_enhancer import QueryEnhancer
from mindsieve.core.retrieval import HybridRetriever
from mindsieve.exceptions import BootstrapError
from mindsieve.services.cache import create_cache
from mindsieve.services.document_store import DocumentStore, create_document_store
from mindsieve.services.secrets import SecretStore
from mindsieve.services.task_dispatcher import CloudTasksQueue, TaskDispatcher, TaskQueue

logger = logging.getLogger(__name__)

SearchClientFactory = Callable[[], Awaitable[AsyncElasticsearch]]


class AppContext:
    """Long-lived clients and the services built on them."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        llm: Optional[LLMClient] = None,
        card_llm: Optional[LLMClient] = None,
        cache=None,
        store: Optional[DocumentStore] = None,
        embedder: Optional[Embedder] = None,
        secrets: Optional[SecretStore] = None,
        task_queue: Optional[TaskQueue] = None,
        search_client_factory: Optional[SearchClientFactory] = None,
    ):
        self.settings = settings or get_settings()
        self._llm = llm
        self._card_llm = card_llm
        self.cache = cache if cache is not None else create_cache(self.settings.cache)
        self.store = store or create_document_store(self.settings.firestore)
        self.embedder = embedder or Embedder(
            config=self.settings.embedding,
            gcp=self.settings.gcp,
            regions=self.settings.embedding_regions,
        )
        self.secrets = secrets or SecretStore(self.settings.gcp)
        self.task_queue = task_queue
        if self.task_queue is None and self.settings.tasks.enabled:
            self.task_queue = CloudTasksQueue(self.settings.tasks, self.settings.gcp)
        self.prompts = PromptAssembler(self.settings.prompt)

        self._search_client_factory = search_client_factory or self._connect_search
        self._search_client: Optional[AsyncElasticsearch] = None
        self._search_task: Optional[asyncio.Task] = None

    @property
    def llm(self) -> LLMClient:
        if self._llm is None:
            self._llm = create_llm_client(self.settings.generation, self.settings.gcp)
        return self._llm

    @property
    def card_llm(self) -> LLMClient:
        if self._card_llm is None:
            self._card_llm = create_llm_client(
                self.settings.generation,
                self.settings.gcp,
                model=self.settings.cards.model,
            )
        return self._card_llm

    @property
    def enhancer(self) -> QueryEnhancer:
        return QueryEnhancer(self.llm, self.cache, self.settings.enhancer)

    @property
    def synthesizer(self) -> StreamingSynthesizer:
        return StreamingSynthesizer(self.llm, self.settings.generation)

    @property
    def card_generator(self) -> CardGenerator:
        return CardGenerator(self.card_llm, self.store, self.settings.cards)

    @property
    def dispatcher(self) -> TaskDispatcher:
        return TaskDispatcher(self.card_generator, self.task_queue, self.settings.tasks)

    async def _connect_search(self) -> AsyncElasticsearch:
        es = self.settings.elasticsearch
        url = await self.secrets.get_secret(es.url_secret_name)
        api_key = await self.secrets.get_secret(es.api_key_secret_name)

        client = AsyncElasticsearch(url, api_key=api_key, request_timeout=es.request_timeout)
        try:
            alive = await client.ping()
        except Exception as e:
            await client.close()
            raise BootstrapError("Elasticsearch ping failed.") from e
        if not alive:
            await client.close()
            raise BootstrapError("Elasticsearch did not answer ping.")

        logger.info("Elasticsearch client ready")
        return client

    async def get_search_client(self) -> AsyncElasticsearch:
        """The shared search client, bootstrapping it on first use.

        Concurrent first callers await one bootstrap task. A caller that is
        cancelled does not cancel the bootstrap for the others.
        """
        if self._search_client is not None:
            return self._search_client

        if self._search_task is None:
            self._search_task = asyncio.create_task(self._search_client_factory())
        task = self._search_task

        try:
            client = await asyncio.shield(task)
        except BootstrapError:
            self._forget(task)
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._forget(task)
            logger.error(f"Search bootstrap failed: {e}")
            raise BootstrapError("Search client bootstrap failed.") from e

        self._search_client = client
        return client

    def _forget(self, task: asyncio.Task):
        if self._search_task is task:
            self._search_task = None

    async def get_retriever(self) -> HybridRetriever:
        client = await self.get_search_client()
        return HybridRetriever(client, self.settings.elasticsearch, self.settings.retrieval)

    async def close(self):
        """Release every client this context opened."""
        if self._search_client is not None:
            await self._search_client.close()
            self._search_client = None
        await self.embedder.close()
        await self.store.close()
        await self.cache.close()


_context: Optional[AppContext] = None


def get_app_context() -> AppContext:
    """Get or create the process-wide context."""
    global _context
    if _context is None:
        _context = AppContext()
    return _context


async def close_app_context():
    global _context
    if _context is not None:
        await _context.close()
        _context = None
