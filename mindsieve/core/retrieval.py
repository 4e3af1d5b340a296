"""Hybrid retrieval service.

One Elasticsearch request combines a fuzzy lexical match with a k-NN vector
match, fused by reciprocal rank (RRF) so the two score scales never need
calibrating against each other.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from elasticsearch import AsyncElasticsearch, ApiError, TransportError

from mindsieve.config import ElasticsearchConfig, RetrievalConfig, get_settings
from mindsieve.exceptions import SearchUnavailableError

logger = logging.getLogger(__name__)

SOURCE_FIELDS = ["title", "abstract", "summary", "published", "authors", "article_url", "arxiv_id"]

TOPIC_PATTERN = re.compile(
    r"(arxiv|transformer|neural|attention|graph|retrieval|optimization|vision|nlp|compiler"
    r"|algorithm|complexity|systems|database|query|index|network|protocol)",
    re.IGNORECASE,
)


@dataclass
class RetrievalResult:
    """Result of a retrieval operation."""
    query: str
    hits: List[Dict[str, Any]]
    total_hits: int
    topic_filtered: bool = False


def is_on_topic(hit: Dict[str, Any]) -> bool:
    source = hit.get("_source") or {}
    title = source.get("title") or ""
    body = source.get("abstract") or source.get("summary") or ""
    return bool(TOPIC_PATTERN.search(title) or TOPIC_PATTERN.search(body))


def apply_topic_filter(hits: List[Dict[str, Any]], min_hits: int) -> List[Dict[str, Any]]:
    """Drop off-domain hits, unless that would leave fewer than ``min_hits``."""
    filtered = [h for h in hits if is_on_topic(h)]
    return filtered if len(filtered) >= min_hits else hits


class HybridRetriever:
    """Service for retrieving papers with lexical + vector search."""

    def __init__(
        self,
        client: AsyncElasticsearch,
        es_config: Optional[ElasticsearchConfig] = None,
        retrieval_config: Optional[RetrievalConfig] = None,
    ):
        """Initialize the retriever.

        Args:
            client: Connected Elasticsearch client
            es_config: Index and field names
            retrieval_config: Retrieval parameters
        """
        settings = get_settings()
        self.client = client
        self.es_config = es_config or settings.elasticsearch
        self.retrieval_config = retrieval_config or settings.retrieval

    def build_request(self, query_text: str, vector: List[float], top_k: int) -> Dict[str, Any]:
        """Search body for the hybrid query."""
        return {
            "index": self.es_config.index,
            "size": top_k,
            "source": SOURCE_FIELDS,
            "retriever": {
                "rrf": {
                    "retrievers": [
                        {
                            "standard": {
                                "query": {
                                    "multi_match": {
                                        "query": query_text,
                                        "fields": ["title^3", "abstract", "summary"],
                                        "fuzziness": "AUTO",
                                    }
                                }
                            }
                        },
                        {
                            "knn": {
                                "field": self.es_config.vector_field,
                                "query_vector": vector,
                                "k": top_k,
                                "num_candidates": self.retrieval_config.num_candidates,
                            }
                        },
                    ],
                    "rank_window_size": self.retrieval_config.rank_window_size,
                    "rank_constant": self.retrieval_config.rank_constant,
                }
            },
            "highlight": {
                "pre_tags": ["<mark>"],
                "post_tags": ["</mark>"],
                "fields": {"abstract": {}, "summary": {}},
            },
        }

    async def search(
        self,
        query_text: str,
        vector: List[float],
        top_k: Optional[int] = None,
    ) -> RetrievalResult:
        """Retrieve ranked hits for a query.

        Args:
            query_text: Text for the lexical leg
            vector: Query embedding for the k-NN leg
            top_k: Number of results to return

        Returns:
            RetrievalResult with hits in fused rank order
        """
        top_k = top_k or self.retrieval_config.top_k

        try:
            response = await self.client.search(**self.build_request(query_text, vector, top_k))
        except (ApiError, TransportError) as e:
            logger.error(f"Hybrid search failed: {e}")
            raise SearchUnavailableError("Search request failed.", {"index": self.es_config.index}) from e

        body = getattr(response, "body", response)
        hits = list(((body or {}).get("hits") or {}).get("hits") or [])
        logger.info(f"Search results: {len(hits)} hits")

        if not hits:
            return RetrievalResult(query=query_text, hits=[], total_hits=0)

        kept = apply_topic_filter(hits, self.retrieval_config.min_filtered_hits)
        return RetrievalResult(
            query=query_text,
            hits=kept,
            total_hits=len(hits),
            topic_filtered=len(kept) != len(hits),
        )
