"""Core RAG components.

This module provides the core functionality for:
- Safety preflight and query enhancement
- Text embedding
- Hybrid retrieval
- Grounded prompt assembly
- Streaming answer synthesis
- Study card generation
"""

from mindsieve.core.safety import check as check_query_safety
from mindsieve.core.query_enhancer import QueryEnhancer, Blocked, Enhanced
from mindsieve.core.embedder import Embedder, extract_vector
from mindsieve.core.retrieval import HybridRetriever, RetrievalResult
from mindsieve.core.prompts import PromptAssembler, followups_from_keywords
from mindsieve.core.generator import (
    LLMClient,
    GeminiClient,
    OpenAIClient,
    AnthropicClient,
    AnswerStream,
    StreamingSynthesizer,
    create_llm_client,
)
from mindsieve.core.cards import CardGenerator, CardRequest, CardResult, card_id

__all__ = [
    # Safety and enhancement
    "check_query_safety",
    "QueryEnhancer",
    "Blocked",
    "Enhanced",
    # Embedder
    "Embedder",
    "extract_vector",
    # Retrieval
    "HybridRetriever",
    "RetrievalResult",
    # Prompts
    "PromptAssembler",
    "followups_from_keywords",
    # Generator
    "LLMClient",
    "GeminiClient",
    "OpenAIClient",
    "AnthropicClient",
    "AnswerStream",
    "StreamingSynthesizer",
    "create_llm_client",
    # Cards
    "CardGenerator",
    "CardRequest",
    "CardResult",
    "card_id",
]
