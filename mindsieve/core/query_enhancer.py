"""Query enhancement for retrieval.

Turns a short question into a compact hypothetical answer plus keywords,
which embed and match better than the raw question.

Safety fails closed (preflight guard, or the model reporting the query
unsafe). Everything else fails open to the raw query.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from mindsieve.config import EnhancerConfig, get_settings
from mindsieve.core import safety
from mindsieve.core.generator import LLMClient

logger = logging.getLogger(__name__)

QUERY_ENHANCER_PROMPT = """You are a guarded research assistant. Your job is to either:
A) Transform the user's brief query into a compact "hypothetical_answer" and a "keywords" array for semantic search, OR
B) If the query is unsafe or clearly spam/meaningless, return a blocked JSON.

Safety/Quality checklist (block if ANY apply):
- Illegal instructions (weapons/explosives, break-ins, bypass/DRM).
- Malware or exploit creation/usage; operational attack advice.
- Hate/harassment; sexual content involving minors; explicit sexual content.
- Self-harm encouragement; medical/mental-health advice beyond general info.
- Sensitive PII collection/doxxing.
- Graphic violence or instructions to cause harm.
- Empty/nonsense/spam/noise.
- Clearly unrelated to academic/technical search utility.

Output rules:
- Output ONLY valid JSON (no markdown, no commentary).
- If blocked, return: {{ "blocked": true, "reason": "<short reason>" }} and nothing else.
- If allowed, return ONLY:
  {{
    "hypothetical_answer": "string (<= 700 chars, compact, factual, self-contained; no citations)",
    "keywords": ["string", ... 3-10 items; short tokens; no extra punctuation beyond hyphens/slashes]
  }}

User Query:
{query}"""

CODE_PATTERN = re.compile(
    r"```|[{};]|=>|::|\w\(\)"
    r"|\bdef\s+\w+\(|\bclass\s+\w+\s*[:(]|\bimport\s+\w+|\b(const|let|var)\s+\w+\s*="
)
SENTENCE_END = re.compile(r"[.!?](\s+|$)")
PUNCTUATION = re.compile(r"[^\w\s'?-]")


@dataclass
class Blocked:
    """The query must not be answered."""
    reason: str


@dataclass
class Enhanced:
    """Text to embed and search with, plus keywords for follow-ups."""
    hypothetical: str
    keywords: List[str] = field(default_factory=list)


EnhanceResult = Union[Blocked, Enhanced]


def normalize(query: str) -> str:
    """Cache key form of a query."""
    return re.sub(r"\s+", " ", query.strip().lower())


class QueryEnhancer:
    """Service for enhancing queries before retrieval.

    Enhancement is skipped for queries where a rewrite is unlikely to help
    (long, code-like, multi-sentence or punctuation-heavy input), and cached
    by normalized text for a short TTL.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        cache,
        config: Optional[EnhancerConfig] = None,
    ):
        """Initialize the query enhancer.

        Args:
            llm_client: Model client used for the rewrite
            cache: Cache backend with async ``get`` / ``set``
            config: Enhancer configuration
        """
        self.llm = llm_client
        self.cache = cache
        self.config = config or get_settings().enhancer

    def should_skip(self, query: str) -> bool:
        """Whether to pass the query through without a model call."""
        text = query.strip()
        if len(text) > self.config.max_query_chars:
            return True
        if CODE_PATTERN.search(text):
            return True
        if len(SENTENCE_END.findall(text)) > 1:
            return True
        punct = len(PUNCTUATION.findall(text))
        return punct / max(len(text), 1) > self.config.max_punct_ratio

    def _parse(self, query: str, text: str) -> EnhanceResult:
        parsed = json.loads(text)
        if not isinstance(parsed, dict):
            raise ValueError("enhancer output is not a JSON object")

        if parsed.get("blocked") is True:
            return Blocked(reason=str(parsed.get("reason") or "blocked"))

        hypothetical = parsed.get("hypothetical_answer")
        hypothetical = hypothetical.strip() if isinstance(hypothetical, str) else ""
        raw_keywords = parsed.get("keywords")
        keywords = [
            k.strip() for k in (raw_keywords if isinstance(raw_keywords, list) else [])
            if isinstance(k, str) and k.strip()
        ][: self.config.max_keywords]

        if not hypothetical:
            return Enhanced(hypothetical=query, keywords=[])
        return Enhanced(
            hypothetical=hypothetical[: self.config.max_hypothetical_chars].strip(),
            keywords=keywords,
        )

    async def _cached(self, key: str) -> Optional[Enhanced]:
        try:
            value: Any = await self.cache.get(key)
        except Exception as e:
            logger.warning(f"Enhancer cache get failed: {e}")
            return None
        if not isinstance(value, dict) or not value.get("hypothetical"):
            return None
        return Enhanced(hypothetical=value["hypothetical"], keywords=list(value.get("keywords") or []))

    async def _store(self, key: str, result: Enhanced):
        try:
            await self.cache.set(
                key,
                {"hypothetical": result.hypothetical, "keywords": result.keywords},
                self.config.cache_ttl,
            )
        except Exception as e:
            logger.warning(f"Enhancer cache set failed: {e}")

    async def enhance(self, query: str) -> EnhanceResult:
        """Enhance a query.

        Args:
            query: Raw user query

        Returns:
            Blocked with a reason, or Enhanced text and keywords
        """
        reason = safety.check(query)
        if reason:
            logger.info(f"Query blocked by preflight: {reason}")
            return Blocked(reason=reason)

        if self.should_skip(query):
            logger.debug("Skipping enhancement for complex query")
            return Enhanced(hypothetical=query, keywords=[])

        key = normalize(query)
        cached = await self._cached(key)
        if cached is not None:
            logger.debug(f"Enhancer cache hit: {key[:50]}")
            return cached

        try:
            text = await asyncio.wait_for(
                self.llm.generate(
                    QUERY_ENHANCER_PROMPT.format(query=query),
                    json_output=True,
                ),
                timeout=self.config.timeout_seconds,
            )
            result = self._parse(query, text)
        except asyncio.TimeoutError:
            logger.warning(f"Enhancer timed out after {self.config.timeout_seconds}s, using raw query")
            return Enhanced(hypothetical=query, keywords=[])
        except Exception as e:
            logger.warning(f"Enhancer failed, using raw query: {e}")
            return Enhanced(hypothetical=query, keywords=[])

        if isinstance(result, Blocked):
            logger.info(f"Query blocked by model: {result.reason}")
            return result

        if result.hypothetical != query:
            await self._store(key, result)
        return result
