"""Grounded prompt assembly.

Deterministic: the same hits and query always give the same prompt.
"""

import json
from typing import Any, Dict, List, Optional, Tuple

from mindsieve.config import PromptConfig, get_settings
from mindsieve.models import SourceItem

MIN_SNIPPETS, MAX_SNIPPETS = 3, 10
MIN_SNIPPET_CHARS, MAX_SNIPPET_CHARS = 280, 1200

TUTOR_PROMPT_TEMPLATE = """You are a friendly **Computer Science tutor**. Write a concise answer that uses the SOURCES JSON (snippets from arXiv papers).
Start directly with **Introduction** (no greetings or meta commentary). Use bold section labels (e.g., **Introduction**) instead of markdown headings.

**Style & constraints**
- Keep it succinct overall (~6-10 sentences across core sections).
- Be beginner-first, then add clearly labeled expert notes.
- Cite sources inline as [N] whenever used.
- Use Markdown only (no raw HTML).
- If sources are insufficient for any part, prefix that part with **General Knowledge:** and continue.

**Sections (use these exact bold labels, in order)**

**Introduction**
1-2 sentence plain-language overview of the concept and why it matters.

**Core idea**
Up to 3 sentences explaining the concept simply (analogy allowed). Add inline citations like [1], [2] when used.

**Expert notes**
1-3 short bullets for advanced readers (edge cases, variants, algorithms). Cite where used.

**Quick check**
Two one-line self-test questions (no answers).

**Suggested follow-ups**
4-6 bullet topics to explore next (progressing from basics to advanced).

SOURCES (JSON):
{grounding}

QUESTION:
{query}"""

FOLLOWUP_TEMPLATES = [
    "Foundations of {}",
    "{}: worked example",
    "{} vs alternatives",
    "Common pitfalls in {}",
    "When (not) to use {}",
    "Advanced {}: optimization/scale",
]


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def followups_from_keywords(keywords: Optional[List[str]] = None) -> List[str]:
    """Follow-up topic chips derived from enhancer keywords."""
    base = [str(k).strip() for k in (keywords or [])]
    base = [k for k in base if k][:6]
    return [
        FOLLOWUP_TEMPLATES[i % len(FOLLOWUP_TEMPLATES)].format(keyword)
        for i, keyword in enumerate(base)
    ]


class PromptAssembler:
    """Builds the grounded synthesis prompt from ranked search hits."""

    def __init__(self, config: Optional[PromptConfig] = None):
        self.config = config or get_settings().prompt

    @property
    def max_snippets(self) -> int:
        return clamp(self.config.max_snippets, MIN_SNIPPETS, MAX_SNIPPETS)

    @property
    def max_chars(self) -> int:
        return clamp(self.config.max_chars_per_snippet, MIN_SNIPPET_CHARS, MAX_SNIPPET_CHARS)

    def _snippet(self, hit: Dict[str, Any]) -> str:
        source = hit.get("_source") or {}
        highlight = hit.get("highlight") or {}
        highlighted = (highlight.get("abstract") or highlight.get("summary") or [None])[0]
        raw = source.get("abstract") or source.get("summary") or ""

        snippet = (highlighted or raw)[: self.max_chars]
        snippet = snippet.replace("<mark>", "**").replace("</mark>", "**")
        if not snippet.endswith("...") and len(snippet) >= self.max_chars:
            snippet += "..."
        return snippet

    def source_items(self, hits: List[Dict[str, Any]]) -> List[SourceItem]:
        """Rank-numbered sources for the top hits."""
        items = []
        for rank, hit in enumerate(hits[: self.max_snippets], 1):
            source = hit.get("_source") or {}
            items.append(SourceItem(
                id=rank,
                title=source.get("title") or "",
                link=source.get("article_url"),
                published=str(source.get("published") or "").split("T")[0],
                snippet=self._snippet(hit),
                arxiv_id=source.get("arxiv_id"),
            ))
        return items

    def render(self, query: str, items: List[SourceItem]) -> str:
        grounding = json.dumps(
            {"sources": [item.grounding() for item in items]},
            ensure_ascii=False,
        )
        return TUTOR_PROMPT_TEMPLATE.format(grounding=grounding, query=query)

    def build(self, query: str, hits: List[Dict[str, Any]]) -> Tuple[str, List[SourceItem]]:
        """Build the prompt and the source list shown to the caller.

        Args:
            query: The user's original question
            hits: Search hits in rank order

        Returns:
            Tuple of prompt text and source items
        """
        items = self.source_items(hits)
        return self.render(query, items), items
