"""Response generation using LLM.

This module provides the language model clients and the streaming
synthesizer that turns a grounded prompt into the chat byte stream.

Stream layout (kept byte-compatible with the web client)::

    <json sources>|||SOURCES|||<json meta>|||META|||<answer text>
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from anthropic import AsyncAnthropic
from google import genai
from google.genai import types
from openai import AsyncOpenAI

from mindsieve.config import GCPConfig, GenerationConfig, get_settings
from mindsieve.models import SourceItem

logger = logging.getLogger(__name__)

SOURCES_DELIMITER = "|||SOURCES|||"
META_DELIMITER = "|||META|||"
TRUNCATION_MARKER = "\n\n[…truncated]"
STREAM_ERROR_MARKER = "\n\n[Stream ended due to an internal error]"

TOOL_SCHEMA_ERROR = re.compile(
    r"Invalid JSON payload received|tool_config|googleSearch|google_search",
    re.IGNORECASE,
)


def is_tool_schema_error(exc: BaseException) -> bool:
    """True when the service rejected the grounding tool configuration."""
    return bool(TOOL_SCHEMA_ERROR.search(str(exc)))


async def _aclose(iterator: Any):
    close = getattr(iterator, "aclose", None)
    if close is not None:
        await close()


class LLMClient(ABC):
    """Abstract base class for LLM clients."""

    model: str

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        json_output: bool = False,
        grounding: bool = False,
    ) -> str:
        """Generate a response."""
        pass

    @abstractmethod
    def generate_stream(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        grounding: bool = False,
    ) -> AsyncIterator[str]:
        """Generate a streaming response."""
        pass


class GeminiClient(LLMClient):
    """Gemini on Vertex AI, via google-genai.

    ``grounding`` enables the Google Search tool.
    """

    def __init__(
        self,
        project: str,
        location: str,
        model: str = "gemini-2.5-flash",
        client: Optional[genai.Client] = None,
    ):
        self.client = client or genai.Client(vertexai=True, project=project, location=location)
        self.model = model

    def _contents(self, prompt: str) -> List[types.Content]:
        return [types.Content(role="user", parts=[types.Part(text=prompt)])]

    def _config(
        self,
        max_tokens: Optional[int],
        temperature: float,
        top_p: Optional[float],
        mime_type: str,
        grounding: bool,
    ) -> types.GenerateContentConfig:
        return types.GenerateContentConfig(
            temperature=temperature,
            top_p=top_p,
            max_output_tokens=max_tokens,
            response_mime_type=mime_type,
            tools=[types.Tool(google_search=types.GoogleSearch())] if grounding else None,
        )

    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        json_output: bool = False,
        grounding: bool = False,
    ) -> str:
        """Generate using Gemini."""
        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=self._contents(prompt),
            config=self._config(
                max_tokens,
                temperature,
                None,
                "application/json" if json_output else "text/plain",
                grounding,
            ),
        )
        return response.text or ""

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        grounding: bool = False,
    ) -> AsyncIterator[str]:
        """Stream generate using Gemini."""
        stream = await self.client.aio.models.generate_content_stream(
            model=self.model,
            contents=self._contents(prompt),
            config=self._config(max_tokens, temperature, top_p, "text/plain", grounding),
        )
        try:
            async for chunk in stream:
                if chunk.text:
                    yield chunk.text
        finally:
            await _aclose(stream)


class OpenAIClient(LLMClient):
    """OpenAI API client. The grounding tool is not available here."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini"):
        """Initialize OpenAI client."""
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model

    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        json_output: bool = False,
        grounding: bool = False,
    ) -> str:
        """Generate using OpenAI."""
        kwargs: Dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}
        response = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            **kwargs,
        )
        return response.choices[0].message.content or ""

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        grounding: bool = False,
    ) -> AsyncIterator[str]:
        """Stream generate using OpenAI."""
        kwargs: Dict[str, Any] = {"temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if top_p is not None:
            kwargs["top_p"] = top_p
        stream = await self.client.chat.completions.create(
            model=self.model,
            messages=[{"role": "user", "content": prompt}],
            stream=True,
            **kwargs,
        )
        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        finally:
            await stream.close()


class AnthropicClient(LLMClient):
    """Anthropic API client. The grounding tool is not available here."""

    def __init__(self, api_key: str, model: str = "claude-3-5-haiku-latest"):
        """Initialize Anthropic client."""
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model

    async def generate(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        json_output: bool = False,
        grounding: bool = False,
    ) -> str:
        """Generate using Anthropic."""
        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens or 1024,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        )
        return response.content[0].text

    async def generate_stream(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        temperature: float = 0.2,
        top_p: Optional[float] = None,
        grounding: bool = False,
    ) -> AsyncIterator[str]:
        """Stream generate using Anthropic."""
        async with self.client.messages.stream(
            model=self.model,
            max_tokens=max_tokens or 1024,
            temperature=temperature,
            messages=[{"role": "user", "content": prompt}],
        ) as stream:
            async for text in stream.text_stream:
                yield text


def create_llm_client(
    config: Optional[GenerationConfig] = None,
    gcp: Optional[GCPConfig] = None,
    model: Optional[str] = None,
) -> LLMClient:
    """Build the client for the configured provider."""
    settings = get_settings()
    config = config or settings.generation
    gcp = gcp or settings.gcp
    model = model or config.model

    if config.provider == "gemini":
        client: LLMClient = GeminiClient(project=gcp.project_id, location=gcp.region, model=model)
    elif config.provider == "openai":
        if not config.openai_api_key:
            raise ValueError("OpenAI API key not configured")
        client = OpenAIClient(api_key=config.openai_api_key, model=model)
    elif config.provider == "anthropic":
        if not config.anthropic_api_key:
            raise ValueError("Anthropic API key not configured")
        client = AnthropicClient(api_key=config.anthropic_api_key, model=model)
    else:
        raise ValueError(f"Unknown LLM provider: {config.provider}")

    logger.info(f"Initialized {config.provider} client with model {model}")
    return client


class SynthesisState(str, Enum):
    """Lifecycle of one answer stream."""
    REQUESTING = "requesting"
    STREAMING = "streaming"
    TRUNCATED = "truncated"
    COMPLETED = "completed"
    ERRORED = "errored"


async def _iterate(items: List[str]) -> AsyncIterator[str]:
    for item in items:
        yield item


class AnswerStream:
    """Answer text from an opened model stream, capped at ``char_cap``.

    ``text()`` may be consumed once. The upstream iterator is closed when
    iteration ends for any reason, including the consumer going away.
    """

    def __init__(
        self,
        chunks: AsyncIterator[str],
        char_cap: int,
        first_chunk: Optional[str] = None,
    ):
        self._chunks = chunks
        self._first_chunk = first_chunk
        self.char_cap = char_cap
        self.emitted = 0
        self.state = SynthesisState.REQUESTING

    @classmethod
    def static(cls, text: str, char_cap: int) -> "AnswerStream":
        """A stream over a fixed answer that needs no model call."""
        return cls(_iterate([text]), char_cap)

    async def _next_chunk(self) -> Optional[str]:
        if self._first_chunk is not None:
            chunk, self._first_chunk = self._first_chunk, None
            return chunk
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None

    async def aclose(self):
        """Close the upstream model iterator."""
        await _aclose(self._chunks)

    async def text(self) -> AsyncIterator[str]:
        self.state = SynthesisState.STREAMING
        try:
            while True:
                chunk = await self._next_chunk()
                if chunk is None:
                    break
                if not chunk:
                    continue

                budget = self.char_cap - self.emitted
                if budget <= 0:
                    self.state = SynthesisState.TRUNCATED
                    yield TRUNCATION_MARKER
                    return

                piece = chunk[:budget]
                self.emitted += len(piece)
                yield piece
                if len(piece) < len(chunk):
                    self.state = SynthesisState.TRUNCATED
                    yield TRUNCATION_MARKER
                    return

            self.state = SynthesisState.COMPLETED
        except Exception as e:
            logger.error(f"Streaming iteration failed: {e}", exc_info=True)
            self.state = SynthesisState.ERRORED
            yield STREAM_ERROR_MARKER
        finally:
            await _aclose(self._chunks)


def build_meta(sources: List[SourceItem], followups: List[str]) -> Dict[str, Any]:
    """Metadata channel: citation links and follow-up chips."""
    return {
        "format": "markdown",
        "links": [{"id": s.id, "title": s.title, "href": s.link} for s in sources],
        "followups": followups,
        "anim": {"enter": "stagger-fade"},
    }


def encode_preamble(sources: List[SourceItem], meta: Dict[str, Any]) -> List[bytes]:
    """The two segments that always precede answer text, in order."""
    return [
        (json.dumps([s.to_dict() for s in sources], ensure_ascii=False) + SOURCES_DELIMITER).encode("utf-8"),
        (json.dumps(meta, ensure_ascii=False) + META_DELIMITER).encode("utf-8"),
    ]


async def frames(
    answer: AnswerStream,
    sources: List[SourceItem],
    meta: Dict[str, Any],
) -> AsyncIterator[bytes]:
    """Multiplex sources, metadata and answer text onto one byte stream."""
    pieces = answer.text()
    try:
        for segment in encode_preamble(sources, meta):
            yield segment
        async for piece in pieces:
            yield piece.encode("utf-8")
    finally:
        await pieces.aclose()
        await answer.aclose()


class StreamingSynthesizer:
    """Opens grounded streaming completions.

    The grounding tool is tried first when enabled; a tool-schema rejection
    is retried once without it. This is the only automatic retry in the chat
    pipeline.
    """

    def __init__(
        self,
        llm_client: LLMClient,
        config: Optional[GenerationConfig] = None,
    ):
        """Initialize the synthesizer.

        Args:
            llm_client: Model client used for streaming
            config: Generation configuration
        """
        self.llm = llm_client
        self.config = config or get_settings().generation

    async def _open(self, prompt: str, grounding: bool) -> AnswerStream:
        chunks = self.llm.generate_stream(
            prompt,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            top_p=self.config.top_p,
            grounding=grounding,
        )
        # Pull the first chunk so request-time failures surface here,
        # before any byte has been sent to the caller.
        try:
            first_chunk = await chunks.__anext__()
        except StopAsyncIteration:
            return AnswerStream(_iterate([]), self.config.stream_char_cap)
        except BaseException:
            await _aclose(chunks)
            raise
        return AnswerStream(chunks, self.config.stream_char_cap, first_chunk=first_chunk)

    async def start(self, prompt: str) -> AnswerStream:
        """Request a streaming completion for ``prompt``."""
        grounding = self.config.use_search_grounding
        try:
            return await self._open(prompt, grounding)
        except Exception as e:
            if grounding and is_tool_schema_error(e):
                logger.warning(f"Grounding tool rejected, retrying without tools: {e}")
                return await self._open(prompt, grounding=False)
            raise
