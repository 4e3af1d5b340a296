"""Unit tests for the streaming synthesizer and the stream protocol."""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import ScriptedLLM

from mindsieve.config import GenerationConfig
from mindsieve.core.generator import (
    META_DELIMITER,
    SOURCES_DELIMITER,
    STREAM_ERROR_MARKER,
    TRUNCATION_MARKER,
    AnswerStream,
    GeminiClient,
    OpenAIClient,
    StreamingSynthesizer,
    SynthesisState,
    build_meta,
    frames,
    is_tool_schema_error,
)
from mindsieve.models import SourceItem


async def collect(stream: AnswerStream) -> str:
    return "".join([piece async for piece in stream.text()])


def make_sources():
    return [
        SourceItem(id=1, title="Attention Is All You Need", link="https://arxiv.org/abs/1706.03762",
                   published="2017-06-12", snippet="sequence models", arxiv_id="1706.03762"),
        SourceItem(id=2, title="BERT", link=None, published="2018-10-11", snippet="bidirectional"),
    ]


# ====================
# Answer Stream Tests
# ====================

class TestAnswerStream:
    """Tests for the character budget and stream termination."""

    @pytest.mark.asyncio
    async def test_passes_chunks_through(self):
        llm = ScriptedLLM(stream_scripts=[["Hello", " ", "world"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig()).start("prompt")

        assert await collect(stream) == "Hello world"
        assert stream.state == SynthesisState.COMPLETED

    @pytest.mark.asyncio
    async def test_truncates_at_cap(self):
        llm = ScriptedLLM(stream_scripts=[["abcdef", "ghijkl", "mnop"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig(stream_char_cap=8)).start("p")

        text = await collect(stream)

        assert text == "abcdefgh" + TRUNCATION_MARKER
        assert text.count(TRUNCATION_MARKER) == 1
        assert stream.emitted == 8
        assert stream.state == SynthesisState.TRUNCATED

    @pytest.mark.asyncio
    async def test_exact_cap_then_more_chunks(self):
        llm = ScriptedLLM(stream_scripts=[["abcd", "efgh", "ijkl", "mnop"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig(stream_char_cap=8)).start("p")

        text = await collect(stream)

        assert text == "abcdefgh" + TRUNCATION_MARKER
        assert text.count(TRUNCATION_MARKER) == 1

    @pytest.mark.asyncio
    async def test_exact_cap_at_end_has_no_marker(self):
        llm = ScriptedLLM(stream_scripts=[["abcd", "efgh"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig(stream_char_cap=8)).start("p")

        assert await collect(stream) == "abcdefgh"
        assert stream.state == SynthesisState.COMPLETED

    @pytest.mark.asyncio
    async def test_stops_pulling_after_truncation(self):
        llm = ScriptedLLM(stream_scripts=[["abcdefghij", "never", "pulled"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig(stream_char_cap=5)).start("p")

        await collect(stream)

        assert llm.chunks_pulled == 1
        assert llm.streams_closed == 1

    @pytest.mark.asyncio
    async def test_mid_stream_error_emits_marker(self):
        llm = ScriptedLLM(stream_scripts=[["partial ", RuntimeError("connection reset")]])
        stream = await StreamingSynthesizer(llm, GenerationConfig()).start("p")

        text = await collect(stream)

        assert text == "partial " + STREAM_ERROR_MARKER
        assert stream.state == SynthesisState.ERRORED

    @pytest.mark.asyncio
    async def test_consumer_stop_closes_upstream(self):
        llm = ScriptedLLM(stream_scripts=[["one", "two", "three", "four"]])
        stream = await StreamingSynthesizer(llm, GenerationConfig()).start("p")

        pieces = stream.text()
        assert await pieces.__anext__() == "one"
        await pieces.aclose()

        assert llm.streams_closed == 1
        assert llm.chunks_pulled == 1

    @pytest.mark.asyncio
    async def test_static_stream(self):
        stream = AnswerStream.static("fixed answer", 9000)

        assert await collect(stream) == "fixed answer"

    @pytest.mark.asyncio
    async def test_empty_model_stream(self):
        llm = ScriptedLLM(stream_scripts=[[]])
        stream = await StreamingSynthesizer(llm, GenerationConfig()).start("p")

        assert await collect(stream) == ""


# ====================
# Synthesizer Request Tests
# ====================

class TestStreamingSynthesizer:
    """Tests for request parameters and the grounding retry."""

    @pytest.mark.asyncio
    async def test_request_parameters(self):
        llm = ScriptedLLM()
        await StreamingSynthesizer(llm, GenerationConfig()).start("the prompt")

        call = llm.stream_calls[0]
        assert call["prompt"] == "the prompt"
        assert call["max_tokens"] == 1600
        assert call["temperature"] == 0.2
        assert call["top_p"] == 0.9
        assert call["grounding"] is True

    @pytest.mark.asyncio
    async def test_tool_schema_error_retries_without_tool(self):
        llm = ScriptedLLM(stream_scripts=[
            [RuntimeError("400 Invalid JSON payload received. Unknown name googleSearch")],
            ["grounded-free answer"],
        ])

        stream = await StreamingSynthesizer(llm, GenerationConfig()).start("p")

        assert await collect(stream) == "grounded-free answer"
        assert [c["grounding"] for c in llm.stream_calls] == [True, False]

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self):
        llm = ScriptedLLM(stream_scripts=[[RuntimeError("quota exceeded")]])

        with pytest.raises(RuntimeError, match="quota"):
            await StreamingSynthesizer(llm, GenerationConfig()).start("p")
        assert len(llm.stream_calls) == 1

    @pytest.mark.asyncio
    async def test_no_retry_when_grounding_disabled(self):
        llm = ScriptedLLM(stream_scripts=[[RuntimeError("tool_config rejected")]])
        config = GenerationConfig(use_search_grounding=False)

        with pytest.raises(RuntimeError):
            await StreamingSynthesizer(llm, config).start("p")
        assert len(llm.stream_calls) == 1

    @pytest.mark.parametrize("message,expected", [
        ("Invalid JSON payload received", True),
        ("unknown field tool_config", True),
        ("google_search is not supported", True),
        ("deadline exceeded", False),
    ])
    def test_is_tool_schema_error(self, message, expected):
        assert is_tool_schema_error(RuntimeError(message)) is expected


# ====================
# Stream Protocol Tests
# ====================

class TestFrames:
    """Tests for the multiplexed byte stream."""

    @pytest.mark.asyncio
    async def test_sources_then_meta_then_answer(self):
        sources = make_sources()
        meta = build_meta(sources, ["Foundations of attention"])
        answer = AnswerStream.static("The answer [1].", 9000)

        body = b"".join([chunk async for chunk in frames(answer, sources, meta)]).decode("utf-8")

        sources_json, rest = body.split(SOURCES_DELIMITER, 1)
        meta_json, text = rest.split(META_DELIMITER, 1)
        assert json.loads(sources_json) == [s.to_dict() for s in sources]
        assert json.loads(meta_json) == meta
        assert text == "The answer [1]."

    @pytest.mark.asyncio
    async def test_preamble_precedes_first_answer_byte(self):
        sources = make_sources()
        answer = AnswerStream.static("text", 9000)

        chunks = [chunk async for chunk in frames(answer, sources, build_meta(sources, []))]

        assert chunks[0].endswith(SOURCES_DELIMITER.encode())
        assert chunks[1].endswith(META_DELIMITER.encode())
        assert chunks[2] == b"text"

    def test_build_meta(self):
        meta = build_meta(make_sources(), ["x"])

        assert meta == {
            "format": "markdown",
            "links": [
                {"id": 1, "title": "Attention Is All You Need", "href": "https://arxiv.org/abs/1706.03762"},
                {"id": 2, "title": "BERT", "href": None},
            ],
            "followups": ["x"],
            "anim": {"enter": "stagger-fade"},
        }

    @pytest.mark.asyncio
    async def test_disconnect_during_preamble_closes_upstream(self):
        llm = ScriptedLLM(stream_scripts=[["one", "two", "three"]])
        answer = await StreamingSynthesizer(llm, GenerationConfig()).start("p")
        sources = make_sources()

        body = frames(answer, sources, build_meta(sources, []))
        first = await body.__anext__()
        await body.aclose()

        assert first.endswith(SOURCES_DELIMITER.encode())
        assert llm.streams_closed == 1
        assert llm.chunks_pulled == 1

    @pytest.mark.asyncio
    async def test_disconnect_mid_answer_closes_upstream(self):
        llm = ScriptedLLM(stream_scripts=[["one", "two", "three", "four"]])
        answer = await StreamingSynthesizer(llm, GenerationConfig()).start("p")
        sources = make_sources()

        body = frames(answer, sources, build_meta(sources, []))
        received = [await body.__anext__() for _ in range(4)]
        await body.aclose()

        assert received[2:] == [b"one", b"two"]
        assert llm.streams_closed == 1
        assert llm.chunks_pulled == 2


# ====================
# Provider Stream Tests
# ====================

class FakeSDKStream:
    """Async iterator standing in for an SDK response stream."""

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.close = AsyncMock()
        self.aclose = AsyncMock()

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self.chunks:
            raise StopAsyncIteration
        return self.chunks.pop(0)


class TestProviderStreams:
    """Tests that provider streams release their connection early."""

    @pytest.mark.asyncio
    async def test_gemini_stream_closed_when_consumer_stops(self):
        sdk_stream = FakeSDKStream([SimpleNamespace(text="a"), SimpleNamespace(text="b")])
        sdk = MagicMock()
        sdk.aio.models.generate_content_stream = AsyncMock(return_value=sdk_stream)
        client = GeminiClient(project="proj", location="europe-west1", client=sdk)

        chunks = client.generate_stream("p", max_tokens=10)
        assert await chunks.__anext__() == "a"
        await chunks.aclose()

        sdk_stream.aclose.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_openai_stream_closed_when_consumer_stops(self):
        def delta(text):
            return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])

        sdk_stream = FakeSDKStream([delta("a"), delta("b")])
        client = OpenAIClient(api_key="test-key")
        client.client = MagicMock()
        client.client.chat.completions.create = AsyncMock(return_value=sdk_stream)

        chunks = client.generate_stream("p")
        assert await chunks.__anext__() == "a"
        await chunks.aclose()

        sdk_stream.close.assert_awaited_once()
