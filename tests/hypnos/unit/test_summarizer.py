"""Tests for semantic summarizers."""

import json
from datetime import datetime

import httpx
import pytest

from hypnos.config.settings import SummarizerSettings
from hypnos.core.models import MemoryItem, MemoryKind
from hypnos.core.summarizer import (
    OllamaSummarizer,
    PassthroughSummarizer,
    create_summarizer,
)
from hypnos.utils.exceptions import ConfigurationError, SummarizationError


def item(memory_id: int, text: str) -> MemoryItem:
    now = datetime(2024, 2, 1, 23, 30)
    return MemoryItem(
        id=memory_id,
        kind=MemoryKind.EPISODIC,
        text=text,
        tags=[],
        created_at=now,
        updated_at=now,
        importance=0.5,
        sentiment=None,
        recency_bias=1.0,
    )


def ollama_summarizer(handler) -> OllamaSummarizer:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaSummarizer(base_url="http://ollama.test", model="llama3.2", client=client)


class TestPassthroughSummarizer:
    """Test the offline summarizer."""

    @pytest.mark.asyncio
    async def test_concatenates_with_header(self):
        summary = await PassthroughSummarizer().summarize([item(1, "first"), item(2, "second")])
        assert summary == "Summary of 2 memories:\nfirst\nsecond"


class TestOllamaSummarizer:
    """Test the Ollama summarizer against a mock transport."""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"response": "  User studies astronomy.  "})

        summary = await ollama_summarizer(handler).summarize([item(1, "telescope night")])

        assert summary == "User studies astronomy."
        assert seen["url"] == "http://ollama.test/api/generate"
        assert seen["body"]["model"] == "llama3.2"
        assert seen["body"]["stream"] is False
        assert "- telescope night" in seen["body"]["prompt"]

    @pytest.mark.asyncio
    async def test_member_text_truncated_in_prompt(self):
        seen = {}

        def handler(request):
            seen["prompt"] = json.loads(request.content)["prompt"]
            return httpx.Response(200, json={"response": "ok"})

        await ollama_summarizer(handler).summarize([item(1, "y" * 2000)])
        assert "y" * 500 in seen["prompt"]
        assert "y" * 501 not in seen["prompt"]

    @pytest.mark.asyncio
    async def test_empty_cluster(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await ollama_summarizer(handler).summarize([]) == ""

    @pytest.mark.asyncio
    async def test_http_error(self):
        summarizer = ollama_summarizer(lambda request: httpx.Response(503))
        with pytest.raises(SummarizationError):
            await summarizer.summarize([item(1, "a")])

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SummarizationError):
            await ollama_summarizer(handler).summarize([item(1, "a")])

    @pytest.mark.asyncio
    async def test_blank_summary(self):
        summarizer = ollama_summarizer(lambda request: httpx.Response(200, json={"response": "   "}))
        with pytest.raises(SummarizationError):
            await summarizer.summarize([item(1, "a")])

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        summarizer = ollama_summarizer(lambda request: httpx.Response(200, text="not json"))
        with pytest.raises(SummarizationError):
            await summarizer.summarize([item(1, "a")])


class TestFactory:
    """Test summarizer selection from settings."""

    def test_passthrough(self):
        assert isinstance(create_summarizer(SummarizerSettings()), PassthroughSummarizer)

    def test_ollama(self):
        summarizer = create_summarizer(SummarizerSettings(backend="ollama", model="qwen2.5"))
        assert isinstance(summarizer, OllamaSummarizer)
        assert summarizer.model == "qwen2.5"

    def test_unknown(self):
        with pytest.raises(ConfigurationError):
            create_summarizer(SummarizerSettings.model_construct(backend="gpt"))
