"""Tests for embedding providers."""

import json

import httpx
import numpy as np
import pytest

from hypnos.config.settings import EmbeddingSettings
from hypnos.embeddings import (
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    create_embedding_provider,
)
from hypnos.utils.exceptions import (
    ConfigurationError,
    EmbeddingDimensionError,
    EmbeddingResponseError,
    EmbeddingTransportError,
)


def ollama_provider(handler, dimension=3):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return OllamaEmbeddingProvider(
        base_url="http://ollama.test/",
        model="nomic-embed-text",
        dimension=dimension,
        client=client,
    )


class TestHashEmbeddingProvider:
    """Test the deterministic offline provider."""

    @pytest.mark.asyncio
    async def test_deterministic_and_normalized(self):
        provider = HashEmbeddingProvider(dimension=16)
        first, second, other = await provider.embed(["Exam on Friday", "Exam on Friday", "Pasta"])

        assert first.shape == (16,)
        assert first.dtype == np.float32
        np.testing.assert_array_equal(first, second)
        assert np.linalg.norm(first) == pytest.approx(1.0, abs=1e-5)
        assert not np.array_equal(first, other)

    @pytest.mark.asyncio
    async def test_case_insensitive(self):
        provider = HashEmbeddingProvider(dimension=16)
        lower = await provider.embed_one("exam")
        upper = await provider.embed_one("EXAM")
        np.testing.assert_array_equal(lower, upper)

    @pytest.mark.asyncio
    async def test_returned_vectors_are_copies(self):
        provider = HashEmbeddingProvider(dimension=8)
        vector = await provider.embed_one("exam")
        vector[:] = 0.0
        assert np.linalg.norm(await provider.embed_one("exam")) == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.asyncio
    async def test_empty_text_is_zero_vector(self):
        provider = HashEmbeddingProvider(dimension=8)
        assert not (await provider.embed_one("")).any()

    def test_non_positive_dimension(self):
        with pytest.raises(ValueError):
            HashEmbeddingProvider(dimension=0)

    @pytest.mark.asyncio
    async def test_cache_is_bounded(self):
        provider = HashEmbeddingProvider(dimension=8, cache_size=3)
        await provider.embed([f"text {i}" for i in range(10)])
        assert provider.cached_texts == 3

    @pytest.mark.asyncio
    async def test_cache_evicts_least_recently_used(self):
        provider = HashEmbeddingProvider(dimension=8, cache_size=2)
        await provider.embed(["a", "b"])
        await provider.embed_one("a")
        await provider.embed_one("c")

        assert list(provider._cache) == ["a", "c"]

    @pytest.mark.asyncio
    async def test_cache_disabled(self):
        provider = HashEmbeddingProvider(dimension=8, cache_size=0)
        first = await provider.embed_one("exam")

        assert provider.cached_texts == 0
        np.testing.assert_array_equal(first, await provider.embed_one("exam"))


class TestOllamaEmbeddingProvider:
    """Test the Ollama HTTP provider against a mock transport."""

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"embeddings": [[3.0, 4.0, 0.0], [0.0, 0.0, 2.0]]})

        provider = ollama_provider(handler)
        vectors = await provider.embed(["a", "b"])

        assert seen["url"] == "http://ollama.test/api/embed"
        assert seen["body"] == {"model": "nomic-embed-text", "input": ["a", "b"]}
        np.testing.assert_allclose(vectors[0], [0.6, 0.8, 0.0], atol=1e-6)
        np.testing.assert_allclose(vectors[1], [0.0, 0.0, 1.0], atol=1e-6)

    @pytest.mark.asyncio
    async def test_empty_batch_skips_request(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert await ollama_provider(handler).embed([]) == []

    @pytest.mark.asyncio
    async def test_server_error(self):
        provider = ollama_provider(lambda request: httpx.Response(500, text="boom"))
        with pytest.raises(EmbeddingResponseError):
            await provider.embed(["a"])

    @pytest.mark.asyncio
    async def test_missing_key(self):
        provider = ollama_provider(lambda request: httpx.Response(200, json={"embedding": [1.0]}))
        with pytest.raises(EmbeddingResponseError):
            await provider.embed(["a"])

    @pytest.mark.asyncio
    async def test_count_mismatch(self):
        provider = ollama_provider(
            lambda request: httpx.Response(200, json={"embeddings": [[1.0, 0.0, 0.0]]})
        )
        with pytest.raises(EmbeddingResponseError):
            await provider.embed(["a", "b"])

    @pytest.mark.asyncio
    async def test_wrong_dimension(self):
        provider = ollama_provider(
            lambda request: httpx.Response(200, json={"embeddings": [[1.0, 0.0]]})
        )
        with pytest.raises(EmbeddingDimensionError):
            await provider.embed(["a"])

    @pytest.mark.asyncio
    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(EmbeddingTransportError):
            await ollama_provider(handler).embed(["a"])

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        provider = OllamaEmbeddingProvider(client=client)
        await provider.aclose()
        assert not client.is_closed
        await client.aclose()


class TestFactory:
    """Test provider selection from settings."""

    def test_hash_backend(self):
        provider = create_embedding_provider(EmbeddingSettings(backend="hash", dimension=32))
        assert isinstance(provider, HashEmbeddingProvider)
        assert provider.dimension == 32

    def test_ollama_backend(self):
        provider = create_embedding_provider(
            EmbeddingSettings(backend="ollama", base_url="http://gpu-box:11434", dimension=1024)
        )
        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.base_url == "http://gpu-box:11434"
        assert provider.dimension == 1024

    def test_unknown_backend(self):
        settings = EmbeddingSettings.model_construct(backend="word2vec")
        with pytest.raises(ConfigurationError):
            create_embedding_provider(settings)

    def test_sentence_transformers_backend_defaults(self):
        pytest.importorskip("sentence_transformers")
        provider = create_embedding_provider(EmbeddingSettings(backend="sentence-transformers"))

        assert provider.model_name == "all-MiniLM-L6-v2"
        assert provider.dimension == 384
