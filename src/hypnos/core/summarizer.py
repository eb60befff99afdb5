"""Semantic summarization of memory clusters."""

from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
from loguru import logger

from hypnos.core.models import MemoryItem
from hypnos.utils.exceptions import ConfigurationError, SummarizationError

# Per-member text budget in the summarization prompt
MAX_MEMBER_CHARS = 500


class SemanticSummarizer(ABC):
    """Condenses a cluster of related memories into one digest text."""

    @abstractmethod
    async def summarize(self, cluster: List[MemoryItem]) -> str:
        """Return a digest of ``cluster``."""

    async def aclose(self) -> None:
        """Release any held resources."""


class PassthroughSummarizer(SemanticSummarizer):
    """Concatenates member texts under a count header."""

    async def summarize(self, cluster: List[MemoryItem]) -> str:
        joined = "\n".join(item.text for item in cluster)
        return f"Summary of {len(cluster)} memories:\n" + joined


class OllamaSummarizer(SemanticSummarizer):
    """Asks a local Ollama model for a short digest via ``/api/generate``."""

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:11434",
        model: str = "llama3.2",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.model = model
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    def _build_prompt(self, cluster: List[MemoryItem]) -> str:
        entries = "\n".join(f"- {item.text[:MAX_MEMBER_CHARS]}" for item in cluster)
        return f"""Summarize these {len(cluster)} related memories in 2-3 sentences.
Keep names, dates and commitments. Write ONLY the summary, no quotes or labels.

Memories:
{entries}"""

    async def summarize(self, cluster: List[MemoryItem]) -> str:
        if not cluster:
            return ""
        try:
            response = await self._client.post(
                f"{self.base_url}/api/generate",
                json={
                    "model": self.model,
                    "prompt": self._build_prompt(cluster),
                    "stream": False,
                    "options": {"temperature": 0.3},
                },
            )
            response.raise_for_status()
            summary = response.json().get("response", "")
        except httpx.HTTPError as e:
            raise SummarizationError(f"Ollama summarize request failed: {e}") from e
        except (ValueError, AttributeError) as e:
            raise SummarizationError(f"Malformed Ollama summarize response: {e}") from e

        summary = summary.strip() if isinstance(summary, str) else ""
        if not summary:
            raise SummarizationError("Ollama returned an empty summary")
        logger.debug(f"Summarized {len(cluster)} memories with {self.model}")
        return summary

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


def create_summarizer(settings) -> SemanticSummarizer:
    """Build the summarizer selected by ``settings.backend``."""
    if settings.backend == "passthrough":
        return PassthroughSummarizer()
    if settings.backend == "ollama":
        return OllamaSummarizer(
            base_url=settings.base_url,
            model=settings.model,
            timeout=settings.timeout,
        )
    raise ConfigurationError(f"Unknown summarizer backend: {settings.backend}")
