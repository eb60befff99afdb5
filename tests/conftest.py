"""Pytest configuration and fixtures for Hypnos tests."""

import re
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, Generator, List, Sequence

import numpy as np
import pytest

from hypnos.core.engine import MemoryEngine
from hypnos.core.models import EngineConfiguration
from hypnos.core.vector_math import normalize
from hypnos.embeddings.base import EmbeddingProvider
from hypnos.embeddings.hashing import HashEmbeddingProvider
from hypnos.storage.sqlite_store import SQLiteMemoryStore


class FakeClock:
    """Settable clock for deterministic timestamps."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class VocabularyEmbeddingProvider(EmbeddingProvider):
    """
    Bag-of-words embedding with a growing vocabulary.

    Every distinct lower-cased word gets the next free slot (modulo the
    dimension) and contributes 1.0 there, so the cosine between two texts
    is ``shared / sqrt(len(a) * len(b))`` over their word sets.
    """

    def __init__(self, dimension: int = 64):
        self._dimension = dimension
        self.vocabulary: Dict[str, int] = {}
        self.calls = 0

    @property
    def dimension(self) -> int:
        return self._dimension

    def vector(self, text: str) -> np.ndarray:
        vector = np.zeros(self._dimension, dtype=np.float32)
        for token in sorted(set(re.findall(r"\w+", text.lower()))):
            index = self.vocabulary.setdefault(token, len(self.vocabulary))
            vector[index % self._dimension] = 1.0
        return normalize(vector)

    async def embed(self, texts: Sequence[str]) -> List[np.ndarray]:
        self.calls += 1
        return [self.vector(text) for text in texts]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def db_path(temp_dir: Path) -> Path:
    return temp_dir / "memory.db"


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at noon on 2024-02-01."""
    return FakeClock(datetime(2024, 2, 1, 12, 0))


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(7)


@pytest.fixture
def vocab_provider() -> VocabularyEmbeddingProvider:
    return VocabularyEmbeddingProvider()


@pytest.fixture
def hash_provider() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(dimension=64)


@pytest.fixture
def store(db_path: Path, clock: FakeClock) -> Generator[SQLiteMemoryStore, None, None]:
    memory_store = SQLiteMemoryStore(db_path, clock=clock)
    yield memory_store
    memory_store.close()


@pytest.fixture
def make_engine(
    db_path: Path,
    clock: FakeClock,
    rng: np.random.Generator,
    vocab_provider: VocabularyEmbeddingProvider,
) -> Generator[Callable[..., MemoryEngine], None, None]:
    """Factory for engines over the temp database; drift is off unless overridden."""
    engines: List[MemoryEngine] = []

    def _make(**overrides) -> MemoryEngine:
        overrides.setdefault("configuration", EngineConfiguration(drift_probability=0.0))
        overrides.setdefault("embedding_provider", vocab_provider)
        engine = MemoryEngine(
            overrides.pop("db_path", db_path),
            now_provider=clock,
            rng=rng,
            **overrides,
        )
        engines.append(engine)
        return engine

    yield _make

    for engine in engines:
        engine.store.close()
