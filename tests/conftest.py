"""
Pytest configuration and fixtures.

Nothing here touches the network or downloads a model: embeddings come from
FakeEmbeddingProvider, which maps every topic vocabulary word to its own axis
(plus a little deterministic noise), so texts about the same topic embed close
together and texts about different topics are nearly orthogonal.
"""

import asyncio
import hashlib
import random
import re
import sys
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np
import pytest

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from clustering import ClusteringEngine  # noqa: E402
from code_extraction import CodeExtractionOracle, LocalCodeExtractionOracle  # noqa: E402
from embeddings import EmbeddingProvider, EmbeddingService, InMemoryEmbeddingCache  # noqa: E402
from errors import CodeExtractionError, EmbeddingError  # noqa: E402
from models import Embedding, InitialCode, SourceContent  # noqa: E402
from resilience import RetryPolicy  # noqa: E402
from theme_extraction import ThematicAnalysisEngine  # noqa: E402

TOPICS: Dict[str, List[str]] = {
    "burnout": ["burnout", "exhaustion", "workload", "fatigue", "overtime", "stress"],
    "mentoring": ["mentoring", "mentor", "guidance", "coaching", "apprenticeship", "feedback"],
    "funding": ["funding", "budget", "grants", "finance", "revenue", "subsidy"],
    "technology": ["software", "digital", "platform", "automation", "devices", "internet"],
    "wellbeing": ["wellbeing", "happiness", "resilience", "mindfulness", "optimism", "gratitude"],
    "policy": ["policy", "regulation", "legislation", "compliance", "governance", "mandate"],
    "community": ["community", "neighbours", "volunteers", "belonging", "solidarity", "networks"],
    "climate": ["climate", "emissions", "drought", "flooding", "warming", "carbon"],
    "curriculum": ["curriculum", "syllabus", "lessons", "assessment", "textbooks", "pedagogy"],
}
TOPIC_NAMES = list(TOPICS)
WORD_TO_TOPIC = {w: i for i, name in enumerate(TOPIC_NAMES) for w in TOPICS[name]}


class FakeEmbeddingProvider(EmbeddingProvider):
    """Topic-axis embeddings with hash-seeded noise. Can be told to fail."""

    def __init__(
        self,
        model_name: str = "fake-topic-v1",
        name: str = "fake",
        extra_dims: int = 8,
        noise: float = 0.05,
        fail: bool = False,
        fail_texts: Iterable[str] = (),
    ):
        self.model_name = model_name
        self._name = name
        self.extra_dims = extra_dims
        self.noise = noise
        self.fail = fail
        self.fail_texts = set(fail_texts)
        self.calls = 0
        self.texts_embedded: List[str] = []

    def provider_name(self) -> str:
        return self._name

    def dimensions(self) -> int:
        return len(TOPIC_NAMES) + self.extra_dims

    def vector_for(self, text: str) -> np.ndarray:
        vec = np.zeros(self.dimensions())
        for w in re.findall(r"[a-z]+", (text or "").lower()):
            if w in WORD_TO_TOPIC:
                vec[WORD_TO_TOPIC[w]] += 1.0
        if not vec.any():
            vec[len(TOPIC_NAMES)] = 1.0  # off-topic axis
        seed = int(hashlib.sha256(f"{self.model_name}|{text}".encode("utf-8")).hexdigest()[:8], 16)
        vec += np.random.default_rng(seed).normal(0.0, self.noise, self.dimensions()) * np.linalg.norm(vec)
        return vec

    async def embed(self, text: str) -> Embedding:
        self.calls += 1
        if self.fail or text in self.fail_texts:
            raise EmbeddingError("scripted provider failure", provider=self._name)
        self.texts_embedded.append(text)
        return Embedding.from_vector(self.vector_for(text), model=self.model_name)

    async def embed_batch(self, texts: Sequence[str]) -> List[Embedding]:
        self.calls += 1
        if self.fail or any(t in self.fail_texts for t in texts):
            raise EmbeddingError("scripted provider failure", provider=self._name)
        self.texts_embedded.extend(texts)
        return [Embedding.from_vector(self.vector_for(t), model=self.model_name) for t in texts]


class ScriptedOracle(CodeExtractionOracle):
    """Returns canned raw responses per source id (or from a callable)."""

    name = "scripted"

    def __init__(
        self,
        responses: Optional[Dict[str, Any]] = None,
        default: Any = None,
        fail_ids: Iterable[str] = (),
        delay_s: float = 0.0,
    ):
        self.responses = responses or {}
        self.default = default
        self.fail_ids = set(fail_ids)
        self.delay_s = delay_s
        self.calls: List[str] = []

    async def _extract_raw(self, source: SourceContent, context) -> Any:
        self.calls.append(source.id)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if source.id in self.fail_ids:
            raise CodeExtractionError(f"scripted failure for {source.id}")
        if source.id in self.responses:
            return self.responses[source.id]
        if callable(self.default):
            return self.default(source)
        return self.default if self.default is not None else []


def make_source_text(topic: str, n_words: int = 150, seed: int = 0) -> str:
    """Sentences of four topic words each ("Exhaustion workload and fatigue stress.")."""
    rng = random.Random(seed)
    vocab = TOPICS[topic]
    sentences = []
    words = 0
    while words < n_words:
        a, b, c, d = rng.sample(vocab, 4)
        sentences.append(f"{a.capitalize()} {b} and {c} {d}.")
        words += 5
    return " ".join(sentences)


def make_corpus(n_sources: int, topics: Sequence[str] = None, n_words: int = 150) -> List[SourceContent]:
    topics = list(topics or TOPIC_NAMES)
    return [
        SourceContent(
            id=f"src-{i:04d}",
            text=make_source_text(topics[i % len(topics)], n_words=n_words, seed=i),
        )
        for i in range(n_sources)
    ]


def make_code(code_id: str, vector: Sequence[float], source_id: str = "s1", label: str = None,
              model: str = "fake-topic-v1") -> InitialCode:
    return InitialCode(
        id=code_id,
        label=label or code_id,
        description=label or code_id,
        source_id=source_id,
        embedding=Embedding.from_vector(vector, model=model),
    )


def two_group_codes():
    """Six codes: intra-group cosine 0.8, inter-group cosine 0.1."""
    dims = 8
    a = np.zeros(dims)
    a[0] = 1.0
    b = np.zeros(dims)
    b[0], b[1] = 0.125, np.sqrt(1 - 0.125 ** 2)
    codes = []
    for i in range(6):
        noise = np.zeros(dims)
        noise[2 + i] = 1.0
        base = a if i < 3 else b
        vec = np.sqrt(0.8) * base + np.sqrt(0.2) * noise
        group = "a" if i < 3 else "b"
        codes.append(make_code(f"code-{group}{i}", vec, source_id=f"s{i}"))
    return codes


def separated_group_codes(n_groups: int, per_group: int = 10, intra: float = 0.95) -> List[InitialCode]:
    """Groups on orthogonal axes; members of one group have cosine `intra`, other groups 0."""
    dims = n_groups + n_groups * per_group
    codes = []
    for g in range(n_groups):
        for m in range(per_group):
            i = g * per_group + m
            vec = np.zeros(dims)
            vec[g] = np.sqrt(intra)
            vec[n_groups + i] = np.sqrt(1.0 - intra)
            codes.append(make_code(f"g{g:02d}-c{m:02d}", vec, source_id=f"s{i}"))
    return codes


def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=2, base_delay_s=0.0, max_delay_s=0.0, jitter=False)


@pytest.fixture
def fake_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_service(fake_provider) -> EmbeddingService:
    return EmbeddingService(fake_provider, cache=InMemoryEmbeddingCache(), retry_policy=fast_retry())


@pytest.fixture
def engine_factory() -> Callable[..., ThematicAnalysisEngine]:
    """Build an engine from fakes; keyword arguments replace individual collaborators."""

    def _make(oracle=None, provider=None, fallback=None, persistence=None, **kwargs) -> ThematicAnalysisEngine:
        service = EmbeddingService(
            provider or FakeEmbeddingProvider(),
            fallback=fallback,
            cache=InMemoryEmbeddingCache(),
            retry_policy=fast_retry(),
        )
        return ThematicAnalysisEngine(
            oracle=oracle or LocalCodeExtractionOracle(),
            embedding_service=service,
            clustering_engine=ClusteringEngine(random_state=7),
            persistence=persistence,
            **kwargs,
        )

    return _make
