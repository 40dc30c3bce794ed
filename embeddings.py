"""
Embedding providers (local sentence-transformers or the OpenAI API), the content-hash
embedding cache, and the run-level EmbeddingService that adds retries, rate limiting,
a circuit breaker and partial-failure accounting on top of a single provider.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from config import (
    CIRCUIT_BREAKER_FAILURE_THRESHOLD,
    CIRCUIT_BREAKER_RECOVERY_S,
    EMBED_BATCH_SIZE,
    EMBEDDING_CONCURRENCY,
    EMBEDDING_PROVIDER,
    EMBEDDING_RATE_LIMIT_PER_S,
    EMBEDDINGS_CACHE_DIR,
    LLM_TIMEOUT_S,
    OPENAI_EMBEDDING_DIMENSIONS,
    OPENAI_EMBEDDING_MODEL,
    PERSIST_EMBEDDING_CACHE,
    PROVIDER_MAX_RETRIES,
    PROVIDER_RETRY_BASE_DELAY_S,
    PROVIDER_RETRY_MAX_DELAY_S,
    SEMANTIC_MODEL_NAME,
    USE_CPU,
    VECTOR_DB_DIR,
    require_openai_api_key,
)
from errors import CircuitOpenError, EmbeddingError
from models import Embedding, InitialCode
from progress import CancellationToken
from resilience import AsyncRateLimiter, CircuitBreaker, RetryPolicy, call_with_retry

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    return hashlib.sha256((text or "").encode("utf-8")).hexdigest()


# ---- Providers ----

class EmbeddingProvider(ABC):
    """One strategy per run: local model or remote API."""

    model_name: str = ""

    @abstractmethod
    def provider_name(self) -> str:
        ...

    @abstractmethod
    def dimensions(self) -> int:
        ...

    @abstractmethod
    async def embed(self, text: str) -> Embedding:
        ...

    async def embed_batch(self, texts: Sequence[str]) -> List[Embedding]:
        out: List[Embedding] = []
        for t in texts:
            out.append(await self.embed(t))
        return out


class LocalEmbeddingProvider(EmbeddingProvider):
    """sentence-transformers model, loaded lazily and run in a worker thread."""

    def __init__(
        self,
        model_name: str = None,
        use_cpu: bool = None,
        cache_dir: Path = None,
        batch_size: int = None,
    ):
        self.model_name = model_name or SEMANTIC_MODEL_NAME
        self.use_cpu = use_cpu if use_cpu is not None else USE_CPU
        self.cache_dir = cache_dir or EMBEDDINGS_CACHE_DIR
        self.batch_size = batch_size or EMBED_BATCH_SIZE
        self.model = None
        self.device = None

    def provider_name(self) -> str:
        return "local"

    def load_model(self):
        """Load the embedding model"""
        if self.model is not None:
            return

        import torch
        from sentence_transformers import SentenceTransformer

        self.device = "cpu" if self.use_cpu else ("cuda" if torch.cuda.is_available() else "cpu")
        logger.info(f"Loading embedding model: {self.model_name} on {self.device}")
        try:
            Path(self.cache_dir).mkdir(parents=True, exist_ok=True)
            self.model = SentenceTransformer(
                self.model_name,
                cache_folder=str(self.cache_dir),
                device=self.device,
            )
        except Exception as e:
            logger.error(f"Error loading model: {e}")
            raise EmbeddingError(f"failed to load model {self.model_name}: {e}", provider="local") from e

    def dimensions(self) -> int:
        self.load_model()
        return int(self.model.get_sentence_embedding_dimension())

    def _encode(self, texts: List[str]) -> np.ndarray:
        self.load_model()
        embs = self.model.encode(
            texts,
            batch_size=self.batch_size,
            convert_to_numpy=True,
            show_progress_bar=False,
        )
        if isinstance(embs, list):
            embs = np.array(embs)
        return embs

    async def embed(self, text: str) -> Embedding:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Embedding]:
        if not texts:
            return []
        embs = await asyncio.to_thread(self._encode, list(texts))
        return [Embedding.from_vector(v, model=self.model_name) for v in embs]


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """OpenAI embeddings endpoint. The sync client runs in a thread, like the chat calls."""

    def __init__(
        self,
        model_name: str = None,
        dims: int = None,
        client: Any = None,
        timeout_s: int = None,
    ):
        self.model_name = model_name or OPENAI_EMBEDDING_MODEL
        self._dims = int(dims or OPENAI_EMBEDDING_DIMENSIONS)
        self._client = client
        self.timeout_s = int(timeout_s or LLM_TIMEOUT_S)

    def provider_name(self) -> str:
        return "openai"

    def dimensions(self) -> int:
        return self._dims

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI

            self._client = OpenAI(api_key=require_openai_api_key())
        return self._client

    async def embed(self, text: str) -> Embedding:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Embedding]:
        if not texts:
            return []
        client = self._get_client()
        kwargs: Dict[str, Any] = {"model": self.model_name, "input": list(texts)}
        if self.model_name.startswith("text-embedding-3"):
            kwargs["dimensions"] = self._dims

        def _call():
            resp = client.embeddings.create(timeout=self.timeout_s, **kwargs)
            rows = sorted(resp.data, key=lambda d: d.index)
            return [r.embedding for r in rows]

        try:
            vectors = await asyncio.wait_for(asyncio.to_thread(_call), timeout=self.timeout_s + 5)
        except asyncio.TimeoutError as e:
            raise EmbeddingError("request timed out", provider="openai") from e
        except Exception as e:
            raise EmbeddingError(str(e), provider="openai") from e
        if len(vectors) != len(texts):
            raise EmbeddingError(
                f"expected {len(texts)} vectors, got {len(vectors)}", provider="openai"
            )
        return [Embedding.from_vector(v, model=self.model_name) for v in vectors]


def build_embedding_provider(name: str = None, **kwargs) -> EmbeddingProvider:
    key = (name or EMBEDDING_PROVIDER or "local").strip().lower()
    if key == "local":
        return LocalEmbeddingProvider(**kwargs)
    if key == "openai":
        return OpenAIEmbeddingProvider(**kwargs)
    raise ValueError(f"Unknown embedding provider: {name!r} (expected 'local' or 'openai')")


# ---- Caches ----

class InMemoryEmbeddingCache:
    """LRU dict keyed by content hash. Writes are idempotent upserts."""

    def __init__(self, max_entries: int = 20000):
        self.max_entries = max(1, int(max_entries))
        self._data: "OrderedDict[str, Embedding]" = OrderedDict()
        self.evictions = 0

    def get(self, key: str) -> Optional[Embedding]:
        emb = self._data.get(key)
        if emb is not None:
            self._data.move_to_end(key)
        return emb

    def put(self, key: str, embedding: Embedding) -> None:
        self._data[key] = embedding
        self._data.move_to_end(key)
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
            self.evictions += 1

    def __len__(self) -> int:
        return len(self._data)


class ChromaEmbeddingCache:
    """Persistent cache in a chromadb collection; the model name is kept in metadata."""

    def __init__(self, vector_db_dir: Path = None, collection_name: str = "embedding_cache"):
        import chromadb
        from chromadb.config import Settings

        self.vector_db_dir = Path(vector_db_dir or VECTOR_DB_DIR)
        self.vector_db_dir.mkdir(parents=True, exist_ok=True)
        self.client = chromadb.PersistentClient(
            path=str(self.vector_db_dir),
            settings=Settings(anonymized_telemetry=False),
        )
        self.collection = self.client.get_or_create_collection(
            name=collection_name,
            metadata={"description": "Code embeddings keyed by content hash", "hnsw:space": "cosine"},
        )
        self.evictions = 0
        logger.info(f"Embedding cache at {self.vector_db_dir} ({self.collection.count()} entries)")

    def get(self, key: str) -> Optional[Embedding]:
        res = self.collection.get(ids=[key], include=["embeddings", "metadatas"])
        ids = res.get("ids") or []
        if not ids:
            return None
        vectors = res.get("embeddings")
        if vectors is None or len(vectors) == 0:
            return None
        meta = (res.get("metadatas") or [{}])[0] or {}
        return Embedding.from_vector(vectors[0], model=str(meta.get("model") or ""))

    def put(self, key: str, embedding: Embedding) -> None:
        self.collection.upsert(
            ids=[key],
            embeddings=[embedding.vector.tolist()],
            metadatas=[{"model": embedding.model, "dimensions": embedding.dimensions}],
        )

    def __len__(self) -> int:
        return int(self.collection.count())


def build_embedding_cache(persist: bool = None):
    persist = PERSIST_EMBEDDING_CACHE if persist is None else persist
    return ChromaEmbeddingCache() if persist else InMemoryEmbeddingCache()




# ---- Service ----

@dataclass
class EmbeddingReport:
    requested: int = 0
    embedded: int = 0
    cache_hits: int = 0
    stale: int = 0
    unembedded_ids: List[str] = field(default_factory=list)
    provider: str = ""
    fallback_used: bool = False

    @property
    def unembedded_fraction(self) -> float:
        if self.requested <= 0:
            return 0.0
        return len(self.unembedded_ids) / float(self.requested)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requested": self.requested,
            "embedded": self.embedded,
            "cache_hits": self.cache_hits,
            "stale": self.stale,
            "unembedded": len(self.unembedded_ids),
            "provider": self.provider,
            "fallback_used": self.fallback_used,
        }


class EmbeddingRun:
    """Provider choice and circuit breakers for one extraction run."""

    def __init__(self, primary: EmbeddingProvider, fallback: Optional[EmbeddingProvider],
                 failure_threshold: int, recovery_time_s: float):
        self.active = primary
        self.switched = False
        self.fallback_refused = False
        self.breakers = {
            id(p): CircuitBreaker(p.provider_name(), failure_threshold, recovery_time_s)
            for p in (primary, fallback)
            if p is not None
        }


class EmbeddingService:
    """
    Embeds codes through exactly one active provider per run.

    - cache hits whose model or dimension differ from the active provider are stale and re-embedded
    - provider calls are retried with backoff, rate limited and guarded by a circuit breaker
    - if the primary keeps failing and a fallback of the same dimension is configured, the run
      switches to the fallback and every code already embedded by the primary is re-embedded,
      so vectors are never mixed
    - items that still fail are left unembedded; too many of them fails the stage

    The service is shared between runs. Provider choice and breaker state live in the
    EmbeddingRun from `start_run()`, so one run's outage never pins later runs to the fallback.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        fallback: Optional[EmbeddingProvider] = None,
        cache: Any = None,
        concurrency: int = None,
        batch_size: int = None,
        retry_policy: Optional[RetryPolicy] = None,
        rate_limit_per_s: float = None,
        failure_threshold: int = None,
        recovery_time_s: float = None,
    ):
        self.primary = provider
        self.fallback = fallback
        self.cache = cache if cache is not None else InMemoryEmbeddingCache()
        self.batch_size = max(1, int(batch_size or EMBED_BATCH_SIZE))
        self._semaphore = asyncio.Semaphore(max(1, int(concurrency or EMBEDDING_CONCURRENCY)))
        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=PROVIDER_MAX_RETRIES,
            base_delay_s=PROVIDER_RETRY_BASE_DELAY_S,
            max_delay_s=PROVIDER_RETRY_MAX_DELAY_S,
        )
        rate = EMBEDDING_RATE_LIMIT_PER_S if rate_limit_per_s is None else rate_limit_per_s
        self.failure_threshold = failure_threshold or CIRCUIT_BREAKER_FAILURE_THRESHOLD
        self.recovery_time_s = CIRCUIT_BREAKER_RECOVERY_S if recovery_time_s is None else recovery_time_s
        self._limiters = {id(p): AsyncRateLimiter(rate) for p in (provider, fallback) if p is not None}
        self._dims: Dict[int, int] = {}
        self.stats = {"hits": 0, "misses": 0, "stale": 0, "provider_failures": 0}

    def start_run(self) -> EmbeddingRun:
        return EmbeddingRun(self.primary, self.fallback, self.failure_threshold, self.recovery_time_s)

    async def _dimensions_of(self, provider: EmbeddingProvider) -> int:
        key = id(provider)
        if key not in self._dims:
            self._dims[key] = int(await asyncio.to_thread(provider.dimensions))
        return self._dims[key]

    async def dimensions(self, run: Optional[EmbeddingRun] = None) -> int:
        return await self._dimensions_of(run.active if run is not None else self.primary)

    def cache_stats(self) -> Dict[str, Any]:
        lookups = self.stats["hits"] + self.stats["misses"]
        return {
            **self.stats,
            "hit_rate": (self.stats["hits"] / lookups) if lookups else 0.0,
            "size": len(self.cache),
            "evictions": getattr(self.cache, "evictions", 0),
        }

    @staticmethod
    def _is_current(emb: Optional[Embedding], run: EmbeddingRun, dims: int) -> bool:
        return emb is not None and emb.model == run.active.model_name and emb.dimensions == dims

    async def _call_provider(self, run: EmbeddingRun, provider: EmbeddingProvider,
                             texts: List[str]) -> List[Embedding]:
        breaker = run.breakers[id(provider)]
        limiter = self._limiters[id(provider)]
        dims = await self._dimensions_of(provider)

        async def attempt() -> List[Embedding]:
            breaker.before_call()
            await limiter.acquire()
            try:
                embs = await provider.embed_batch(texts)
                for e in embs:
                    if e.dimensions != dims:
                        raise EmbeddingError(
                            f"provider returned {e.dimensions} dims, expected {dims}",
                            provider=provider.provider_name(),
                        )
                    if not np.all(np.isfinite(e.vector)):
                        raise EmbeddingError("provider returned non-finite values", provider=provider.provider_name())
            except Exception:
                breaker.record_failure()
                self.stats["provider_failures"] += 1
                raise
            breaker.record_success()
            return embs

        return await call_with_retry(
            attempt,
            policy=self.retry_policy,
            give_up_on=(CircuitOpenError,),
            description=f"embed[{provider.provider_name()}]",
        )

    async def _try_switch_to_fallback(self, run: EmbeddingRun) -> bool:
        if self.fallback is None or run.switched or run.fallback_refused:
            return False
        primary_dims = await self._dimensions_of(self.primary)
        fallback_dims = await self._dimensions_of(self.fallback)
        if fallback_dims != primary_dims:
            run.fallback_refused = True
            logger.error(
                f"Embedding provider '{self.primary.provider_name()}' failing but fallback "
                f"'{self.fallback.provider_name()}' has {fallback_dims} dims (primary {primary_dims}); not switching"
            )
            return False
        run.switched = True
        run.active = self.fallback
        logger.warning(
            f"Embedding provider '{self.primary.provider_name()}' failing; "
            f"switching run to '{self.fallback.provider_name()}' and re-embedding"
        )
        return True

    async def embed_text(self, text: str, run: Optional[EmbeddingRun] = None) -> Embedding:
        """Embed a single text through cache + active provider. Raises EmbeddingError on failure."""
        run = run or self.start_run()
        dims = await self.dimensions(run)
        key = content_hash(text)
        cached = self.cache.get(key)
        if self._is_current(cached, run, dims):
            self.stats["hits"] += 1
            return cached
        self.stats["misses"] += 1
        try:
            emb = (await self._call_provider(run, run.active, [text]))[0]
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(str(e), provider=run.active.provider_name()) from e
        self.cache.put(key, emb)
        return emb

    async def _embed_batch(self, run: EmbeddingRun, codes: List[InitialCode], dims: int, report: EmbeddingReport,
                           cancel_token: Optional[CancellationToken]) -> None:
        async with self._semaphore:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            provider = run.active

            misses: List[InitialCode] = []
            for c in codes:
                key = content_hash(c.text_for_embedding)
                cached = self.cache.get(key)
                if self._is_current(cached, run, dims):
                    c.embedding = cached
                    self.stats["hits"] += 1
                    report.cache_hits += 1
                    continue
                if cached is not None:
                    self.stats["stale"] += 1
                    report.stale += 1
                    logger.warning(
                        f"Stale cached embedding for code {c.id} "
                        f"({cached.model}/{cached.dimensions}d vs {provider.model_name}/{dims}d); re-embedding"
                    )
                self.stats["misses"] += 1
                misses.append(c)

            if not misses:
                return
            texts = [c.text_for_embedding for c in misses]
            try:
                embs = await self._call_provider(run, provider, texts)
                pairs = list(zip(misses, embs))
            except Exception as e:
                logger.warning(f"Batch embedding of {len(misses)} codes failed ({e}); trying one by one")
                if await self._try_switch_to_fallback(run):
                    return
                pairs = []
                for c in misses:
                    try:
                        pairs.append((c, (await self._call_provider(run, provider, [c.text_for_embedding]))[0]))
                    except Exception as item_err:
                        logger.warning(f"Code {c.id} left unembedded: {item_err}")
                        c.embedding = None
            if provider is not run.active:
                # Switched mid-flight by another batch; these vectors belong to the old provider
                return
            for c, emb in pairs:
                c.embedding = emb
                self.cache.put(content_hash(c.text_for_embedding), emb)

    async def embed_codes(
        self,
        codes: Sequence[InitialCode],
        *,
        run: Optional[EmbeddingRun] = None,
        max_unembedded_fraction: float = 0.5,
        cancel_token: Optional[CancellationToken] = None,
    ) -> EmbeddingReport:
        """
        Attach embeddings to `codes` in place. Codes already embedded by the run's active
        provider are skipped, so callers can pass every code of the run each iteration.
        Without `run` the call is treated as a run of its own.

        Raises:
            EmbeddingError: unembedded fraction exceeds `max_unembedded_fraction`
            CancellationError: token cancelled between batches
        """
        run = run or self.start_run()
        codes = list(codes)
        switched_before = run.switched
        dims = await self.dimensions(run)
        pending = [c for c in codes if not self._is_current(c.embedding, run, dims)]
        report = EmbeddingReport(requested=len(codes), provider=run.active.provider_name())

        if pending:
            batches = [pending[i : i + self.batch_size] for i in range(0, len(pending), self.batch_size)]
            await asyncio.gather(*[self._embed_batch(run, b, dims, report, cancel_token) for b in batches])

        if run.switched and not switched_before:
            # Everything must come from the fallback now, including earlier codes
            return await self.embed_codes(
                codes, run=run, max_unembedded_fraction=max_unembedded_fraction, cancel_token=cancel_token
            )

        dims = await self.dimensions(run)
        for c in codes:
            if not self._is_current(c.embedding, run, dims):
                c.embedding = None
                report.unembedded_ids.append(c.id)
        report.embedded = len(codes) - len(report.unembedded_ids)
        report.fallback_used = run.switched

        if codes and report.unembedded_fraction > max_unembedded_fraction:
            raise EmbeddingError(
                f"{len(report.unembedded_ids)}/{len(codes)} codes could not be embedded "
                f"(ceiling {max_unembedded_fraction:.0%})",
                provider=run.active.provider_name(),
                details=report.to_dict(),
            )
        if report.unembedded_ids:
            logger.warning(f"{len(report.unembedded_ids)} codes excluded from clustering (unembedded)")
        return report
