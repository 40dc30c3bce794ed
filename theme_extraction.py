"""
Purpose-adaptive thematic analysis (Braun & Clarke's reflexive TA, stages 1-6).

Flow per run:
  Familiarization -> InitialCoding -> ThemeGeneration -> ThemeReview
    -> (more sources, not saturated: ThemeGeneration again)
    -> Refinement -> ProvenanceAssembly -> Complete

Each ThemeGeneration pass after the first codes the next source batch, then embeds,
clusters and labels every code gathered so far. ThemeReview scores the candidates and
decides whether another pass is worthwhile (saturation).
"""

from __future__ import annotations

import asyncio
import logging
import statistics
import time
import uuid
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np

from clustering import ClusteringEngine, ClusteringResult
from code_extraction import CodeExtractionOracle, ExtractionContext, build_code_extraction_oracle
from coherence import CoherenceValidator
from data_loader import ContentProvider
from embeddings import EmbeddingRun, EmbeddingService, build_embedding_cache, build_embedding_provider
from errors import (
    CancellationError,
    ClusteringDegenerateInputError,
    InvalidStageTransitionError,
    StageTimeoutError,
    ThematicAnalysisError,
    ValidationError,
)
from labeling import LocalThemeLabeler
from models import CandidateTheme, Cluster, ExtractionResult, InitialCode, SourceContent, StageStats
from persistence import PersistenceStore
from progress import TOTAL_STAGES, CancellationToken, ProgressEmitter, ProgressSink
from purpose_config import ResolvedConfig, resolve_config
from similarity import calculate_centroid, cosine_similarity

logger = logging.getLogger(__name__)

# A candidate whose centroid matches an earlier accepted theme at least this closely is not new
THEME_MATCH_SIMILARITY = 0.8
# Accepted themes this close are merged during refinement
MERGE_SIMILARITY = 0.9
MAX_REPRESENTATIVE_EXCERPTS = 5
DEFAULT_ORACLE_CONCURRENCY = 8


# ---- State machine ----

class Stage(str, Enum):
    FAMILIARIZATION = "familiarization"
    INITIAL_CODING = "initial_coding"
    THEME_GENERATION = "theme_generation"
    THEME_REVIEW = "theme_review"
    REFINEMENT = "refinement"
    PROVENANCE_ASSEMBLY = "provenance_assembly"
    COMPLETE = "complete"
    FAILED = "failed"


STAGE_NUMBERS: Mapping[Stage, int] = {
    Stage.FAMILIARIZATION: 1,
    Stage.INITIAL_CODING: 2,
    Stage.THEME_GENERATION: 3,
    Stage.THEME_REVIEW: 4,
    Stage.REFINEMENT: 5,
    Stage.PROVENANCE_ASSEMBLY: 6,
}

ALLOWED_TRANSITIONS: Mapping[Stage, Set[Stage]] = {
    Stage.FAMILIARIZATION: {Stage.INITIAL_CODING},
    Stage.INITIAL_CODING: {Stage.THEME_GENERATION},
    Stage.THEME_GENERATION: {Stage.THEME_REVIEW},
    Stage.THEME_REVIEW: {Stage.THEME_GENERATION, Stage.REFINEMENT},
    Stage.REFINEMENT: {Stage.PROVENANCE_ASSEMBLY},
    Stage.PROVENANCE_ASSEMBLY: {Stage.COMPLETE},
    Stage.COMPLETE: set(),
    Stage.FAILED: set(),
}


class StageMachine:
    """Explicit stage transitions; the review -> generation loop is capped."""

    def __init__(self, max_loops: int):
        self.state: Optional[Stage] = None
        self.max_loops = max(0, int(max_loops))
        self.loops = 0
        self.history: List[Stage] = []

    def advance(self, target: Stage) -> None:
        if self.state is None:
            if target is not Stage.FAMILIARIZATION:
                raise InvalidStageTransitionError("start", target.value)
        elif target is Stage.FAILED:
            if self.state in (Stage.COMPLETE, Stage.FAILED):
                raise InvalidStageTransitionError(self.state.value, target.value)
        elif target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidStageTransitionError(self.state.value, target.value)

        if self.state is Stage.THEME_REVIEW and target is Stage.THEME_GENERATION:
            if self.loops >= self.max_loops:
                raise InvalidStageTransitionError(self.state.value, f"{target.value} (iteration ceiling reached)")
            self.loops += 1
        self.state = target
        self.history.append(target)

    def fail(self) -> None:
        if self.state not in (Stage.COMPLETE, Stage.FAILED):
            self.state = Stage.FAILED
            self.history.append(Stage.FAILED)

    @property
    def terminal(self) -> bool:
        return self.state in (Stage.COMPLETE, Stage.FAILED)


# ---- Per-run context ----

@dataclass
class RunContext:
    run_id: str
    config: ResolvedConfig
    emitter: ProgressEmitter
    cancel_token: CancellationToken
    machine: StageMachine
    embedding_run: EmbeddingRun
    research_context: str = ""
    started: float = field(default_factory=time.perf_counter)
    sources: List[SourceContent] = field(default_factory=list)
    batches: List[List[SourceContent]] = field(default_factory=list)
    next_batch: int = 0
    codes: List[InitialCode] = field(default_factory=list)
    candidates: List[CandidateTheme] = field(default_factory=list)
    accepted: List[CandidateTheme] = field(default_factory=list)
    clustering: Optional[ClusteringResult] = None
    themes: List[CandidateTheme] = field(default_factory=list)
    iteration: int = 0
    new_theme_history: List[int] = field(default_factory=list)
    saturation_reached: bool = False
    stop_reason: str = ""
    quality_score: float = 0.0
    stats: List[StageStats] = field(default_factory=list)
    counts: Dict[str, Any] = field(default_factory=dict)

    def live_stats(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration,
            "sources": len(self.sources),
            "sources_coded": sum(len(b) for b in self.batches[: self.next_batch]),
            "codes": len(self.codes),
            "accepted_themes": len(self.accepted),
        }


# ---- Helpers ----

def count_new_themes(
    previous: Sequence[CandidateTheme],
    current: Sequence[CandidateTheme],
    match_similarity: float = THEME_MATCH_SIMILARITY,
) -> int:
    """Themes in `current` whose best centroid match among `previous` is below `match_similarity`."""
    if not previous:
        return len(current)
    new = 0
    for theme in current:
        best = max(cosine_similarity(theme.centroid, p.centroid) for p in previous)
        if best < match_similarity:
            new += 1
    return new


def _duration(t0: float) -> float:
    return time.perf_counter() - t0


def _stage_label(stage: Stage) -> str:
    return stage.value.replace("_", " ").title()


class ThematicAnalysisEngine:
    """
    Runs the six-stage thematic analysis for one purpose. One engine can serve many
    concurrent runs: everything run-specific lives in a RunContext.
    """

    def __init__(
        self,
        *,
        oracle: CodeExtractionOracle,
        embedding_service: EmbeddingService,
        content_provider: Optional[ContentProvider] = None,
        clustering_engine: Optional[ClusteringEngine] = None,
        labeler: Optional[LocalThemeLabeler] = None,
        persistence: Optional[PersistenceStore] = None,
        fallback_oracle: Optional[CodeExtractionOracle] = None,
        oracle_concurrency: int = DEFAULT_ORACLE_CONCURRENCY,
    ):
        self.oracle = oracle
        self.fallback_oracle = fallback_oracle
        self.embedding_service = embedding_service
        self.content_provider = content_provider
        self.clustering_engine = clustering_engine or ClusteringEngine()
        self.labeler = labeler or LocalThemeLabeler()
        self.persistence = persistence
        self.oracle_concurrency = max(1, int(oracle_concurrency))

    # ---- Public ----

    async def run(
        self,
        sources: Optional[Sequence[SourceContent]] = None,
        purpose: Any = "qualitative_analysis",
        *,
        source_ids: Optional[Sequence[str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
        progress_sink: Optional[ProgressSink] = None,
        cancel_token: Optional[CancellationToken] = None,
        research_context: str = "",
        run_id: Optional[str] = None,
    ) -> ExtractionResult:
        """
        Extract themes from `sources` (or `source_ids` fetched through the content provider).

        Returns:
            ExtractionResult. On a stage timeout the result carries `error` and
            `failed_stage` plus whatever themes were accepted before the timeout.

        Raises:
            ValidationError: bad purpose / overrides / inputs (before any work starts)
            ClusteringDegenerateInputError: no usable codes in the whole corpus
            EmbeddingError: too many codes could not be embedded
            CancellationError: the token was cancelled
        """
        config = resolve_config(purpose, overrides)
        if sources is None and source_ids is None:
            raise ValidationError("sources", None, "provide sources or source_ids")
        if sources is None and self.content_provider is None:
            raise ValidationError("source_ids", list(source_ids or []), "no content provider configured")

        run_id = run_id or uuid.uuid4().hex[:12]
        ctx = RunContext(
            run_id=run_id,
            config=config,
            emitter=ProgressEmitter(run_id, progress_sink),
            cancel_token=cancel_token or CancellationToken(),
            machine=StageMachine(max_loops=config.max_iterations - 1),
            embedding_run=self.embedding_service.start_run(),
            research_context=research_context or "",
        )
        logger.info(f"Run {run_id}: {config.purpose.value} analysis started")

        try:
            await self._run_stage(ctx, Stage.FAMILIARIZATION, self._familiarize, sources, source_ids)
            await self._run_stage(ctx, Stage.INITIAL_CODING, self._initial_coding)
            while True:
                await self._run_stage(ctx, Stage.THEME_GENERATION, self._generate_themes)
                await self._run_stage(ctx, Stage.THEME_REVIEW, self._review_themes)
                if ctx.stop_reason:
                    break
            await self._run_stage(ctx, Stage.REFINEMENT, self._refine)
            await self._run_stage(ctx, Stage.PROVENANCE_ASSEMBLY, self._assemble_provenance)
            ctx.machine.advance(Stage.COMPLETE)
            ctx.emitter.emit(
                Stage.COMPLETE.value, TOTAL_STAGES, 100,
                f"Extracted {len(ctx.themes)} themes", ctx.live_stats(),
            )
        except StageTimeoutError as e:
            ctx.machine.fail()
            logger.error(f"Run {run_id}: {e}; returning partial result")
            self._mark_skipped(ctx, e.stage)
            for theme in ctx.accepted:
                if not theme.sealed:
                    theme.seal()
            ctx.themes = list(ctx.accepted)
            ctx.quality_score = self._quality(ctx.themes)
            return self._build_result(ctx, error=e, failed_stage=e.stage)
        except CancellationError as e:
            ctx.machine.fail()
            logger.warning(f"Run {run_id} cancelled: {e}")
            raise
        except ThematicAnalysisError as e:
            stage = ctx.machine.state.value if ctx.machine.state else "start"
            ctx.machine.fail()
            logger.error(f"Run {run_id} failed during {stage}: {e}")
            raise
        finally:
            await ctx.emitter.aclose()

        result = self._build_result(ctx)
        if self.persistence is not None:
            await asyncio.to_thread(self.persistence.save, result)
        logger.info(
            f"Run {run_id}: {len(result.themes)} themes, quality={result.quality_score:.3f}, "
            f"saturation={'yes' if result.saturation_reached else 'no'} ({ctx.stop_reason}), "
            f"{result.elapsed_seconds:.2f}s"
        )
        return result

    # ---- Stage runner ----

    async def _run_stage(
        self,
        ctx: RunContext,
        stage: Stage,
        fn: Callable[..., Awaitable[Tuple[int, Dict[str, Any]]]],
        *args: Any,
    ) -> None:
        ctx.cancel_token.raise_if_cancelled()
        ctx.machine.advance(stage)
        number = STAGE_NUMBERS[stage]
        label = _stage_label(stage)
        ctx.emitter.emit(
            stage.value, number, (number - 1) * 100.0 / TOTAL_STAGES,
            f"{label} (iteration {ctx.iteration})" if stage in (Stage.THEME_GENERATION, Stage.THEME_REVIEW)
            else label,
            ctx.live_stats(),
        )
        t0 = time.perf_counter()
        timeout = ctx.config.stage_timeout_s
        try:
            entries, details = await asyncio.wait_for(fn(ctx, *args), timeout=timeout)
        except asyncio.TimeoutError as e:
            ctx.stats.append(
                StageStats(stage.value, "failed", _duration(t0), error=f"timed out after {timeout:g}s")
            )
            raise StageTimeoutError(stage.value, timeout) from e
        except Exception as e:
            ctx.stats.append(StageStats(stage.value, "failed", _duration(t0), error=str(e)))
            raise
        ctx.stats.append(StageStats(stage.value, "completed", _duration(t0), entries, details))
        ctx.emitter.emit(stage.value, number, number * 100.0 / TOTAL_STAGES, f"{label} complete", ctx.live_stats())

    def _mark_skipped(self, ctx: RunContext, failed_stage: str) -> None:
        order = [s for s in STAGE_NUMBERS]
        idx = next((i for i, s in enumerate(order) if s.value == failed_stage), len(order))
        for s in order[idx + 1 :]:
            ctx.stats.append(StageStats(s.value, "skipped"))

    # ---- Stage 1: familiarization ----

    async def _familiarize(
        self, ctx: RunContext, sources: Optional[Sequence[SourceContent]], source_ids: Optional[Sequence[str]]
    ) -> Tuple[int, Dict[str, Any]]:
        if sources is None:
            sources = await asyncio.to_thread(self.content_provider.fetch, list(source_ids or []))
        received = len(sources)

        seen: Set[str] = set()
        usable: List[SourceContent] = []
        duplicates = empty = 0
        for s in sources:
            if s.id in seen:
                duplicates += 1
                continue
            seen.add(s.id)
            if not (s.text or "").strip():
                empty += 1
                continue
            usable.append(s)

        min_papers, _, max_papers = ctx.config.paper_limits
        if max_papers and len(usable) > max_papers:
            logger.warning(
                f"{len(usable)} usable sources exceed the {max_papers} a {ctx.config.purpose.value} run "
                f"is sized for; analysing all of them"
            )
        elif len(usable) < min_papers:
            logger.warning(
                f"Only {len(usable)} usable sources; {ctx.config.purpose.value} recommends at least {min_papers}"
            )
        if not usable:
            raise ClusteringDegenerateInputError("insufficient data: no source has usable text")

        per = ctx.config.sources_per_iteration
        ctx.sources = usable
        ctx.batches = [usable[i : i + per] for i in range(0, len(usable), per)]
        word_counts = [s.word_count for s in usable]
        kinds = Counter(s.content_kind.value for s in usable)
        ctx.counts.update(
            {
                "sources_received": received,
                "sources_used": len(usable),
                "sources_duplicate": duplicates,
                "sources_empty": empty,
            }
        )
        details = {
            "batches": len(ctx.batches),
            "total_words": int(sum(word_counts)),
            "mean_words": float(statistics.mean(word_counts)),
            "content_kinds": dict(kinds),
        }
        return len(usable), details

    # ---- Stage 2: initial coding ----

    async def _extract_one(self, source: SourceContent, context: ExtractionContext,
                           semaphore: asyncio.Semaphore, ctx: RunContext) -> List[InitialCode]:
        async with semaphore:
            ctx.cancel_token.raise_if_cancelled()
            try:
                return await self.oracle.extract_codes(source, context)
            except (CancellationError, asyncio.CancelledError):
                raise
            except Exception as e:
                ctx.counts["oracle_failures"] = ctx.counts.get("oracle_failures", 0) + 1
                if self.fallback_oracle is None:
                    logger.warning(f"Code extraction failed for source {source.id}: {e}")
                    return []
                logger.warning(f"Code extraction failed for source {source.id} ({e}); using {self.fallback_oracle.name}")
            try:
                return await self.fallback_oracle.extract_codes(source, context)
            except Exception as e:
                logger.warning(f"Fallback code extraction failed for source {source.id}: {e}")
                return []

    async def _code_next_batch(self, ctx: RunContext) -> int:
        if ctx.next_batch >= len(ctx.batches):
            return 0
        batch = ctx.batches[ctx.next_batch]
        ctx.next_batch += 1
        context = ExtractionContext.for_config(ctx.config, ctx.research_context)
        semaphore = asyncio.Semaphore(self.oracle_concurrency)
        results = await asyncio.gather(*[self._extract_one(s, context, semaphore, ctx) for s in batch])

        known = {c.id for c in ctx.codes}
        added = 0
        for codes in results:
            for code in codes:
                if code.id in known:
                    continue
                known.add(code.id)
                ctx.codes.append(code)
                added += 1
        if added == 0:
            logger.warning(f"Batch {ctx.next_batch}/{len(ctx.batches)} produced no codes")
        return added

    async def _embed_codes(self, ctx: RunContext) -> Dict[str, Any]:
        if not ctx.codes:
            return {}
        report = await self.embedding_service.embed_codes(
            ctx.codes,
            run=ctx.embedding_run,
            max_unembedded_fraction=ctx.config.max_unembedded_fraction,
            cancel_token=ctx.cancel_token,
        )
        return report.to_dict()

    async def _initial_coding(self, ctx: RunContext) -> Tuple[int, Dict[str, Any]]:
        added = await self._code_next_batch(ctx)
        embedding = await self._embed_codes(ctx)
        return added, {"batch": ctx.next_batch, "embedding": embedding}

    # ---- Stage 3: theme generation ----

    async def _generate_themes(self, ctx: RunContext) -> Tuple[int, Dict[str, Any]]:
        ctx.iteration += 1
        added = 0
        embedding: Dict[str, Any] = {}
        if ctx.iteration > 1:
            added = await self._code_next_batch(ctx)
            embedding = await self._embed_codes(ctx)

        embedded = [c for c in ctx.codes if c.embedding is not None]
        if not embedded:
            if ctx.next_batch < len(ctx.batches):
                ctx.candidates = []
                return 0, {"codes_added": added, "skipped": "no embedded codes yet"}
            raise ClusteringDegenerateInputError("insufficient data: no usable codes in the corpus")

        ctx.clustering = await asyncio.to_thread(
            self.clustering_engine.cluster, embedded, ctx.config.target_theme_range
        )
        ctx.candidates = self.labeler.label_clusters(ctx.clustering.clusters)
        return len(ctx.candidates), {
            "iteration": ctx.iteration,
            "codes_added": added,
            "codes_clustered": len(embedded),
            "clustering": ctx.clustering.to_dict(),
            "embedding": embedding,
        }

    # ---- Stage 4: theme review ----

    async def _review_themes(self, ctx: RunContext) -> Tuple[int, Dict[str, Any]]:
        cfg = ctx.config
        accepted, rejected = CoherenceValidator(cfg).validate_themes(ctx.candidates)
        new = count_new_themes(ctx.accepted, accepted)
        ctx.new_theme_history.append(new)
        ctx.accepted = accepted
        ctx.counts["candidate_themes"] = len(ctx.candidates)
        ctx.counts["rejected_themes"] = len(rejected)

        if ctx.iteration > 1 and new <= cfg.saturation_yield_threshold:
            ctx.saturation_reached, ctx.stop_reason = True, "no_new_themes"
        elif len(accepted) >= cfg.target_theme_range[1]:
            ctx.saturation_reached, ctx.stop_reason = True, "theme_range_max"
        elif ctx.next_batch >= len(ctx.batches):
            ctx.stop_reason = "sources_exhausted"
        elif ctx.iteration >= cfg.max_iterations:
            ctx.stop_reason = "iteration_ceiling"

        logger.info(
            f"Iteration {ctx.iteration}: {len(accepted)} accepted ({new} new), {len(rejected)} rejected"
            + (f"; stopping ({ctx.stop_reason})" if ctx.stop_reason else "")
        )
        return len(accepted), {
            "iteration": ctx.iteration,
            "accepted": len(accepted),
            "rejected": len(rejected),
            "new_themes": new,
            "acceptance_threshold": cfg.acceptance_threshold,
            "stop_reason": ctx.stop_reason,
        }

    # ---- Stage 5: refinement ----

    def _merge(self, keep: CandidateTheme, other: CandidateTheme, validator: CoherenceValidator) -> CandidateTheme:
        codes = list(keep.codes) + [c for c in other.codes if c not in keep.codes]
        cluster = Cluster(
            codes=codes,
            centroid=calculate_centroid([c.embedding.vector for c in codes if c.embedding is not None]),
            low_confidence=keep.low_confidence and other.low_confidence,
            forced_accept=keep.forced_accept or other.forced_accept,
        )
        merged = self.labeler.label_cluster(cluster)
        validator.score(merged)
        return merged

    async def _refine(self, ctx: RunContext) -> Tuple[int, Dict[str, Any]]:
        validator = CoherenceValidator(ctx.config)
        ranked = sorted(ctx.accepted, key=lambda t: (-t.confidence, -t.coherence_score, t.id))
        kept: List[CandidateTheme] = []
        merges = 0
        for theme in ranked:
            target = None
            for i, k in enumerate(kept):
                if cosine_similarity(theme.centroid, k.centroid) >= MERGE_SIMILARITY:
                    target = i
                    break
            if target is None:
                kept.append(theme)
            else:
                kept[target] = self._merge(kept[target], theme, validator)
                merges += 1

        kept.sort(key=lambda t: (-t.confidence, -t.coherence_score, t.id))
        limit = ctx.config.target_theme_range[1]
        trimmed = max(0, len(kept) - limit)
        ctx.themes = kept[:limit]
        if not ctx.themes:
            logger.warning(f"Run {ctx.run_id}: no theme cleared coherence {ctx.config.acceptance_threshold:.2f}")
        ctx.counts["merged_themes"] = merges
        ctx.counts["trimmed_themes"] = trimmed
        return len(ctx.themes), {"merged": merges, "trimmed": trimmed}

    # ---- Stage 6: provenance ----

    async def _assemble_provenance(self, ctx: RunContext) -> Tuple[int, Dict[str, Any]]:
        titles = {s.id: s.title for s in ctx.sources}
        for theme in ctx.themes:
            per_source = Counter(c.source_id for c in theme.codes)
            total = float(len(theme.codes)) or 1.0
            influence = [
                {"source_id": sid, "title": titles.get(sid, ""), "code_count": n, "influence": n / total}
                for sid, n in sorted(per_source.items(), key=lambda kv: (-kv[1], kv[0]))
            ]
            excerpts: List[Dict[str, str]] = []
            for code in theme.codes:
                if not code.excerpts:
                    continue
                if any(e["text"] == code.excerpts[0] for e in excerpts):
                    continue
                excerpts.append({"source_id": code.source_id, "code_id": code.id, "text": code.excerpts[0]})
                if len(excerpts) >= MAX_REPRESENTATIVE_EXCERPTS:
                    break
            theme.provenance = {
                "source_influence": influence,
                "representative_excerpts": excerpts,
                "source_count": len(per_source),
                "code_count": len(theme.codes),
            }
            theme.seal()
        ctx.quality_score = self._quality(ctx.themes)
        return len(ctx.themes), {"quality_score": ctx.quality_score}

    # ---- Result ----

    @staticmethod
    def _quality(themes: Sequence[CandidateTheme]) -> float:
        if not themes:
            return 0.0
        return float(np.mean([t.confidence for t in themes]))

    def _build_result(
        self, ctx: RunContext, error: Optional[ThematicAnalysisError] = None, failed_stage: Optional[str] = None
    ) -> ExtractionResult:
        cfg = ctx.config
        embedded = sum(1 for c in ctx.codes if c.embedding is not None)
        counts = dict(ctx.counts)
        counts.update(
            {
                "codes_total": len(ctx.codes),
                "codes_embedded": embedded,
                "codes_unembedded": len(ctx.codes) - embedded,
                "themes": len(ctx.themes),
                "new_themes_per_iteration": list(ctx.new_theme_history),
                "stop_reason": ctx.stop_reason,
                "embedding_provider": ctx.embedding_run.active.provider_name(),
                "embedding_fallback_used": ctx.embedding_run.switched,
                "embedding_cache": self.embedding_service.cache_stats(),
                "progress_events_dropped": ctx.emitter.dropped,
                "meets_minimum_quality": ctx.quality_score * 100.0 >= cfg.quality_threshold_min,
            }
        )
        return ExtractionResult(
            run_id=ctx.run_id,
            purpose=cfg.purpose.value,
            themes=tuple(ctx.themes),
            quality_score=ctx.quality_score,
            saturation_reached=ctx.saturation_reached,
            per_stage_stats=tuple(ctx.stats),
            config=cfg.to_dict(),
            counts=counts,
            iterations=ctx.iteration,
            meets_quality_threshold=ctx.quality_score * 100.0 >= cfg.quality_threshold,
            elapsed_seconds=round(_duration(ctx.started), 4),
            created_at=datetime.now(timezone.utc).isoformat(),
            failed_stage=failed_stage,
            error=error,
        )


def create_default_engine(
    oracle_backend: str = None,
    embedding_backend: str = None,
    persistence: Optional[PersistenceStore] = None,
    content_provider: Optional[ContentProvider] = None,
) -> ThematicAnalysisEngine:
    """
    Engine wired from config.py settings. A remote embedding provider gets the local model
    as fallback, which is only switched to when its dimension matches the remote one
    (e.g. OPENAI_EMBEDDING_DIMENSIONS=384 for the default local model).
    """
    provider = build_embedding_provider(embedding_backend)
    fallback = None
    if provider.provider_name() != "local":
        fallback = build_embedding_provider("local")
    oracle = build_code_extraction_oracle(oracle_backend)
    fallback_oracle = None
    if oracle.name != "local":
        fallback_oracle = build_code_extraction_oracle("local")
    return ThematicAnalysisEngine(
        oracle=oracle,
        fallback_oracle=fallback_oracle,
        embedding_service=EmbeddingService(provider, fallback=fallback, cache=build_embedding_cache()),
        content_provider=content_provider,
        persistence=persistence,
    )
