"""
End-to-end tests for the six-stage ThematicAnalysisEngine, using the local oracle
or scripted oracles and the topic-axis fake embedding provider.
"""

import asyncio
from dataclasses import FrozenInstanceError

import pytest

from code_extraction import ExtractionContext, LocalCodeExtractionOracle
from coherence import CoherenceValidator
from data_loader import InMemoryContentProvider
from errors import (
    CancellationError,
    ClusteringDegenerateInputError,
    InvalidStageTransitionError,
    StageTimeoutError,
    ValidationError,
)
from models import SourceContent
from persistence import JsonRunStore, PersistenceStore
from progress import TOTAL_STAGES, CancellationToken
from purpose_config import resolve_config
from theme_extraction import Stage, StageMachine, count_new_themes

from conftest import TOPIC_NAMES, FakeEmbeddingProvider, ScriptedOracle, make_corpus

STAGE_ORDER = [
    "familiarization",
    "initial_coding",
    "theme_generation",
    "theme_review",
    "refinement",
    "provenance_assembly",
]


class RecordingStore(PersistenceStore):
    def __init__(self):
        self.saved = []

    def save(self, result):
        self.saved.append(result)
        return result.run_id


class TestStageMachine:
    """Tests for StageMachine."""

    def test_happy_path(self):
        """Test the linear path with one review loop."""
        m = StageMachine(max_loops=1)
        for stage in (Stage.FAMILIARIZATION, Stage.INITIAL_CODING, Stage.THEME_GENERATION, Stage.THEME_REVIEW,
                      Stage.THEME_GENERATION, Stage.THEME_REVIEW, Stage.REFINEMENT, Stage.PROVENANCE_ASSEMBLY,
                      Stage.COMPLETE):
            m.advance(stage)
        assert m.terminal
        assert m.loops == 1

    def test_must_start_with_familiarization(self):
        """Test a run cannot begin mid-pipeline."""
        with pytest.raises(InvalidStageTransitionError):
            StageMachine(3).advance(Stage.THEME_GENERATION)

    def test_no_skipping_stages(self):
        """Test stages cannot be skipped."""
        m = StageMachine(3)
        m.advance(Stage.FAMILIARIZATION)
        with pytest.raises(InvalidStageTransitionError):
            m.advance(Stage.REFINEMENT)

    def test_loop_ceiling(self):
        """Test the review -> generation loop stops at the ceiling."""
        m = StageMachine(max_loops=0)
        for stage in (Stage.FAMILIARIZATION, Stage.INITIAL_CODING, Stage.THEME_GENERATION, Stage.THEME_REVIEW):
            m.advance(stage)
        with pytest.raises(InvalidStageTransitionError):
            m.advance(Stage.THEME_GENERATION)

    def test_fail_is_terminal(self):
        """Test nothing follows a failure."""
        m = StageMachine(1)
        m.advance(Stage.FAMILIARIZATION)
        m.fail()
        assert m.state is Stage.FAILED
        with pytest.raises(InvalidStageTransitionError):
            m.advance(Stage.INITIAL_CODING)


class TestExtraction:
    """Tests for full runs."""

    @pytest.mark.asyncio
    async def test_saturation_on_topic_corpus(self, engine_factory, caplog):
        """Test 361 sources over nine topics give nine themes and saturate on the second pass."""
        engine = engine_factory()
        result = await engine.run(make_corpus(361), "qualitative_analysis")

        assert result.ok
        assert result.counts["sources_received"] == 361
        assert result.counts["sources_used"] == 361
        assert "361 usable sources exceed the 200" in caplog.text
        assert len(result.themes) == len(TOPIC_NAMES)
        assert 5 <= len(result.themes) <= 20
        assert result.saturation_reached
        assert result.counts["stop_reason"] == "no_new_themes"
        assert result.iterations == 2
        assert result.counts["new_themes_per_iteration"] == [9, 0]
        for theme in result.themes:
            assert theme.coherence_score >= 0.6
            assert theme.provenance["source_count"] >= 2
            assert theme.provenance["representative_excerpts"]
        assert result.meets_quality_threshold
        assert [s.stage for s in result.per_stage_stats if s.status == "completed"][:2] == STAGE_ORDER[:2]

    @pytest.mark.asyncio
    async def test_single_source_single_code(self, engine_factory):
        """Test one code collapses into a single low-confidence theme without saturation."""
        oracle = ScriptedOracle(
            {"only": [{"label": "Teacher burnout", "description": "Staff report exhaustion from workload"}]}
        )
        engine = engine_factory(oracle=oracle)
        result = await engine.run([SourceContent(id="only", text="Teachers describe exhaustion.")],
                                  "qualitative_analysis")

        assert len(result.themes) == 1
        theme = result.themes[0]
        assert theme.low_confidence
        assert theme.coherence_score == pytest.approx(0.5)
        assert theme.confidence == pytest.approx(0.25)
        assert not result.saturation_reached
        assert result.counts["stop_reason"] == "sources_exhausted"
        assert not result.meets_quality_threshold

    @pytest.mark.asyncio
    async def test_invalid_override_fails_before_work(self, engine_factory):
        """Test a NaN override is rejected before any source is coded."""
        oracle = ScriptedOracle(default=["Burnout"])
        engine = engine_factory(oracle=oracle)
        with pytest.raises(ValidationError) as exc:
            await engine.run(make_corpus(5), "qualitative_analysis", overrides={"qualityThreshold": float("nan")})
        assert exc.value.field == "quality_threshold"
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_unknown_purpose(self, engine_factory):
        """Test an unknown purpose is a ValidationError."""
        with pytest.raises(ValidationError):
            await engine_factory().run(make_corpus(3), "vibes")

    @pytest.mark.asyncio
    async def test_rerun_adds_no_new_themes(self, engine_factory):
        """Test a second run over the same corpus finds no theme the first missed."""
        corpus = make_corpus(90)
        first = await engine_factory().run(corpus, "qualitative_analysis")
        second = await engine_factory().run(corpus, "qualitative_analysis")
        assert count_new_themes(first.themes, second.themes) == 0

    @pytest.mark.asyncio
    async def test_extra_iteration_after_saturation_adds_nothing(self, engine_factory):
        """Test coding, clustering and reviewing one more batch after saturation accepts no new theme."""
        engine = engine_factory()
        corpus = make_corpus(361)
        result = await engine.run(corpus, "qualitative_analysis")
        assert result.saturation_reached

        config = resolve_config("qualitative_analysis")
        extra_sources = corpus[-config.sources_per_iteration:]
        coded = {c.source_id for t in result.themes for c in t.codes}
        assert not coded & {s.id for s in extra_sources}

        context = ExtractionContext.for_config(config)
        codes = [c for t in result.themes for c in t.codes]
        for source in extra_sources:
            codes.extend(await engine.oracle.extract_codes(source, context))
        await engine.embedding_service.embed_codes(codes)

        clustering = engine.clustering_engine.cluster(codes, config.target_theme_range)
        candidates = engine.labeler.label_clusters(clustering.clusters)
        accepted, _ = CoherenceValidator(config).validate_themes(candidates)

        assert accepted
        assert count_new_themes(result.themes, accepted) == 0

    @pytest.mark.asyncio
    async def test_deterministic_membership(self, engine_factory):
        """Test permuting the sources never changes the theme membership sets."""
        corpus = make_corpus(90)
        overrides = {"sources_per_iteration": 200}
        first = await engine_factory().run(corpus, "qualitative_analysis", overrides=overrides)
        second = await engine_factory().run(list(reversed(corpus)), "qualitative_analysis", overrides=overrides)
        third = await engine_factory().run(list(reversed(corpus)), "qualitative_analysis", overrides=overrides)

        def members(result):
            return {frozenset(c.id for c in t.codes) for t in result.themes}

        assert members(first) == members(second)
        assert members(second) == members(third)
        assert [t.id for t in second.themes] == [t.id for t in third.themes]
        assert {t.id for t in first.themes} == {t.id for t in second.themes}

    @pytest.mark.asyncio
    async def test_iteration_ceiling(self, engine_factory):
        """Test a single allowed iteration stops without claiming saturation."""
        result = await engine_factory().run(make_corpus(120), "qualitative_analysis",
                                            overrides={"max_iterations": 1})
        assert result.iterations == 1
        assert result.counts["stop_reason"] == "iteration_ceiling"
        assert not result.saturation_reached

    @pytest.mark.asyncio
    async def test_themes_are_sealed(self, engine_factory):
        """Test returned themes cannot be modified."""
        result = await engine_factory().run(make_corpus(30), "qualitative_analysis")
        theme = result.themes[0]
        with pytest.raises(FrozenInstanceError):
            theme.label = "renamed"
        with pytest.raises(TypeError):
            theme.provenance["source_count"] = 0

    @pytest.mark.asyncio
    async def test_no_codes_anywhere(self, engine_factory):
        """Test a corpus that yields no codes is reported as insufficient data."""
        engine = engine_factory(oracle=ScriptedOracle(default=[]))
        with pytest.raises(ClusteringDegenerateInputError) as exc:
            await engine.run(make_corpus(3), "qualitative_analysis")
        assert "insufficient data" in str(exc.value)

    @pytest.mark.asyncio
    async def test_empty_sources_rejected(self, engine_factory):
        """Test sources without text are not usable."""
        sources = [SourceContent(id="a", text="   "), SourceContent(id="b", text="")]
        with pytest.raises(ClusteringDegenerateInputError):
            await engine_factory().run(sources, "qualitative_analysis")

    @pytest.mark.asyncio
    async def test_duplicates_and_empties_counted(self, engine_factory):
        """Test duplicate ids and empty texts are dropped and counted."""
        corpus = make_corpus(20)
        sources = corpus + [corpus[0], SourceContent(id="blank", text=" ")]
        result = await engine_factory().run(sources, "qualitative_analysis")
        assert result.counts["sources_used"] == 20
        assert result.counts["sources_duplicate"] == 1
        assert result.counts["sources_empty"] == 1

    @pytest.mark.asyncio
    async def test_source_ids_through_provider(self, engine_factory):
        """Test sources can be fetched by id from a content provider."""
        corpus = make_corpus(30)
        engine = engine_factory(content_provider=InMemoryContentProvider(corpus))
        result = await engine.run(purpose="qualitative_analysis", source_ids=[s.id for s in corpus[:20]])
        assert result.counts["sources_used"] == 20

    @pytest.mark.asyncio
    async def test_requires_sources_or_ids(self, engine_factory):
        """Test a run with no input is rejected."""
        with pytest.raises(ValidationError):
            await engine_factory().run(purpose="qualitative_analysis")

    @pytest.mark.asyncio
    async def test_source_ids_need_provider(self, engine_factory):
        """Test source ids without a content provider are rejected."""
        with pytest.raises(ValidationError):
            await engine_factory().run(purpose="qualitative_analysis", source_ids=["a"])


class TestFailuresAndFallbacks:
    """Tests for timeouts, cancellation and fallbacks."""

    @pytest.mark.asyncio
    async def test_stage_timeout_returns_partial_result(self, engine_factory):
        """Test a stage timeout yields a result naming the failed stage."""
        engine = engine_factory(oracle=ScriptedOracle(default=["Burnout"], delay_s=0.5))
        result = await engine.run(make_corpus(5), "qualitative_analysis", overrides={"stage_timeout_s": 0.05})

        assert not result.ok
        assert isinstance(result.error, StageTimeoutError)
        assert result.failed_stage == "initial_coding"
        statuses = {s.stage: s.status for s in result.per_stage_stats}
        assert statuses["familiarization"] == "completed"
        assert statuses["initial_coding"] == "failed"
        assert statuses["provenance_assembly"] == "skipped"
        assert result.to_dict()["error"]["stage"] == "initial_coding"
        with pytest.raises(StageTimeoutError):
            result.raise_for_error()

    @pytest.mark.asyncio
    async def test_partial_result_not_persisted(self, engine_factory):
        """Test a timed-out run is returned but not stored."""
        store = RecordingStore()
        engine = engine_factory(oracle=ScriptedOracle(default=["Burnout"], delay_s=0.5), persistence=store)
        await engine.run(make_corpus(5), "qualitative_analysis", overrides={"stage_timeout_s": 0.05})
        assert store.saved == []

    @pytest.mark.asyncio
    async def test_cancellation_mid_run(self, engine_factory):
        """Test cancelling during coding raises and persists nothing."""
        token = CancellationToken()
        store = RecordingStore()

        def cancel_then_code(source):
            token.cancel("user abort")
            return ["Burnout workload"]

        engine = engine_factory(oracle=ScriptedOracle(default=cancel_then_code), persistence=store)
        with pytest.raises(CancellationError):
            await engine.run(make_corpus(5), "qualitative_analysis", cancel_token=token)
        assert store.saved == []

    @pytest.mark.asyncio
    async def test_cancelled_before_start(self, engine_factory):
        """Test an already-cancelled token stops the run before familiarization."""
        token = CancellationToken()
        token.cancel()
        oracle = ScriptedOracle(default=["Burnout"])
        with pytest.raises(CancellationError):
            await engine_factory(oracle=oracle).run(make_corpus(5), "qualitative_analysis", cancel_token=token)
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_fallback_oracle(self, engine_factory):
        """Test the fallback oracle codes sources the primary fails on."""
        corpus = make_corpus(30)
        primary = ScriptedOracle(fail_ids=[s.id for s in corpus])
        engine = engine_factory(oracle=primary, fallback_oracle=LocalCodeExtractionOracle())
        result = await engine.run(corpus, "qualitative_analysis")
        assert result.counts["oracle_failures"] == 30
        assert result.counts["codes_total"] > 0
        assert len(result.themes) > 0

    @pytest.mark.asyncio
    async def test_failed_sources_skipped_without_fallback(self, engine_factory):
        """Test a failing source contributes no codes but the run continues."""
        corpus = make_corpus(30)
        oracle = ScriptedOracle(fail_ids=[corpus[0].id], default=lambda s: LocalCodeExtractionOracle().extract_raw_sync(s))
        result = await engine_factory(oracle=oracle).run(corpus, "qualitative_analysis")
        assert result.counts["oracle_failures"] == 1
        assert corpus[0].id not in {c.source_id for t in result.themes for c in t.codes}

    @pytest.mark.asyncio
    async def test_embedding_fallback_used(self, engine_factory):
        """Test a failing embedding provider hands the run to the fallback."""
        engine = engine_factory(
            provider=FakeEmbeddingProvider(fail=True),
            fallback=FakeEmbeddingProvider(model_name="fake-alt", name="alt"),
        )
        result = await engine.run(make_corpus(30), "qualitative_analysis")
        assert result.counts["embedding_fallback_used"]
        assert result.counts["embedding_provider"] == "alt"
        assert {c.embedding.model for t in result.themes for c in t.codes} == {"fake-alt"}

    @pytest.mark.asyncio
    async def test_next_run_returns_to_primary_provider(self, engine_factory):
        """Test a shared engine picks the embedding provider afresh for every run."""
        primary = FakeEmbeddingProvider()
        primary.fail = True
        engine = engine_factory(provider=primary, fallback=FakeEmbeddingProvider(model_name="fake-alt", name="alt"))
        first = await engine.run(make_corpus(30), "qualitative_analysis")
        assert first.counts["embedding_provider"] == "alt"

        primary.fail = False
        second = await engine.run(make_corpus(30), "qualitative_analysis")
        assert second.counts["embedding_provider"] == "fake"
        assert not second.counts["embedding_fallback_used"]
        assert {c.embedding.model for t in second.themes for c in t.codes} == {"fake-topic-v1"}


class TestProgressAndPersistence:
    """Tests for progress events and run storage."""

    @pytest.mark.asyncio
    async def test_progress_events(self, engine_factory):
        """Test events carry valid percentages and end at complete."""
        events = []
        await engine_factory().run(make_corpus(30), "qualitative_analysis", progress_sink=events.append)

        assert events
        assert all(0.0 <= e.percentage <= 100.0 for e in events)
        assert all(e.total_stages == TOTAL_STAGES == 6 for e in events)
        assert all(1 <= e.stage_number <= 6 for e in events)
        assert events[0].stage == "familiarization"
        assert events[-1].stage == "complete"
        assert events[-1].percentage == 100.0

    @pytest.mark.asyncio
    async def test_slow_sink_does_not_block(self, engine_factory):
        """Test a sink that never returns in time does not stall the run."""

        async def slow_sink(event):
            await asyncio.sleep(30)

        result = await asyncio.wait_for(
            engine_factory().run(make_corpus(30), "qualitative_analysis", progress_sink=slow_sink), timeout=20
        )
        assert result.ok

    @pytest.mark.asyncio
    async def test_failing_sink_is_ignored(self, engine_factory):
        """Test sink exceptions never reach the caller."""

        def broken_sink(event):
            raise RuntimeError("socket closed")

        result = await engine_factory().run(make_corpus(30), "qualitative_analysis", progress_sink=broken_sink)
        assert result.ok

    @pytest.mark.asyncio
    async def test_result_persisted(self, engine_factory, tmp_path):
        """Test a completed run is written to the store."""
        store = JsonRunStore(tmp_path)
        result = await engine_factory(persistence=store).run(make_corpus(30), "qualitative_analysis", run_id="run-1")
        assert result.run_id == "run-1"
        saved = store.load_run("run-1")
        assert saved is not None
        assert len(saved["themes"]) == len(result.themes)
        assert (tmp_path / "run-1_themes.csv").exists()
