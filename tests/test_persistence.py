"""
Tests for the JSON/CSV run store.
"""

import csv
import json
import os

import numpy as np

from models import CandidateTheme, ExtractionResult, StageStats
from persistence import JsonRunStore, _safe_filename

from conftest import make_code


def make_result(run_id="run-a", purpose="qualitative_analysis"):
    codes = [make_code("c1", [1.0, 0.0], "s1", "Burnout"), make_code("c2", [0.9, 0.1], "s2", "Workload")]
    theme = CandidateTheme(
        id="theme_local_abc",
        label="Burnout Workload",
        description="Burnout; Workload",
        keywords=["burnout", "workload"],
        definition="A cluster of 2 semantically related research codes",
        codes=codes,
        centroid=np.array([0.95, 0.05]),
        coherence_score=0.99,
        confidence=0.99,
    )
    theme.provenance = {
        "source_influence": [],
        "representative_excerpts": [{"source_id": "s1", "code_id": "c1", "text": "Staff are exhausted."}],
        "source_count": 2,
        "code_count": 2,
    }
    theme.seal()
    return ExtractionResult(
        run_id=run_id,
        purpose=purpose,
        themes=(theme,),
        quality_score=0.99,
        saturation_reached=True,
        per_stage_stats=(StageStats("familiarization", "completed", 0.01, 2),),
        iterations=2,
    )


class TestJsonRunStore:
    """Tests for JsonRunStore."""

    def test_save_and_load(self, tmp_path):
        """Test a saved run loads back with its themes."""
        store = JsonRunStore(tmp_path)
        assert store.save(make_result()) == "run-a"
        data = store.load_run("run-a")
        assert data["purpose"] == "qualitative_analysis"
        assert data["themes"][0]["label"] == "Burnout Workload"
        assert data["themes"][0]["source_ids"] == ["s1", "s2"]
        assert not list(tmp_path.glob("*.tmp"))

    def test_themes_csv(self, tmp_path):
        """Test the CSV export has one row per theme."""
        store = JsonRunStore(tmp_path)
        store.save(make_result())
        with (tmp_path / "run-a_themes.csv").open(encoding="utf-8", newline="") as f:
            rows = list(csv.DictReader(f))
        assert len(rows) == 1
        assert rows[0]["rank"] == "1"
        assert rows[0]["keywords"] == "burnout, workload"
        assert rows[0]["source_count"] == "2"
        assert rows[0]["representative_excerpts"] == "Staff are exhausted."

    def test_list_runs_newest_first(self, tmp_path):
        """Test runs are listed by modification time, newest first."""
        store = JsonRunStore(tmp_path)
        store.save(make_result("older"))
        store.save(make_result("newer", purpose="survey_construction"))
        os.utime(tmp_path / "older.json", (1, 1))
        runs = store.list_runs()
        assert [r["run_id"] for r in runs] == ["newer", "older"]
        assert runs[0]["theme_count"] == 1
        assert runs[0]["purpose"] == "survey_construction"

    def test_list_skips_unreadable(self, tmp_path):
        """Test a corrupt run file is skipped."""
        store = JsonRunStore(tmp_path)
        store.save(make_result())
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
        assert [r["run_id"] for r in store.list_runs()] == ["run-a"]

    def test_missing_run(self, tmp_path):
        """Test unknown runs load as None and cannot be deleted."""
        store = JsonRunStore(tmp_path / "nowhere")
        assert store.list_runs() == []
        assert store.load_run("ghost") is None
        assert store.delete_run("ghost") is False

    def test_delete_removes_csv(self, tmp_path):
        """Test deleting a run removes both artifacts."""
        store = JsonRunStore(tmp_path)
        store.save(make_result())
        assert store.delete_run("run-a")
        assert not (tmp_path / "run-a.json").exists()
        assert not (tmp_path / "run-a_themes.csv").exists()

    def test_error_serialized(self, tmp_path):
        """Test the JSON record is plain data."""
        store = JsonRunStore(tmp_path)
        store.save(make_result())
        raw = json.loads((tmp_path / "run-a.json").read_text(encoding="utf-8"))
        assert raw["error"] is None
        assert raw["per_stage_stats"][0]["stage"] == "familiarization"

    def test_safe_filename(self):
        """Test path separators and leading dots never reach the filesystem."""
        assert _safe_filename("../../etc/passwd") == "etcpasswd"
        assert _safe_filename("my run") == "my_run"
        assert _safe_filename("") == "run"
