"""
Run storage: each ExtractionResult is written as <run_id>.json plus a
<run_id>_themes.csv for spreadsheet review, under THEME_RUNS_DIR.
"""
import csv
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

from config import THEME_RUNS_DIR
from models import ExtractionResult

logger = logging.getLogger(__name__)

THEMES_CSV_FIELDS = [
    "theme_id",
    "rank",
    "label",
    "description",
    "keywords",
    "coherence_score",
    "confidence",
    "low_confidence",
    "code_count",
    "source_count",
    "source_ids",
    "representative_excerpts",
]


class PersistenceStore(ABC):
    @abstractmethod
    def save(self, result: ExtractionResult) -> str:
        """Persist a finished run; returns the run id."""


def _safe_filename(name: str) -> str:
    keep = []
    for ch in (name or "").strip():
        if ch.isalnum() or ch in ("-", "_", ".", " "):
            keep.append(ch)
    out = "".join(keep).strip().replace(" ", "_").lstrip(".")
    return out[:120] if out else "run"


class JsonRunStore(PersistenceStore):
    def __init__(self, runs_dir: Path = None):
        self.runs_dir = Path(runs_dir or THEME_RUNS_DIR)

    def _run_path(self, run_id: str) -> Path:
        return self.runs_dir / f"{_safe_filename(run_id)}.json"

    def _artifact_path(self, run_id: str, suffix: str) -> Path:
        return self.runs_dir / f"{_safe_filename(run_id)}_{suffix}"

    def save(self, result: ExtractionResult) -> str:
        self.runs_dir.mkdir(parents=True, exist_ok=True)
        record = result.to_dict()
        p = self._run_path(result.run_id)
        tmp = p.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(record, ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        tmp.replace(p)

        themes_path = self._artifact_path(result.run_id, "themes.csv")
        with themes_path.open("w", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=THEMES_CSV_FIELDS)
            w.writeheader()
            for rank, th in enumerate(record["themes"], start=1):
                excerpts = (th.get("provenance") or {}).get("representative_excerpts") or []
                w.writerow(
                    {
                        "theme_id": th["id"],
                        "rank": rank,
                        "label": th["label"],
                        "description": th["description"],
                        "keywords": ", ".join(th["keywords"]),
                        "coherence_score": round(th["coherence_score"], 4),
                        "confidence": round(th["confidence"], 4),
                        "low_confidence": th["low_confidence"],
                        "code_count": th["code_count"],
                        "source_count": len(th["source_ids"]),
                        "source_ids": " | ".join(th["source_ids"]),
                        "representative_excerpts": " | ".join(e["text"] for e in excerpts),
                    }
                )
        logger.info(f"Saved run {result.run_id} to {p}")
        return result.run_id

    def list_runs(self) -> List[Dict[str, Any]]:
        if not self.runs_dir.exists():
            return []
        runs = []
        for p in sorted(self.runs_dir.glob("*.json"), key=lambda x: x.stat().st_mtime, reverse=True):
            try:
                data = json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable run file {p.name}: {e}")
                continue
            runs.append(
                {
                    "run_id": data.get("run_id") or p.stem,
                    "purpose": data.get("purpose"),
                    "created_at": data.get("created_at"),
                    "theme_count": len(data.get("themes") or []),
                    "quality_score": data.get("quality_score"),
                    "saturation_reached": data.get("saturation_reached"),
                }
            )
        return runs

    def load_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        p = self._run_path(run_id)
        if not p.exists():
            return None
        return json.loads(p.read_text(encoding="utf-8"))

    def delete_run(self, run_id: str) -> bool:
        p = self._run_path(run_id)
        if not p.exists():
            return False
        p.unlink()
        artifact = self._artifact_path(run_id, "themes.csv")
        if artifact.exists():
            artifact.unlink()
        return True
