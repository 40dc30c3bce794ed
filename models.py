"""
Data models for the thematic analysis pipeline.
"""

from __future__ import annotations

from dataclasses import FrozenInstanceError, dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from errors import ThematicAnalysisError
from similarity import magnitude


class ContentKind(str, Enum):
    ABSTRACT = "abstract"
    FULL_TEXT = "full_text"


# ---- Sources / codes ----

@dataclass(frozen=True)
class SourceContent:
    id: str
    text: str
    content_kind: ContentKind = ContentKind.ABSTRACT
    word_count: int = 0
    title: str = ""
    metadata: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not self.word_count:
            object.__setattr__(self, "word_count", len((self.text or "").split()))
        if not isinstance(self.content_kind, ContentKind):
            object.__setattr__(self, "content_kind", ContentKind(str(self.content_kind)))


@dataclass(frozen=True, eq=False)
class Embedding:
    vector: np.ndarray
    precomputed_norm: float
    model: str = ""

    @classmethod
    def from_vector(cls, vector: Any, model: str = "") -> "Embedding":
        arr = np.array(vector, dtype=float).reshape(-1)
        arr.setflags(write=False)
        return cls(vector=arr, precomputed_norm=magnitude(arr), model=model)

    @property
    def dimensions(self) -> int:
        return int(self.vector.shape[0])


@dataclass(eq=False)
class InitialCode:
    id: str
    label: str
    description: str
    source_id: str
    excerpts: List[str] = field(default_factory=list)
    embedding: Optional[Embedding] = None

    @property
    def text_for_embedding(self) -> str:
        if self.description and self.description != self.label:
            return f"{self.label}: {self.description}"
        return self.label

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "source_id": self.source_id,
            "excerpts": list(self.excerpts),
        }


# ---- Clusters / themes ----

@dataclass(eq=False)
class Cluster:
    codes: List[InitialCode]
    centroid: np.ndarray
    low_confidence: bool = False
    # Degenerate collapse (too few codes / identical embeddings): accepted regardless of threshold
    forced_accept: bool = False

    @property
    def size(self) -> int:
        return len(self.codes)


@dataclass(eq=False)
class CandidateTheme:
    id: str
    label: str
    description: str
    keywords: List[str]
    definition: str
    codes: List[InitialCode]
    centroid: np.ndarray
    coherence_score: float = 0.0
    confidence: float = 0.0
    low_confidence: bool = False
    forced_accept: bool = False
    provenance: Dict[str, Any] = field(default_factory=dict)
    _sealed: bool = field(default=False, init=False, repr=False, compare=False)

    def __setattr__(self, name: str, value: Any) -> None:
        if getattr(self, "_sealed", False):
            raise FrozenInstanceError(f"Theme {self.id} is sealed; cannot assign {name!r}")
        object.__setattr__(self, name, value)

    @property
    def source_ids(self) -> List[str]:
        return sorted({c.source_id for c in self.codes})

    @property
    def sealed(self) -> bool:
        return self._sealed

    def seal(self) -> None:
        """Freeze the theme after provenance assembly."""
        object.__setattr__(self, "codes", tuple(self.codes))
        object.__setattr__(self, "keywords", tuple(self.keywords))
        object.__setattr__(self, "provenance", MappingProxyType(dict(self.provenance)))
        object.__setattr__(self, "_sealed", True)

    def to_dict(self, include_codes: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "id": self.id,
            "label": self.label,
            "description": self.description,
            "keywords": list(self.keywords),
            "definition": self.definition,
            "coherence_score": float(self.coherence_score),
            "confidence": float(self.confidence),
            "low_confidence": bool(self.low_confidence),
            "source_ids": self.source_ids,
            "code_count": len(self.codes),
            "provenance": dict(self.provenance),
        }
        if include_codes:
            out["codes"] = [c.to_dict() for c in self.codes]
        return out


# ---- Results ----

@dataclass(frozen=True)
class StageStats:
    stage: str
    status: str  # completed | failed | skipped
    duration_s: float = 0.0
    entries: int = 0
    details: Mapping[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "status": self.status,
            "duration_s": round(float(self.duration_s), 4),
            "entries": self.entries,
            "details": dict(self.details),
            "error": self.error,
        }


@dataclass(frozen=True)
class ExtractionResult:
    run_id: str
    purpose: str
    themes: Tuple[CandidateTheme, ...]
    quality_score: float
    saturation_reached: bool
    per_stage_stats: Tuple[StageStats, ...]
    config: Mapping[str, Any] = field(default_factory=dict)
    counts: Mapping[str, Any] = field(default_factory=dict)
    iterations: int = 0
    meets_quality_threshold: bool = False
    elapsed_seconds: float = 0.0
    created_at: str = ""
    failed_stage: Optional[str] = None
    error: Optional[ThematicAnalysisError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "purpose": self.purpose,
            "created_at": self.created_at,
            "quality_score": float(self.quality_score),
            "meets_quality_threshold": bool(self.meets_quality_threshold),
            "saturation_reached": bool(self.saturation_reached),
            "iterations": self.iterations,
            "themes": [t.to_dict() for t in self.themes],
            "per_stage_stats": [s.to_dict() for s in self.per_stage_stats],
            "config": dict(self.config),
            "counts": dict(self.counts),
            "error": (
                {"type": type(self.error).__name__, "message": str(self.error), "stage": self.failed_stage}
                if self.error is not None
                else None
            ),
            "timing": {"elapsed_seconds": self.elapsed_seconds},
        }
