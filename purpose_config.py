"""
Research-purpose profiles and the configuration resolver.

Each research purpose (Q-methodology, qualitative analysis, ...) maps to a frozen
`PurposeProfile`. `resolve_config(purpose, overrides)` applies caller overrides on top
of the profile and returns an immutable `ResolvedConfig`.

Validation is strict and never clamps:
  1. numeric overrides must be real numbers (bools rejected) and finite, checked
     before any range check;
  2. count fields must be integers;
  3. enum fields are checked against the canonical tuples below;
  4. the fully resolved config is re-validated as a whole, which catches
     cross-field problems such as min > max after two independent overrides.
Any violation raises `errors.ValidationError` naming the field and the value.
"""

from __future__ import annotations

import logging
import math
import numbers
import re
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from errors import ValidationError

logger = logging.getLogger(__name__)


class ResearchPurpose(str, Enum):
    Q_METHODOLOGY = "q_methodology"
    QUALITATIVE_ANALYSIS = "qualitative_analysis"
    LITERATURE_SYNTHESIS = "literature_synthesis"
    HYPOTHESIS_GENERATION = "hypothesis_generation"
    SURVEY_CONSTRUCTION = "survey_construction"


class ValidationRigor(str, Enum):
    LENIENT = "lenient"
    STANDARD = "standard"
    RIGOROUS = "rigorous"


class ExtractionFocus(str, Enum):
    BREADTH = "breadth"
    SATURATION = "saturation"
    COVERAGE = "coverage"
    DEPTH = "depth"
    CONSTRUCT = "construct"


class ContentPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Canonical enumeration lists: every enum check goes through these.
RESEARCH_PURPOSES: Tuple[str, ...] = tuple(p.value for p in ResearchPurpose)
VALIDATION_RIGORS: Tuple[str, ...] = tuple(r.value for r in ValidationRigor)
EXTRACTION_FOCUSES: Tuple[str, ...] = tuple(f.value for f in ExtractionFocus)

# Tighter rigor => higher minimum coherence
RIGOR_COHERENCE_OFFSET: Mapping[ValidationRigor, float] = MappingProxyType(
    {
        ValidationRigor.LENIENT: -0.05,
        ValidationRigor.STANDARD: 0.0,
        ValidationRigor.RIGOROUS: 0.05,
    }
)

# Minimum words a source should carry for each content priority
CONTENT_PRIORITY_WORD_COUNTS: Mapping[ContentPriority, int] = MappingProxyType(
    {
        ContentPriority.LOW: 200,
        ContentPriority.MEDIUM: 500,
        ContentPriority.HIGH: 1000,
        ContentPriority.CRITICAL: 3000,
    }
)

# ---- Bounds ----

PAPER_LIMIT_BOUNDS = (0, 10000)
TARGET_THEME_BOUNDS = (1, 200)
QUALITY_THRESHOLD_BOUNDS = (0.0, 100.0)
UNIT_INTERVAL = (0.0, 1.0)
MIN_SOURCES_BOUNDS = (1, 1000)
MAX_ITERATION_BOUNDS = (1, 50)
SOURCES_PER_ITERATION_BOUNDS = (1, 10000)
SATURATION_YIELD_BOUNDS = (0, 200)
STAGE_TIMEOUT_BOUNDS = (0.001, 86400.0)


# ---- Purpose table ----

@dataclass(frozen=True)
class PurposeProfile:
    purpose: ResearchPurpose
    display_name: str
    description: str
    scientific_foundation: str
    target_themes: Tuple[int, int]
    validation_rigor: ValidationRigor
    extraction_focus: ExtractionFocus
    min_confidence: float
    min_coherence: float
    min_sources: int
    paper_limits: Tuple[int, int, int]  # (min, target, max)
    quality_threshold: Tuple[float, float]  # (initial, min)
    content_priority: ContentPriority
    max_iterations: int = 10
    sources_per_iteration: int = 40
    saturation_yield_threshold: int = 0
    max_unembedded_fraction: float = 0.5
    stage_timeout_s: float = 600.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose.value,
            "display_name": self.display_name,
            "description": self.description,
            "scientific_foundation": self.scientific_foundation,
            "target_themes": {"min": self.target_themes[0], "max": self.target_themes[1]},
            "validation_rigor": self.validation_rigor.value,
            "extraction_focus": self.extraction_focus.value,
            "min_confidence": self.min_confidence,
            "min_coherence": self.min_coherence,
            "min_sources": self.min_sources,
            "paper_limits": dict(zip(("min", "target", "max"), self.paper_limits)),
            "quality_threshold": {"initial": self.quality_threshold[0], "min": self.quality_threshold[1]},
            "content_priority": self.content_priority.value,
            "min_words_per_source": CONTENT_PRIORITY_WORD_COUNTS[self.content_priority],
            "max_iterations": self.max_iterations,
            "sources_per_iteration": self.sources_per_iteration,
            "saturation_yield_threshold": self.saturation_yield_threshold,
        }


PURPOSE_PROFILES: Mapping[ResearchPurpose, PurposeProfile] = MappingProxyType(
    {
        ResearchPurpose.Q_METHODOLOGY: PurposeProfile(
            purpose=ResearchPurpose.Q_METHODOLOGY,
            display_name="Q-Methodology",
            description="Breadth-focused extraction of many diverse statements for a Q-sort concourse.",
            scientific_foundation="Stephenson (1953); Watts & Stenner (2012)",
            target_themes=(30, 80),
            validation_rigor=ValidationRigor.LENIENT,
            extraction_focus=ExtractionFocus.BREADTH,
            min_confidence=0.3,
            min_coherence=0.5,
            min_sources=1,
            paper_limits=(500, 600, 800),
            quality_threshold=(40.0, 25.0),
            content_priority=ContentPriority.LOW,
            max_iterations=8,
            sources_per_iteration=100,
            saturation_yield_threshold=1,
        ),
        ResearchPurpose.QUALITATIVE_ANALYSIS: PurposeProfile(
            purpose=ResearchPurpose.QUALITATIVE_ANALYSIS,
            display_name="Qualitative Analysis",
            description="Reflexive thematic analysis iterated until theoretical saturation.",
            scientific_foundation="Braun & Clarke (2006, 2019)",
            target_themes=(5, 20),
            validation_rigor=ValidationRigor.STANDARD,
            extraction_focus=ExtractionFocus.SATURATION,
            min_confidence=0.5,
            min_coherence=0.6,
            min_sources=2,
            paper_limits=(50, 100, 200),
            quality_threshold=(60.0, 45.0),
            content_priority=ContentPriority.HIGH,
            max_iterations=10,
            sources_per_iteration=40,
        ),
        ResearchPurpose.LITERATURE_SYNTHESIS: PurposeProfile(
            purpose=ResearchPurpose.LITERATURE_SYNTHESIS,
            display_name="Literature Synthesis",
            description="Comprehensive coverage of a field for meta-ethnography or systematic review.",
            scientific_foundation="Noblit & Hare (1988); Thomas & Harden (2008)",
            target_themes=(10, 25),
            validation_rigor=ValidationRigor.RIGOROUS,
            extraction_focus=ExtractionFocus.COVERAGE,
            min_confidence=0.6,
            min_coherence=0.7,
            min_sources=3,
            paper_limits=(400, 450, 500),
            quality_threshold=(70.0, 55.0),
            content_priority=ContentPriority.CRITICAL,
            max_iterations=10,
            sources_per_iteration=50,
        ),
        ResearchPurpose.HYPOTHESIS_GENERATION: PurposeProfile(
            purpose=ResearchPurpose.HYPOTHESIS_GENERATION,
            display_name="Hypothesis Generation",
            description="Theory-building depth: fewer, conceptually dense themes.",
            scientific_foundation="Glaser & Strauss (1967)",
            target_themes=(8, 15),
            validation_rigor=ValidationRigor.STANDARD,
            extraction_focus=ExtractionFocus.DEPTH,
            min_confidence=0.5,
            min_coherence=0.6,
            min_sources=2,
            paper_limits=(100, 150, 300),
            quality_threshold=(60.0, 45.0),
            content_priority=ContentPriority.HIGH,
            max_iterations=10,
            sources_per_iteration=25,
        ),
        ResearchPurpose.SURVEY_CONSTRUCTION: PurposeProfile(
            purpose=ResearchPurpose.SURVEY_CONSTRUCTION,
            display_name="Survey Construction",
            description="Construct identification for scale development and item writing.",
            scientific_foundation="Churchill (1979); DeVellis (2016)",
            target_themes=(5, 15),
            validation_rigor=ValidationRigor.RIGOROUS,
            extraction_focus=ExtractionFocus.CONSTRUCT,
            min_confidence=0.6,
            min_coherence=0.7,
            min_sources=3,
            paper_limits=(100, 150, 200),
            quality_threshold=(70.0, 55.0),
            content_priority=ContentPriority.MEDIUM,
            max_iterations=10,
            sources_per_iteration=25,
        ),
    }
)


# ---- Resolved config ----

@dataclass(frozen=True)
class ResolvedConfig:
    purpose: ResearchPurpose
    target_theme_range: Tuple[int, int]
    validation_rigor: ValidationRigor
    min_confidence: float
    extraction_focus: ExtractionFocus
    min_coherence: float
    min_sources: int
    paper_limits: Tuple[int, int, int]
    quality_threshold: float
    quality_threshold_min: float
    max_iterations: int
    sources_per_iteration: int
    saturation_yield_threshold: int
    max_unembedded_fraction: float
    stage_timeout_s: float
    applied_overrides: Tuple[str, ...] = ()

    @property
    def has_overrides(self) -> bool:
        return bool(self.applied_overrides)

    @property
    def acceptance_threshold(self) -> float:
        """Minimum coherence a theme needs, adjusted for the validation rigor."""
        t = self.min_coherence + RIGOR_COHERENCE_OFFSET[self.validation_rigor]
        return float(min(1.0, max(0.0, t)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "purpose": self.purpose.value,
            "target_theme_range": list(self.target_theme_range),
            "validation_rigor": self.validation_rigor.value,
            "min_confidence": self.min_confidence,
            "extraction_focus": self.extraction_focus.value,
            "min_coherence": self.min_coherence,
            "acceptance_threshold": self.acceptance_threshold,
            "min_sources": self.min_sources,
            "paper_limits": list(self.paper_limits),
            "quality_threshold": self.quality_threshold,
            "quality_threshold_min": self.quality_threshold_min,
            "max_iterations": self.max_iterations,
            "sources_per_iteration": self.sources_per_iteration,
            "saturation_yield_threshold": self.saturation_yield_threshold,
            "max_unembedded_fraction": self.max_unembedded_fraction,
            "stage_timeout_s": self.stage_timeout_s,
            "applied_overrides": list(self.applied_overrides),
        }


# ---- Field rules ----

@dataclass(frozen=True)
class _FieldRule:
    kind: str  # "int" | "float" | "enum"
    bounds: Optional[Tuple[float, float]] = None
    choices: Tuple[str, ...] = ()


OVERRIDE_RULES: Mapping[str, _FieldRule] = MappingProxyType(
    {
        "min_papers": _FieldRule("int", PAPER_LIMIT_BOUNDS),
        "target_papers": _FieldRule("int", PAPER_LIMIT_BOUNDS),
        "max_papers": _FieldRule("int", PAPER_LIMIT_BOUNDS),
        "target_themes_min": _FieldRule("int", TARGET_THEME_BOUNDS),
        "target_themes_max": _FieldRule("int", TARGET_THEME_BOUNDS),
        "quality_threshold": _FieldRule("float", QUALITY_THRESHOLD_BOUNDS),
        "min_coherence": _FieldRule("float", UNIT_INTERVAL),
        "min_confidence": _FieldRule("float", UNIT_INTERVAL),
        "min_sources": _FieldRule("int", MIN_SOURCES_BOUNDS),
        "validation_rigor": _FieldRule("enum", choices=VALIDATION_RIGORS),
        "extraction_focus": _FieldRule("enum", choices=EXTRACTION_FOCUSES),
        "max_iterations": _FieldRule("int", MAX_ITERATION_BOUNDS),
        "sources_per_iteration": _FieldRule("int", SOURCES_PER_ITERATION_BOUNDS),
        "saturation_yield_threshold": _FieldRule("int", SATURATION_YIELD_BOUNDS),
        "max_unembedded_fraction": _FieldRule("float", UNIT_INTERVAL),
        "stage_timeout_s": _FieldRule("float", STAGE_TIMEOUT_BOUNDS),
    }
)

# Internal-only field checked during whole-config validation
_QUALITY_MIN_RULE = _FieldRule("float", QUALITY_THRESHOLD_BOUNDS)


def _canonical_key(key: Any) -> str:
    """qualityThreshold -> quality_threshold"""
    k = str(key or "").strip()
    return re.sub(r"(?<!^)(?=[A-Z])", "_", k).lower()


def _check_field(field: str, value: Any, rule: _FieldRule) -> Union[int, float, str]:
    if rule.kind == "enum":
        raw = value.value if isinstance(value, Enum) else value
        if not isinstance(raw, str) or raw.strip().lower() not in rule.choices:
            raise ValidationError(field, value, f"must be one of {', '.join(rule.choices)}")
        return raw.strip().lower()

    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise ValidationError(field, value, "must be a number")
    v = float(value)
    # Finiteness first: NaN compares false against every bound
    if not math.isfinite(v):
        raise ValidationError(field, value, "must be a finite number")
    out: Union[int, float] = v
    if rule.kind == "int":
        if not v.is_integer():
            raise ValidationError(field, value, "must be an integer")
        out = int(v)
    if rule.bounds is not None:
        lo, hi = rule.bounds
        if v < lo or v > hi:
            raise ValidationError(field, value, f"must be between {lo:g} and {hi:g}")
    return out


def parse_purpose(value: Any) -> ResearchPurpose:
    if isinstance(value, ResearchPurpose):
        return value
    if isinstance(value, str):
        key = value.strip().lower().replace("-", "_").replace(" ", "_")
        if key in RESEARCH_PURPOSES:
            return ResearchPurpose(key)
    raise ValidationError("purpose", value, f"must be one of {', '.join(RESEARCH_PURPOSES)}")


def get_profile(purpose: Any) -> PurposeProfile:
    return PURPOSE_PROFILES[parse_purpose(purpose)]


def list_purposes() -> List[Dict[str, Any]]:
    return [PURPOSE_PROFILES[ResearchPurpose(p)].to_dict() for p in RESEARCH_PURPOSES]


def _profile_values(profile: PurposeProfile) -> Dict[str, Any]:
    return {
        "min_papers": profile.paper_limits[0],
        "target_papers": profile.paper_limits[1],
        "max_papers": profile.paper_limits[2],
        "target_themes_min": profile.target_themes[0],
        "target_themes_max": profile.target_themes[1],
        "quality_threshold": profile.quality_threshold[0],
        "quality_threshold_min": profile.quality_threshold[1],
        "min_coherence": profile.min_coherence,
        "min_confidence": profile.min_confidence,
        "min_sources": profile.min_sources,
        "validation_rigor": profile.validation_rigor.value,
        "extraction_focus": profile.extraction_focus.value,
        "max_iterations": profile.max_iterations,
        "sources_per_iteration": profile.sources_per_iteration,
        "saturation_yield_threshold": profile.saturation_yield_threshold,
        "max_unembedded_fraction": profile.max_unembedded_fraction,
        "stage_timeout_s": profile.stage_timeout_s,
    }


def validate_resolved_config(cfg: ResolvedConfig) -> ResolvedConfig:
    """Whole-config check run after every override has been applied."""
    parse_purpose(cfg.purpose)
    flat = {
        "min_papers": cfg.paper_limits[0],
        "target_papers": cfg.paper_limits[1],
        "max_papers": cfg.paper_limits[2],
        "target_themes_min": cfg.target_theme_range[0],
        "target_themes_max": cfg.target_theme_range[1],
        "quality_threshold": cfg.quality_threshold,
        "min_coherence": cfg.min_coherence,
        "min_confidence": cfg.min_confidence,
        "min_sources": cfg.min_sources,
        "validation_rigor": cfg.validation_rigor,
        "extraction_focus": cfg.extraction_focus,
        "max_iterations": cfg.max_iterations,
        "sources_per_iteration": cfg.sources_per_iteration,
        "saturation_yield_threshold": cfg.saturation_yield_threshold,
        "max_unembedded_fraction": cfg.max_unembedded_fraction,
        "stage_timeout_s": cfg.stage_timeout_s,
    }
    for name, value in flat.items():
        _check_field(name, value, OVERRIDE_RULES[name])
    _check_field("quality_threshold_min", cfg.quality_threshold_min, _QUALITY_MIN_RULE)

    lo, hi = cfg.target_theme_range
    if lo > hi:
        raise ValidationError(
            "target_themes_min", lo, f"must not exceed target_themes_max ({hi})"
        )
    pmin, ptarget, pmax = cfg.paper_limits
    if not (pmin <= ptarget <= pmax):
        raise ValidationError(
            "paper_limits", list(cfg.paper_limits), "must satisfy min_papers <= target_papers <= max_papers"
        )
    if cfg.quality_threshold_min > cfg.quality_threshold:
        raise ValidationError(
            "quality_threshold", cfg.quality_threshold,
            f"must not be below the minimum quality threshold ({cfg.quality_threshold_min:g})",
        )
    return cfg


def resolve_config(purpose: Any, overrides: Optional[Mapping[str, Any]] = None) -> ResolvedConfig:
    """
    Resolve a purpose + optional overrides into a validated, immutable config.

    Args:
        purpose: ResearchPurpose or its string value
        overrides: field -> value; snake_case or camelCase keys. None values are ignored.

    Returns:
        ResolvedConfig

    Raises:
        ValidationError: on the first offending field
    """
    p = parse_purpose(purpose)
    values = _profile_values(PURPOSE_PROFILES[p])

    if overrides is not None and not isinstance(overrides, Mapping):
        raise ValidationError("overrides", overrides, "must be a mapping of field -> value")

    applied: List[str] = []
    for raw_key, value in (overrides or {}).items():
        if value is None:
            continue
        key = _canonical_key(raw_key)
        rule = OVERRIDE_RULES.get(key)
        if rule is None:
            raise ValidationError(str(raw_key), value, "unknown override field")
        checked = _check_field(key, value, rule)
        values[key] = checked
        if key == "quality_threshold":
            # Relaxation floor follows a lowered threshold
            values["quality_threshold_min"] = min(values["quality_threshold_min"], float(checked))
        if key not in applied:
            applied.append(key)

    cfg = ResolvedConfig(
        purpose=p,
        target_theme_range=(int(values["target_themes_min"]), int(values["target_themes_max"])),
        validation_rigor=ValidationRigor(values["validation_rigor"]),
        min_confidence=float(values["min_confidence"]),
        extraction_focus=ExtractionFocus(values["extraction_focus"]),
        min_coherence=float(values["min_coherence"]),
        min_sources=int(values["min_sources"]),
        paper_limits=(int(values["min_papers"]), int(values["target_papers"]), int(values["max_papers"])),
        quality_threshold=float(values["quality_threshold"]),
        quality_threshold_min=float(values["quality_threshold_min"]),
        max_iterations=int(values["max_iterations"]),
        sources_per_iteration=int(values["sources_per_iteration"]),
        saturation_yield_threshold=int(values["saturation_yield_threshold"]),
        max_unembedded_fraction=float(values["max_unembedded_fraction"]),
        stage_timeout_s=float(values["stage_timeout_s"]),
        applied_overrides=tuple(applied),
    )
    validate_resolved_config(cfg)

    if applied:
        logger.info(f"Resolved {p.value} config with overrides: {', '.join(applied)}")
    return cfg
