"""
Semantic coherence of a theme: mean pairwise cosine similarity of its code embeddings
(Roberts et al., 2019).
"""

from __future__ import annotations

import logging
import math
from typing import List, Sequence, Tuple

import numpy as np

from errors import CoherenceComputationError
from models import CandidateTheme, InitialCode
from purpose_config import ResolvedConfig
from similarity import cosine_similarity_optimized

logger = logging.getLogger(__name__)

# Returned when a theme has fewer than two usable codes
DEFAULT_COHERENCE = 0.5
# More than this share of codes without embeddings => DEFAULT_COHERENCE
MAX_MISSING_EMBEDDING_RATIO = 0.5
# Above this many codes the pair loop is replaced by one matrix product
VECTORIZE_MIN_CODES = 64


def pair_count(n: int) -> int:
    return n * (n - 1) // 2 if n >= 2 else 0


def _mean_pairwise_loop(codes: Sequence[InitialCode]) -> float:
    total = 0.0
    pairs = 0
    for i in range(len(codes)):
        for j in range(i + 1, len(codes)):
            total += cosine_similarity_optimized(codes[i].embedding, codes[j].embedding)
            pairs += 1
    return total / pairs


def _mean_pairwise_matrix(codes: Sequence[InitialCode]) -> float:
    vectors = np.vstack([c.embedding.vector for c in codes])
    norms = np.array([c.embedding.precomputed_norm for c in codes], dtype=float)
    safe = np.where(norms == 0.0, 1.0, norms)
    unit = vectors / safe[:, None]
    unit[norms == 0.0] = 0.0
    sims = np.clip(unit @ unit.T, -1.0, 1.0)
    iu = np.triu_indices(len(codes), k=1)
    return float(sims[iu].mean())


def calculate_theme_coherence(codes: Sequence[InitialCode]) -> float:
    """
    Mean cosine similarity over all n(n-1)/2 unordered pairs of embedded codes,
    floored at 0 so the score lies in [0, 1].

    Returns DEFAULT_COHERENCE when fewer than two codes are usable or when more than
    half of the codes lack embeddings.

    Raises:
        CoherenceComputationError: NaN/Infinity in the inputs or the result
    """
    codes = list(codes)
    embedded = [c for c in codes if c.embedding is not None]
    if codes and (len(codes) - len(embedded)) / float(len(codes)) > MAX_MISSING_EMBEDDING_RATIO:
        return DEFAULT_COHERENCE
    if len(embedded) < 2:
        return DEFAULT_COHERENCE

    for c in embedded:
        if not math.isfinite(c.embedding.precomputed_norm) or not np.all(np.isfinite(c.embedding.vector)):
            raise CoherenceComputationError(f"Non-finite embedding on code {c.id}")

    if len(embedded) >= VECTORIZE_MIN_CODES:
        mean = _mean_pairwise_matrix(embedded)
    else:
        mean = _mean_pairwise_loop(embedded)

    if not math.isfinite(mean):
        raise CoherenceComputationError(f"Mean pairwise similarity is {mean} over {len(embedded)} codes")
    return float(min(1.0, max(0.0, mean)))


class CoherenceValidator:
    """Scores candidate themes and splits them into accepted and rejected."""

    def __init__(self, config: ResolvedConfig):
        self.config = config
        self.threshold = config.acceptance_threshold

    def score(self, theme: CandidateTheme) -> float:
        theme.coherence_score = calculate_theme_coherence(theme.codes)
        n_sources = len(theme.source_ids)
        support = min(1.0, n_sources / float(max(1, self.config.min_sources)))
        theme.confidence = float(theme.coherence_score * support)
        if theme.confidence < self.config.min_confidence:
            theme.low_confidence = True
        return theme.coherence_score

    def validate_themes(
        self, themes: Sequence[CandidateTheme]
    ) -> Tuple[List[CandidateTheme], List[CandidateTheme]]:
        """
        Returns (accepted, rejected). Themes whose coherence cannot be computed are
        logged and left out of both lists.
        """
        accepted: List[CandidateTheme] = []
        rejected: List[CandidateTheme] = []
        for theme in themes:
            try:
                self.score(theme)
            except CoherenceComputationError as e:
                logger.warning(f"Excluding theme {theme.id} ({theme.label}): {e}")
                continue
            if theme.forced_accept or theme.coherence_score >= self.threshold:
                accepted.append(theme)
            else:
                rejected.append(theme)
        logger.info(
            f"Theme review: {len(accepted)} accepted, {len(rejected)} below coherence {self.threshold:.2f}"
        )
        return accepted, rejected
