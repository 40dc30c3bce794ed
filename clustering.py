"""
Adaptive k-means(++) clustering of code embeddings on cosine distance.

For every candidate k in the purpose's theme range the engine seeds centroids with
k-means++, runs Lloyd's iteration until assignments stop changing, and scores the
partition by mean silhouette. The best-scoring k wins; ties go to the smaller k.

Codes are put in a canonical order (by id) before anything random happens and the
RNG is seeded, so permuting the input never changes the membership sets.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import silhouette_score

from config import KMEANS_MAX_ITERATIONS, KMEANS_N_INIT, KMEANS_RANDOM_STATE
from errors import ClusteringDegenerateInputError
from models import Cluster, InitialCode
from similarity import calculate_centroid, normalize_rows

logger = logging.getLogger(__name__)

IDENTICAL_ATOL = 1e-9
SILHOUETTE_TIE_EPS = 1e-9
SILHOUETTE_SAMPLE_SIZE = 4000
DEFAULT_MAX_K_CANDIDATES = 20


@dataclass(frozen=True)
class KMeansRun:
    k: int
    labels: np.ndarray
    centroids: np.ndarray
    inertia: float
    iterations: int
    converged: bool


@dataclass
class ClusteringResult:
    clusters: List[Cluster]
    selected_k: int
    silhouette: Optional[float]
    scores_by_k: Dict[int, Optional[float]] = field(default_factory=dict)
    low_confidence: bool = False
    degenerate_reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_k": self.selected_k,
            "silhouette": self.silhouette,
            "scores_by_k": {str(k): v for k, v in self.scores_by_k.items()},
            "cluster_sizes": [c.size for c in self.clusters],
            "low_confidence": self.low_confidence,
            "degenerate_reason": self.degenerate_reason,
        }


def _cosine_distance_to(X: np.ndarray, c: np.ndarray) -> np.ndarray:
    return np.clip(1.0 - X @ c, 0.0, 2.0)


def _kmeans_pp_seeds(X: np.ndarray, k: int, rng: np.random.Generator) -> np.ndarray:
    """k-means++: each next seed drawn with probability proportional to squared distance."""
    n = X.shape[0]
    chosen = [int(rng.integers(n))]
    d2 = _cosine_distance_to(X, X[chosen[0]]) ** 2
    for _ in range(1, k):
        total = float(d2.sum())
        if total <= 0.0 or not math.isfinite(total):
            # Every point sits on a seed already; take the first unused index
            nxt = next(i for i in range(n) if i not in chosen)
        else:
            nxt = int(rng.choice(n, p=d2 / total))
        chosen.append(nxt)
        d2 = np.minimum(d2, _cosine_distance_to(X, X[nxt]) ** 2)
    return X[chosen].copy()


def _fill_empty_clusters(labels: np.ndarray, sims: np.ndarray, k: int) -> np.ndarray:
    """Give each empty cluster the point farthest from its own centroid."""
    labels = labels.copy()
    n = labels.shape[0]
    for j in range(k):
        if np.any(labels == j):
            continue
        counts = np.bincount(labels, minlength=k)
        own_dist = 1.0 - sims[np.arange(n), labels]
        # Never empty another cluster to fill this one
        own_dist[counts[labels] <= 1] = -np.inf
        far = int(np.argmax(own_dist))
        labels[far] = j
    return labels


def _lloyd(X: np.ndarray, seeds: np.ndarray, max_iterations: int) -> KMeansRun:
    k = seeds.shape[0]
    centroids = normalize_rows(seeds)
    sims = X @ centroids.T
    labels = _fill_empty_clusters(np.argmax(sims, axis=1), sims, k)
    converged = False
    it = 1
    for it in range(1, max_iterations + 1):
        centroids = normalize_rows(np.vstack([X[labels == j].mean(axis=0) for j in range(k)]))
        sims = X @ centroids.T
        new_labels = _fill_empty_clusters(np.argmax(sims, axis=1), sims, k)
        if np.array_equal(new_labels, labels):
            converged = True
            break
        labels = new_labels

    own = np.sum(X * centroids[labels], axis=1)
    inertia = float(np.sum(np.clip(1.0 - own, 0.0, 2.0)))
    return KMeansRun(k=k, labels=labels, centroids=centroids, inertia=inertia, iterations=it, converged=converged)


def _silhouette(distances: np.ndarray, labels: np.ndarray, random_state: int) -> Optional[float]:
    n = labels.shape[0]
    n_labels = len(np.unique(labels))
    if n_labels < 2 or n_labels > n - 1:
        return None
    sample = SILHOUETTE_SAMPLE_SIZE if n > SILHOUETTE_SAMPLE_SIZE else None
    score = silhouette_score(distances, labels, metric="precomputed", sample_size=sample, random_state=random_state)
    score = float(score)
    return score if math.isfinite(score) else None


def candidate_ks(k_range: Tuple[int, int], n_points: int, max_candidates: int = DEFAULT_MAX_K_CANDIDATES) -> List[int]:
    """
    k values to try: every k in the theme range (capped at n_points - 1). Ranges wider
    than `max_candidates` are sampled at an even step, and the upper bound is always tried.
    """
    lo, hi = int(k_range[0]), int(k_range[1])
    hi = min(hi, n_points - 1)
    if hi < lo:
        return []
    width = hi - lo + 1
    max_candidates = max(2, int(max_candidates))
    if width <= max_candidates:
        return list(range(lo, hi + 1))
    step = int(math.ceil(width / float(max_candidates - 1)))
    return list(range(lo, hi, step)) + [hi]


class ClusteringEngine:
    def __init__(
        self,
        *,
        max_iterations: int = None,
        n_init: int = None,
        random_state: int = None,
        max_k_candidates: int = DEFAULT_MAX_K_CANDIDATES,
    ):
        self.max_iterations = max(1, int(max_iterations or KMEANS_MAX_ITERATIONS))
        self.n_init = max(1, int(n_init or KMEANS_N_INIT))
        self.random_state = KMEANS_RANDOM_STATE if random_state is None else int(random_state)
        self.max_k_candidates = max_k_candidates

    def kmeans(self, X: np.ndarray, k: int) -> KMeansRun:
        """Best of `n_init` seeded k-means++ runs (lowest inertia). X must be row-normalized."""
        rng = np.random.default_rng(self.random_state + k)
        best = _lloyd(X, _kmeans_pp_seeds(X, k, rng), self.max_iterations)
        for _ in range(1, self.n_init):
            run = _lloyd(X, _kmeans_pp_seeds(X, k, rng), self.max_iterations)
            if run.inertia < best.inertia - 1e-12:
                best = run
        return best

    def _single_cluster(self, codes: List[InitialCode], *, low_confidence: bool, reason: str,
                        scores: Optional[Dict[int, Optional[float]]] = None) -> ClusteringResult:
        centroid = calculate_centroid([c.embedding.vector for c in codes])
        cluster = Cluster(codes=list(codes), centroid=centroid, low_confidence=low_confidence, forced_accept=True)
        return ClusteringResult(
            clusters=[cluster],
            selected_k=1,
            silhouette=None,
            scores_by_k=scores or {},
            low_confidence=low_confidence,
            degenerate_reason=reason,
        )

    def cluster(self, codes: Sequence[InitialCode], k_range: Tuple[int, int]) -> ClusteringResult:
        """
        Cluster embedded codes, choosing k within `k_range` by silhouette.

        Raises:
            ClusteringDegenerateInputError: no code carries an embedding
        """
        embedded = sorted((c for c in codes if c.embedding is not None), key=lambda c: (c.id, c.source_id))
        if not embedded:
            raise ClusteringDegenerateInputError("No embedded codes to cluster")
        dims = {c.embedding.dimensions for c in embedded}
        if len(dims) != 1:
            raise ClusteringDegenerateInputError(f"Mixed embedding dimensions in one run: {sorted(dims)}")

        n = len(embedded)
        lo, hi = int(k_range[0]), int(k_range[1])
        X = normalize_rows(np.vstack([c.embedding.vector for c in embedded]))

        if n > 1 and np.allclose(X, X[0], atol=IDENTICAL_ATOL):
            logger.info(f"All {n} code embeddings identical; single cluster")
            return self._single_cluster(embedded, low_confidence=False, reason="identical_embeddings")

        if lo == 1 and hi == 1:
            return self._single_cluster(embedded, low_confidence=False, reason="single_cluster_requested")

        ks = candidate_ks((lo, hi), n, self.max_k_candidates)
        if not ks:
            logger.info(f"{n} codes cannot support k in [{lo}, {hi}]; collapsing to one low-confidence cluster")
            return self._single_cluster(embedded, low_confidence=True, reason="too_few_codes")

        distances = np.clip(1.0 - X @ X.T, 0.0, 2.0)
        np.fill_diagonal(distances, 0.0)

        scores: Dict[int, Optional[float]] = {}
        best_k: Optional[int] = None
        best_score: Optional[float] = None
        best_run: Optional[KMeansRun] = None
        runs: Dict[int, KMeansRun] = {}
        for k in ks:
            run = self.kmeans(X, k)
            runs[k] = run
            score = _silhouette(distances, run.labels, self.random_state)
            scores[k] = score
            if score is None:
                continue
            # Strictly greater: on ties the smaller k (seen first) stays
            if best_score is None or score > best_score + SILHOUETTE_TIE_EPS:
                best_k, best_score, best_run = k, score, run

        if best_run is None:
            if ks[0] == 1:
                return self._single_cluster(embedded, low_confidence=False, reason="no_silhouette", scores=scores)
            best_k = ks[0]
            best_run = runs[best_k]

        # Number clusters by their first member in canonical order
        order: Dict[int, int] = {}
        for label in best_run.labels:
            if int(label) not in order:
                order[int(label)] = len(order)
        members: List[List[InitialCode]] = [[] for _ in range(len(order))]
        for code, label in zip(embedded, best_run.labels):
            members[order[int(label)]].append(code)

        clusters = [
            Cluster(codes=m, centroid=calculate_centroid([c.embedding.vector for c in m]))
            for m in members
            if m
        ]
        logger.info(
            f"Clustered {n} codes into k={best_k} (silhouette={best_score if best_score is not None else 'n/a'})"
        )
        return ClusteringResult(
            clusters=clusters,
            selected_k=int(best_k),
            silhouette=best_score,
            scores_by_k=scores,
        )
