"""
Local statistical theme labeling: term frequency over a cluster's code labels and
descriptions. No network calls, so it is always available and deterministic.
"""

from __future__ import annotations

import hashlib
import logging
from collections import Counter
from typing import List, Sequence

from models import CandidateTheme, Cluster
from text_utils import rank_terms, title_case, tokenize

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 7
KEYWORDS_FOR_LABEL = 3
KEYWORDS_FOR_DEFINITION = 5
MAX_DESCRIPTIONS = 3
MIN_DESCRIPTION_LENGTH = 10


def theme_id_for(member_ids: Sequence[str]) -> str:
    """Stable id derived from the sorted member code ids."""
    digest = hashlib.sha1("|".join(sorted(member_ids)).encode("utf-8")).hexdigest()
    return f"theme_local_{digest[:16]}"


def build_label(keywords: Sequence[str], code_labels: Sequence[str]) -> str:
    if keywords:
        n = KEYWORDS_FOR_LABEL if len(keywords) >= KEYWORDS_FOR_LABEL else len(keywords)
        return title_case(" ".join(keywords[:n]))
    labels = [s.strip() for s in code_labels if s and s.strip()]
    if not labels:
        return ""
    # Most frequent code label; first seen wins ties
    counts = Counter(labels)
    best = max(labels, key=lambda s: (counts[s], -labels.index(s)))
    return title_case(best)


def build_description(descriptions: Sequence[str], code_count: int, keywords: Sequence[str]) -> str:
    distinct: List[str] = []
    for d in descriptions:
        d = (d or "").strip()
        if len(d) > MIN_DESCRIPTION_LENGTH and d not in distinct:
            distinct.append(d)
        if len(distinct) >= MAX_DESCRIPTIONS:
            break
    if distinct:
        return "; ".join(distinct)
    return (
        f"Theme encompassing {code_count} related codes focusing on "
        f"{', '.join(keywords[:KEYWORDS_FOR_LABEL]) or 'shared concepts'}"
    )


def build_definition(code_count: int, keywords: Sequence[str]) -> str:
    plural = "s" if code_count != 1 else ""
    concepts = ", ".join(keywords[:KEYWORDS_FOR_DEFINITION]) or "no dominant terms"
    return (
        f"A cluster of {code_count} semantically related research code{plural} identified through "
        f"statistical clustering, characterized by the concepts: {concepts}. "
        f"This theme emerges from {code_count} distinct code{plural} across the corpus."
    )


class LocalThemeLabeler:
    def label_cluster(self, cluster: Cluster, index: int = 0) -> CandidateTheme:
        codes = list(cluster.codes)
        tokens: List[str] = []
        for c in codes:
            tokens.extend(tokenize(c.label))
            tokens.extend(tokenize(c.description))
        keywords = [term for term, _ in rank_terms(tokens, MAX_KEYWORDS)]

        label = build_label(keywords, [c.label for c in codes]) or f"Theme {index + 1}"
        return CandidateTheme(
            id=theme_id_for([c.id for c in codes]),
            label=label,
            description=build_description([c.description for c in codes], len(codes), keywords),
            keywords=keywords,
            definition=build_definition(len(codes), keywords),
            codes=codes,
            centroid=cluster.centroid,
            low_confidence=cluster.low_confidence,
            forced_accept=cluster.forced_accept,
        )

    def fallback_theme(self, cluster: Cluster, index: int) -> CandidateTheme:
        codes = list(cluster.codes)
        joined = ", ".join(c.label for c in codes)
        return CandidateTheme(
            id=theme_id_for([c.id for c in codes]),
            label=f"Theme {index + 1}",
            description=f"Theme based on codes: {joined[:200]}{'...' if len(joined) > 200 else ''}",
            keywords=[],
            definition=f"Automatically generated theme from {len(codes)} codes",
            codes=codes,
            centroid=cluster.centroid,
            low_confidence=cluster.low_confidence,
            forced_accept=cluster.forced_accept,
        )

    def label_clusters(self, clusters: Sequence[Cluster]) -> List[CandidateTheme]:
        themes: List[CandidateTheme] = []
        for i, cluster in enumerate(clusters):
            try:
                themes.append(self.label_cluster(cluster, i))
            except Exception as e:
                logger.warning(f"Labeling cluster {i} failed ({e}); using fallback label")
                themes.append(self.fallback_theme(cluster, i))
        return themes
