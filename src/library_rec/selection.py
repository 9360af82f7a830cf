"""
Diversity-aware greedy selection.

At every step each remaining candidate is re-evaluated against what has
been selected so far:

    effective = (1 - w) * final_base + w * diversity * final_base

where ``diversity`` is in [0, 1]. ``final_base`` is never modified, so
diversity adjustments do not compound across steps.
"""
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Sequence

from .config import (
    DIVERSITY_GENRE_SHARE,
    DIVERSITY_SOURCE_SHARE,
    ECLECTIC_DIVERSITY_FACTOR,
    ECLECTIC_TASTE_THRESHOLD,
    FOCUSED_DIVERSITY_FACTOR,
    FOCUSED_TASTE_THRESHOLD,
    NEUTRAL_DIVERSITY_SCORE,
)
from .scoring import ScoredCandidate
from .utils import clamp

logger = logging.getLogger(__name__)


@dataclass
class SelectionResult:
    ranked: list[ScoredCandidate]      # every candidate, by rank
    selected: list[ScoredCandidate]    # in selection order


def genre_diversity(genres: Sequence[str], selected_genres: Counter) -> float:
    if not genres:
        return NEUTRAL_DIVERSITY_SCORE
    overlap = sum(1 for g in genres if g.lower() in selected_genres)
    return 1.0 - overlap / len(genres)


def source_diversity(source: str | None, selected_sources: Counter, selected_count: int) -> float:
    if not source or selected_count == 0:
        return NEUTRAL_DIVERSITY_SCORE
    return 1.0 - selected_sources.get(source.lower(), 0) / selected_count


def diversity_score(
    candidate: ScoredCandidate,
    selected_genres: Counter,
    selected_sources: Counter | None,
    selected_count: int,
) -> float:
    """Genre novelty against the selection, blended with source novelty when tracked."""
    genre_part = genre_diversity(candidate.genres, selected_genres)
    if selected_sources is None:
        return genre_part
    source_part = source_diversity(candidate.candidate.source_attribute, selected_sources, selected_count)
    return DIVERSITY_GENRE_SHARE * genre_part + DIVERSITY_SOURCE_SHARE * source_part


def taste_spread(watched_genres: Counter) -> float | None:
    """
    Normalized Shannon entropy of a watch history's genre counts.

    0 means every watched item shares one genre, 1 means genres are watched
    evenly. None when the history carries no genres.
    """
    total = sum(watched_genres.values())
    if total <= 0:
        return None
    if len(watched_genres) == 1:
        return 0.0
    entropy = -sum((n / total) * math.log(n / total) for n in watched_genres.values() if n > 0)
    return clamp(entropy / math.log(len(watched_genres)), 0.0, 1.0)


def adjust_diversity_weight(base_weight: float, spread: float | None) -> float:
    """Less diversity for focused tastes, more for eclectic ones."""
    if spread is None:
        return base_weight
    if spread < FOCUSED_TASTE_THRESHOLD:
        return clamp(base_weight * FOCUSED_DIVERSITY_FACTOR, 0.0, 1.0)
    if spread > ECLECTIC_TASTE_THRESHOLD:
        return clamp(base_weight * ECLECTIC_DIVERSITY_FACTOR, 0.0, 1.0)
    return base_weight


def _title_key(candidate: ScoredCandidate) -> str:
    return f"{(candidate.title or '').lower()}|{candidate.candidate.year or 'unknown'}"


def assign_ranks(candidates: Sequence[ScoredCandidate]) -> list[ScoredCandidate]:
    """Rank 1..N by final_base descending; ties keep input order."""
    ranked = sorted(candidates, key=lambda c: -c.final_base)
    for i, candidate in enumerate(ranked, start=1):
        candidate.rank = i
        candidate.selected_rank = None
        candidate.diversity_score = None
    return ranked


def select_diverse(
    candidates: Sequence[ScoredCandidate],
    target_count: int,
    diversity_weight: float,
    use_source_diversity: bool = False,
) -> SelectionResult:
    """
    Pick up to target_count candidates.

    Ties on effective score go to the better-ranked candidate. Items that
    share a title and year with an already selected item are skipped.
    """
    ranked = assign_ranks(candidates)
    remaining = list(ranked)
    selected: list[ScoredCandidate] = []
    selected_genres: Counter = Counter()
    selected_sources: Counter | None = Counter() if use_source_diversity else None
    selected_titles: set[str] = set()

    while len(selected) < target_count and remaining:
        best_index = None
        best_score = float('-inf')
        best_diversity = 0.0

        for index, candidate in enumerate(remaining):
            # effective <= final_base and remaining is in rank order
            if candidate.final_base <= best_score:
                break
            if _title_key(candidate) in selected_titles:
                continue
            diversity = diversity_score(candidate, selected_genres, selected_sources, len(selected))
            effective = (
                (1 - diversity_weight) * candidate.final_base
                + diversity_weight * diversity * candidate.final_base
            )
            if effective > best_score:
                best_index = index
                best_score = effective
                best_diversity = diversity

        if best_index is None:
            # Only duplicates left
            break

        best = remaining.pop(best_index)
        best.diversity_score = best_diversity
        best.selected_rank = len(selected) + 1
        selected.append(best)

        selected_titles.add(_title_key(best))
        selected_genres.update(g.lower() for g in best.genres)
        if selected_sources is not None and best.candidate.source_attribute:
            selected_sources[best.candidate.source_attribute.lower()] += 1

    logger.debug(f"Selected {len(selected)} of {len(ranked)} candidates (diversity weight {diversity_weight})")
    return SelectionResult(ranked=ranked, selected=selected)
