"""
Multi-factor scoring of retrieved candidates.

Every function here is pure and deterministic: identical inputs always
produce identical scores. Missing data resolves to documented neutral
values instead of raising.
"""
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Sequence

from .candidates import Candidate
from .config import NEUTRAL_NOVELTY_SCORE, NEUTRAL_RATING_SCORE, RATING_SCALE_MAX
from .pipeline_config import PipelineConfig


@dataclass
class ScoredCandidate:
    """A candidate with its sub-scores, boosts and ranks."""

    candidate: Candidate
    similarity_score: float
    novelty_score: float
    rating_score: float
    base_score: float
    franchise_boost: float = 1.0
    genre_boost: float = 1.0
    interest_boost: float = 1.0
    final_base: float | None = None
    diversity_score: float | None = None
    rank: int = 0
    selected_rank: int | None = None
    franchise: str | None = None
    extra: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.final_base is None:
            self.final_base = self.base_score

    @property
    def item_id(self) -> str:
        return self.candidate.item_id

    @property
    def title(self) -> str:
        return self.candidate.title

    @property
    def genres(self) -> list[str]:
        return self.candidate.genres

    @property
    def boost_multiplier(self) -> float:
        return self.franchise_boost * self.genre_boost * self.interest_boost

    @property
    def is_selected(self) -> bool:
        return self.selected_rank is not None

    def score_breakdown(self) -> dict:
        return {
            'similarity': round(self.similarity_score, 4),
            'novelty': round(self.novelty_score, 4),
            'rating': round(self.rating_score, 4),
            'base': round(self.base_score, 4),
            'franchise_boost': round(self.franchise_boost, 4),
            'genre_boost': round(self.genre_boost, 4),
            'interest_boost': round(self.interest_boost, 4),
            'final_base': round(self.final_base, 4),
            'franchise': self.franchise,
        }


def genre_counts(history_genres: Iterable[Iterable[str]]) -> Counter:
    """Genre frequency over a watch history (case-insensitive)."""
    counts: Counter = Counter()
    for genres in history_genres:
        counts.update(g.lower() for g in genres or [])
    return counts


def rating_score(rating: float | None) -> float:
    """Community rating on the 0-10 scale mapped to [0, 1]."""
    if rating is None:
        return NEUTRAL_RATING_SCORE
    try:
        value = float(rating)
    except (TypeError, ValueError):
        return NEUTRAL_RATING_SCORE
    if math.isnan(value) or value < 0 or value > RATING_SCALE_MAX:
        return NEUTRAL_RATING_SCORE
    return value / RATING_SCALE_MAX


def novelty_score(genres: Sequence[str], watched_genre_counts: Counter) -> float:
    """
    1 minus the candidate's average genre familiarity.

    Familiarity of a genre is its watch count relative to the user's most
    watched genre, so never-watched genres score 1 and the dominant genre 0.
    """
    if not genres or not watched_genre_counts:
        return NEUTRAL_NOVELTY_SCORE
    max_count = max(watched_genre_counts.values())
    if max_count <= 0:
        return NEUTRAL_NOVELTY_SCORE
    familiarity = [watched_genre_counts.get(g.lower(), 0) / max_count for g in genres]
    return 1.0 - sum(familiarity) / len(familiarity)


def similarity_score(raw_similarity: float | None) -> float:
    if raw_similarity is None or math.isnan(raw_similarity):
        return 0.0
    return max(0.0, min(1.0, raw_similarity))


def base_score(similarity: float, novelty: float, rating: float, config: PipelineConfig) -> float:
    return (
        config.similarity_weight * similarity
        + config.novelty_weight * novelty
        + config.rating_weight * rating
    )


def score_candidates(
    candidates: Sequence[Candidate],
    watched_genre_counts: Counter,
    config: PipelineConfig,
) -> list[ScoredCandidate]:
    scored = []
    for candidate in candidates:
        sim = similarity_score(candidate.raw_similarity)
        nov = novelty_score(candidate.genres, watched_genre_counts)
        rat = rating_score(candidate.community_rating)
        scored.append(ScoredCandidate(
            candidate=candidate,
            similarity_score=sim,
            novelty_score=nov,
            rating_score=rat,
            base_score=base_score(sim, nov, rat, config),
        ))
    return scored
