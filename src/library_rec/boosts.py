"""
Preference boosts applied on top of the base score.

    final_base = base_score * franchise_boost * genre_boost * interest_boost

Each boost is a pure function of the user's stored preferences and the
candidate, and defaults to a neutral 1.0 when there is no data.
"""
import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .config import (
    FRANCHISE_BOOST_FACTOR,
    GENRE_WEIGHT_MAX,
    GENRE_WEIGHT_MIN,
    INTEREST_BOOST_MAX,
    INTEREST_BOOST_TOP_K,
    INTEREST_SIMILARITY_THRESHOLD,
)
from .embeddings import cosine_similarity
from .franchise import FranchiseRules
from .interfaces import EmbeddingProvider, PreferenceStore, TextEmbedder
from .scoring import ScoredCandidate
from .utils import clamp

logger = logging.getLogger(__name__)


@dataclass
class CustomInterest:
    interest_id: int
    user_id: str
    text: str
    embedding: np.ndarray | None = None
    model_id: str | None = None
    weight: float = 1.0


def franchise_boost(preferences: dict[str, float], franchise: str | None) -> float:
    """1 + 0.5 * preference score, so [-1, 1] maps onto [0.5, 1.5]."""
    if not franchise:
        return 1.0
    score = preferences.get(franchise.lower())
    if score is None:
        return 1.0
    return 1.0 + clamp(score, -1.0, 1.0) * FRANCHISE_BOOST_FACTOR


def genre_boost(weights: dict[str, float], genres: Sequence[str]) -> float:
    """
    0.5 + half the mean weight of the candidate's weighted genres.

    Genres without a stored weight are ignored; no match at all is neutral.
    """
    matched = [weights[g.lower()] for g in genres or [] if g.lower() in weights]
    if not matched:
        return 1.0
    avg = clamp(sum(matched) / len(matched), GENRE_WEIGHT_MIN, GENRE_WEIGHT_MAX)
    return clamp(0.5 + avg * 0.5, GENRE_WEIGHT_MIN, GENRE_WEIGHT_MAX)


def interest_boost(similarity: float, weight: float = 1.0) -> float:
    """
    Boost for one interest given the candidate/interest cosine similarity.

    Below the similarity threshold the boost is neutral; above it the boost
    grows linearly up to 1 + INTEREST_BOOST_MAX * weight at similarity 1.
    """
    strength = clamp(
        (similarity - INTEREST_SIMILARITY_THRESHOLD) / (1.0 - INTEREST_SIMILARITY_THRESHOLD), 0.0, 1.0
    )
    return 1.0 + INTEREST_BOOST_MAX * clamp(weight, 0.0, 2.0) * strength


class PreferenceBoostEngine:
    def __init__(
        self,
        preference_store: PreferenceStore,
        embedding_provider: EmbeddingProvider,
        rules: FranchiseRules,
        text_embedder: TextEmbedder | None = None,
        interest_top_k: int = INTEREST_BOOST_TOP_K,
    ):
        self.preference_store = preference_store
        self.embedding_provider = embedding_provider
        self.rules = rules
        self.text_embedder = text_embedder
        self.interest_top_k = interest_top_k

    def apply(
        self,
        user_id: str,
        media_kind: str,
        scored: list[ScoredCandidate],
        model_id: str,
    ) -> list[ScoredCandidate]:
        """Fill in boosts and final_base on each candidate in place."""
        try:
            franchise_prefs = self.preference_store.get_franchise_preferences(user_id, media_kind)
        except Exception as e:
            logger.warning(f"Franchise preferences unavailable for {user_id}: {e}")
            franchise_prefs = {}
        try:
            genre_weights = self.preference_store.get_genre_weights(user_id)
        except Exception as e:
            logger.warning(f"Genre weights unavailable for {user_id}: {e}")
            genre_weights = {}
        interest_boosts = self._interest_boosts(user_id, scored, model_id)

        for sc in scored:
            sc.franchise = self.rules.franchise_of(sc.candidate.title, sc.candidate.collection_name)
            sc.franchise_boost = franchise_boost(franchise_prefs, sc.franchise)
            sc.genre_boost = genre_boost(genre_weights, sc.genres)
            sc.interest_boost = interest_boosts.get(sc.item_id, 1.0)
            sc.final_base = max(0.0, sc.base_score * sc.boost_multiplier)

        boosted = sum(1 for sc in scored if sc.boost_multiplier != 1.0)
        logger.debug(
            f"Applied preference boosts for {user_id}: {len(franchise_prefs)} franchises, "
            f"{len(genre_weights)} genres, {len(interest_boosts)} interest matches, {boosted} boosted"
        )
        return scored

    def _interest_boosts(self, user_id: str, scored: Sequence[ScoredCandidate], model_id: str) -> dict[str, float]:
        """Interest boosts for the top slice by base score; failures yield no boosts."""
        try:
            interests = self._interest_vectors(user_id, model_id)
            if not interests:
                return {}

            order = sorted(range(len(scored)), key=lambda i: (-scored[i].base_score, i))
            top_ids = [scored[i].item_id for i in order[:self.interest_top_k]]
            embeddings = self.embedding_provider.get_embeddings(top_ids, model_id)
        except Exception as e:
            logger.warning(f"Custom interest boost skipped for {user_id}: {e}")
            return {}

        boosts = {}
        for item_id in top_ids:
            vector = embeddings.get(item_id)
            if vector is None:
                continue
            best = max(
                interest_boost(cosine_similarity(vector, interest_vector), weight)
                for interest_vector, weight in interests
            )
            if best > 1.0:
                boosts[item_id] = best
        return boosts

    def _interest_vectors(self, user_id: str, model_id: str) -> list[tuple[np.ndarray, float]]:
        vectors = []
        for interest in self.preference_store.get_custom_interests(user_id):
            vector = interest.embedding if interest.model_id == model_id else None
            if vector is None:
                vector = self._embed_interest(interest, model_id)
            if vector is not None:
                vectors.append((vector, interest.weight))
        return vectors

    def _embed_interest(self, interest: CustomInterest, model_id: str) -> np.ndarray | None:
        if self.text_embedder is None or self.text_embedder.model_id != model_id:
            logger.debug(f"No embedder for model {model_id}; skipping interest '{interest.text}'")
            return None
        try:
            vector = self.text_embedder.get_text_embedding(interest.text)
        except Exception as e:
            logger.warning(f"Could not embed interest '{interest.text}': {e}")
            return None
        self.preference_store.save_interest_embedding(interest.interest_id, vector, model_id)
        return vector
