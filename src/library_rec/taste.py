"""
Taste profile construction.

A taste profile is the engagement-weighted mean of the embeddings of the
items a user watched recently, L2-normalized, under the active embedding
model. Profiles are stored and reused until they go stale or the active
model changes.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Sequence

import numpy as np

from .config import (
    COMPLETION_BONUS_BASE,
    COMPLETION_BONUS_SCALE,
    FAVORITE_MULTIPLIER,
    PROFILE_REFRESH_DAYS,
)
from .embeddings import average_embeddings
from .interfaces import EmbeddingProvider, PreferenceStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WatchedItem:
    """One entry of a user's watch history."""

    item_id: str
    units_completed: int = 1
    total_units: int | None = None
    is_favorite: bool = False
    last_played_at: datetime | None = None
    play_count: int = 1
    user_rating: float | None = None
    title: str = ''
    genres: tuple[str, ...] = field(default_factory=tuple)
    collection_name: str | None = None

    @property
    def completion_rate(self) -> float | None:
        if not self.total_units or self.total_units <= 0:
            return None
        return max(0.0, min(1.0, self.units_completed / self.total_units))

    @property
    def engagement_weight(self) -> float:
        """
        Completion bonus (0.5 to 2.0, 1.0 when the total is unknown)
        times a favorite multiplier.
        """
        rate = self.completion_rate
        weight = 1.0 if rate is None else COMPLETION_BONUS_BASE + rate * COMPLETION_BONUS_SCALE
        if self.is_favorite:
            weight *= FAVORITE_MULTIPLIER
        return weight


@dataclass
class TasteProfile:
    user_id: str
    media_kind: str
    vector: np.ndarray
    model_id: str
    built_at: datetime
    item_count: int = 0

    def is_stale(self, refresh_days: int = PROFILE_REFRESH_DAYS, now: datetime | None = None) -> bool:
        now = now or datetime.now()
        return now - self.built_at > timedelta(days=refresh_days)


def build_taste_vector(
    watched: Sequence[WatchedItem],
    embeddings: dict[str, np.ndarray],
) -> tuple[np.ndarray | None, int]:
    """
    Weighted mean of the available embeddings.

    Items with no embedding are skipped. Returns (vector, items_used);
    vector is None when no watched item has an embedding.
    """
    vectors = []
    weights = []
    for item in watched:
        vector = embeddings.get(item.item_id)
        if vector is None:
            continue
        vectors.append(vector)
        weights.append(item.engagement_weight)

    if not vectors:
        return None, 0
    return average_embeddings(vectors, weights), len(vectors)


class TasteProfileBuilder:
    """
    Returns a user's taste profile, reusing the stored one when possible.

    ``on_rebuild`` is invoked with (user_id, media_kind) after a fresh build
    so preference detection only runs when the profile actually changed.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        preference_store: PreferenceStore,
        on_rebuild: Callable[[str, str], object] | None = None,
        refresh_days: int = PROFILE_REFRESH_DAYS,
    ):
        self.embedding_provider = embedding_provider
        self.preference_store = preference_store
        self.on_rebuild = on_rebuild
        self.refresh_days = refresh_days

    def get_or_build(
        self,
        user_id: str,
        media_kind: str,
        watched: Sequence[WatchedItem],
        force_rebuild: bool = False,
    ) -> TasteProfile | None:
        model_id = self.embedding_provider.get_active_model_id(media_kind)
        if not model_id:
            logger.warning(f"No active embedding model for {media_kind}; cannot build taste profile")
            return None

        if not force_rebuild:
            stored = self.preference_store.get_taste_profile(user_id, media_kind)
            if stored is not None and stored.model_id == model_id and not stored.is_stale(self.refresh_days):
                logger.debug(f"Reusing stored {media_kind} taste profile for {user_id}")
                return stored

        embeddings = self.embedding_provider.get_embeddings([w.item_id for w in watched], model_id)
        vector, used = build_taste_vector(watched, embeddings)
        if vector is None:
            logger.info(f"No embeddings for any of {len(watched)} watched items of {user_id}")
            return None

        profile = TasteProfile(
            user_id=user_id,
            media_kind=media_kind,
            vector=vector,
            model_id=model_id,
            built_at=datetime.now(),
            item_count=used,
        )
        self.preference_store.save_taste_profile(profile)
        logger.info(f"Built {media_kind} taste profile for {user_id} from {used}/{len(watched)} items")

        if self.on_rebuild is not None:
            try:
                self.on_rebuild(user_id, media_kind)
            except Exception as e:
                logger.warning(f"Preference detection failed for {user_id}: {e}")

        return profile
