import logging
from dataclasses import dataclass, field

import numpy as np

from .interfaces import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    item_id: str
    title: str
    year: int | None = None
    genres: list[str] = field(default_factory=list)
    source_attribute: str | None = None
    raw_similarity: float = 0.0
    community_rating: float | None = None
    collection_name: str | None = None
    content_rating: str | None = None

    def __post_init__(self) -> None:
        if self.genres is None:
            self.genres = []


def build_exclusion_set(
    watched_ids: set[str],
    disliked_ids: set[str],
    include_watched: bool = False,
    dislike_behavior: str = 'exclude',
) -> set[str]:
    """Items that must never be recommended to the user."""
    excluded = set() if include_watched else set(watched_ids)
    if dislike_behavior == 'exclude':
        excluded |= disliked_ids
    return excluded


class CandidateRetriever:
    """Nearest-neighbour retrieval around a taste vector."""

    def __init__(self, embedding_provider: EmbeddingProvider):
        self.embedding_provider = embedding_provider

    def retrieve(
        self,
        vector: np.ndarray,
        exclude_ids: set[str],
        k: int,
        media_kind: str,
        rating_ceiling: int | None = None,
    ) -> list[Candidate]:
        """
        Return up to k unseen candidates ordered by similarity.

        2k neighbours are fetched so that excluding watched items still
        leaves k to choose from.
        """
        model_id = self.embedding_provider.get_active_model_id(media_kind)
        if not model_id:
            logger.warning(f"No active embedding model for {media_kind}; returning no candidates")
            return []

        neighbours = self.embedding_provider.nearest_neighbors(
            vector, model_id, media_kind, limit=k * 2, rating_ceiling=rating_ceiling
        )
        candidates = [c for c in neighbours if c.item_id not in exclude_ids]
        for c in candidates:
            c.raw_similarity = max(0.0, min(1.0, c.raw_similarity))

        logger.debug(
            f"Retrieved {len(neighbours)} neighbours, {len(candidates)} after excluding "
            f"{len(exclude_ids)} items"
        )
        return candidates[:k]
