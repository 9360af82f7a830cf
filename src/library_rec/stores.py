"""SQLite-backed implementations of the pipeline's collaborator protocols."""
import logging
from typing import Iterable, Sequence

import numpy as np

from . import database
from .boosts import CustomInterest
from .candidates import Candidate
from .config import MOVIE_RATINGS_BY_AGE, TV_RATINGS_BY_AGE
from .embeddings import cosine_distances
from .pipeline_config import PipelineConfig, default_config, merge_config
from .taste import TasteProfile, WatchedItem

logger = logging.getLogger(__name__)

ACTIVE_MODEL_KEY = "active_embedding_model:{media_kind}"


def allowed_content_ratings(rating_ceiling: int | None) -> list[str] | None:
    """Certificates suitable at or below an age ceiling; None means unrestricted."""
    if rating_ceiling is None:
        return None
    allowed = []
    for table in (MOVIE_RATINGS_BY_AGE, TV_RATINGS_BY_AGE):
        for min_age, ratings in table:
            if min_age <= rating_ceiling:
                allowed.extend(ratings)
    return allowed


class SqliteEmbeddingProvider:
    def get_active_model_id(self, media_kind: str) -> str | None:
        return database.get_setting(ACTIVE_MODEL_KEY.format(media_kind=media_kind))

    def set_active_model_id(self, media_kind: str, model_id: str) -> None:
        database.set_setting(ACTIVE_MODEL_KEY.format(media_kind=media_kind), model_id)
        logger.info(f"Active {media_kind} embedding model set to {model_id}")

    def get_embeddings(self, item_ids: Iterable[str], model_id: str) -> dict[str, np.ndarray]:
        return database.load_item_embeddings(item_ids, model_id)

    def nearest_neighbors(
        self,
        vector: np.ndarray,
        model_id: str,
        media_kind: str,
        limit: int,
        rating_ceiling: int | None = None,
    ) -> list[Candidate]:
        items, matrix = database.load_embedding_matrix(
            model_id, media_kind, allowed_content_ratings(rating_ceiling)
        )
        if not items:
            return []
        if matrix.shape[1] != len(vector):
            raise ValueError(
                f"Taste vector has dimension {len(vector)} but {model_id} embeddings have {matrix.shape[1]}"
            )

        distances = cosine_distances(np.asarray(vector, dtype=np.float64), matrix)
        order = np.argsort(distances, kind='stable')[:limit]
        return [
            Candidate(
                item_id=items[i]['id'],
                title=items[i]['title'],
                year=items[i]['year'],
                genres=items[i]['genres'],
                source_attribute=items[i]['source_attribute'],
                raw_similarity=float(min(1.0, max(0.0, 1.0 - distances[i]))),
                community_rating=items[i]['community_rating'],
                collection_name=items[i]['collection_name'],
                content_rating=items[i]['content_rating'],
            )
            for i in order
        ]


def _watched_item(row: dict) -> WatchedItem:
    last_played = None
    if row.get('last_played_at'):
        try:
            last_played = database.parse_timestamp_naive(row['last_played_at'])
        except ValueError:
            logger.debug(f"Unparseable last_played_at for {row['item_id']}: {row['last_played_at']}")
    return WatchedItem(
        item_id=row['item_id'],
        units_completed=row.get('units_completed') or 0,
        total_units=row.get('total_units'),
        is_favorite=bool(row.get('is_favorite')),
        last_played_at=last_played,
        play_count=row.get('play_count') or 0,
        user_rating=row.get('user_rating'),
        title=row.get('title') or '',
        genres=tuple(row.get('genres') or ()),
        collection_name=row.get('collection_name'),
    )


def _user(row: dict | None) -> dict | None:
    if row is None:
        return None
    user = dict(row)
    for flag in ('is_enabled', 'movies_enabled', 'series_enabled', 'include_watched'):
        user[flag] = bool(user.get(flag))
    user['dislike_behavior'] = user.get('dislike_behavior') or 'exclude'
    return user


class SqliteCatalogStore:
    def get_user(self, user_id: str) -> dict | None:
        return _user(database.get_user(user_id))

    def list_enabled_users(self, media_kind: str) -> list[dict]:
        return [_user(u) for u in database.list_enabled_users(media_kind)]

    def get_watch_history(self, user_id: str, media_kind: str, limit: int | None = None) -> list[WatchedItem]:
        return [_watched_item(r) for r in database.load_watch_history(user_id, media_kind, limit)]

    def get_disliked_ids(self, user_id: str, media_kind: str) -> set[str]:
        return database.load_disliked_ids(user_id, media_kind)

    def get_catalog_titles(self, media_kind: str) -> list[dict]:
        return database.load_catalog_titles(media_kind)


class SqlitePreferenceStore:
    def get_taste_profile(self, user_id: str, media_kind: str) -> TasteProfile | None:
        row = database.load_taste_profile(user_id, media_kind)
        if row is None or row['vector'] is None:
            return None
        return TasteProfile(
            user_id=row['user_id'],
            media_kind=row['media_kind'],
            vector=row['vector'],
            model_id=row['model_id'],
            built_at=row['built_at'],
            item_count=row['item_count'] or 0,
        )

    def save_taste_profile(self, profile: TasteProfile) -> None:
        database.save_taste_profile(
            profile.user_id, profile.media_kind, profile.vector, profile.model_id, profile.item_count
        )

    def get_franchise_preferences(self, user_id: str, media_kind: str) -> dict[str, float]:
        """Preference score per lower-cased franchise; kind-specific rows win over 'both'."""
        rows = database.load_franchise_preferences(user_id, media_kind)
        prefs: dict[str, float] = {}
        for row in sorted(rows, key=lambda r: r['media_kind'] != 'both'):
            prefs[row['franchise_name'].lower()] = row['preference_score']
        return prefs

    def list_franchise_preferences(self, user_id: str, media_kind: str | None = None) -> list[dict]:
        return database.load_franchise_preferences(user_id, media_kind)

    def save_detected_franchises(self, user_id: str, rows: Sequence[dict]) -> int:
        return database.upsert_detected_franchises(user_id, list(rows))

    def get_genre_weights(self, user_id: str) -> dict[str, float]:
        return {row['genre'].lower(): row['weight'] for row in database.load_genre_weights(user_id)}

    def save_detected_genre_weights(self, user_id: str, rows: Sequence[dict]) -> int:
        return database.upsert_detected_genre_weights(user_id, list(rows))

    def get_custom_interests(self, user_id: str) -> list[CustomInterest]:
        return [
            CustomInterest(
                interest_id=row['id'],
                user_id=row['user_id'],
                text=row['interest_text'],
                embedding=row['embedding'],
                model_id=row['model_id'],
                weight=row['weight'] if row['weight'] is not None else 1.0,
            )
            for row in database.load_custom_interests(user_id)
        ]

    def save_interest_embedding(self, interest_id: int, vector: np.ndarray, model_id: str) -> None:
        database.update_interest_embedding(interest_id, vector, model_id)


class SqliteRunStore:
    def delete_running_runs(self, user_id: str, media_kind: str) -> int:
        return database.delete_running_runs(user_id, media_kind)

    def create_run(self, user_id: str, media_kind: str, run_type: str, config: dict) -> int:
        return database.create_run(user_id, media_kind, run_type, config)

    def finalize_run(
        self,
        run_id: int,
        candidate_count: int,
        selected_count: int,
        duration_ms: int,
        status: str,
        error_message: str | None = None,
    ) -> None:
        database.finalize_run(run_id, candidate_count, selected_count, duration_ms, status, error_message)

    def save_candidates(self, run_id: int, rows: Sequence[dict]) -> None:
        database.save_candidates(run_id, list(rows))

    def save_evidence(self, run_id: int, rows: Sequence[dict]) -> None:
        database.save_evidence(run_id, list(rows))

    def save_explanations(self, run_id: int, explanations: dict[str, str]) -> None:
        database.save_explanations(run_id, explanations)

    def clear_user(self, user_id: str, media_kind: str | None = None) -> int:
        return database.clear_user_recommendations(user_id, media_kind)

    def clear_all(self) -> int:
        return database.clear_all_recommendations()


class SqliteConfigProvider:
    """hardcoded default < admin default (recommendation_config) < user override."""

    def get_config(self, user_id: str, media_kind: str) -> PipelineConfig:
        return merge_config(
            default_config(media_kind),
            database.load_admin_config(media_kind),
            database.load_user_config_override(user_id, media_kind),
        )

    def get_user_override(self, user_id: str, media_kind: str) -> dict:
        """Settings the user pinned for themselves, without admin or default layers."""
        return database.load_user_config_override(user_id, media_kind)
