"""
Contracts for the collaborators the recommendation pipeline consumes.

The pipeline only depends on these protocols; ``stores`` provides the
SQLite-backed implementations and tests substitute in-memory fakes.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Protocol, Sequence

import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from .boosts import CustomInterest
    from .candidates import Candidate
    from .pipeline_config import PipelineConfig
    from .scoring import ScoredCandidate
    from .taste import TasteProfile, WatchedItem

Vector = NDArray[np.float64]


class EmbeddingProvider(Protocol):
    def get_active_model_id(self, media_kind: str) -> str | None: ...

    def get_embeddings(self, item_ids: Iterable[str], model_id: str) -> dict[str, Vector]: ...

    def nearest_neighbors(
        self,
        vector: Vector,
        model_id: str,
        media_kind: str,
        limit: int,
        rating_ceiling: int | None = None,
    ) -> list[Candidate]: ...


class TextEmbedder(Protocol):
    model_id: str

    def get_text_embedding(self, text: str) -> Vector: ...


class CatalogStore(Protocol):
    def get_user(self, user_id: str) -> dict | None: ...

    def list_enabled_users(self, media_kind: str) -> list[dict]: ...

    def get_watch_history(self, user_id: str, media_kind: str, limit: int | None = None) -> list[WatchedItem]: ...

    def get_disliked_ids(self, user_id: str, media_kind: str) -> set[str]: ...

    def get_catalog_titles(self, media_kind: str) -> list[dict]: ...


class PreferenceStore(Protocol):
    def get_taste_profile(self, user_id: str, media_kind: str) -> TasteProfile | None: ...

    def save_taste_profile(self, profile: TasteProfile) -> None: ...

    def get_franchise_preferences(self, user_id: str, media_kind: str) -> dict[str, float]: ...

    def save_detected_franchises(self, user_id: str, rows: Sequence[dict]) -> int: ...

    def get_genre_weights(self, user_id: str) -> dict[str, float]: ...

    def save_detected_genre_weights(self, user_id: str, rows: Sequence[dict]) -> int: ...

    def get_custom_interests(self, user_id: str) -> list[CustomInterest]: ...

    def save_interest_embedding(self, interest_id: int, vector: Vector, model_id: str) -> None: ...


class RunStore(Protocol):
    def delete_running_runs(self, user_id: str, media_kind: str) -> int: ...

    def create_run(self, user_id: str, media_kind: str, run_type: str, config: dict) -> int: ...

    def finalize_run(
        self,
        run_id: int,
        candidate_count: int,
        selected_count: int,
        duration_ms: int,
        status: str,
        error_message: str | None = None,
    ) -> None: ...

    def save_candidates(self, run_id: int, rows: Sequence[dict]) -> None: ...

    def save_evidence(self, run_id: int, rows: Sequence[dict]) -> None: ...

    def save_explanations(self, run_id: int, explanations: dict[str, str]) -> None: ...

    def clear_user(self, user_id: str, media_kind: str | None = None) -> int: ...

    def clear_all(self) -> int: ...


class JobProgressTracker(Protocol):
    def report_step(self, job_id: str, step: int, name: str, total: int | None = None) -> None: ...

    def report_progress(self, job_id: str, processed: int, total: int, current: str | None = None) -> None: ...

    def log(self, job_id: str, level: str, message: str) -> None: ...

    def is_cancelled(self, job_id: str) -> bool: ...

    def complete(self, job_id: str, result: dict | None = None) -> None: ...

    def fail(self, job_id: str, error: str) -> None: ...


class ExplanationGenerator(Protocol):
    def generate(
        self,
        user_id: str,
        media_kind: str,
        selected: Sequence[ScoredCandidate],
        evidence: Sequence[dict],
    ) -> dict[str, str]: ...


class ConfigProvider(Protocol):
    def get_config(self, user_id: str, media_kind: str) -> PipelineConfig: ...

    def get_user_override(self, user_id: str, media_kind: str) -> dict: ...
