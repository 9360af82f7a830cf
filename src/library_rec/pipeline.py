"""
Recommendation run orchestration.

One run = one user and one media kind:

    watch history -> taste profile -> candidates -> scores -> boosts
    -> diversity selection -> persistence -> explanations

A run row is created before any work starts and finalized exactly once,
as ``completed`` (including the empty cases and cancellation) or
``failed``. Candidate rows are written only after selection is final.
"""
import logging
import threading
import time
from collections import Counter
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from .boosts import PreferenceBoostEngine
from .candidates import CandidateRetriever, build_exclusion_set
from .config import (
    EVIDENCE_HISTORY_LIMIT,
    EVIDENCE_PER_CANDIDATE,
    PROFILE_REFRESH_DAYS,
    STORED_CANDIDATE_LIMIT,
)
from .embeddings import cosine_distances
from .franchise import FranchiseRules, PreferenceDetector
from .interfaces import (
    CatalogStore,
    ConfigProvider,
    EmbeddingProvider,
    ExplanationGenerator,
    JobProgressTracker,
    PreferenceStore,
    RunStore,
    TextEmbedder,
)
from .pipeline_config import MEDIA_KINDS, PipelineConfig, merge_config
from .scoring import ScoredCandidate, genre_counts, score_candidates
from .selection import adjust_diversity_weight, select_diverse, taste_spread
from .taste import TasteProfileBuilder, WatchedItem

logger = logging.getLogger(__name__)


class RunInProgressError(RuntimeError):
    """Another run for the same user and media kind is still executing."""


class UserNotFoundError(LookupError):
    pass


class RunCancelled(Exception):
    """Raised between stages when the job was asked to stop."""


class RunRegistry:
    """Tracks in-flight runs so a user never has two overlapping runs per media kind."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: set[tuple[str, str]] = set()

    def try_acquire(self, user_id: str, media_kind: str) -> bool:
        with self._lock:
            key = (user_id, media_kind)
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, user_id: str, media_kind: str) -> None:
        with self._lock:
            self._active.discard((user_id, media_kind))

    def is_active(self, user_id: str, media_kind: str) -> bool:
        with self._lock:
            return (user_id, media_kind) in self._active

    @contextmanager
    def hold(self, user_id: str, media_kind: str):
        if not self.try_acquire(user_id, media_kind):
            raise RunInProgressError(f"A {media_kind} run for {user_id} is already in progress")
        try:
            yield
        finally:
            self.release(user_id, media_kind)


@dataclass
class RecommendationResult:
    run_id: int
    recommendations: list[ScoredCandidate] = field(default_factory=list)
    candidate_count: int = 0
    cancelled: bool = False


@dataclass
class BatchResult:
    media_kind: str
    success: int = 0
    failed: int = 0
    total_recommendations: int = 0
    cancelled: bool = False
    job_id: str | None = None
    errors: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'media_kind': self.media_kind,
            'success': self.success,
            'failed': self.failed,
            'total_recommendations': self.total_recommendations,
            'cancelled': self.cancelled,
            'errors': self.errors,
        }


@dataclass
class _RunProgress:
    candidate_count: int = 0
    recommendations: list[ScoredCandidate] = field(default_factory=list)


def evidence_type(item: WatchedItem) -> str:
    if item.is_favorite:
        return 'favorite'
    if item.play_count and item.play_count > 1:
        return 'rewatched'
    return 'watched'


class RecommendationPipeline:
    """
    Runs the recommendation stages for users.

    All collaborators are injected once; ``from_database`` wires the SQLite
    implementations.
    """

    def __init__(
        self,
        embedding_provider: EmbeddingProvider,
        catalog_store: CatalogStore,
        preference_store: PreferenceStore,
        run_store: RunStore,
        config_provider: ConfigProvider,
        job_tracker: JobProgressTracker | None = None,
        explanation_generator: ExplanationGenerator | None = None,
        text_embedder: TextEmbedder | None = None,
        franchise_rules: FranchiseRules | None = None,
        registry: RunRegistry | None = None,
        refresh_days: int = PROFILE_REFRESH_DAYS,
    ):
        self.embedding_provider = embedding_provider
        self.catalog_store = catalog_store
        self.preference_store = preference_store
        self.run_store = run_store
        self.config_provider = config_provider
        self.job_tracker = job_tracker
        self.explanation_generator = explanation_generator
        self.registry = registry or RunRegistry()

        rules = franchise_rules if franchise_rules is not None else FranchiseRules.load()
        self.detector = PreferenceDetector(catalog_store, preference_store, rules)
        self.taste_builder = TasteProfileBuilder(
            embedding_provider, preference_store, on_rebuild=self.detector.detect_all, refresh_days=refresh_days
        )
        self.retriever = CandidateRetriever(embedding_provider)
        self.boost_engine = PreferenceBoostEngine(preference_store, embedding_provider, rules, text_embedder)

    @classmethod
    def from_database(cls, text_embedder: TextEmbedder | None = None, **kwargs) -> 'RecommendationPipeline':
        from .explanations import TemplateExplanationGenerator
        from .jobs import SqliteJobTracker
        from .stores import (
            SqliteCatalogStore,
            SqliteConfigProvider,
            SqliteEmbeddingProvider,
            SqlitePreferenceStore,
            SqliteRunStore,
        )

        kwargs.setdefault('job_tracker', SqliteJobTracker())
        kwargs.setdefault('explanation_generator', TemplateExplanationGenerator())
        return cls(
            embedding_provider=SqliteEmbeddingProvider(),
            catalog_store=SqliteCatalogStore(),
            preference_store=SqlitePreferenceStore(),
            run_store=SqliteRunStore(),
            config_provider=SqliteConfigProvider(),
            text_embedder=text_embedder,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    def generate_for_user(
        self,
        user: dict | str,
        media_kind: str = 'movie',
        config_overrides: dict | None = None,
        job_id: str | None = None,
    ) -> RecommendationResult:
        """Run the full pipeline for one user. Raises RunInProgressError on overlap."""
        user = self._resolve_user(user)
        with self.registry.hold(user['id'], media_kind):
            return self._generate(user, media_kind, config_overrides, job_id)

    def generate_for_all_users(self, job_id: str | None = None, media_kind: str = 'movie') -> BatchResult:
        """
        Generate for every enabled user, one at a time.

        A failing user is logged and counted; the batch carries on. A
        cancellation request stops the batch before the next user.
        """
        result = BatchResult(media_kind=media_kind, job_id=job_id)
        try:
            users = self.catalog_store.list_enabled_users(media_kind)
        except Exception as e:
            logger.error(f"Could not list users for {media_kind} batch: {e}")
            self._job_call('fail', job_id, str(e))
            raise

        total = len(users)
        logger.info(f"Generating {media_kind} recommendations for {total} users")
        self._job_call('report_step', job_id, 1, 'Generating recommendations', total)
        self._job_log(job_id, 'info', f"Generating {media_kind} recommendations for {total} users")

        for index, user in enumerate(users, start=1):
            name = user.get('username') or user['id']
            if self._cancel_requested(job_id):
                result.cancelled = True
                self._job_log(job_id, 'warning', f"Cancelled before {name}")
                break

            try:
                run = self.generate_for_user(user, media_kind, job_id=job_id)
                result.success += 1
                result.total_recommendations += len(run.recommendations)
                self._job_log(job_id, 'info', f"{name}: {len(run.recommendations)} recommendations")
                if run.cancelled:
                    result.cancelled = True
                    break
            except Exception as e:
                result.failed += 1
                result.errors[user['id']] = str(e)
                logger.error(f"Recommendation run failed for {name}: {e}")
                self._job_log(job_id, 'error', f"{name}: {e}")
            finally:
                self._job_call('report_progress', job_id, index, total, name)

        logger.info(
            f"{media_kind} batch finished: {result.success} succeeded, {result.failed} failed, "
            f"{result.total_recommendations} recommendations{' (cancelled)' if result.cancelled else ''}"
        )
        self._job_call('complete', job_id, result.to_dict())
        return result

    def regenerate_for_user(self, user_id: str, media_kind: str = 'movie') -> tuple[int, int]:
        """Delete the user's runs and taste profile for the media kind, then generate afresh."""
        user = self.catalog_store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(f"User not found: {user_id}")

        with self.registry.hold(user_id, media_kind):
            cleared = self.run_store.clear_user(user_id, media_kind)
            logger.info(f"Cleared {cleared} {media_kind} runs for {user_id} before regenerating")
            result = self._generate(user, media_kind, None, None)
        return result.run_id, len(result.recommendations)

    def clear_for_user(self, user_id: str, media_kind: str | None = None) -> int:
        """Delete the user's runs; refuses while any affected run is in progress."""
        kinds = [media_kind] if media_kind else list(MEDIA_KINDS)
        with ExitStack() as stack:
            for kind in kinds:
                stack.enter_context(self.registry.hold(user_id, kind))
            return self.run_store.clear_user(user_id, media_kind)

    def clear_all(self) -> int:
        return self.run_store.clear_all()

    # ------------------------------------------------------------------
    # Run execution
    # ------------------------------------------------------------------

    def _resolve_user(self, user: dict | str) -> dict:
        if isinstance(user, dict):
            return user
        found = self.catalog_store.get_user(user)
        if found is None:
            raise UserNotFoundError(f"User not found: {user}")
        return found

    def _generate(
        self,
        user: dict,
        media_kind: str,
        config_overrides: dict | None,
        job_id: str | None,
    ) -> RecommendationResult:
        user_id = user['id']
        started = time.monotonic()

        stale = self.run_store.delete_running_runs(user_id, media_kind)
        if stale:
            logger.warning(f"Removed {stale} unfinished {media_kind} runs for {user_id}")

        try:
            config = merge_config(self.config_provider.get_config(user_id, media_kind), config_overrides)
        except Exception as e:
            run_id = self.run_store.create_run(user_id, media_kind, 'full', {})
            self.run_store.finalize_run(run_id, 0, 0, _elapsed_ms(started), 'failed', f"Config error: {e}")
            raise

        run_id = self.run_store.create_run(user_id, media_kind, 'full', config.to_dict())
        progress = _RunProgress()
        logger.info(f"Started {media_kind} run {run_id} for {user.get('username') or user_id}")

        try:
            pinned = bool(config_overrides) and config_overrides.get('diversity_weight') is not None
            self._execute(run_id, user, config, job_id, progress, pinned)
        except RunCancelled as stage:
            logger.info(f"Run {run_id} cancelled before {stage}")
            self.run_store.finalize_run(
                run_id, progress.candidate_count, len(progress.recommendations), _elapsed_ms(started), 'completed'
            )
            return RecommendationResult(run_id, progress.recommendations, progress.candidate_count, cancelled=True)
        except Exception as e:
            logger.error(f"Run {run_id} for {user_id} failed: {e}")
            self.run_store.finalize_run(
                run_id, progress.candidate_count, 0, _elapsed_ms(started), 'failed', str(e)
            )
            raise

        self.run_store.finalize_run(
            run_id, progress.candidate_count, len(progress.recommendations), _elapsed_ms(started), 'completed'
        )
        logger.info(
            f"Run {run_id} completed: {len(progress.recommendations)} selected from "
            f"{progress.candidate_count} candidates in {_elapsed_ms(started)}ms"
        )
        return RecommendationResult(run_id, progress.recommendations, progress.candidate_count)

    def _execute(
        self,
        run_id: int,
        user: dict,
        config: PipelineConfig,
        job_id: str | None,
        progress: _RunProgress,
        diversity_pinned: bool = False,
    ) -> None:
        user_id = user['id']
        media_kind = config.media_kind

        recent = self.catalog_store.get_watch_history(user_id, media_kind, limit=config.recent_watch_limit)
        if not recent:
            logger.info(f"No {media_kind} watch history for {user_id}; nothing to recommend")
            return

        self._checkpoint(job_id, 'taste profile')
        profile = self.taste_builder.get_or_build(user_id, media_kind, recent)
        if profile is None:
            logger.info(f"No taste profile for {user_id} ({media_kind}); nothing to recommend")
            return

        self._checkpoint(job_id, 'candidate retrieval')
        history = self.catalog_store.get_watch_history(user_id, media_kind)
        excluded = build_exclusion_set(
            {w.item_id for w in history},
            self.catalog_store.get_disliked_ids(user_id, media_kind),
            include_watched=bool(user.get('include_watched')),
            dislike_behavior=user.get('dislike_behavior') or 'exclude',
        )
        candidates = self.retriever.retrieve(
            profile.vector, excluded, config.max_candidates, media_kind, user.get('max_parental_rating')
        )
        progress.candidate_count = len(candidates)
        if not candidates:
            logger.info(f"No candidates for {user_id} ({media_kind})")
            return

        self._checkpoint(job_id, 'scoring')
        watched_genres = genre_counts(w.genres for w in history)
        scored = score_candidates(candidates, watched_genres, config)
        self.boost_engine.apply(user_id, media_kind, scored, profile.model_id)

        self._checkpoint(job_id, 'selection')
        diversity_weight = config.diversity_weight
        if not diversity_pinned:
            diversity_weight = self._smart_diversity_weight(user_id, config, watched_genres)
        selection = select_diverse(
            scored, config.selected_count, diversity_weight, config.use_source_diversity
        )

        self.run_store.save_candidates(run_id, self._candidate_rows(selection.ranked))
        progress.recommendations = selection.selected

        evidence = self._evidence(
            run_id, selection.selected, history[:EVIDENCE_HISTORY_LIMIT], profile.model_id
        )
        self._explain(run_id, user_id, media_kind, selection.selected, evidence)

    def _smart_diversity_weight(self, user_id: str, config: PipelineConfig, watched_genres: Counter) -> float:
        """
        The configured diversity weight, scaled by how spread the user's
        watched genres are. A weight the user set themselves is used as is;
        any failure falls back to the configured weight.
        """
        base = config.diversity_weight
        try:
            pinned = self.config_provider.get_user_override(user_id, config.media_kind) or {}
            if pinned.get('diversity_weight') is not None:
                return base
            spread = taste_spread(watched_genres)
            adjusted = adjust_diversity_weight(base, spread)
        except Exception as e:
            logger.warning(f"Keeping diversity weight {base} for {user_id}: {e}")
            return base

        if adjusted != base:
            logger.info(
                f"Diversity weight for {user_id} adjusted {base:.3f} -> {adjusted:.3f} "
                f"(genre spread {spread:.2f})"
            )
        return adjusted

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _candidate_rows(ranked: Sequence[ScoredCandidate]) -> list[dict]:
        """Top candidates by rank plus every selected item outside that window."""
        return [
            {
                'item_id': sc.item_id,
                'rank': sc.rank,
                'is_selected': sc.is_selected,
                'selected_rank': sc.selected_rank,
                'final_score': sc.final_base,
                'similarity_score': sc.similarity_score,
                'novelty_score': sc.novelty_score,
                'rating_score': sc.rating_score,
                'diversity_score': sc.diversity_score,
                'franchise_boost': sc.franchise_boost,
                'genre_boost': sc.genre_boost,
                'interest_boost': sc.interest_boost,
                'score_breakdown': sc.score_breakdown(),
            }
            for sc in ranked
            if sc.rank <= STORED_CANDIDATE_LIMIT or sc.is_selected
        ]

    def _evidence(
        self,
        run_id: int,
        selected: Sequence[ScoredCandidate],
        watched: Sequence[WatchedItem],
        model_id: str,
    ) -> list[dict]:
        """Most similar watched items for each selected candidate; failures yield none."""
        if not selected or not watched:
            return []
        try:
            watched_vectors = self.embedding_provider.get_embeddings([w.item_id for w in watched], model_id)
            candidate_vectors = self.embedding_provider.get_embeddings([sc.item_id for sc in selected], model_id)
            usable = [w for w in watched if w.item_id in watched_vectors]
            if not usable:
                return []
            matrix = np.vstack([watched_vectors[w.item_id] for w in usable])

            rows = []
            for sc in selected:
                vector = candidate_vectors.get(sc.item_id)
                if vector is None:
                    continue
                similarities = 1.0 - cosine_distances(vector, matrix)
                for i in np.argsort(-similarities, kind='stable')[:EVIDENCE_PER_CANDIDATE]:
                    rows.append({
                        'candidate_item_id': sc.item_id,
                        'evidence_item_id': usable[i].item_id,
                        'evidence_title': usable[i].title,
                        'similarity': float(similarities[i]),
                        'evidence_type': evidence_type(usable[i]),
                    })
            self.run_store.save_evidence(run_id, rows)
            return rows
        except Exception as e:
            logger.warning(f"Skipping evidence for run {run_id}: {e}")
            return []

    def _explain(
        self,
        run_id: int,
        user_id: str,
        media_kind: str,
        selected: Sequence[ScoredCandidate],
        evidence: Sequence[dict],
    ) -> None:
        if self.explanation_generator is None or not selected:
            return
        try:
            explanations = self.explanation_generator.generate(user_id, media_kind, selected, evidence)
            self.run_store.save_explanations(run_id, explanations)
        except Exception as e:
            logger.warning(f"Explanation generation failed for run {run_id}: {e}")
            return
        for sc in selected:
            if sc.item_id in explanations:
                sc.extra['explanation'] = explanations[sc.item_id]

    # ------------------------------------------------------------------
    # Job tracking
    # ------------------------------------------------------------------

    def _cancel_requested(self, job_id: str | None) -> bool:
        if job_id is None or self.job_tracker is None:
            return False
        return self.job_tracker.is_cancelled(job_id)

    def _checkpoint(self, job_id: str | None, stage: str) -> None:
        if self._cancel_requested(job_id):
            raise RunCancelled(stage)

    def _job_call(self, method: str, job_id: str | None, *args) -> None:
        if job_id is None or self.job_tracker is None:
            return
        getattr(self.job_tracker, method)(job_id, *args)

    def _job_log(self, job_id: str | None, level: str, message: str) -> None:
        self._job_call('log', job_id, level, message)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
