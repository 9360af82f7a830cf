"""
Franchise and genre preference detection.

Franchises come from an item's collection name, or failing that from an
ordered table of title patterns where the first match wins. The pattern
table is data: it ships as ``data/franchise_rules.json`` and can be
replaced through ``LIBRARY_REC_FRANCHISE_RULES``.

Detection aggregates a user's watch history into per-franchise and
per-genre statistics and turns them into a franchise preference score in
[-1, 1] and a genre weight in [0, 2]. Rows a user set by hand are never
overwritten.
"""
from __future__ import annotations

import json
import logging
import re
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Sequence

from .config import (
    FRANCHISE_COMPLETION_WEIGHT,
    FRANCHISE_HIGH_ENGAGEMENT_BONUS,
    FRANCHISE_MODERATE_ENGAGEMENT_BONUS,
    FRANCHISE_RATING_WEIGHT,
    FRANCHISE_RULES_PATH,
    GENRE_FAVORITE_BONUS,
    GENRE_RATING_WEIGHT,
    GENRE_RELATIVE_MAX,
    GENRE_RELATIVE_MIN,
    GENRE_WEIGHT_FLOOR,
    GENRE_WEIGHT_MAX,
    GENRE_WEIGHT_MIN,
    GENRE_WEIGHT_SLOPE,
    HIGH_ENGAGEMENT_THRESHOLD,
)
from .interfaces import CatalogStore, PreferenceStore
from .taste import WatchedItem
from .utils import clamp

logger = logging.getLogger(__name__)

DETECTION_MODES = ('reset', 'merge')


@dataclass(frozen=True)
class FranchiseRule:
    pattern: re.Pattern
    franchise: str


class FranchiseRules:
    """Ordered (pattern, franchise) table; first match wins."""

    def __init__(self, rules: Iterable[FranchiseRule]):
        self.rules = list(rules)

    @classmethod
    def from_dicts(cls, payload: Sequence[dict]) -> FranchiseRules:
        rules = []
        for entry in payload:
            try:
                rules.append(FranchiseRule(re.compile(entry['pattern'], re.IGNORECASE), entry['franchise']))
            except (KeyError, re.error) as e:
                raise ValueError(f"Invalid franchise rule {entry!r}: {e}") from e
        return cls(rules)

    @classmethod
    def load(cls, path: str | Path | None = None) -> FranchiseRules:
        rules_path = Path(path) if path else FRANCHISE_RULES_PATH
        payload = json.loads(rules_path.read_text(encoding='utf-8'))
        logger.debug(f"Loaded {len(payload)} franchise rules from {rules_path}")
        return cls.from_dicts(payload)

    def match(self, title: str | None) -> str | None:
        if not title:
            return None
        for rule in self.rules:
            if rule.pattern.search(title):
                return rule.franchise
        return None

    def franchise_of(self, title: str | None, collection_name: str | None = None) -> str | None:
        return collection_name or self.match(title)

    def __len__(self) -> int:
        return len(self.rules)


@dataclass
class FranchiseStats:
    franchise_name: str
    items_watched: int = 0
    total_engagement: int = 0
    total_in_library: int = 0
    ratings: list[float] = field(default_factory=list)
    has_high_engagement: bool = False

    @property
    def avg_rating(self) -> float | None:
        return sum(self.ratings) / len(self.ratings) if self.ratings else None


@dataclass
class GenreStats:
    genre: str
    items_watched: int = 0
    total_engagement: int = 0
    ratings: list[float] = field(default_factory=list)
    favorites: int = 0

    @property
    def avg_rating(self) -> float | None:
        return sum(self.ratings) / len(self.ratings) if self.ratings else None


@dataclass
class DetectionResult:
    updated: int = 0
    new_items: list[str] = field(default_factory=list)


def normalize_user_rating(rating: float) -> float:
    """User ratings above 5 are taken to be on a 10-point scale, else 5-point."""
    return rating / 10 if rating > 5 else rating / 5


def item_engagement(item: WatchedItem, media_kind: str) -> int:
    """Play count for movies, episodes watched for series."""
    if media_kind == 'series':
        return item.units_completed or 0
    return item.play_count or 1


def preference_score(stats: FranchiseStats) -> float:
    completion = stats.items_watched / max(stats.total_in_library, 1)
    score = completion * FRANCHISE_COMPLETION_WEIGHT

    if stats.has_high_engagement:
        score += FRANCHISE_HIGH_ENGAGEMENT_BONUS
    elif stats.total_engagement >= 2:
        score += FRANCHISE_MODERATE_ENGAGEMENT_BONUS

    if stats.avg_rating is not None:
        score += (normalize_user_rating(stats.avg_rating) - 0.5) * FRANCHISE_RATING_WEIGHT

    return clamp(score, -1.0, 1.0)


def genre_weight(stats: GenreStats, all_stats: Sequence[GenreStats]) -> float:
    if not all_stats:
        return 1.0

    avg_engagement = sum(s.total_engagement for s in all_stats) / len(all_stats)
    weight = 1.0
    if avg_engagement > 0:
        relative = clamp(stats.total_engagement / avg_engagement, GENRE_RELATIVE_MIN, GENRE_RELATIVE_MAX)
        weight = GENRE_WEIGHT_FLOOR + (relative - GENRE_RELATIVE_MIN) * GENRE_WEIGHT_SLOPE

    if stats.avg_rating is not None:
        weight += (normalize_user_rating(stats.avg_rating) - 0.5) * GENRE_RATING_WEIGHT

    if stats.favorites > 0:
        weight += GENRE_FAVORITE_BONUS

    return clamp(weight, GENRE_WEIGHT_MIN, GENRE_WEIGHT_MAX)


def library_franchise_totals(rules: FranchiseRules, catalog: Iterable[dict]) -> dict[str, int]:
    """Number of catalog items belonging to each franchise."""
    totals: dict[str, int] = defaultdict(int)
    for item in catalog:
        franchise = rules.franchise_of(item.get('title'), item.get('collection_name'))
        if franchise:
            totals[franchise] += 1
    return dict(totals)


def aggregate_franchises(
    watched: Iterable[WatchedItem],
    media_kind: str,
    rules: FranchiseRules,
    library_totals: dict[str, int],
) -> list[FranchiseStats]:
    by_name: dict[str, FranchiseStats] = {}
    for item in watched:
        name = rules.franchise_of(item.title, item.collection_name)
        if not name:
            continue
        stats = by_name.setdefault(name, FranchiseStats(franchise_name=name))
        stats.items_watched += 1
        stats.total_engagement += item_engagement(item, media_kind)
        if item.user_rating:
            stats.ratings.append(item.user_rating)

    threshold = HIGH_ENGAGEMENT_THRESHOLD.get(media_kind, HIGH_ENGAGEMENT_THRESHOLD['movie'])
    for stats in by_name.values():
        stats.total_in_library = library_totals.get(stats.franchise_name) or stats.items_watched
        stats.has_high_engagement = stats.total_engagement >= threshold

    return sorted(by_name.values(), key=lambda s: (-s.total_engagement, s.franchise_name))


def aggregate_genres(watched: Iterable[WatchedItem], media_kind: str) -> list[GenreStats]:
    by_genre: dict[str, GenreStats] = {}
    for item in watched:
        engagement = item_engagement(item, media_kind) or 1
        for genre in item.genres:
            if not genre:
                continue
            stats = by_genre.setdefault(genre, GenreStats(genre=genre))
            stats.items_watched += 1
            stats.total_engagement += engagement
            if item.user_rating:
                stats.ratings.append(item.user_rating)
            if item.is_favorite:
                stats.favorites += 1
    return sorted(by_genre.values(), key=lambda s: (-s.total_engagement, s.genre))


class PreferenceDetector:
    """Detects franchise preferences and genre weights from watch history."""

    def __init__(
        self,
        catalog_store: CatalogStore,
        preference_store: PreferenceStore,
        rules: FranchiseRules | None = None,
    ):
        self.catalog_store = catalog_store
        self.preference_store = preference_store
        self.rules = rules if rules is not None else FranchiseRules.load()

    def detect_franchises(self, user_id: str, media_kind: str, mode: str = 'reset') -> DetectionResult:
        if mode not in DETECTION_MODES:
            raise ValueError(f"mode must be one of {DETECTION_MODES}")

        watched = self.catalog_store.get_watch_history(user_id, media_kind)
        totals = library_franchise_totals(self.rules, self.catalog_store.get_catalog_titles(media_kind))
        stats = aggregate_franchises(watched, media_kind, self.rules, totals)
        if not stats:
            logger.info(f"No franchises detected for {user_id} ({media_kind})")
            return DetectionResult()

        rows = [{
            'franchise_name': s.franchise_name,
            'media_kind': media_kind,
            'preference_score': preference_score(s),
            'items_watched': s.items_watched,
            'total_engagement': s.total_engagement,
        } for s in stats]

        if mode == 'merge':
            existing = self.preference_store.get_franchise_preferences(user_id, media_kind)
            rows = [r for r in rows if r['franchise_name'].lower() not in existing]
        new_items = [r['franchise_name'] for r in rows]

        updated = self.preference_store.save_detected_franchises(user_id, rows) if rows else 0
        logger.info(
            f"Detected {len(stats)} franchises for {user_id} ({media_kind}, {mode}): "
            f"updated {updated}, new {len(new_items)}"
        )
        return DetectionResult(updated=updated, new_items=new_items)

    def detect_genres(self, user_id: str, media_kind: str, mode: str = 'reset') -> DetectionResult:
        if mode not in DETECTION_MODES:
            raise ValueError(f"mode must be one of {DETECTION_MODES}")

        watched = self.catalog_store.get_watch_history(user_id, media_kind)
        stats = aggregate_genres(watched, media_kind)
        if not stats:
            logger.info(f"No genres detected for {user_id} ({media_kind})")
            return DetectionResult()

        rows = [{'genre': s.genre, 'weight': genre_weight(s, stats)} for s in stats]

        if mode == 'merge':
            existing = self.preference_store.get_genre_weights(user_id)
            rows = [r for r in rows if r['genre'].lower() not in existing]
        new_items = [r['genre'] for r in rows]

        updated = self.preference_store.save_detected_genre_weights(user_id, rows) if rows else 0
        logger.info(
            f"Detected {len(stats)} genres for {user_id} ({media_kind}, {mode}): "
            f"updated {updated}, new {len(new_items)}"
        )
        return DetectionResult(updated=updated, new_items=new_items)

    def detect_all(self, user_id: str, media_kind: str, mode: str = 'reset') -> tuple[DetectionResult, DetectionResult]:
        return (
            self.detect_franchises(user_id, media_kind, mode),
            self.detect_genres(user_id, media_kind, mode),
        )
