"""
Configuration constants for the media library recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("LIBRARY_REC_DB", "data/library.db"))

# Embedding service (OpenAI-compatible /embeddings endpoint)
EMBEDDING_MODEL = os.environ.get("LIBRARY_REC_EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_URL = os.environ.get("LIBRARY_REC_EMBEDDING_URL", "")
EMBEDDING_API_KEY = os.environ.get("LIBRARY_REC_EMBEDDING_API_KEY", "")
HTTP_TIMEOUT = _get_float_env("LIBRARY_REC_HTTP_TIMEOUT", 30.0, min_val=1.0)
MAX_HTTP_RETRIES = 3

# Taste profiles older than this are rebuilt on the next run
PROFILE_REFRESH_DAYS = _get_int_env("LIBRARY_REC_PROFILE_REFRESH_DAYS", 7, min_val=1)

# Engagement weighting
COMPLETION_BONUS_BASE = 0.5
COMPLETION_BONUS_SCALE = 1.5   # full completion -> 2.0
FAVORITE_MULTIPLIER = 1.5

# Neutral values for missing signals
NEUTRAL_RATING_SCORE = 0.5
NEUTRAL_NOVELTY_SCORE = 0.5
NEUTRAL_DIVERSITY_SCORE = 0.5
RATING_SCALE_MAX = 10.0

# Diversity blend when source (network/studio) diversity is enabled
DIVERSITY_GENRE_SHARE = 0.6
DIVERSITY_SOURCE_SHARE = 0.4

# Diversity weight adapts to how spread a user's watched genres are
FOCUSED_TASTE_THRESHOLD = 0.3
ECLECTIC_TASTE_THRESHOLD = 0.6
FOCUSED_DIVERSITY_FACTOR = 0.7
ECLECTIC_DIVERSITY_FACTOR = 1.2

# Franchise preference
FRANCHISE_BOOST_FACTOR = 0.5          # boost = 1 + score * factor
FRANCHISE_COMPLETION_WEIGHT = 0.4
FRANCHISE_HIGH_ENGAGEMENT_BONUS = 0.3
FRANCHISE_MODERATE_ENGAGEMENT_BONUS = 0.15
FRANCHISE_RATING_WEIGHT = 0.6
HIGH_ENGAGEMENT_THRESHOLD = {
    'movie': 3,     # rewatches
    'series': 50,   # episodes
}
FRANCHISE_RULES_PATH = Path(
    os.environ.get(
        "LIBRARY_REC_FRANCHISE_RULES",
        str(Path(__file__).parent / "data" / "franchise_rules.json"),
    )
)

# Genre weights
GENRE_WEIGHT_MIN = 0.0
GENRE_WEIGHT_MAX = 2.0
GENRE_RELATIVE_MIN = 0.5
GENRE_RELATIVE_MAX = 2.0
GENRE_WEIGHT_FLOOR = 0.8
GENRE_WEIGHT_SLOPE = 0.4
GENRE_RATING_WEIGHT = 0.6
GENRE_FAVORITE_BONUS = 0.2

# Custom interest boost
INTEREST_BOOST_TOP_K = _get_int_env("LIBRARY_REC_INTEREST_TOP_K", 100, min_val=1)
INTEREST_BOOST_MAX = 0.3
INTEREST_SIMILARITY_THRESHOLD = 0.5

# Persistence limits
STORED_CANDIDATE_LIMIT = 100
EVIDENCE_PER_CANDIDATE = 3
EVIDENCE_HISTORY_LIMIT = 200

# Content ratings permitted at or below a parental age ceiling
MOVIE_RATINGS_BY_AGE = [
    (0, ['G']),
    (7, ['PG']),
    (13, ['PG-13']),
    (17, ['R']),
    (18, ['NC-17']),
]
TV_RATINGS_BY_AGE = [
    (0, ['TV-Y', 'TV-Y7', 'TV-G']),
    (7, ['TV-PG']),
    (14, ['TV-14']),
    (18, ['TV-MA']),
]

# CLI
IMPORT_CHUNK_SIZE = 1000
