import sqlite3
import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

import numpy as np

from .config import DB_PATH

logger = logging.getLogger(__name__)


def parse_timestamp_naive(timestamp_str: str) -> datetime:
    """
    Parse ISO format timestamp string to naive datetime.

    Ensures consistency by always returning naive datetime regardless of
    whether the stored timestamp had timezone info.
    """
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def encode_vector(vector) -> bytes:
    """Serialize an embedding as little-endian float32 bytes."""
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(blob: bytes | None) -> np.ndarray | None:
    if not blob:
        return None
    return np.frombuffer(blob, dtype=np.float32).astype(np.float64)


_PRAGMAS = (
    "PRAGMA busy_timeout = 5000",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
)


class ConnectionPool:
    """
    Lazily opened SQLite connections, one per thread.

    Each thread also keeps its get_db() nesting depth so that only the
    outermost block commits or rolls back.
    """

    def __init__(self, db_path):
        self._db_path = db_path
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: list[sqlite3.Connection] = []

    def get_connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, 'conn', None)
        if conn is None:
            conn = sqlite3.connect(self._db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            for pragma in _PRAGMAS:
                conn.execute(pragma)
            self._local.conn = conn
            self._local.depth = 0
            with self._lock:
                self._opened.append(conn)
            logger.debug(f"Opened {self._db_path} for thread {threading.get_ident()}")
        return conn

    def enter(self) -> bool:
        """Open one get_db() level; True when it is the outermost."""
        depth = getattr(self._local, 'depth', 0)
        self._local.depth = depth + 1
        return depth == 0

    def leave(self) -> None:
        self._local.depth = max(0, getattr(self._local, 'depth', 1) - 1)

    def close_all(self) -> None:
        with self._lock:
            for conn in self._opened:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing database connection: {e}")
            count = len(self._opened)
            self._opened.clear()
        logger.debug(f"Closed {count} database connections")


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                username TEXT,
                is_enabled INTEGER DEFAULT 1,
                movies_enabled INTEGER DEFAULT 1,
                series_enabled INTEGER DEFAULT 1,
                max_parental_rating INTEGER,        -- age ceiling, NULL = unrestricted
                include_watched INTEGER DEFAULT 0,
                dislike_behavior TEXT DEFAULT 'exclude',
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS items (
                id TEXT PRIMARY KEY,
                media_kind TEXT NOT NULL,           -- 'movie' | 'series'
                title TEXT NOT NULL,
                year INTEGER,
                genres TEXT,                        -- JSON list
                source_attribute TEXT,              -- network (series) or studio (movies)
                collection_name TEXT,
                community_rating REAL,              -- 0-10
                content_rating TEXT,
                total_units INTEGER                 -- episode count for series
            );

            CREATE TABLE IF NOT EXISTS item_embeddings (
                item_id TEXT NOT NULL,
                model_id TEXT NOT NULL,
                vector BLOB NOT NULL,               -- float32
                PRIMARY KEY (item_id, model_id)
            );

            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS watch_history (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                units_completed INTEGER DEFAULT 1,  -- episodes watched for series
                play_count INTEGER DEFAULT 1,
                is_favorite INTEGER DEFAULT 0,
                last_played_at TEXT,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS user_ratings (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                rating REAL NOT NULL,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS disliked_items (
                user_id TEXT NOT NULL,
                item_id TEXT NOT NULL,
                created_at TEXT,
                PRIMARY KEY (user_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS taste_profiles (
                user_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                vector BLOB NOT NULL,
                model_id TEXT NOT NULL,
                item_count INTEGER DEFAULT 0,
                built_at TEXT NOT NULL,
                PRIMARY KEY (user_id, media_kind)
            );

            -- Copy kept for readers of the pre-split profile layout
            CREATE TABLE IF NOT EXISTS legacy_taste_profiles (
                user_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                vector BLOB NOT NULL,
                model_id TEXT NOT NULL,
                item_count INTEGER DEFAULT 0,
                built_at TEXT NOT NULL,
                PRIMARY KEY (user_id, media_kind)
            );

            CREATE TABLE IF NOT EXISTS franchise_preferences (
                user_id TEXT NOT NULL,
                franchise_name TEXT NOT NULL,
                media_kind TEXT NOT NULL,           -- 'movie' | 'series' | 'both'
                preference_score REAL NOT NULL,     -- -1 to 1
                is_user_set INTEGER DEFAULT 0,
                items_watched INTEGER DEFAULT 0,
                total_engagement INTEGER DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (user_id, franchise_name, media_kind)
            );

            CREATE TABLE IF NOT EXISTS genre_weights (
                user_id TEXT NOT NULL,
                genre TEXT NOT NULL,
                weight REAL NOT NULL,               -- 0 to 2
                is_user_set INTEGER DEFAULT 0,
                updated_at TEXT,
                PRIMARY KEY (user_id, genre)
            );

            CREATE TABLE IF NOT EXISTS custom_interests (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                interest_text TEXT NOT NULL,
                embedding BLOB,
                model_id TEXT,
                weight REAL DEFAULT 1.0,
                created_at TEXT
            );

            CREATE TABLE IF NOT EXISTS recommendation_config (
                media_kind TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,                -- JSON scalar
                PRIMARY KEY (media_kind, key)
            );

            CREATE TABLE IF NOT EXISTS user_algorithm_settings (
                user_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                settings TEXT NOT NULL,             -- JSON object
                updated_at TEXT,
                PRIMARY KEY (user_id, media_kind)
            );

            CREATE TABLE IF NOT EXISTS recommendation_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                media_kind TEXT NOT NULL,
                run_type TEXT DEFAULT 'full',
                status TEXT DEFAULT 'running',
                candidate_count INTEGER DEFAULT 0,
                selected_count INTEGER DEFAULT 0,
                duration_ms INTEGER,
                error_message TEXT,
                config TEXT,                        -- JSON snapshot of the effective config
                started_at TEXT NOT NULL,
                finished_at TEXT
            );

            CREATE TABLE IF NOT EXISTS recommendation_candidates (
                run_id INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                rank INTEGER NOT NULL,
                is_selected INTEGER DEFAULT 0,
                selected_rank INTEGER,
                final_score REAL,
                similarity_score REAL,
                novelty_score REAL,
                rating_score REAL,
                diversity_score REAL,
                franchise_boost REAL,
                genre_boost REAL,
                interest_boost REAL,
                score_breakdown TEXT,               -- JSON
                PRIMARY KEY (run_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS recommendation_evidence (
                run_id INTEGER NOT NULL,
                candidate_item_id TEXT NOT NULL,
                evidence_item_id TEXT NOT NULL,
                similarity REAL,
                evidence_type TEXT,                 -- favorite | rewatched | watched
                PRIMARY KEY (run_id, candidate_item_id, evidence_item_id)
            );

            CREATE TABLE IF NOT EXISTS recommendation_explanations (
                run_id INTEGER NOT NULL,
                item_id TEXT NOT NULL,
                explanation TEXT NOT NULL,
                PRIMARY KEY (run_id, item_id)
            );

            CREATE TABLE IF NOT EXISTS jobs (
                id TEXT PRIMARY KEY,
                name TEXT,
                status TEXT DEFAULT 'running',
                current_step INTEGER DEFAULT 0,
                step_name TEXT,
                total_steps INTEGER,
                items_processed INTEGER DEFAULT 0,
                items_total INTEGER,
                current_item TEXT,
                cancel_requested INTEGER DEFAULT 0,
                error_message TEXT,
                result TEXT,                        -- JSON
                started_at TEXT NOT NULL,
                finished_at TEXT,
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS job_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT NOT NULL,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_items_kind ON items(media_kind);
            CREATE INDEX IF NOT EXISTS idx_items_collection ON items(collection_name);
            CREATE INDEX IF NOT EXISTS idx_embeddings_model ON item_embeddings(model_id);
            CREATE INDEX IF NOT EXISTS idx_history_user ON watch_history(user_id);
            CREATE INDEX IF NOT EXISTS idx_runs_user ON recommendation_runs(user_id, media_kind, status);
            CREATE INDEX IF NOT EXISTS idx_candidates_run ON recommendation_candidates(run_id, rank);
            CREATE INDEX IF NOT EXISTS idx_evidence_run ON recommendation_evidence(run_id);
            CREATE INDEX IF NOT EXISTS idx_job_logs_job ON job_logs(job_id);
        """)


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit (optimization for read operations)

    Handles nested calls correctly:
    - Only the outermost context commits/rollbacks
    - Inner contexts are no-ops for transaction control
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.enter()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.leave()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def load_json(val):
    """Safely load a JSON list from db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{val[:50]}...': {e}")
        return []


def _now() -> str:
    return datetime.now().isoformat()


def _placeholders(values) -> str:
    return ", ".join("?" for _ in values)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def get_setting(key: str) -> str | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
        return row['value'] if row else None


def set_setting(key: str, value: str) -> None:
    with get_db() as conn:
        conn.execute("INSERT OR REPLACE INTO settings (key, value) VALUES (?, ?)", (key, value))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

def upsert_users(users: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT INTO users (id, username, is_enabled, movies_enabled, series_enabled,
                               max_parental_rating, include_watched, dislike_behavior, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (id) DO UPDATE SET
                username = excluded.username,
                is_enabled = excluded.is_enabled,
                movies_enabled = excluded.movies_enabled,
                series_enabled = excluded.series_enabled,
                max_parental_rating = excluded.max_parental_rating,
                include_watched = excluded.include_watched,
                dislike_behavior = excluded.dislike_behavior
        """, [(
            u['id'], u.get('username', u['id']),
            int(u.get('is_enabled', True)), int(u.get('movies_enabled', True)),
            int(u.get('series_enabled', True)), u.get('max_parental_rating'),
            int(u.get('include_watched', False)), u.get('dislike_behavior', 'exclude'),
            _now(),
        ) for u in users])


def get_user(user_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return dict(row) if row else None


def list_enabled_users(media_kind: str) -> list[dict]:
    """Users with recommendations enabled for the media kind, in creation order."""
    kind_column = 'movies_enabled' if media_kind == 'movie' else 'series_enabled'
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT * FROM users
            WHERE is_enabled = 1 AND {kind_column} = 1
            ORDER BY created_at, id
        """).fetchall()
        return [dict(r) for r in rows]


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def upsert_items(items: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO items
            (id, media_kind, title, year, genres, source_attribute, collection_name,
             community_rating, content_rating, total_units)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            item['id'], item.get('media_kind', 'movie'), item['title'], item.get('year'),
            json.dumps(item.get('genres') or []), item.get('source_attribute'),
            item.get('collection_name'), item.get('community_rating'),
            item.get('content_rating'), item.get('total_units'),
        ) for item in items])


def _item_from_row(row) -> dict:
    item = dict(row)
    item['genres'] = load_json(item.get('genres'))
    return item


def load_catalog_titles(media_kind: str) -> list[dict]:
    """Title and collection of every catalog item of a kind (franchise totals)."""
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT id, title, collection_name FROM items WHERE media_kind = ?",
            (media_kind,)
        ).fetchall()
        return [dict(r) for r in rows]


def upsert_embeddings(rows: list[tuple[str, list[float]]], model_id: str) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO item_embeddings (item_id, model_id, vector)
            VALUES (?, ?, ?)
        """, [(item_id, model_id, encode_vector(vector)) for item_id, vector in rows])


def load_item_embeddings(item_ids, model_id: str) -> dict[str, np.ndarray]:
    ids = list(item_ids)
    if not ids:
        return {}
    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT item_id, vector FROM item_embeddings
            WHERE model_id = ? AND item_id IN ({_placeholders(ids)})
        """, [model_id, *ids]).fetchall()
        return {r['item_id']: decode_vector(r['vector']) for r in rows}


def load_embedding_matrix(
    model_id: str,
    media_kind: str,
    allowed_ratings: list[str] | None = None,
) -> tuple[list[dict], np.ndarray]:
    """
    Load catalog rows and their embeddings for a model as a dense matrix.

    Items with no content rating are always included; otherwise the rating
    must be in allowed_ratings when that list is given.
    """
    sql = """
        SELECT i.id, i.title, i.year, i.genres, i.source_attribute, i.collection_name,
               i.community_rating, i.content_rating, e.vector
        FROM item_embeddings e
        JOIN items i ON i.id = e.item_id
        WHERE e.model_id = ? AND i.media_kind = ?
    """
    params: list = [model_id, media_kind]
    if allowed_ratings is not None:
        sql += f" AND (i.content_rating IS NULL OR i.content_rating IN ({_placeholders(allowed_ratings)}))"
        params.extend(allowed_ratings)
    sql += " ORDER BY i.id"

    with get_db(read_only=True) as conn:
        rows = conn.execute(sql, params).fetchall()

    items = []
    vectors = []
    for row in rows:
        vector = decode_vector(row['vector'])
        if vector is None:
            continue
        item = _item_from_row(row)
        item.pop('vector', None)
        items.append(item)
        vectors.append(vector)

    if not vectors:
        return [], np.empty((0, 0))
    return items, np.vstack(vectors)


# ---------------------------------------------------------------------------
# Watch history, ratings and dislikes
# ---------------------------------------------------------------------------

def upsert_watch_history(rows: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO watch_history
            (user_id, item_id, units_completed, play_count, is_favorite, last_played_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, [(
            r['user_id'], r['item_id'], r.get('units_completed', 1), r.get('play_count', 1),
            int(r.get('is_favorite', False)), r.get('last_played_at'),
        ) for r in rows])


def upsert_ratings(rows: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany(
            "INSERT OR REPLACE INTO user_ratings (user_id, item_id, rating) VALUES (?, ?, ?)",
            [(r['user_id'], r['item_id'], r['rating']) for r in rows]
        )


def add_disliked_items(user_id: str, item_ids: list[str]) -> None:
    with get_db() as conn:
        conn.executemany(
            "INSERT OR IGNORE INTO disliked_items (user_id, item_id, created_at) VALUES (?, ?, ?)",
            [(user_id, item_id, _now()) for item_id in item_ids]
        )


def load_watch_history(user_id: str, media_kind: str, limit: int | None = None) -> list[dict]:
    """
    Load a user's watch history for one media kind, joined with catalog data.

    Movies are ordered favorites first, then by play count and recency;
    series purely by recency.
    """
    if media_kind == 'movie':
        order = "wh.is_favorite DESC, wh.play_count DESC, wh.last_played_at DESC"
    else:
        order = "wh.last_played_at DESC"

    with get_db(read_only=True) as conn:
        rows = conn.execute(f"""
            SELECT wh.item_id, wh.units_completed, wh.play_count, wh.is_favorite,
                   wh.last_played_at, i.title, i.year, i.genres, i.collection_name,
                   i.total_units, i.source_attribute, ur.rating AS user_rating
            FROM watch_history wh
            JOIN items i ON i.id = wh.item_id
            LEFT JOIN user_ratings ur ON ur.user_id = wh.user_id AND ur.item_id = wh.item_id
            WHERE wh.user_id = ? AND i.media_kind = ?
            ORDER BY {order}, wh.item_id
            LIMIT ?
        """, (user_id, media_kind, -1 if limit is None else limit)).fetchall()
        return [_item_from_row(r) for r in rows]


def load_disliked_ids(user_id: str, media_kind: str) -> set[str]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT d.item_id FROM disliked_items d
            JOIN items i ON i.id = d.item_id
            WHERE d.user_id = ? AND i.media_kind = ?
        """, (user_id, media_kind)).fetchall()
        return {r['item_id'] for r in rows}


# ---------------------------------------------------------------------------
# Taste profiles
# ---------------------------------------------------------------------------

def save_taste_profile(user_id: str, media_kind: str, vector, model_id: str, item_count: int) -> None:
    """Store the profile in both the current and legacy tables."""
    payload = (user_id, media_kind, encode_vector(vector), model_id, item_count, _now())
    with get_db() as conn:
        for table in ('taste_profiles', 'legacy_taste_profiles'):
            conn.execute(f"""
                INSERT OR REPLACE INTO {table}
                (user_id, media_kind, vector, model_id, item_count, built_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, payload)


def load_taste_profile(user_id: str, media_kind: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("""
            SELECT user_id, media_kind, vector, model_id, item_count, built_at
            FROM taste_profiles WHERE user_id = ? AND media_kind = ?
        """, (user_id, media_kind)).fetchone()
        if not row:
            return None
        profile = dict(row)
        profile['vector'] = decode_vector(row['vector'])
        profile['built_at'] = parse_timestamp_naive(row['built_at'])
        return profile


def delete_taste_profiles(user_id: str, media_kind: str | None = None) -> int:
    deleted = 0
    with get_db() as conn:
        for table in ('taste_profiles', 'legacy_taste_profiles'):
            if media_kind is None:
                cursor = conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
            else:
                cursor = conn.execute(
                    f"DELETE FROM {table} WHERE user_id = ? AND media_kind = ?",
                    (user_id, media_kind)
                )
            deleted += cursor.rowcount
    return deleted


# ---------------------------------------------------------------------------
# Franchise preferences, genre weights, custom interests
# ---------------------------------------------------------------------------

def upsert_detected_franchises(user_id: str, rows: list[dict]) -> int:
    """
    Write auto-detected franchise preferences.

    User-set scores are never overwritten; their counters are refreshed.
    Returns the number of rows written.
    """
    updated = 0
    with get_db() as conn:
        for r in rows:
            cursor = conn.execute("""
                INSERT INTO franchise_preferences
                (user_id, franchise_name, media_kind, preference_score, is_user_set,
                 items_watched, total_engagement, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                ON CONFLICT (user_id, franchise_name, media_kind) DO UPDATE SET
                    preference_score = CASE WHEN franchise_preferences.is_user_set
                                            THEN franchise_preferences.preference_score
                                            ELSE excluded.preference_score END,
                    items_watched = excluded.items_watched,
                    total_engagement = excluded.total_engagement,
                    updated_at = excluded.updated_at
                WHERE NOT franchise_preferences.is_user_set
                   OR franchise_preferences.items_watched != excluded.items_watched
            """, (
                user_id, r['franchise_name'], r['media_kind'], r['preference_score'],
                r['items_watched'], r['total_engagement'], _now(),
            ))
            updated += cursor.rowcount
    return updated


def set_franchise_preference(user_id: str, franchise_name: str, media_kind: str, score: float) -> None:
    """Pin a franchise preference by hand; detection will leave it alone."""
    score = max(-1.0, min(1.0, score))
    with get_db() as conn:
        conn.execute("""
            INSERT INTO franchise_preferences
            (user_id, franchise_name, media_kind, preference_score, is_user_set, updated_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT (user_id, franchise_name, media_kind) DO UPDATE SET
                preference_score = excluded.preference_score,
                is_user_set = 1,
                updated_at = excluded.updated_at
        """, (user_id, franchise_name, media_kind, score, _now()))


def load_franchise_preferences(user_id: str, media_kind: str | None = None) -> list[dict]:
    sql = "SELECT * FROM franchise_preferences WHERE user_id = ?"
    params: list = [user_id]
    if media_kind is not None:
        sql += " AND (media_kind = ? OR media_kind = 'both')"
        params.append(media_kind)
    sql += " ORDER BY total_engagement DESC, franchise_name"
    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def upsert_detected_genre_weights(user_id: str, rows: list[dict]) -> int:
    updated = 0
    with get_db() as conn:
        for r in rows:
            weight = max(0.0, min(2.0, r['weight']))
            cursor = conn.execute("""
                INSERT INTO genre_weights (user_id, genre, weight, is_user_set, updated_at)
                VALUES (?, ?, ?, 0, ?)
                ON CONFLICT (user_id, genre) DO UPDATE SET
                    weight = excluded.weight,
                    updated_at = excluded.updated_at
                WHERE NOT genre_weights.is_user_set
            """, (user_id, r['genre'], weight, _now()))
            updated += cursor.rowcount
    return updated


def set_genre_weight(user_id: str, genre: str, weight: float) -> None:
    weight = max(0.0, min(2.0, weight))
    with get_db() as conn:
        conn.execute("""
            INSERT INTO genre_weights (user_id, genre, weight, is_user_set, updated_at)
            VALUES (?, ?, ?, 1, ?)
            ON CONFLICT (user_id, genre) DO UPDATE SET
                weight = excluded.weight, is_user_set = 1, updated_at = excluded.updated_at
        """, (user_id, genre, weight, _now()))


def load_genre_weights(user_id: str) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT * FROM genre_weights WHERE user_id = ? ORDER BY genre", (user_id,)
        ).fetchall()
        return [dict(r) for r in rows]


def add_custom_interest(
    user_id: str,
    text: str,
    weight: float = 1.0,
    embedding=None,
    model_id: str | None = None,
) -> int:
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO custom_interests (user_id, interest_text, embedding, model_id, weight, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            user_id, text, encode_vector(embedding) if embedding is not None else None,
            model_id, weight, _now(),
        ))
        return cursor.lastrowid


def remove_custom_interest(user_id: str, interest_id: int) -> int:
    with get_db() as conn:
        cursor = conn.execute(
            "DELETE FROM custom_interests WHERE id = ? AND user_id = ?", (interest_id, user_id)
        )
        return cursor.rowcount


def load_custom_interests(user_id: str) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT id, user_id, interest_text, embedding, model_id, weight, created_at
            FROM custom_interests WHERE user_id = ? ORDER BY id
        """, (user_id,)).fetchall()
    interests = []
    for row in rows:
        interest = dict(row)
        interest['embedding'] = decode_vector(row['embedding'])
        interests.append(interest)
    return interests


def update_interest_embedding(interest_id: int, embedding, model_id: str) -> None:
    with get_db() as conn:
        conn.execute(
            "UPDATE custom_interests SET embedding = ?, model_id = ? WHERE id = ?",
            (encode_vector(embedding), model_id, interest_id)
        )


# ---------------------------------------------------------------------------
# Algorithm configuration
# ---------------------------------------------------------------------------

def load_admin_config(media_kind: str) -> dict:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT key, value FROM recommendation_config WHERE media_kind = ?", (media_kind,)
        ).fetchall()
        return {r['key']: json.loads(r['value']) for r in rows}


def save_admin_config(media_kind: str, values: dict) -> None:
    with get_db() as conn:
        conn.executemany(
            "INSERT OR REPLACE INTO recommendation_config (media_kind, key, value) VALUES (?, ?, ?)",
            [(media_kind, key, json.dumps(value)) for key, value in values.items()]
        )


def load_user_config_override(user_id: str, media_kind: str) -> dict:
    with get_db(read_only=True) as conn:
        row = conn.execute(
            "SELECT settings FROM user_algorithm_settings WHERE user_id = ? AND media_kind = ?",
            (user_id, media_kind)
        ).fetchone()
        if not row:
            return {}
        try:
            return json.loads(row['settings'])
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring malformed algorithm settings for {user_id}: {e}")
            return {}


def save_user_config_override(user_id: str, media_kind: str, settings: dict) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO user_algorithm_settings (user_id, media_kind, settings, updated_at)
            VALUES (?, ?, ?, ?)
        """, (user_id, media_kind, json.dumps(settings), _now()))


# ---------------------------------------------------------------------------
# Recommendation runs
# ---------------------------------------------------------------------------

def create_run(user_id: str, media_kind: str, run_type: str = 'full', config: dict | None = None) -> int:
    with get_db() as conn:
        cursor = conn.execute("""
            INSERT INTO recommendation_runs (user_id, media_kind, run_type, status, config, started_at)
            VALUES (?, ?, ?, 'running', ?, ?)
        """, (user_id, media_kind, run_type, json.dumps(config or {}), _now()))
        return cursor.lastrowid


def _delete_run_children(conn, run_ids: list[int]) -> None:
    if not run_ids:
        return
    marks = _placeholders(run_ids)
    conn.execute(f"DELETE FROM recommendation_evidence WHERE run_id IN ({marks})", run_ids)
    conn.execute(f"DELETE FROM recommendation_explanations WHERE run_id IN ({marks})", run_ids)
    conn.execute(f"DELETE FROM recommendation_candidates WHERE run_id IN ({marks})", run_ids)


def delete_running_runs(user_id: str, media_kind: str) -> int:
    """Remove runs left in 'running' state by an earlier crash."""
    with get_db() as conn:
        rows = conn.execute("""
            SELECT id FROM recommendation_runs
            WHERE user_id = ? AND media_kind = ? AND status = 'running'
        """, (user_id, media_kind)).fetchall()
        run_ids = [r['id'] for r in rows]
        _delete_run_children(conn, run_ids)
        if run_ids:
            conn.execute(
                f"DELETE FROM recommendation_runs WHERE id IN ({_placeholders(run_ids)})", run_ids
            )
        return len(run_ids)


def finalize_run(
    run_id: int,
    candidate_count: int,
    selected_count: int,
    duration_ms: int,
    status: str = 'completed',
    error_message: str | None = None,
) -> None:
    """Close a run; only a row still marked 'running' is updated."""
    with get_db() as conn:
        conn.execute("""
            UPDATE recommendation_runs
            SET status = ?, candidate_count = ?, selected_count = ?, duration_ms = ?,
                error_message = ?, finished_at = ?
            WHERE id = ? AND status = 'running'
        """, (status, candidate_count, selected_count, duration_ms, error_message, _now(), run_id))


def save_candidates(run_id: int, rows: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO recommendation_candidates
            (run_id, item_id, rank, is_selected, selected_rank, final_score, similarity_score,
             novelty_score, rating_score, diversity_score, franchise_boost, genre_boost,
             interest_boost, score_breakdown)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [(
            run_id, r['item_id'], r['rank'], int(r['is_selected']), r.get('selected_rank'),
            r['final_score'], r['similarity_score'], r['novelty_score'], r['rating_score'],
            r.get('diversity_score'), r.get('franchise_boost', 1.0), r.get('genre_boost', 1.0),
            r.get('interest_boost', 1.0), json.dumps(r.get('score_breakdown', {})),
        ) for r in rows])


def save_evidence(run_id: int, rows: list[dict]) -> None:
    with get_db() as conn:
        conn.executemany("""
            INSERT OR REPLACE INTO recommendation_evidence
            (run_id, candidate_item_id, evidence_item_id, similarity, evidence_type)
            VALUES (?, ?, ?, ?, ?)
        """, [(
            run_id, r['candidate_item_id'], r['evidence_item_id'], r['similarity'], r['evidence_type'],
        ) for r in rows])


def save_explanations(run_id: int, explanations: dict[str, str]) -> None:
    with get_db() as conn:
        conn.executemany(
            "INSERT OR REPLACE INTO recommendation_explanations (run_id, item_id, explanation) VALUES (?, ?, ?)",
            [(run_id, item_id, text) for item_id, text in explanations.items()]
        )


def get_run(run_id: int) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM recommendation_runs WHERE id = ?", (run_id,)).fetchone()
        if not row:
            return None
        run = dict(row)
        run['config'] = json.loads(run['config']) if run['config'] else {}
        return run


def list_runs(user_id: str | None = None, media_kind: str | None = None) -> list[dict]:
    sql = "SELECT * FROM recommendation_runs WHERE 1 = 1"
    params: list = []
    if user_id is not None:
        sql += " AND user_id = ?"
        params.append(user_id)
    if media_kind is not None:
        sql += " AND media_kind = ?"
        params.append(media_kind)
    sql += " ORDER BY id"
    with get_db(read_only=True) as conn:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]


def get_run_candidates(run_id: int, selected_only: bool = False) -> list[dict]:
    sql = """
        SELECT c.*, i.title, i.year, i.genres, x.explanation
        FROM recommendation_candidates c
        JOIN items i ON i.id = c.item_id
        LEFT JOIN recommendation_explanations x ON x.run_id = c.run_id AND x.item_id = c.item_id
        WHERE c.run_id = ?
    """
    if selected_only:
        sql += " AND c.is_selected = 1 ORDER BY c.selected_rank"
    else:
        sql += " ORDER BY c.rank"
    with get_db(read_only=True) as conn:
        rows = conn.execute(sql, (run_id,)).fetchall()
    candidates = []
    for row in rows:
        candidate = _item_from_row(row)
        candidate['score_breakdown'] = json.loads(candidate['score_breakdown'] or '{}')
        candidates.append(candidate)
    return candidates


def get_run_evidence(run_id: int) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute("""
            SELECT * FROM recommendation_evidence WHERE run_id = ?
            ORDER BY candidate_item_id, similarity DESC
        """, (run_id,)).fetchall()
        return [dict(r) for r in rows]


def clear_user_recommendations(user_id: str, media_kind: str | None = None) -> int:
    """Delete a user's runs (with candidates/evidence) and their taste profiles."""
    with get_db() as conn:
        sql = "SELECT id FROM recommendation_runs WHERE user_id = ?"
        params: list = [user_id]
        if media_kind is not None:
            sql += " AND media_kind = ?"
            params.append(media_kind)
        run_ids = [r['id'] for r in conn.execute(sql, params).fetchall()]
        _delete_run_children(conn, run_ids)
        if run_ids:
            conn.execute(
                f"DELETE FROM recommendation_runs WHERE id IN ({_placeholders(run_ids)})", run_ids
            )
        delete_taste_profiles(user_id, media_kind)
        return len(run_ids)


def clear_all_recommendations() -> int:
    with get_db() as conn:
        count = conn.execute("SELECT COUNT(*) FROM recommendation_runs").fetchone()[0]
        conn.execute("DELETE FROM recommendation_evidence")
        conn.execute("DELETE FROM recommendation_explanations")
        conn.execute("DELETE FROM recommendation_candidates")
        conn.execute("DELETE FROM recommendation_runs")
        conn.execute("DELETE FROM taste_profiles")
        conn.execute("DELETE FROM legacy_taste_profiles")
        return count


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------

def create_job(job_id: str, name: str, total_steps: int | None = None) -> None:
    with get_db() as conn:
        conn.execute("""
            INSERT OR REPLACE INTO jobs (id, name, status, total_steps, started_at, updated_at)
            VALUES (?, ?, 'running', ?, ?, ?)
        """, (job_id, name, total_steps, _now(), _now()))


def update_job_step(job_id: str, step: int, step_name: str, items_total: int | None = None) -> None:
    with get_db() as conn:
        conn.execute("""
            UPDATE jobs
            SET current_step = ?, step_name = ?, items_total = COALESCE(?, items_total),
                items_processed = 0, updated_at = ?
            WHERE id = ?
        """, (step, step_name, items_total, _now(), job_id))


def update_job_progress(job_id: str, processed: int, total: int, current_item: str | None = None) -> None:
    with get_db() as conn:
        conn.execute("""
            UPDATE jobs
            SET items_processed = ?, items_total = ?, current_item = ?, updated_at = ?
            WHERE id = ?
        """, (processed, total, current_item, _now(), job_id))


def add_job_log(job_id: str, level: str, message: str) -> None:
    with get_db() as conn:
        conn.execute(
            "INSERT INTO job_logs (job_id, level, message, created_at) VALUES (?, ?, ?, ?)",
            (job_id, level, message, _now())
        )


def request_job_cancel(job_id: str) -> bool:
    with get_db() as conn:
        cursor = conn.execute(
            "UPDATE jobs SET cancel_requested = 1, updated_at = ? WHERE id = ? AND status = 'running'",
            (_now(), job_id)
        )
        return cursor.rowcount > 0


def is_job_cancel_requested(job_id: str) -> bool:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT cancel_requested FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return bool(row and row['cancel_requested'])


def finish_job(job_id: str, status: str, result: dict | None = None, error_message: str | None = None) -> None:
    with get_db() as conn:
        conn.execute("""
            UPDATE jobs
            SET status = ?, result = ?, error_message = ?, finished_at = ?, updated_at = ?
            WHERE id = ?
        """, (status, json.dumps(result) if result is not None else None, error_message,
              _now(), _now(), job_id))


def get_job(job_id: str) -> dict | None:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            return None
        job = dict(row)
        job['result'] = json.loads(job['result']) if job['result'] else None
        return job


def get_job_logs(job_id: str) -> list[dict]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT level, message, created_at FROM job_logs WHERE job_id = ? ORDER BY id", (job_id,)
        ).fetchall()
        return [dict(r) for r in rows]


def get_stats() -> dict:
    with get_db(read_only=True) as conn:
        tables = ['users', 'items', 'item_embeddings', 'watch_history', 'recommendation_runs',
                  'recommendation_candidates', 'franchise_preferences', 'genre_weights']
        return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}
