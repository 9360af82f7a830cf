import importlib
import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))


@pytest.fixture
def fresh_config(monkeypatch, tmp_path):
    """
    Reload config with a temporary database path to keep tests isolated.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LIBRARY_REC_DB", str(db_path))
    import library_rec.config as config

    importlib.reload(config)
    return config


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Reload config/database modules with a temp DB and cleanly close the pool after use.
    """
    db_path = tmp_path / "test.db"
    monkeypatch.setenv("LIBRARY_REC_DB", str(db_path))

    import library_rec.config as config
    import library_rec.database as database

    importlib.reload(config)
    importlib.reload(database)
    database.init_db()

    yield database
    database.close_pool()


def axis_vector(index: int, dim: int = 4, tilt: float = 0.0) -> list[float]:
    """Unit-ish vector along one axis, optionally tilted towards the next axis."""
    vector = np.zeros(dim)
    vector[index % dim] = 1.0
    vector[(index + 1) % dim] = tilt
    return vector.tolist()


@pytest.fixture
def library(fresh_db):
    """
    A small catalog in the temp DB: two users, six movies with embeddings
    under model "m1" (set active), and a short watch history for alice.
    """
    db = fresh_db
    db.upsert_users([
        {"id": "alice", "username": "Alice"},
        {"id": "bob", "username": "Bob", "max_parental_rating": 10},
    ])
    db.upsert_items([
        {"id": "w1", "title": "Star Trek: First Contact", "year": 1996, "genres": ["Sci-Fi", "Action"],
         "community_rating": 7.6, "content_rating": "PG-13"},
        {"id": "w2", "title": "Arrival", "year": 2016, "genres": ["Sci-Fi", "Drama"],
         "community_rating": 7.9, "content_rating": "PG-13"},
        {"id": "c1", "title": "Star Trek Beyond", "year": 2016, "genres": ["Sci-Fi", "Action"],
         "community_rating": 7.0, "content_rating": "PG-13"},
        {"id": "c2", "title": "Interstellar", "year": 2014, "genres": ["Sci-Fi", "Drama"],
         "community_rating": 8.7, "content_rating": "PG-13"},
        {"id": "c3", "title": "Paddington 2", "year": 2017, "genres": ["Family", "Comedy"],
         "community_rating": 7.8, "content_rating": "PG"},
        {"id": "c4", "title": "Alien", "year": 1979, "genres": ["Horror", "Sci-Fi"],
         "community_rating": 8.5, "content_rating": "R"},
    ])
    db.upsert_embeddings([
        ("w1", axis_vector(0)),
        ("w2", axis_vector(0, tilt=0.2)),
        ("c1", axis_vector(0, tilt=0.1)),
        ("c2", axis_vector(0, tilt=0.5)),
        ("c3", axis_vector(2)),
        ("c4", axis_vector(0, tilt=0.8)),
    ], "m1")
    db.set_setting("active_embedding_model:movie", "m1")
    db.upsert_watch_history([
        {"user_id": "alice", "item_id": "w1", "play_count": 3, "is_favorite": True,
         "last_played_at": "2024-05-01T20:00:00"},
        {"user_id": "alice", "item_id": "w2", "play_count": 1,
         "last_played_at": "2024-04-01T20:00:00"},
    ])
    return db
