import dataclasses

import numpy as np
import pytest

from library_rec import pipeline as pipeline_module
from library_rec.candidates import Candidate
from library_rec.franchise import FranchiseRules
from library_rec.pipeline import (
    RecommendationPipeline,
    RunInProgressError,
    RunRegistry,
    UserNotFoundError,
    evidence_type,
)
from library_rec.pipeline_config import default_config, merge_config
from library_rec.taste import WatchedItem

GENRES = ["Drama", "Comedy", "Horror", "Action", "Sci-Fi"]


def unit(*components):
    vector = np.asarray(components, dtype=float)
    return vector / np.linalg.norm(vector)


class MemoryEmbeddings:
    def __init__(self, items, vectors, model_id="m1"):
        self.items = items
        self.vectors = vectors
        self.model_id = model_id

    def get_active_model_id(self, media_kind):
        return self.model_id

    def get_embeddings(self, item_ids, model_id):
        return {i: self.vectors[i] for i in item_ids if i in self.vectors}

    def nearest_neighbors(self, vector, model_id, media_kind, limit, rating_ceiling=None):
        ids = [i for i in self.items if i in self.vectors]
        sims = [float(np.dot(vector, self.vectors[i])) for i in ids]
        order = sorted(range(len(ids)), key=lambda k: -sims[k])[:limit]
        return [Candidate(item_id=ids[k], raw_similarity=sims[k], **self.items[ids[k]]) for k in order]


class MemoryCatalog:
    def __init__(self, users, history, fail_for=()):
        self.users = users
        self.history = history
        self.fail_for = set(fail_for)

    def get_user(self, user_id):
        return next((u for u in self.users if u["id"] == user_id), None)

    def list_enabled_users(self, media_kind):
        return list(self.users)

    def get_watch_history(self, user_id, media_kind, limit=None):
        if user_id in self.fail_for:
            raise RuntimeError(f"history unavailable for {user_id}")
        rows = self.history.get(user_id, [])
        return rows[:limit] if limit else list(rows)

    def get_disliked_ids(self, user_id, media_kind):
        return set()

    def get_catalog_titles(self, media_kind):
        return []


class MemoryPreferences:
    def __init__(self):
        self.profiles = {}

    def get_taste_profile(self, user_id, media_kind):
        return self.profiles.get((user_id, media_kind))

    def save_taste_profile(self, profile):
        self.profiles[(profile.user_id, profile.media_kind)] = profile

    def get_franchise_preferences(self, user_id, media_kind):
        return {}

    def save_detected_franchises(self, user_id, rows):
        return len(rows)

    def get_genre_weights(self, user_id):
        return {}

    def save_detected_genre_weights(self, user_id, rows):
        return len(rows)

    def get_custom_interests(self, user_id):
        return []

    def save_interest_embedding(self, interest_id, vector, model_id):
        pass


class MemoryRuns:
    def __init__(self, fail_on_save=False):
        self.runs = {}
        self.candidates = {}
        self.evidence = {}
        self.explanations = {}
        self.fail_on_save = fail_on_save
        self._next_id = 1

    def delete_running_runs(self, user_id, media_kind):
        stale = [rid for rid, r in self.runs.items()
                 if r["user_id"] == user_id and r["media_kind"] == media_kind and r["status"] == "running"]
        for rid in stale:
            del self.runs[rid]
        return len(stale)

    def create_run(self, user_id, media_kind, run_type, config):
        run_id = self._next_id
        self._next_id += 1
        self.runs[run_id] = {"user_id": user_id, "media_kind": media_kind, "status": "running",
                             "config": config, "finalized": 0}
        return run_id

    def finalize_run(self, run_id, candidate_count, selected_count, duration_ms, status, error_message=None):
        run = self.runs[run_id]
        run["finalized"] += 1
        if run["status"] == "running":
            run.update(status=status, candidate_count=candidate_count, selected_count=selected_count,
                       error_message=error_message)

    def save_candidates(self, run_id, rows):
        if self.fail_on_save:
            raise RuntimeError("disk full")
        self.candidates[run_id] = list(rows)

    def save_evidence(self, run_id, rows):
        self.evidence[run_id] = list(rows)

    def save_explanations(self, run_id, explanations):
        self.explanations[run_id] = dict(explanations)

    def clear_user(self, user_id, media_kind=None):
        doomed = [rid for rid, r in self.runs.items()
                  if r["user_id"] == user_id and (media_kind is None or r["media_kind"] == media_kind)]
        for rid in doomed:
            del self.runs[rid]
        return len(doomed)

    def clear_all(self):
        count = len(self.runs)
        self.runs.clear()
        return count


class MemoryConfig:
    def __init__(self, overrides=None):
        self.overrides = overrides or {}

    def get_config(self, user_id, media_kind):
        return merge_config(default_config(media_kind), self.overrides.get(user_id))

    def get_user_override(self, user_id, media_kind):
        return dict(self.overrides.get(user_id) or {})


class MemoryJobs:
    def __init__(self, cancel_after=None, cancelled=False):
        self.cancel_after = cancel_after
        self.cancelled = cancelled
        self.progress = []
        self.logs = []
        self.completed = None
        self.failed = None

    def report_step(self, job_id, step, name, total=None):
        self.step = (step, name, total)

    def report_progress(self, job_id, processed, total, current=None):
        self.progress.append((processed, total))
        if self.cancel_after is not None and processed >= self.cancel_after:
            self.cancelled = True

    def log(self, job_id, level, message):
        self.logs.append((level, message))

    def is_cancelled(self, job_id):
        return self.cancelled

    def complete(self, job_id, result=None):
        self.completed = result

    def fail(self, job_id, error):
        self.failed = error


class BrokenExplainer:
    def generate(self, user_id, media_kind, selected, evidence):
        raise RuntimeError("template missing")


def build_world(user_count=1, candidate_count=50, fail_for=(), **pipeline_kwargs):
    items = {}
    vectors = {}
    for i in range(4):
        items[f"w{i}"] = {"title": f"Watched {i}", "year": 2000 + i, "genres": [GENRES[i % 2]]}
        vectors[f"w{i}"] = unit(1.0, 0.1 * i, 0.0, 0.0)
    for i in range(candidate_count):
        items[f"c{i}"] = {
            "title": f"Candidate {i}",
            "year": 1990 + i,
            "genres": [GENRES[i % len(GENRES)]],
            "community_rating": 5.0 + (i * 7 % 50) / 10,
        }
        vectors[f"c{i}"] = unit(1.0, 0.02 * i, 0.05 * (i % 3), 0.0)

    users = [{"id": f"u{n}", "username": f"User {n}"} for n in range(user_count)]
    history = {
        u["id"]: [WatchedItem(f"w{i}", title=items[f"w{i}"]["title"], genres=tuple(items[f"w{i}"]["genres"]),
                              is_favorite=(i == 0), play_count=2 if i == 1 else 1)
                  for i in range(4)]
        for u in users
    }

    runs = pipeline_kwargs.pop("run_store", MemoryRuns())
    pipeline = RecommendationPipeline(
        embedding_provider=MemoryEmbeddings(items, vectors, pipeline_kwargs.pop("model_id", "m1")),
        catalog_store=MemoryCatalog(users, history, fail_for),
        preference_store=MemoryPreferences(),
        run_store=runs,
        config_provider=pipeline_kwargs.pop("config_provider", MemoryConfig()),
        franchise_rules=FranchiseRules([]),
        **pipeline_kwargs,
    )
    return pipeline, runs


def test_single_user_run_completes_with_selection():
    pipeline, runs = build_world()

    result = pipeline.generate_for_user("u0", "movie")

    run = runs.runs[result.run_id]
    assert run["status"] == "completed"
    assert run["finalized"] == 1
    assert run["candidate_count"] == 50
    assert run["selected_count"] == len(result.recommendations) == 50
    assert [sc.selected_rank for sc in result.recommendations] == list(range(1, 51))
    assert not {sc.item_id for sc in result.recommendations} & {"w0", "w1", "w2", "w3"}


def test_zero_diversity_selects_top_by_final_score():
    pipeline, runs = build_world()

    result = pipeline.generate_for_user("u0", "movie", {"selected_count": 12, "diversity_weight": 0.0})

    stored = sorted(runs.candidates[result.run_id], key=lambda r: -r["final_score"])
    assert [sc.item_id for sc in result.recommendations] == [r["item_id"] for r in stored[:12]]
    assert runs.runs[result.run_id]["config"]["selected_count"] == 12


def test_zero_history_completes_without_selection():
    pipeline, runs = build_world()
    pipeline.catalog_store.history["u0"] = []

    result = pipeline.generate_for_user("u0", "movie")

    assert result.recommendations == []
    run = runs.runs[result.run_id]
    assert run["status"] == "completed"
    assert run["selected_count"] == 0
    assert result.run_id not in runs.candidates


def test_no_active_model_completes_without_selection():
    pipeline, runs = build_world(model_id=None)

    result = pipeline.generate_for_user("u0", "movie")

    assert result.recommendations == []
    assert runs.runs[result.run_id]["status"] == "completed"


def test_batch_counts_failures_and_continues():
    jobs = MemoryJobs()
    pipeline, runs = build_world(user_count=10, candidate_count=20, fail_for={"u4"}, job_tracker=jobs)

    result = pipeline.generate_for_all_users(job_id="job-1", media_kind="movie")

    assert (result.success, result.failed) == (9, 1)
    assert result.cancelled is False
    assert result.total_recommendations == 9 * 20
    assert "u4" in result.errors
    assert jobs.progress[-1] == (10, 10)
    assert jobs.completed["success"] == 9
    assert jobs.completed["failed"] == 1
    statuses = sorted(r["status"] for r in runs.runs.values())
    assert statuses.count("failed") == 1
    assert statuses.count("completed") == 9
    assert all(r["finalized"] == 1 for r in runs.runs.values())


def test_batch_stops_when_cancelled_between_users():
    jobs = MemoryJobs(cancel_after=2)
    pipeline, runs = build_world(user_count=5, candidate_count=10, job_tracker=jobs)

    result = pipeline.generate_for_all_users(job_id="job-2")

    assert result.cancelled is True
    assert result.success == 2
    assert len(runs.runs) == 2
    assert jobs.completed["cancelled"] is True


def test_cancelled_run_is_finalized_completed():
    jobs = MemoryJobs(cancelled=True)
    pipeline, runs = build_world(job_tracker=jobs)

    result = pipeline.generate_for_user("u0", "movie", job_id="job-3")

    assert result.cancelled is True
    assert result.recommendations == []
    assert runs.runs[result.run_id]["status"] == "completed"
    assert runs.runs[result.run_id]["finalized"] == 1


def test_overlapping_run_rejected():
    registry = RunRegistry()
    pipeline, runs = build_world(registry=registry)
    assert registry.try_acquire("u0", "movie")

    with pytest.raises(RunInProgressError):
        pipeline.generate_for_user("u0", "movie")
    assert runs.runs == {}

    # Other media kinds are independent
    pipeline.generate_for_user("u0", "series")
    registry.release("u0", "movie")
    pipeline.generate_for_user("u0", "movie")


def test_registry_released_after_failure():
    pipeline, runs = build_world(fail_for={"u0"})

    with pytest.raises(RuntimeError):
        pipeline.generate_for_user("u0", "movie")

    assert pipeline.registry.is_active("u0", "movie") is False
    [run] = runs.runs.values()
    assert run["status"] == "failed"
    assert "history unavailable" in run["error_message"]


def test_persistence_failure_marks_run_failed():
    pipeline, runs = build_world(run_store=MemoryRuns(fail_on_save=True))

    with pytest.raises(RuntimeError, match="disk full"):
        pipeline.generate_for_user("u0", "movie")

    [run] = runs.runs.values()
    assert run["status"] == "failed"
    assert run["error_message"] == "disk full"


def test_bad_config_marks_run_failed():
    pipeline, runs = build_world(config_provider=MemoryConfig({"u0": {"diversity_weight": 7}}))

    with pytest.raises(ValueError):
        pipeline.generate_for_user("u0", "movie")

    [run] = runs.runs.values()
    assert run["status"] == "failed"
    assert run["error_message"].startswith("Config error")


def test_stale_running_rows_removed_before_new_run():
    pipeline, runs = build_world()
    stale_id = runs.create_run("u0", "movie", "full", {})

    result = pipeline.generate_for_user("u0", "movie")

    assert stale_id not in runs.runs
    assert result.run_id in runs.runs


def test_explanation_failure_does_not_fail_run():
    pipeline, runs = build_world(explanation_generator=BrokenExplainer())

    result = pipeline.generate_for_user("u0", "movie", {"selected_count": 5})

    assert runs.runs[result.run_id]["status"] == "completed"
    assert len(result.recommendations) == 5
    assert result.run_id not in runs.explanations


def test_evidence_links_selected_items_to_watched_items():
    pipeline, runs = build_world()

    result = pipeline.generate_for_user("u0", "movie", {"selected_count": 3})

    evidence = runs.evidence[result.run_id]
    assert {e["candidate_item_id"] for e in evidence} == {sc.item_id for sc in result.recommendations}
    assert all(e["evidence_item_id"].startswith("w") for e in evidence)
    assert len(evidence) == 3 * 3


def test_evidence_type_classification():
    assert evidence_type(WatchedItem("a", is_favorite=True, play_count=5)) == "favorite"
    assert evidence_type(WatchedItem("a", play_count=2)) == "rewatched"
    assert evidence_type(WatchedItem("a")) == "watched"


def test_regenerate_unknown_user():
    pipeline, _ = build_world()

    with pytest.raises(UserNotFoundError):
        pipeline.regenerate_for_user("ghost", "movie")


def test_regenerate_clears_previous_runs():
    pipeline, runs = build_world()
    first = pipeline.generate_for_user("u0", "movie", {"selected_count": 5})

    run_id, count = pipeline.regenerate_for_user("u0", "movie")

    assert first.run_id not in runs.runs
    assert list(runs.runs) == [run_id]
    assert count == 50


def test_clear_refused_while_run_active():
    pipeline, runs = build_world()
    pipeline.generate_for_user("u0", "movie")
    pipeline.registry.try_acquire("u0", "series")

    with pytest.raises(RunInProgressError):
        pipeline.clear_for_user("u0")

    assert pipeline.clear_for_user("u0", "movie") == 1
    assert pipeline.clear_all() == 0


def record_diversity_weights(monkeypatch):
    weights = []
    real_select = pipeline_module.select_diverse

    def recording_select(scored, target_count, diversity_weight, use_source_diversity=False):
        weights.append(diversity_weight)
        return real_select(scored, target_count, diversity_weight, use_source_diversity)

    monkeypatch.setattr(pipeline_module, "select_diverse", recording_select)
    return weights


def test_eclectic_history_raises_diversity_weight(monkeypatch):
    weights = record_diversity_weights(monkeypatch)
    pipeline, _ = build_world()

    pipeline.generate_for_user("u0", "movie")

    # Drama and Comedy watched equally often
    assert weights == [pytest.approx(0.24)]


def test_focused_history_lowers_diversity_weight(monkeypatch):
    weights = record_diversity_weights(monkeypatch)
    pipeline, _ = build_world()
    history = pipeline.catalog_store.history
    history["u0"] = [dataclasses.replace(w, genres=("Drama",)) for w in history["u0"]]

    pipeline.generate_for_user("u0", "movie")

    assert weights == [pytest.approx(0.14)]


def test_user_pinned_diversity_weight_not_adjusted(monkeypatch):
    weights = record_diversity_weights(monkeypatch)
    pipeline, _ = build_world(config_provider=MemoryConfig({"u0": {"diversity_weight": 0.2}}))

    pipeline.generate_for_user("u0", "movie")
    pipeline.generate_for_user("u0", "movie", {"diversity_weight": 0.5})

    assert weights == [pytest.approx(0.2), pytest.approx(0.5)]


def test_call_site_diversity_weight_not_adjusted(monkeypatch):
    weights = record_diversity_weights(monkeypatch)
    pipeline, _ = build_world()

    pipeline.generate_for_user("u0", "movie", {"diversity_weight": 0.3})

    assert weights == [pytest.approx(0.3)]


def test_diversity_adjustment_failure_keeps_configured_weight(monkeypatch):
    class UnreadableOverrides(MemoryConfig):
        def get_user_override(self, user_id, media_kind):
            raise RuntimeError("settings table locked")

    weights = record_diversity_weights(monkeypatch)
    pipeline, runs = build_world(config_provider=UnreadableOverrides())

    result = pipeline.generate_for_user("u0", "movie")

    assert weights == [pytest.approx(0.2)]
    assert runs.runs[result.run_id]["status"] == "completed"


def test_clear_holds_registry_for_every_kind():
    seen = {}

    class WatchingRuns(MemoryRuns):
        def clear_user(self, user_id, media_kind=None):
            seen["active"] = {k: pipeline.registry.is_active(user_id, k) for k in ("movie", "series")}
            return super().clear_user(user_id, media_kind)

    pipeline, _ = build_world(run_store=WatchingRuns())

    pipeline.clear_for_user("u0")

    assert seen["active"] == {"movie": True, "series": True}
    assert not pipeline.registry.is_active("u0", "movie")
    assert not pipeline.registry.is_active("u0", "series")


def test_clear_refusal_releases_already_held_kinds():
    pipeline, _ = build_world()
    pipeline.registry.try_acquire("u0", "series")

    with pytest.raises(RunInProgressError):
        pipeline.clear_for_user("u0")

    assert not pipeline.registry.is_active("u0", "movie")


# ---------------------------------------------------------------------------
# SQLite-backed runs
# ---------------------------------------------------------------------------

def test_sqlite_run_persists_candidates_evidence_and_explanations(library):
    db = library
    pipeline = RecommendationPipeline.from_database()

    result = pipeline.generate_for_user("alice", "movie")

    run = db.get_run(result.run_id)
    assert run["status"] == "completed"
    assert run["candidate_count"] == 4
    assert run["selected_count"] == 4

    selected = db.get_run_candidates(result.run_id, selected_only=True)
    assert {c["item_id"] for c in selected} == {"c1", "c2", "c3", "c4"}
    assert all(c["explanation"] for c in selected)

    evidence = db.get_run_evidence(result.run_id)
    assert {e["evidence_type"] for e in evidence} == {"favorite", "watched"}

    assert db.load_taste_profile("alice", "movie")["model_id"] == "m1"


def test_sqlite_run_detects_and_applies_franchise_preference(library):
    db = library
    pipeline = RecommendationPipeline.from_database()

    result = pipeline.generate_for_user("alice", "movie")

    prefs = {p["franchise_name"]: p for p in db.load_franchise_preferences("alice", "movie")}
    assert prefs["Star Trek"]["preference_score"] > 0
    trek = next(sc for sc in result.recommendations if sc.item_id == "c1")
    assert trek.franchise == "Star Trek"
    assert trek.franchise_boost > 1.0


def test_sqlite_user_without_history(library):
    db = library
    pipeline = RecommendationPipeline.from_database()

    result = pipeline.generate_for_user("bob", "movie")

    assert result.recommendations == []
    assert db.get_run(result.run_id)["status"] == "completed"
    assert db.get_run(result.run_id)["selected_count"] == 0


def test_sqlite_parental_ceiling_filters_candidates(library):
    db = library
    db.upsert_watch_history([{"user_id": "bob", "item_id": "w1", "play_count": 1}])
    pipeline = RecommendationPipeline.from_database()

    result = pipeline.generate_for_user("bob", "movie")

    assert [sc.item_id for sc in result.recommendations] == ["c3"]


def test_sqlite_disliked_items_excluded(library):
    db = library
    db.add_disliked_items("alice", ["c2"])
    pipeline = RecommendationPipeline.from_database()

    result = pipeline.generate_for_user("alice", "movie")

    assert "c2" not in {sc.item_id for sc in result.recommendations}


def test_sqlite_regenerate_is_idempotent(library):
    db = library
    db.save_user_config_override("alice", "movie", {"selected_count": 2})
    pipeline = RecommendationPipeline.from_database()

    first_id, first_count = pipeline.regenerate_for_user("alice", "movie")
    first = {c["item_id"] for c in db.get_run_candidates(first_id, selected_only=True)}
    second_id, second_count = pipeline.regenerate_for_user("alice", "movie")
    second = {c["item_id"] for c in db.get_run_candidates(second_id, selected_only=True)}

    assert first_count == second_count == 2
    assert first == second
    assert [r["id"] for r in db.list_runs("alice", "movie")] == [second_id]


def test_sqlite_batch_with_job_tracking(library):
    db = library
    from library_rec.jobs import SqliteJobTracker

    tracker = SqliteJobTracker()
    tracker.create("job-sql", "recommend-all movie", 1)
    pipeline = RecommendationPipeline.from_database(job_tracker=tracker)

    result = pipeline.generate_for_all_users(job_id="job-sql", media_kind="movie")

    assert (result.success, result.failed) == (2, 0)
    job = tracker.get("job-sql")
    assert job["status"] == "completed"
    assert job["result"]["success"] == 2
    assert job["items_processed"] == 2
    assert len(db.list_runs()) == 2
