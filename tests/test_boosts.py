import numpy as np
import pytest

from library_rec.boosts import (
    CustomInterest,
    PreferenceBoostEngine,
    franchise_boost,
    genre_boost,
    interest_boost,
)
from library_rec.candidates import Candidate
from library_rec.franchise import FranchiseRules
from library_rec.scoring import ScoredCandidate


def make_scored(item_id, title, base, genres=("Drama",)):
    return ScoredCandidate(
        candidate=Candidate(item_id=item_id, title=title, genres=list(genres)),
        similarity_score=base,
        novelty_score=0.5,
        rating_score=0.5,
        base_score=base,
    )


class FakePreferences:
    def __init__(self, franchises=None, genres=None, interests=None, fail=False):
        self.franchises = franchises or {}
        self.genres = genres or {}
        self.interests = interests or []
        self.fail = fail
        self.saved_embeddings = []

    def get_franchise_preferences(self, user_id, media_kind):
        if self.fail:
            raise RuntimeError("preference store unavailable")
        return self.franchises

    def get_genre_weights(self, user_id):
        if self.fail:
            raise RuntimeError("preference store unavailable")
        return self.genres

    def get_custom_interests(self, user_id):
        return self.interests

    def save_interest_embedding(self, interest_id, vector, model_id):
        self.saved_embeddings.append((interest_id, model_id))


class FakeEmbeddings:
    def __init__(self, vectors):
        self.vectors = {k: np.asarray(v, dtype=float) for k, v in vectors.items()}

    def get_embeddings(self, item_ids, model_id):
        return {i: self.vectors[i] for i in item_ids if i in self.vectors}


class FakeTextEmbedder:
    model_id = "m1"

    def __init__(self, vector):
        self.vector = np.asarray(vector, dtype=float)
        self.calls = []

    def get_text_embedding(self, text):
        self.calls.append(text)
        return self.vector


@pytest.fixture
def rules():
    return FranchiseRules.from_dicts([{"pattern": "^Star Trek", "franchise": "Star Trek"}])


def test_franchise_boost_maps_score_range():
    prefs = {"star trek": 1.0, "star wars": -1.0}

    assert franchise_boost(prefs, "Star Trek") == 1.5
    assert franchise_boost(prefs, "Star Wars") == 0.5
    assert franchise_boost(prefs, "Dune") == 1.0
    assert franchise_boost(prefs, None) == 1.0


def test_genre_boost_averages_matched_weights():
    weights = {"drama": 2.0, "comedy": 1.0}

    assert genre_boost(weights, ["Drama", "Comedy"]) == pytest.approx(1.25)
    assert genre_boost(weights, ["Drama", "Western"]) == pytest.approx(1.5)
    assert genre_boost(weights, ["Western"]) == 1.0
    assert genre_boost({"drama": 0.0}, ["Drama"]) == 0.5


def test_interest_boost_threshold_and_ceiling():
    assert interest_boost(0.4) == 1.0
    assert interest_boost(0.5) == 1.0
    assert interest_boost(1.0) == pytest.approx(1.3)
    assert interest_boost(0.75) == pytest.approx(1.15)
    assert interest_boost(1.0, weight=2.0) == pytest.approx(1.6)


def test_apply_multiplies_boosts_into_final_base(rules):
    scored = [
        make_scored("a", "Star Trek Beyond", 0.5, genres=["Sci-Fi"]),
        make_scored("b", "Arrival", 0.5, genres=["Drama"]),
    ]
    prefs = FakePreferences(franchises={"star trek": 0.6}, genres={"sci-fi": 1.0})
    engine = PreferenceBoostEngine(prefs, FakeEmbeddings({}), rules)

    engine.apply("u", "movie", scored, "m1")

    a, b = scored
    assert a.franchise == "Star Trek"
    assert a.franchise_boost == pytest.approx(1.3)
    assert a.genre_boost == pytest.approx(1.0)
    assert a.final_base == pytest.approx(0.65)
    assert a.base_score == 0.5
    assert b.final_base == pytest.approx(0.5)


def test_apply_without_preferences_is_neutral(rules):
    scored = [make_scored("a", "Arrival", 0.4)]

    PreferenceBoostEngine(FakePreferences(), FakeEmbeddings({}), rules).apply("u", "movie", scored, "m1")

    assert scored[0].boost_multiplier == 1.0
    assert scored[0].final_base == 0.4


def test_preference_lookup_failure_is_skipped(rules):
    scored = [make_scored("a", "Star Trek Beyond", 0.4)]

    PreferenceBoostEngine(FakePreferences(fail=True), FakeEmbeddings({}), rules).apply("u", "movie", scored, "m1")

    assert scored[0].final_base == 0.4


def test_interest_boost_only_for_top_k_by_base_score(rules):
    interest = CustomInterest(1, "u", "space", embedding=np.array([1.0, 0.0]), model_id="m1")
    scored = [
        make_scored("low", "Low", 0.1),
        make_scored("high", "High", 0.9),
    ]
    embeddings = FakeEmbeddings({"low": [1.0, 0.0], "high": [1.0, 0.0]})
    engine = PreferenceBoostEngine(FakePreferences(interests=[interest]), embeddings, rules, interest_top_k=1)

    engine.apply("u", "movie", scored, "m1")

    low, high = scored
    assert high.interest_boost == pytest.approx(1.3)
    assert low.interest_boost == 1.0


def test_missing_interest_embedding_is_computed_and_persisted(rules):
    interest = CustomInterest(7, "u", "heists")
    prefs = FakePreferences(interests=[interest])
    embedder = FakeTextEmbedder([0.0, 1.0])
    engine = PreferenceBoostEngine(prefs, FakeEmbeddings({"a": [0.0, 1.0]}), rules, text_embedder=embedder)
    scored = [make_scored("a", "Heat", 0.5)]

    engine.apply("u", "movie", scored, "m1")

    assert embedder.calls == ["heists"]
    assert prefs.saved_embeddings == [(7, "m1")]
    assert scored[0].interest_boost == pytest.approx(1.3)


def test_interest_embedded_with_other_model_is_ignored(rules):
    interest = CustomInterest(1, "u", "space", embedding=np.array([1.0, 0.0]), model_id="old")
    scored = [make_scored("a", "A", 0.5)]
    engine = PreferenceBoostEngine(FakePreferences(interests=[interest]), FakeEmbeddings({"a": [1.0, 0.0]}), rules)

    engine.apply("u", "movie", scored, "m1")

    assert scored[0].interest_boost == 1.0


def test_interest_failure_is_best_effort(rules):
    class BrokenEmbeddings:
        def get_embeddings(self, item_ids, model_id):
            raise RuntimeError("vector store down")

    interest = CustomInterest(1, "u", "space", embedding=np.array([1.0, 0.0]), model_id="m1")
    scored = [make_scored("a", "A", 0.5)]
    engine = PreferenceBoostEngine(FakePreferences(interests=[interest]), BrokenEmbeddings(), rules)

    engine.apply("u", "movie", scored, "m1")

    assert scored[0].interest_boost == 1.0
    assert scored[0].final_base == 0.5
