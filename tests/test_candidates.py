import numpy as np

from library_rec.candidates import Candidate, CandidateRetriever, build_exclusion_set


class FakeNeighbours:
    def __init__(self, candidates, model_id="m1"):
        self.candidates = candidates
        self.model_id = model_id
        self.calls = []

    def get_active_model_id(self, media_kind):
        return self.model_id

    def nearest_neighbors(self, vector, model_id, media_kind, limit, rating_ceiling=None):
        self.calls.append({"limit": limit, "rating_ceiling": rating_ceiling, "media_kind": media_kind})
        return list(self.candidates[:limit])


def make_candidates(n):
    return [Candidate(item_id=f"c{i}", title=f"T{i}", raw_similarity=1.0 - i / n) for i in range(n)]


def test_exclusion_set_respects_user_settings():
    watched = {"a", "b"}
    disliked = {"x"}

    assert build_exclusion_set(watched, disliked) == {"a", "b", "x"}
    assert build_exclusion_set(watched, disliked, include_watched=True) == {"x"}
    assert build_exclusion_set(watched, disliked, dislike_behavior="penalize") == {"a", "b"}


def test_retrieve_over_fetches_and_filters_excluded():
    provider = FakeNeighbours(make_candidates(20))
    retriever = CandidateRetriever(provider)

    result = retriever.retrieve(np.ones(3), {"c0", "c1", "c2"}, k=5, media_kind="movie", rating_ceiling=13)

    assert provider.calls == [{"limit": 10, "rating_ceiling": 13, "media_kind": "movie"}]
    assert [c.item_id for c in result] == ["c3", "c4", "c5", "c6", "c7"]


def test_retrieve_clamps_similarity():
    provider = FakeNeighbours([
        Candidate(item_id="a", title="A", raw_similarity=1.3),
        Candidate(item_id="b", title="B", raw_similarity=-0.2),
    ])

    result = CandidateRetriever(provider).retrieve(np.ones(3), set(), k=5, media_kind="movie")

    assert [c.raw_similarity for c in result] == [1.0, 0.0]


def test_retrieve_without_model_returns_empty():
    provider = FakeNeighbours(make_candidates(5), model_id=None)

    assert CandidateRetriever(provider).retrieve(np.ones(3), set(), k=5, media_kind="series") == []
    assert provider.calls == []


def test_retrieve_everything_excluded_returns_empty():
    provider = FakeNeighbours(make_candidates(4))

    result = CandidateRetriever(provider).retrieve(np.ones(3), {"c0", "c1", "c2", "c3"}, k=2, media_kind="movie")

    assert result == []
