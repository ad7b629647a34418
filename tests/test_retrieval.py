import json
import threading

import httpx
import numpy as np
import pytest

from emotion_rec.errors import RetrievalError, RetrievalTimeout
from emotion_rec.retrieval import (
    ContentProfile,
    HttpVectorRetriever,
    InMemoryVectorRetriever,
    VectorRetriever,
    load_catalog,
    query_with_timeout,
    synthetic_catalog,
    transition_vector,
)


def test_transition_vector(stressed_state, calm_target):
    assert transition_vector(stressed_state, calm_target) == pytest.approx([1.1, -0.4, -0.4])


def test_in_memory_orders_by_cosine(retriever, stressed_state, calm_target):
    results = retriever.query(transition_vector(stressed_state, calm_target), 10)

    assert [c.content_id for c in results] == ["calm-doc", "meditation", "comedy", "thriller", "drama"]
    scores = [c.similarity_score for c in results]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)
    assert results[0].profile.title == "Quiet Forest"


def test_in_memory_limit_and_empty(retriever):
    assert len(retriever.query(np.array([1.0, 0.0, 0.0]), 2)) == 2
    assert retriever.query(np.array([1.0, 0.0, 0.0]), 0) == []
    assert InMemoryVectorRetriever().query(np.array([1.0, 0.0, 0.0]), 5) == []


def test_zero_vectors_score_neutral():
    index = InMemoryVectorRetriever([
        ContentProfile("flat"),
        ContentProfile("up", valence_delta=1.0),
    ])
    by_id = {c.content_id: c.similarity_score for c in index.query(np.array([1.0, 0.0, 0.0]), 5)}
    assert by_id == {"up": pytest.approx(1.0), "flat": 0.5}

    zero_query = index.query(np.zeros(3), 5)
    assert [c.similarity_score for c in zero_query] == [0.5, 0.5]
    assert [c.content_id for c in zero_query] == ["flat", "up"]


def test_in_memory_add_replaces_existing():
    index = InMemoryVectorRetriever([ContentProfile("a", valence_delta=1.0)])
    index.add(ContentProfile("a", title="again", valence_delta=-1.0))

    assert len(index) == 1
    assert index.get("a").title == "again"
    assert index.query(np.array([1.0, 0.0, 0.0]), 1)[0].similarity_score == pytest.approx(0.0)
    with pytest.raises(ValueError):
        index.add(ContentProfile("b"), vector=np.zeros(2))


def _http(handler, **kwargs):
    return HttpVectorRetriever("http://retriever.test", transport=httpx.MockTransport(handler), **kwargs)


def test_http_retriever_parses_results():
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"results": [
            {"content_id": "x", "similarity": 0.9, "profile": {"title": "X", "valence_delta": 0.4}},
            {"content_id": 7, "similarity": 1.3},
            {"content_id": "z", "similarity": 0.1},
        ]})

    client = _http(handler)
    results = client.query(np.array([0.5, -0.1, 0.2]), 2)
    client.close()

    assert seen["path"] == "/query"
    assert seen["body"] == {"vector": [0.5, -0.1, 0.2], "limit": 2}
    assert [c.content_id for c in results] == ["x", "7"]
    assert results[0].profile.title == "X"
    assert results[0].profile.content_id == "x"
    assert results[1].similarity_score == 1.0
    assert results[1].profile is None


def test_http_retriever_timeout_is_retryable():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(RetrievalTimeout) as excinfo:
        _http(handler).query(np.ones(3), 3)
    assert excinfo.value.retryable


def test_http_retriever_server_error():
    with pytest.raises(RetrievalError) as excinfo:
        _http(lambda request: httpx.Response(500)).query(np.ones(3), 3)
    assert not excinfo.value.retryable


def test_http_retriever_malformed_payload():
    with pytest.raises(RetrievalError):
        _http(lambda request: httpx.Response(200, json={"items": []})).query(np.ones(3), 3)


def test_http_retriever_retries_rate_limit():
    calls = []

    def handler(request):
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(429)
        return httpx.Response(200, json={"results": [{"content_id": "ok", "similarity": 0.5}]})

    results = _http(handler, backoff=0.0, max_retries=3).query(np.ones(3), 1)
    assert len(calls) == 3
    assert results[0].content_id == "ok"


def test_http_retriever_gives_up_after_max_retries():
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503)

    with pytest.raises(RetrievalError):
        _http(handler, backoff=0.0, max_retries=2).query(np.ones(3), 1)
    assert len(calls) == 2


def _no_call_pool(*args, **kwargs):
    raise AssertionError("shared call pool must not be used")


def test_http_query_with_timeout_bounds_request_without_call_pool(monkeypatch):
    import emotion_rec.retrieval as retrieval

    monkeypatch.setattr(retrieval, "call_with_timeout", _no_call_pool)
    seen = {}

    def handler(request):
        seen["timeout"] = request.extensions["timeout"]
        raise httpx.ReadTimeout("slow", request=request)

    client = _http(handler, timeout=30.0)
    with pytest.raises(RetrievalTimeout):
        query_with_timeout(client, np.ones(3), 3, timeout=0.5)
    client.close()

    # The caller's budget, not the client's 30s default, bounds the request
    assert 0 < seen["timeout"]["read"] <= 0.5


def test_http_query_with_timeout_skips_backoff_past_deadline(monkeypatch):
    import emotion_rec.retrieval as retrieval

    monkeypatch.setattr(retrieval, "call_with_timeout", _no_call_pool)
    calls = []

    def handler(request):
        calls.append(1)
        return httpx.Response(503)

    client = _http(handler, backoff=10.0, max_retries=3)
    with pytest.raises(RetrievalTimeout):
        query_with_timeout(client, np.ones(3), 1, timeout=0.5)
    assert len(calls) == 1


class _SlowRetriever(VectorRetriever):
    def __init__(self):
        self.release = threading.Event()

    def query(self, vector, limit):
        self.release.wait(timeout=5)
        return []


class _BrokenRetriever(VectorRetriever):
    def query(self, vector, limit):
        raise RuntimeError("index corrupted")


def test_query_with_timeout_gives_up():
    slow = _SlowRetriever()
    with pytest.raises(RetrievalTimeout):
        query_with_timeout(slow, np.ones(3), 5, timeout=0.05)
    slow.release.set()


def test_query_with_timeout_wraps_failures():
    with pytest.raises(RetrievalError, match="index corrupted"):
        query_with_timeout(_BrokenRetriever(), np.ones(3), 5, timeout=1.0)


def test_query_with_timeout_passes_results_through(retriever):
    assert len(query_with_timeout(retriever, np.ones(3), 3, timeout=None)) == 3


def test_synthetic_catalog_is_deterministic():
    a = synthetic_catalog(12, seed=3)
    b = synthetic_catalog(12, seed=3)

    assert [p.to_dict() for p in a] == [p.to_dict() for p in b]
    assert len({p.content_id for p in a}) == 12
    assert a[0].content_id == "mock_movie_001"
    assert {p.category for p in a} == {"movie", "series", "documentary", "music", "meditation", "short"}
    assert all(-1.0 <= p.valence_delta <= 1.0 for p in a)


def test_load_catalog(tmp_path, catalog):
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps([p.to_dict() for p in catalog]))
    assert [p.content_id for p in load_catalog(path)] == [p.content_id for p in catalog]

    path.write_text(json.dumps({"items": [{"content_id": "solo", "valence_delta": 0.2}]}))
    assert load_catalog(path)[0].valence_delta == 0.2

    path.write_text(json.dumps("nope"))
    with pytest.raises(ValueError):
        load_catalog(path)
