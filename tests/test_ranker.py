import math

import pytest

from emotion_rec.exploration import SeededRandom
from emotion_rec.policy import QPolicyEngine
from emotion_rec.qtable import InMemoryQTable, QEntry
from emotion_rec.ranker import (
    HybridRanker,
    calculate_outcome_alignment,
    normalize_q,
    predict_outcome,
    resolve_scale,
)
from emotion_rec.retrieval import Candidate, ContentProfile
from emotion_rec.rl_config import RLConfig, RankingConfig, QScale
from emotion_rec.state import EmotionalState, DesiredState

STATE = "v1:a3:s2"


def _ranker(q_values, epsilon=0.0, ranking=None, visits=1, seed=11):
    store = InMemoryQTable()
    for content_id, q in q_values.items():
        store.update("u", STATE, content_id,
                     lambda old, c=content_id, q=q: QEntry("u", STATE, c, q, visits))
    config = RLConfig(epsilon_initial=epsilon, epsilon_min=min(epsilon, 0.1))
    policy = QPolicyEngine(store, config, rng=SeededRandom(seed))
    return HybridRanker(policy, ranking)


def test_worked_example_orders_b_c_a():
    ranker = _ranker({"A": 0.3, "B": 0.8, "C": 0.7})
    candidates = [Candidate("A", 0.9), Candidate("B", 0.6), Candidate("C", 0.7)]

    recs = ranker.rank("u", candidates, STATE)

    assert [r.content_id for r in recs] == ["B", "C", "A"]
    assert [r.combined_score for r in recs] == pytest.approx([0.74, 0.70, 0.48])
    assert [r.rank for r in recs] == [1, 2, 3]
    assert not any(r.is_exploration for r in recs)


def test_combined_score_is_exact_weighted_sum():
    ranker = _ranker({"x": 0.55})
    rec = ranker.rank("u", [Candidate("x", 0.35)], STATE)[0]
    assert rec.combined_score == 0.7 * 0.55 + 0.3 * 0.35


def test_ties_break_on_similarity_then_content_id():
    ranker = _ranker({"b": 0.5, "a": 0.5, "c": 0.5, "d": 0.5})
    # Identical combined score and similarity everywhere: content_id decides
    candidates = [Candidate("c", 0.4), Candidate("b", 0.4), Candidate("d", 0.4), Candidate("a", 0.4)]
    assert [r.content_id for r in ranker.rank("u", candidates, STATE)] == ["a", "b", "c", "d"]


def test_signed_scale_maps_negative_q():
    assert normalize_q(-0.5, QScale.SIGNED) == pytest.approx(0.25)
    assert normalize_q(-0.5, QScale.UNIT) == 0.0
    assert normalize_q(1.4, QScale.UNIT) == 1.0
    assert normalize_q(-0.5, QScale.AUTO) == pytest.approx(0.25)
    assert normalize_q(0.4, QScale.AUTO) == pytest.approx(0.4)

    ranker = _ranker({"x": -0.5}, ranking=RankingConfig(q_scale="signed"))
    rec = ranker.rank("u", [Candidate("x", 1.0)], STATE)[0]
    assert rec.combined_score == pytest.approx(0.7 * 0.25 + 0.3 * 1.0)
    assert rec.q_value == -0.5


def test_default_scale_keeps_negative_q_values_ordered():
    ranker = _ranker({"bad": -0.9, "meh": -0.1})
    recs = ranker.rank("u", [Candidate("bad", 0.6), Candidate("meh", 0.5)], STATE)

    assert [r.content_id for r in recs] == ["meh", "bad"]
    # (q + 1) / 2 across the whole set
    assert [r.combined_score for r in recs] == pytest.approx([0.465, 0.215])
    assert [r.q_value for r in recs] == [-0.1, -0.9]


def test_default_scale_switches_for_the_whole_set():
    assert resolve_scale([0.2, 0.9], QScale.AUTO) is QScale.UNIT
    assert resolve_scale([0.2, -0.1], QScale.AUTO) is QScale.SIGNED
    assert resolve_scale([0.2, -0.1], QScale.UNIT) is QScale.UNIT

    # Mapped one by one, -0.1 (signed, 0.45) would jump above 0.2 (unit, 0.2)
    ranker = _ranker({"low": 0.2, "neg": -0.1})
    recs = ranker.rank("u", [Candidate("low", 0.5), Candidate("neg", 0.5)], STATE)
    assert [r.content_id for r in recs] == ["low", "neg"]
    assert recs[0].combined_score == pytest.approx(0.7 * 0.6 + 0.3 * 0.5)


def test_unvisited_candidates_are_always_flagged():
    ranker = _ranker({"seen": 0.9})
    recs = ranker.rank("u", [Candidate("seen", 0.9), Candidate("new", 0.1)], STATE)
    by_id = {r.content_id: r for r in recs}
    assert not by_id["seen"].is_exploration
    assert by_id["new"].is_exploration
    assert by_id["new"].q_value == 0.5


def test_limit_trims_output():
    ranker = _ranker({c: 0.5 for c in "abcdef"})
    assert len(ranker.rank("u", [Candidate(c, 0.5) for c in "abcdef"], STATE, limit=3)) == 3
    assert ranker.rank("u", [], STATE) == []


def test_exploring_slots_pick_from_remaining_candidates():
    ranker = _ranker({c: 0.1 * i for i, c in enumerate("abcdefgh")}, epsilon=1.0)
    candidates = [Candidate(c, 0.5) for c in "abcdefgh"]
    recs = ranker.rank("u", candidates, STATE)

    assert sorted(r.content_id for r in recs) == sorted("abcdefgh")
    assert all(r.is_exploration for r in recs)


def test_ranking_is_reproducible_with_same_seed():
    q = {c: 0.1 * i for i, c in enumerate("abcdefgh")}
    candidates = [Candidate(c, 0.5) for c in "abcdefgh"]
    first = [r.content_id for r in _ranker(q, epsilon=0.5, seed=5).rank("u", candidates, STATE)]
    second = [r.content_id for r in _ranker(q, epsilon=0.5, seed=5).rank("u", candidates, STATE)]
    assert first == second


def test_outcome_alignment_neutral_for_zero_delta():
    profile = ContentProfile("flat", valence_delta=0.0, arousal_delta=0.0)
    desired = DesiredState(0.5, -0.2, 0.3)
    assert calculate_outcome_alignment(profile, desired) == 0.5
    assert calculate_outcome_alignment(profile, desired, EmotionalState(-0.6, 0.2, 0.7)) == 0.5


def test_outcome_alignment_direction():
    desired = DesiredState(0.5, -0.2, 0.3)
    current = EmotionalState(-0.6, 0.2, 0.7)
    good = ContentProfile("good", valence_delta=1.1, arousal_delta=-0.4)
    bad = ContentProfile("bad", valence_delta=-1.1, arousal_delta=0.4)
    assert calculate_outcome_alignment(good, desired, current) == pytest.approx(1.0)
    assert calculate_outcome_alignment(bad, desired, current) == pytest.approx(0.0)


def test_predict_outcome_clamps_and_scales_confidence():
    current = EmotionalState(0.8, 0.0, 0.1)
    profile = ContentProfile("x", valence_delta=0.5, arousal_delta=-0.2, stress_reduction=0.3,
                             total_watches=20, outcome_variance=0.2)
    outcome = predict_outcome(current, profile)

    assert outcome.expected_valence == 1.0
    assert outcome.expected_arousal == pytest.approx(-0.2)
    assert outcome.expected_stress == 0.0
    assert outcome.confidence == pytest.approx((1 - math.exp(-1)) * 0.8)

    unseen = predict_outcome(current, ContentProfile("y", total_watches=0))
    assert unseen.confidence == 0.1


def test_recommendations_carry_profile_details(catalog):
    ranker = _ranker({})
    current = EmotionalState(-0.6, 0.2, 0.7)
    desired = DesiredState(0.5, -0.2, 0.3)
    candidates = [Candidate(p.content_id, 0.5, p) for p in catalog]

    recs = ranker.rank("u", candidates, STATE, current_state=current, desired_state=desired)

    calm = next(r for r in recs if r.content_id == "calm-doc")
    assert calm.title == "Quiet Forest"
    assert calm.predicted_outcome is not None
    assert calm.outcome_alignment > 0.5
    assert "New discovery" in calm.reasoning
    assert calm.to_dict()["predicted_outcome"]["confidence"] >= 0.1
