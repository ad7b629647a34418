"""
Hybrid ranking: learned Q-values blended with content similarity.

combined = q_weight * q_norm + similarity_weight * similarity

Candidates are ordered by combined score, then each output slot makes one
exploration decision through the same ExplorationPolicy the policy engine
uses.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

from .exploration import RandomSource
from .policy import QPolicyEngine
from .retrieval import Candidate, ContentProfile
from .rl_config import RankingConfig, QScale
from .state import EmotionalState, DesiredState
from .utils import clamp, cosine_similarity

logger = logging.getLogger(__name__)

# Outcome-prediction confidence saturates around this many watches
WATCH_SATURATION = 20.0
MIN_OUTCOME_CONFIDENCE = 0.1
MAX_OUTCOME_CONFIDENCE = 0.95


@dataclass(frozen=True)
class PredictedOutcome:
    expected_valence: float
    expected_arousal: float
    expected_stress: float
    confidence: float


@dataclass(frozen=True)
class Recommendation:
    content_id: str
    q_value: float
    similarity_score: float
    combined_score: float
    is_exploration: bool
    predicted_outcome: PredictedOutcome | None = None
    reasoning: str = ""
    rank: int = 0
    title: str = ""
    outcome_alignment: float = 0.5

    def to_dict(self) -> dict:
        payload = {
            "rank": self.rank,
            "content_id": self.content_id,
            "title": self.title,
            "q_value": self.q_value,
            "similarity_score": self.similarity_score,
            "combined_score": self.combined_score,
            "is_exploration": self.is_exploration,
            "outcome_alignment": self.outcome_alignment,
            "reasoning": self.reasoning,
        }
        if self.predicted_outcome is not None:
            payload["predicted_outcome"] = {
                "valence": self.predicted_outcome.expected_valence,
                "arousal": self.predicted_outcome.expected_arousal,
                "stress": self.predicted_outcome.expected_stress,
                "confidence": self.predicted_outcome.confidence,
            }
        return payload


def resolve_scale(q_values: Sequence[float], scale: QScale) -> QScale:
    """Pick one concrete scale for a candidate set so its order is preserved."""
    if scale is not QScale.AUTO:
        return scale
    if all(0.0 <= q <= 1.0 for q in q_values):
        return QScale.UNIT
    return QScale.SIGNED


def normalize_q(q_value: float, scale: QScale) -> float:
    scale = resolve_scale([q_value], scale)
    if scale is QScale.SIGNED:
        return clamp((q_value + 1.0) / 2.0, 0.0, 1.0)
    return clamp(q_value, 0.0, 1.0)


def predict_outcome(current: EmotionalState, profile: ContentProfile) -> PredictedOutcome:
    """Post-viewing state if the content has its typical effect."""
    watches = max(profile.total_watches, 0)
    variance = clamp(profile.outcome_variance, 0.0, 1.0)
    confidence = (1.0 - math.exp(-watches / WATCH_SATURATION)) * (1.0 - variance)
    return PredictedOutcome(
        expected_valence=clamp(current.valence + profile.valence_delta, -1.0, 1.0),
        expected_arousal=clamp(current.arousal + profile.arousal_delta, -1.0, 1.0),
        expected_stress=clamp(current.stress - profile.stress_reduction, 0.0, 1.0),
        confidence=clamp(confidence, MIN_OUTCOME_CONFIDENCE, MAX_OUTCOME_CONFIDENCE),
    )


def calculate_outcome_alignment(
    profile: ContentProfile,
    desired: DesiredState,
    current: EmotionalState | None = None,
) -> float:
    """
    How well the content's (valence, arousal) effect points toward the goal.

    The goal offset is desired - current when the current state is known,
    otherwise the desired coordinates themselves. Returns 0.5 when either
    vector is zero.
    """
    effect = (profile.valence_delta, profile.arousal_delta)
    if current is not None:
        wanted = (desired.target_valence - current.valence, desired.target_arousal - current.arousal)
    else:
        wanted = (desired.target_valence, desired.target_arousal)
    cos = cosine_similarity(effect, wanted)
    if cos is None:
        return 0.5
    return (cos + 1.0) / 2.0


def describe_state(valence: float, arousal: float, stress: float = 0.0) -> str:
    if valence > 0.3 and arousal > 0.3:
        mood = "excited and happy"
    elif valence > 0.3 and arousal < -0.3:
        mood = "calm and content"
    elif valence < -0.3 and arousal > 0.3:
        mood = "stressed and anxious"
    elif valence < -0.3 and arousal < -0.3:
        mood = "sad and lethargic"
    elif arousal > 0.5:
        mood = "energized and alert"
    elif arousal < -0.5:
        mood = "relaxed and calm"
    elif valence > 0.3:
        mood = "positive and balanced"
    elif valence < -0.3:
        mood = "down and subdued"
    else:
        mood = "neutral and balanced"

    if stress > 0.7:
        return f"highly stressed, {mood}"
    if stress > 0.4:
        return f"moderately stressed, {mood}"
    return mood


def generate_reasoning(
    current: EmotionalState | None,
    desired: DesiredState | None,
    profile: ContentProfile | None,
    q_norm: float,
    is_exploration: bool,
) -> str:
    parts = []
    if current is not None:
        parts.append(f"You're currently feeling {describe_state(current.valence, current.arousal, current.stress)}.")
    if desired is not None:
        parts.append(
            f"This should help you move toward feeling "
            f"{describe_state(desired.target_valence, desired.target_arousal)}."
        )
    if profile is not None:
        if profile.valence_delta > 0.2:
            parts.append("It should lift your mood.")
        elif profile.valence_delta < -0.2:
            parts.append("It may be emotionally intense.")
        if profile.arousal_delta > 0.3:
            parts.append("Expect to feel more energized.")
        elif profile.arousal_delta < -0.3:
            parts.append("It will help you unwind.")

    if q_norm > 0.7:
        parts.append("Content like this has worked well for you in this mood.")
    elif q_norm < 0.4:
        parts.append("This is an experimental pick.")
    else:
        parts.append("This matches your emotional needs.")

    if is_exploration:
        parts.append("(New discovery for you!)")
    return " ".join(parts)


@dataclass
class _Scored:
    candidate: Candidate
    q_value: float
    q_norm: float
    combined: float
    visits: int


class HybridRanker:
    """
    Rank retrieved candidates for one user in one state.

    Args:
        policy: Supplies Q-values, visit counts, epsilon and the exploration policy.
        config: Weights and Q scale.
        rng: Random source for exploration; defaults to the policy's.
    """

    def __init__(
        self,
        policy: QPolicyEngine,
        config: RankingConfig | None = None,
        rng: RandomSource | None = None,
    ):
        self.policy = policy
        self.config = config or RankingConfig()
        self.rng = rng or policy.rng

    def score(self, user_id: str, candidates: Sequence[Candidate], state_key: str) -> list[_Scored]:
        """Combined scores in deterministic rank order, before exploration."""
        recorded = self.policy.store.state_actions(user_id, state_key)
        default_q = self.policy.config.default_q_value
        cfg = self.config

        entries = [recorded.get(c.content_id) for c in candidates]
        q_values = [e.q_value if e is not None else default_q for e in entries]
        scale = resolve_scale(q_values, cfg.q_scale)

        scored = []
        for c, entry, q in zip(candidates, entries, q_values):
            q_norm = normalize_q(q, scale)
            sim = clamp(c.similarity_score, 0.0, 1.0)
            scored.append(
                _Scored(
                    candidate=c,
                    q_value=q,
                    q_norm=q_norm,
                    combined=cfg.q_weight * q_norm + cfg.similarity_weight * sim,
                    visits=entry.visit_count if entry is not None else 0,
                )
            )
        scored.sort(key=lambda s: (-s.combined, -s.candidate.similarity_score, s.candidate.content_id))
        return scored

    def rank(
        self,
        user_id: str,
        candidates: Sequence[Candidate],
        state_key: str,
        current_state: EmotionalState | None = None,
        desired_state: DesiredState | None = None,
        limit: int | None = None,
    ) -> list[Recommendation]:
        remaining = self.score(user_id, candidates, state_key)
        slots = len(remaining) if limit is None else min(limit, len(remaining))
        epsilon = self.policy.exploration_rate(user_id)
        total_visits = sum(s.visits for s in remaining)

        results: list[Recommendation] = []
        for slot in range(slots):
            index, explored = self.policy.exploration.choose(
                [s.combined for s in remaining],
                [s.visits for s in remaining],
                epsilon,
                self.rng,
                total_visits=total_visits,
            )
            picked = remaining.pop(index)
            is_exploration = explored or picked.visits == 0
            profile = picked.candidate.profile

            predicted = None
            alignment = 0.5
            if profile is not None:
                if current_state is not None:
                    predicted = predict_outcome(current_state, profile)
                if desired_state is not None:
                    alignment = calculate_outcome_alignment(profile, desired_state, current_state)

            results.append(
                Recommendation(
                    content_id=picked.candidate.content_id,
                    q_value=picked.q_value,
                    similarity_score=picked.candidate.similarity_score,
                    combined_score=picked.combined,
                    is_exploration=is_exploration,
                    predicted_outcome=predicted,
                    reasoning=generate_reasoning(
                        current_state, desired_state, profile, picked.q_norm, is_exploration
                    ),
                    rank=slot + 1,
                    title=profile.title if profile is not None else "",
                    outcome_alignment=alignment,
                )
            )

        logger.debug(
            f"Ranked {len(results)}/{len(candidates)} candidates for {user_id} in {state_key} "
            f"(eps={epsilon:.3f}, explored={sum(r.is_exploration for r in results)})"
        )
        return results
