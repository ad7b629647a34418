"""
Reward functions for emotional-state transitions.

Two reward shapes exist side by side and are selected by configuration:

- ALIGNMENT: how much closer the user ended up to the desired state, blended
  with completion and star rating.
- DIRECTION_MAGNITUDE: did the user move in the desired direction, how far
  relative to how far they needed to go, and did they land near the target;
  completion and rating are blended in at a lower weight.

Both return a reward clamped to [-1, 1] and never raise for in-range input.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .config import (
    DIRECTION_WEIGHT,
    MAGNITUDE_WEIGHT,
    PROXIMITY_RADIUS,
    PROXIMITY_BONUS,
    TRANSITION_BLEND,
    COMPLETION_BLEND,
    RATING_BLEND,
    ALIGNMENT_WEIGHT,
    ALIGNMENT_COMPLETION_WEIGHT,
    ALIGNMENT_RATING_WEIGHT,
    MAX_STATE_DISTANCE,
    COMPLETION_CREDIT_STEPS,
    COMPLETION_CREDIT_NEAR_END,
    NEUTRAL_RATING,
)
from .state import EmotionalState, DesiredState
from .utils import clamp, cosine_similarity

logger = logging.getLogger(__name__)


class RewardStrategy(Enum):
    """Which reward shape to apply."""

    ALIGNMENT = "alignment"
    DIRECTION_MAGNITUDE = "direction_magnitude"


@dataclass
class RewardConfig:
    """Weights for both strategies; defaults come from config.py."""

    direction_weight: float = DIRECTION_WEIGHT
    magnitude_weight: float = MAGNITUDE_WEIGHT
    proximity_radius: float = PROXIMITY_RADIUS
    proximity_bonus: float = PROXIMITY_BONUS
    transition_blend: float = TRANSITION_BLEND
    completion_blend: float = COMPLETION_BLEND
    rating_blend: float = RATING_BLEND
    include_stress: bool = False

    alignment_weight: float = ALIGNMENT_WEIGHT
    alignment_completion_weight: float = ALIGNMENT_COMPLETION_WEIGHT
    alignment_rating_weight: float = ALIGNMENT_RATING_WEIGHT

    def __post_init__(self) -> None:
        if self.completion_blend + self.rating_blend > 0.25 + 1e-9:
            raise ValueError("completion_blend + rating_blend must not exceed 0.25")
        if self.proximity_radius < 0 or self.proximity_bonus < 0:
            raise ValueError("proximity settings must be non-negative")
        weights = (
            self.direction_weight, self.magnitude_weight, self.transition_blend,
            self.completion_blend, self.rating_blend, self.alignment_weight,
            self.alignment_completion_weight, self.alignment_rating_weight,
        )
        if any(w < 0 for w in weights):
            raise ValueError("reward weights must be non-negative")


@dataclass
class RewardResult:
    reward: float
    components: dict[str, float] = field(default_factory=dict)
    explanation: str = ""
    strategy: RewardStrategy = RewardStrategy.ALIGNMENT


def completion_credit(completed: bool, watched_duration: float, total_duration: float) -> float:
    """Full credit for finishing; partial or negative credit by fraction watched."""
    if completed:
        return 1.0
    fraction = watched_duration / total_duration if total_duration > 0 else 0.0
    for upper, credit in COMPLETION_CREDIT_STEPS:
        if fraction < upper:
            return credit
    return COMPLETION_CREDIT_NEAR_END


def rating_credit(rating: float | None) -> float:
    """Map 1-5 stars linearly to [-1, 1]; 3 stars (or no rating) is neutral."""
    if rating is None:
        return 0.0
    return clamp((rating - NEUTRAL_RATING) / 2.0, -1.0, 1.0)


class RewardCalculator:
    """Turn a (before, after, desired, completion, rating) tuple into a scalar reward."""

    def __init__(
        self,
        strategy: RewardStrategy = RewardStrategy.ALIGNMENT,
        config: RewardConfig | None = None,
    ):
        self.strategy = RewardStrategy(strategy)
        self.config = config or RewardConfig()

    def calculate(
        self,
        before: EmotionalState,
        after: EmotionalState,
        desired: DesiredState,
        completed: bool = False,
        rating: float | None = None,
        watched_duration: float = 0.0,
        total_duration: float = 0.0,
    ) -> RewardResult:
        completion = completion_credit(completed, watched_duration, total_duration)
        stars = rating_credit(rating)

        if self.strategy is RewardStrategy.DIRECTION_MAGNITUDE:
            result = self._direction_magnitude(before, after, desired, completion, stars)
        else:
            result = self._alignment(before, after, desired, completion, stars)

        logger.debug(
            f"{self.strategy.value} reward={result.reward:.3f} components="
            + ", ".join(f"{k}={v:.3f}" for k, v in result.components.items())
        )
        return result

    # Strategies -------------------------------------------------------

    def _alignment(
        self,
        before: EmotionalState,
        after: EmotionalState,
        desired: DesiredState,
        completion: float,
        stars: float,
    ) -> RewardResult:
        target = desired.as_vector()
        distance_before = float(np.linalg.norm(before.as_vector() - target))
        distance_after = float(np.linalg.norm(after.as_vector() - target))
        alignment = clamp((distance_before - distance_after) / MAX_STATE_DISTANCE, -1.0, 1.0)

        cfg = self.config
        raw = (
            cfg.alignment_weight * alignment
            + cfg.alignment_completion_weight * completion
            + cfg.alignment_rating_weight * stars
        )
        reward = clamp(raw, -1.0, 1.0)
        components = {
            "emotional_alignment": alignment,
            "completion": completion,
            "rating": stars,
        }
        contributions = {
            "emotional_alignment": cfg.alignment_weight * alignment,
            "completion": cfg.alignment_completion_weight * completion,
            "rating": cfg.alignment_rating_weight * stars,
        }
        return RewardResult(
            reward=reward,
            components=components,
            explanation=_explain(reward, contributions),
            strategy=RewardStrategy.ALIGNMENT,
        )

    def _direction_magnitude(
        self,
        before: EmotionalState,
        after: EmotionalState,
        desired: DesiredState,
        completion: float,
        stars: float,
    ) -> RewardResult:
        cfg = self.config
        start = before.as_vector(cfg.include_stress)
        actual = after.as_vector(cfg.include_stress) - start
        wanted = desired.as_vector(cfg.include_stress) - start

        cos = cosine_similarity(actual, wanted)
        direction = 0.5 if cos is None else (cos + 1.0) / 2.0

        wanted_norm = float(np.linalg.norm(wanted))
        if wanted_norm == 0.0:
            magnitude = 1.0
        else:
            magnitude = min(float(np.linalg.norm(actual)) / wanted_norm, 1.0)

        miss = float(np.linalg.norm(after.as_vector(cfg.include_stress) - desired.as_vector(cfg.include_stress)))
        proximity = cfg.proximity_bonus if miss < cfg.proximity_radius else 0.0

        # Direction is re-centred so that moving away from the goal is negative
        emotional = (
            cfg.direction_weight * (2.0 * direction - 1.0)
            + cfg.magnitude_weight * magnitude
            + proximity
        )
        raw = (
            cfg.transition_blend * emotional
            + cfg.completion_blend * completion
            + cfg.rating_blend * stars
        )
        reward = clamp(raw, -1.0, 1.0)
        components = {
            "direction_alignment": direction,
            "magnitude": magnitude,
            "proximity_bonus": proximity,
            "completion": completion,
            "rating": stars,
        }
        contributions = {
            "direction_alignment": cfg.transition_blend * cfg.direction_weight * (2.0 * direction - 1.0),
            "magnitude": cfg.transition_blend * cfg.magnitude_weight * magnitude,
            "proximity_bonus": cfg.transition_blend * proximity,
            "completion": cfg.completion_blend * completion,
            "rating": cfg.rating_blend * stars,
        }
        return RewardResult(
            reward=reward,
            components=components,
            explanation=_explain(reward, contributions),
            strategy=RewardStrategy.DIRECTION_MAGNITUDE,
        )


_COMPONENT_PHRASES = {
    "emotional_alignment": ("you moved closer to the state you wanted",
                            "your mood drifted away from the state you wanted"),
    "direction_alignment": ("your mood shifted in the direction you wanted",
                            "your mood shifted the wrong way"),
    "magnitude": ("you covered most of the distance to your goal",
                  "there was little emotional movement"),
    "proximity_bonus": ("you ended up right where you wanted to be",
                        "you did not reach the target state"),
    "completion": ("you finished the content", "you stopped watching early"),
    "rating": ("you rated it highly", "you rated it poorly"),
}


def _explain(reward: float, contributions: dict[str, float]) -> str:
    if reward > 0.5:
        overall = "Great choice"
    elif reward > 0:
        overall = "Good choice"
    elif reward > -0.3:
        overall = "This was okay"
    else:
        overall = "This wasn't ideal"

    if not contributions or all(v == 0 for v in contributions.values()):
        return f"{overall}: nothing stood out."

    dominant = max(contributions, key=lambda k: abs(contributions[k]))
    positive, negative = _COMPONENT_PHRASES[dominant]
    phrase = positive if contributions[dominant] > 0 else negative
    return f"{overall}: mostly because {phrase}."
