"""
Emotional state model and discretization.

Continuous states live on three axes: valence and arousal in [-1, 1] and
stress in [0, 1]. The Q-table never sees them directly; it is keyed by a
coarse bucket triple so that learning converges with little data.
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

import numpy as np

from .config import VALENCE_BUCKETS, AROUSAL_BUCKETS, STRESS_BUCKETS
from .utils import clamp

logger = logging.getLogger(__name__)

VALENCE_RANGE = (-1.0, 1.0)
AROUSAL_RANGE = (-1.0, 1.0)
STRESS_RANGE = (0.0, 1.0)

_KEY_PATTERN = re.compile(r"^v(\d+):a(\d+):s(\d+)$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EmotionalState:
    """Snapshot produced by an external emotion detector."""

    valence: float
    arousal: float
    stress: float
    confidence: float = 1.0
    timestamp: datetime = field(default_factory=_now)

    def as_vector(self, include_stress: bool = True) -> np.ndarray:
        if include_stress:
            return np.array([self.valence, self.arousal, self.stress], dtype=float)
        return np.array([self.valence, self.arousal], dtype=float)

    def to_dict(self) -> dict:
        return {
            "valence": self.valence,
            "arousal": self.arousal,
            "stress": self.stress,
            "confidence": self.confidence,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "EmotionalState":
        timestamp = payload.get("timestamp")
        return cls(
            valence=float(payload["valence"]),
            arousal=float(payload["arousal"]),
            stress=float(payload.get("stress", 0.0)),
            confidence=float(payload.get("confidence", 1.0)),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else _now(),
        )


class Intensity(Enum):
    """How large a shift the user is asking for."""

    SUBTLE = "subtle"
    MODERATE = "moderate"
    SIGNIFICANT = "significant"

    @classmethod
    def from_distance(cls, distance: float) -> "Intensity":
        if distance < 0.3:
            return cls.SUBTLE
        if distance < 0.6:
            return cls.MODERATE
        return cls.SIGNIFICANT


@dataclass(frozen=True)
class DesiredState:
    """The user's goal for one recommendation cycle."""

    target_valence: float
    target_arousal: float
    target_stress: float
    intensity: Intensity = Intensity.MODERATE
    reasoning: str = ""

    def as_vector(self, include_stress: bool = True) -> np.ndarray:
        if include_stress:
            return np.array([self.target_valence, self.target_arousal, self.target_stress], dtype=float)
        return np.array([self.target_valence, self.target_arousal], dtype=float)

    @classmethod
    def toward(
        cls,
        current: EmotionalState,
        target_valence: float,
        target_arousal: float,
        target_stress: float,
        reasoning: str = "",
    ) -> "DesiredState":
        """Build a desired state, inferring intensity from the distance to travel."""
        target = np.array([target_valence, target_arousal, target_stress], dtype=float)
        distance = float(np.linalg.norm(target - current.as_vector()))
        return cls(
            target_valence=target_valence,
            target_arousal=target_arousal,
            target_stress=target_stress,
            intensity=Intensity.from_distance(distance),
            reasoning=reasoning,
        )

    def to_dict(self) -> dict:
        return {
            "target_valence": self.target_valence,
            "target_arousal": self.target_arousal,
            "target_stress": self.target_stress,
            "intensity": self.intensity.value,
            "reasoning": self.reasoning,
        }

    @classmethod
    def from_dict(cls, payload: dict) -> "DesiredState":
        return cls(
            target_valence=float(payload["target_valence"]),
            target_arousal=float(payload["target_arousal"]),
            target_stress=float(payload.get("target_stress", 0.0)),
            intensity=Intensity(payload.get("intensity", Intensity.MODERATE.value)),
            reasoning=payload.get("reasoning", ""),
        )


class StateDiscretizer:
    """
    Map continuous emotional states to discrete Q-table keys.

    Each axis is split into equal-width bins over its domain. A value equal to
    the upper bound lands in the last bin rather than overflowing.
    """

    def __init__(
        self,
        valence_buckets: int = VALENCE_BUCKETS,
        arousal_buckets: int = AROUSAL_BUCKETS,
        stress_buckets: int = STRESS_BUCKETS,
    ):
        for name, n in (
            ("valence_buckets", valence_buckets),
            ("arousal_buckets", arousal_buckets),
            ("stress_buckets", stress_buckets),
        ):
            if n < 2:
                raise ValueError(f"{name} must be at least 2")
        self.valence_buckets = valence_buckets
        self.arousal_buckets = arousal_buckets
        self.stress_buckets = stress_buckets

    @property
    def state_count(self) -> int:
        return self.valence_buckets * self.arousal_buckets * self.stress_buckets

    @staticmethod
    def bucket(value: float, lo: float, hi: float, n: int) -> int:
        index = math.floor((value - lo) / (hi - lo) * n)
        return max(0, min(n - 1, index))

    def buckets(self, state: EmotionalState) -> tuple[int, int, int]:
        return (
            self.bucket(state.valence, *VALENCE_RANGE, self.valence_buckets),
            self.bucket(state.arousal, *AROUSAL_RANGE, self.arousal_buckets),
            self.bucket(state.stress, *STRESS_RANGE, self.stress_buckets),
        )

    def key(self, state: EmotionalState) -> str:
        v, a, s = self.buckets(state)
        return f"v{v}:a{a}:s{s}"

    def parse_key(self, key: str) -> tuple[int, int, int]:
        """Inverse of key(); raises ValueError for foreign or out-of-range keys."""
        match = _KEY_PATTERN.match(key)
        if not match:
            raise ValueError(f"Invalid state key: {key!r}")
        v, a, s = (int(g) for g in match.groups())
        if v >= self.valence_buckets or a >= self.arousal_buckets or s >= self.stress_buckets:
            raise ValueError(f"State key {key!r} is outside a {self.valence_buckets}x"
                             f"{self.arousal_buckets}x{self.stress_buckets} grid")
        return v, a, s


# Homeostasis rules, applied in priority order
STRESS_THRESHOLD = 0.6
LOW_MOOD_THRESHOLD = -0.3
HIGH_AROUSAL_THRESHOLD = 0.5
LOW_AROUSAL_THRESHOLD = -0.3


def predict_desired_state(current: EmotionalState) -> DesiredState:
    """
    Guess where the user wants to go when they did not say.

    Priority: high stress, anxiety (high arousal + negative valence), low mood,
    low energy, and finally a subtle lift of the current state.
    """
    if current.stress > STRESS_THRESHOLD:
        return DesiredState(
            target_valence=0.5,
            target_arousal=-0.4,
            target_stress=0.3,
            intensity=Intensity.SIGNIFICANT if current.stress > 0.8 else Intensity.MODERATE,
            reasoning="High stress: calming, low-arousal content.",
        )

    if current.arousal > HIGH_AROUSAL_THRESHOLD and current.valence < 0:
        return DesiredState(
            target_valence=0.4,
            target_arousal=-0.5,
            target_stress=0.2,
            intensity=Intensity.SIGNIFICANT,
            reasoning="Anxious or agitated: bring arousal down and lift mood.",
        )

    if current.valence < LOW_MOOD_THRESHOLD:
        return DesiredState(
            target_valence=0.6,
            target_arousal=0.3,
            target_stress=max(0.2, current.stress - 0.2),
            intensity=Intensity.SIGNIFICANT if current.valence < -0.6 else Intensity.MODERATE,
            reasoning="Low mood: uplifting, moderately energizing content.",
        )

    if current.arousal < LOW_AROUSAL_THRESHOLD and current.valence > -0.2:
        return DesiredState(
            target_valence=0.7,
            target_arousal=0.5,
            target_stress=0.3,
            intensity=Intensity.MODERATE,
            reasoning="Low energy: engaging content that keeps the mood positive.",
        )

    return DesiredState(
        target_valence=clamp(current.valence + 0.2, -1.0, 1.0),
        target_arousal=current.arousal,
        target_stress=clamp(current.stress - 0.1, 0.0, 1.0),
        intensity=Intensity.SUBTLE,
        reasoning="Balanced state: maintain with a slight positive lift.",
    )
