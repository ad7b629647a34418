"""
Learning-progress analytics.

Everything here is a pure function of a user's experience history; nothing
is cached between calls.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Sequence

import numpy as np

from .config import (
    TREND_WINDOW,
    TREND_THRESHOLD,
    MIN_EXPERIENCES_FOR_CONVERGENCE,
    EXPERIENCE_SATURATION,
    CONVERGENCE_WEIGHTS,
    STAGE_LEARNING_THRESHOLD,
    STAGE_CONFIDENT_THRESHOLD,
    POLICY_CHANGE_THRESHOLD,
    TOP_CONTENT_COUNT,
    EPSILON_INITIAL,
    EPSILON_DECAY,
    EPSILON_MIN,
)
from .experience import Experience
from .state import EmotionalState
from .utils import clamp

logger = logging.getLogger(__name__)

EXPLORING = "exploring"
LEARNING = "learning"
CONFIDENT = "confident"

_STAGE_TIPS = {
    EXPLORING: [
        "Continue watching to build your profile",
        "Try different content types",
        "Provide detailed feedback after watching",
    ],
    LEARNING: [
        "Your profile is developing well",
        "Keep completing content you start",
        "Rate content honestly to refine recommendations",
    ],
    CONFIDENT: [
        "Your preferences are well-established",
        "Explore new genres occasionally to discover surprises",
        "Recommendations should stay reliable",
    ],
}


@dataclass
class ConvergenceAnalysis:
    score: float
    stage: str
    explanation: str
    metrics: dict[str, float] = field(default_factory=dict)
    tips: list[str] = field(default_factory=list)


@dataclass
class ContentPerformance:
    content_id: str
    times_watched: int
    average_reward: float
    completion_rate: float
    average_rating: float | None
    last_watched: datetime


@dataclass
class JourneyPoint:
    experience_number: int
    timestamp: datetime
    content_id: str
    state_before: EmotionalState
    state_after: EmotionalState
    reward: float
    completed: bool


@dataclass
class LearningProgress:
    user_id: str
    total_experiences: int
    completed_content: int
    average_reward: float
    reward_trend: str
    recent_rewards: list[float]
    exploration_rate: float
    exploration_count: int
    exploitation_count: int
    convergence: ConvergenceAnalysis
    emotional_journey: list[JourneyPoint]
    best_content: list[ContentPerformance]
    worst_content: list[ContentPerformance]
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def convergence_score(self) -> float:
        return self.convergence.score

    @property
    def convergence_stage(self) -> str:
        return self.convergence.stage


def reward_trend(rewards: Sequence[float], window: int = TREND_WINDOW, threshold: float = TREND_THRESHOLD) -> str:
    """Compare the last `window` rewards with the `window` before them."""
    if len(rewards) < 5:
        return "stable"
    recent = rewards[-window:]
    older = rewards[-2 * window:-window]
    if not older:
        return "stable"
    diff = float(np.mean(recent)) - float(np.mean(older))
    if diff > threshold:
        return "improving"
    if diff < -threshold:
        return "declining"
    return "stable"


def approximate_exploration_rate(n: int) -> float:
    """Epsilon after n decays from the initial rate, when the live value is unavailable."""
    return max(EPSILON_MIN, EPSILON_INITIAL * EPSILON_DECAY ** n)


def stage_for(score: float) -> str:
    if score < STAGE_LEARNING_THRESHOLD:
        return EXPLORING
    if score < STAGE_CONFIDENT_THRESHOLD:
        return LEARNING
    return CONFIDENT


def _explain(score: float, stage: str, n: int) -> str:
    if n < MIN_EXPERIENCES_FOR_CONVERGENCE:
        return "Just getting started! Keep watching to help the system learn your preferences."
    if stage == EXPLORING:
        return (f"Still exploring ({score:.0f}% confident). The system is learning your "
                f"preferences from {n} experiences.")
    if stage == LEARNING:
        return (f"Good progress ({score:.0f}% confident). After {n} experiences the system "
                f"has a solid picture of what helps you.")
    return (f"Well tuned ({score:.0f}% confident). With {n} experiences the system knows "
            f"your preferences and can make reliable recommendations.")


class ProgressAnalytics:
    def __init__(self, window: int = TREND_WINDOW, top_n: int = TOP_CONTENT_COUNT):
        self.window = window
        self.top_n = top_n

    def convergence(self, history: Sequence[Experience]) -> ConvergenceAnalysis:
        n = len(history)
        if n < MIN_EXPERIENCES_FOR_CONVERGENCE:
            return ConvergenceAnalysis(
                score=0.0,
                stage=EXPLORING,
                explanation=_explain(0.0, EXPLORING, n),
                metrics={"experiences": float(n)},
                tips=list(_STAGE_TIPS[EXPLORING]),
            )

        recent = history[-self.window:]
        rewards = np.array([e.reward for e in recent], dtype=float)
        variance = float(np.var(rewards))
        avg_recent = float(np.mean(rewards))

        deltas = [abs(e.q_delta) for e in recent if e.q_delta is not None]
        q_stability = 1.0 - float(np.mean(deltas)) if deltas else 0.5
        policy_changes = sum(1 for d in deltas if d > POLICY_CHANGE_THRESHOLD)

        terms = {
            "reward_variance": clamp(1.0 - variance, 0.0, 1.0),
            "q_stability": clamp(q_stability, 0.0, 1.0),
            "recent_reward": clamp((avg_recent + 1.0) / 2.0, 0.0, 1.0),
            "experience": clamp(n / EXPERIENCE_SATURATION, 0.0, 1.0),
        }
        score = 100.0 * sum(CONVERGENCE_WEIGHTS[k] * v for k, v in terms.items())
        score = clamp(score, 0.0, 100.0)
        stage = stage_for(score)

        metrics = {
            "experiences": float(n),
            "reward_variance": variance,
            "recent_average_reward": avg_recent,
            "q_stability": q_stability,
            "policy_changes": float(policy_changes),
        }
        return ConvergenceAnalysis(
            score=score,
            stage=stage,
            explanation=_explain(score, stage, n),
            metrics=metrics,
            tips=list(_STAGE_TIPS[stage]),
        )

    def content_performance(self, history: Sequence[Experience]) -> tuple[list[ContentPerformance], list[ContentPerformance]]:
        """(best, worst) content by mean reward; worst is listed lowest first."""
        grouped: dict[str, list[Experience]] = defaultdict(list)
        for exp in history:
            grouped[exp.content_id].append(exp)

        performances = []
        for content_id, exps in grouped.items():
            ratings = [e.rating for e in exps if e.rating is not None]
            performances.append(
                ContentPerformance(
                    content_id=content_id,
                    times_watched=len(exps),
                    average_reward=float(np.mean([e.reward for e in exps])),
                    completion_rate=sum(1 for e in exps if e.completed) / len(exps),
                    average_rating=float(np.mean(ratings)) if ratings else None,
                    last_watched=max(e.timestamp for e in exps),
                )
            )
        performances.sort(key=lambda p: (-p.average_reward, p.content_id))
        best = performances[:self.top_n]
        worst = list(reversed(performances[-self.top_n:]))
        return best, worst

    @staticmethod
    def journey(history: Sequence[Experience]) -> list[JourneyPoint]:
        return [
            JourneyPoint(
                experience_number=i + 1,
                timestamp=e.timestamp,
                content_id=e.content_id,
                state_before=e.state_before,
                state_after=e.state_after,
                reward=e.reward,
                completed=e.completed,
            )
            for i, e in enumerate(history)
        ]

    def compute_progress(
        self,
        user_id: str,
        history: Sequence[Experience],
        exploration_rate: float | None = None,
    ) -> LearningProgress:
        """
        Snapshot of how learning is going for one user.

        Args:
            user_id: User the history belongs to.
            history: Experiences in chronological order.
            exploration_rate: Live epsilon from the policy engine; approximated
                from the experience count when None.
        """
        history = list(history)
        n = len(history)
        rewards = [e.reward for e in history]
        best, worst = self.content_performance(history)
        explored = sum(1 for e in history if e.was_exploration)

        return LearningProgress(
            user_id=user_id,
            total_experiences=n,
            completed_content=sum(1 for e in history if e.completed),
            average_reward=float(np.mean(rewards)) if rewards else 0.0,
            reward_trend=reward_trend(rewards, self.window),
            recent_rewards=rewards[-self.window:],
            exploration_rate=exploration_rate if exploration_rate is not None else approximate_exploration_rate(n),
            exploration_count=explored,
            exploitation_count=n - explored,
            convergence=self.convergence(history),
            emotional_journey=self.journey(history),
            best_content=best,
            worst_content=worst,
        )
