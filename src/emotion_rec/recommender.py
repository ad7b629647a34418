"""
Recommendation facade: rank, apply feedback, report progress.

EmotionRecommender wires the retriever, Q-table store and experience log
(all injected) to the discretizer, reward calculator, policy engine, ranker
and analytics.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from .analytics import ProgressAnalytics, LearningProgress
from .experience import Experience, ExperienceLog, InMemoryExperienceLog
from .exploration import RandomSource
from .policy import QPolicyEngine, PolicyUpdate
from .qtable import QTableStore, InMemoryQTable
from .ranker import HybridRanker, Recommendation
from .retrieval import VectorRetriever, query_with_timeout, transition_vector
from .reward import RewardCalculator, RewardResult
from .rl_config import EngineConfig
from .state import EmotionalState, DesiredState, StateDiscretizer, predict_desired_state

logger = logging.getLogger(__name__)

_USE_CONFIG = object()


@dataclass(frozen=True)
class FeedbackResult:
    reward: RewardResult
    update: PolicyUpdate
    exploration_rate: float
    experience: Experience


class EmotionRecommender:
    """
    Args:
        retriever: Source of candidate content.
        q_store: Q-table backend. In-memory when omitted.
        experience_log: History backend. In-memory when omitted.
        config: Engine configuration.
        rng: Random source for exploration; process-wide when omitted.
    """

    def __init__(
        self,
        retriever: VectorRetriever,
        q_store: QTableStore | None = None,
        experience_log: ExperienceLog | None = None,
        config: EngineConfig | None = None,
        rng: RandomSource | None = None,
    ):
        self.config = config or EngineConfig()
        self.retriever = retriever
        self.q_store = q_store if q_store is not None else InMemoryQTable()
        self.experience_log = (
            experience_log if experience_log is not None
            else InMemoryExperienceLog(self.config.max_experiences_per_user)
        )
        self.discretizer = StateDiscretizer(
            self.config.valence_buckets, self.config.arousal_buckets, self.config.stress_buckets
        )
        self.reward_calculator = RewardCalculator(self.config.reward_strategy, self.config.reward)
        self.policy = QPolicyEngine(self.q_store, self.config.rl, self.discretizer, rng)
        self.ranker = HybridRanker(self.policy, self.config.ranking)
        self.analytics = ProgressAnalytics()

    def rank(
        self,
        user_id: str,
        current_state: EmotionalState,
        desired_state: DesiredState | None = None,
        candidate_limit: int = 20,
        timeout=_USE_CONFIG,
    ) -> list[Recommendation]:
        """
        Recommend up to `candidate_limit` items.

        Raises:
            RetrievalTimeout: the retriever did not answer within `timeout`
                seconds (defaults to the configured retrieval timeout).
            RetrievalError: the retriever failed.
        """
        if candidate_limit <= 0:
            return []
        if desired_state is None:
            desired_state = predict_desired_state(current_state)
            logger.debug(f"Inferred desired state for {user_id}: {desired_state.reasoning}")
        if timeout is _USE_CONFIG:
            timeout = self.config.retrieval_timeout

        wanted = candidate_limit * self.config.candidate_overfetch
        vector = transition_vector(current_state, desired_state)
        candidates = query_with_timeout(self.retriever, vector, wanted, timeout)

        if len(candidates) < wanted:
            logger.warning(
                f"Degraded retrieval for {user_id}: {len(candidates)}/{wanted} candidates"
            )
        if not candidates:
            return []

        state_key = self.discretizer.key(current_state)
        return self.ranker.rank(
            user_id,
            candidates,
            state_key,
            current_state=current_state,
            desired_state=desired_state,
            limit=candidate_limit,
        )

    def apply_feedback(
        self,
        user_id: str,
        content_id: str,
        state_before: EmotionalState,
        state_after: EmotionalState,
        desired_state: DesiredState | None = None,
        completed: bool = False,
        rating: float | None = None,
        watch_duration: float = 0.0,
        total_duration: float = 0.0,
        was_exploration: bool = False,
    ) -> FeedbackResult:
        """Score the outcome, update the Q-table, decay epsilon and log the experience."""
        if desired_state is None:
            desired_state = predict_desired_state(state_before)

        reward = self.reward_calculator.calculate(
            state_before,
            state_after,
            desired_state,
            completed=completed,
            rating=rating,
            watched_duration=watch_duration,
            total_duration=total_duration,
        )
        experience = Experience(
            user_id=user_id,
            content_id=content_id,
            state_before=state_before,
            state_after=state_after,
            reward=reward.reward,
            desired_state=desired_state,
            completed=completed,
            rating=rating,
            watch_duration=watch_duration,
            total_duration=total_duration,
            was_exploration=was_exploration,
        )
        update = self.policy.update_policy(user_id, experience)
        rate = self.policy.decay_exploration(user_id)

        experience = replace(experience, q_value_before=update.old_q, q_value_after=update.new_q)
        self.experience_log.append(experience)

        logger.info(
            f"Feedback {user_id}/{content_id}: reward={reward.reward:.3f} "
            f"Q {update.old_q:.3f}->{update.new_q:.3f} eps={rate:.3f}"
        )
        return FeedbackResult(reward=reward, update=update, exploration_rate=rate, experience=experience)

    def get_progress(self, user_id: str) -> LearningProgress:
        history = self.experience_log.history(user_id)
        rate = self.q_store.get_exploration_rate(user_id)
        return self.analytics.compute_progress(user_id, history, rate)
