"""
Tabular Q-learning over (user, emotional state bucket, content) keys.

QPolicyEngine is the only writer of Q-values. Every write goes through
QTableStore.update(), which is atomic per key, so concurrent feedback for the
same user/content pair cannot lose an update.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Iterable, Sequence

from .exploration import ExplorationPolicy, RandomSource, default_rng, make_policy
from .experience import Experience
from .qtable import QEntry, QTableStore
from .retrieval import Candidate
from .rl_config import RLConfig
from .state import StateDiscretizer

logger = logging.getLogger(__name__)

# Confidence in a greedy pick grows as 1 - exp(-visits / scale)
CONFIDENCE_VISIT_SCALE = 10.0


@dataclass(frozen=True)
class ActionSelection:
    content_id: str
    q_value: float
    is_exploration: bool
    confidence: float
    state_key: str


@dataclass(frozen=True)
class PolicyUpdate:
    state_key: str
    next_state_key: str
    content_id: str
    old_q: float
    new_q: float
    td_error: float
    reward: float
    visit_count: int


class QPolicyEngine:
    """
    Q-learning policy with pluggable storage and exploration.

    Args:
        store: Q-table backend; shared across engines is fine.
        config: Hyperparameters. Defaults come from config.py.
        discretizer: Maps states to keys. Defaults to a 5x5x3 grid.
        rng: Random source for exploration. Defaults to the process-wide one.
        exploration: Explicit policy; built from config when omitted.
    """

    def __init__(
        self,
        store: QTableStore,
        config: RLConfig | None = None,
        discretizer: StateDiscretizer | None = None,
        rng: RandomSource | None = None,
        exploration: ExplorationPolicy | None = None,
    ):
        self.store = store
        self.config = config or RLConfig()
        self.discretizer = discretizer or StateDiscretizer()
        self.rng = rng or default_rng()
        self.exploration = exploration or make_policy(
            self.config.exploration_strategy, self.config.ucb_constant
        )

    # Reads ------------------------------------------------------------

    def get_q_value(self, user_id: str, state_key: str, content_id: str) -> float:
        """Stored Q-value or the default prior. Never creates an entry."""
        entry = self.store.get(user_id, state_key, content_id)
        return entry.q_value if entry is not None else self.config.default_q_value

    def get_visit_count(self, user_id: str, state_key: str, content_id: str) -> int:
        entry = self.store.get(user_id, state_key, content_id)
        return entry.visit_count if entry is not None else 0

    def exploration_rate(self, user_id: str) -> float:
        rate = self.store.get_exploration_rate(user_id)
        return self.config.epsilon_initial if rate is None else rate

    # Action selection -------------------------------------------------

    def select_action(
        self,
        user_id: str,
        state_key: str,
        candidates: Sequence[Candidate],
    ) -> ActionSelection:
        """
        Choose one candidate for this state.

        Greedy order is Q-value desc, then similarity desc, then the order the
        candidates were given in.
        """
        if not candidates:
            raise ValueError("select_action needs at least one candidate")

        recorded = self.store.state_actions(user_id, state_key)
        default_q = self.config.default_q_value

        def q_of(c: Candidate) -> float:
            entry = recorded.get(c.content_id)
            return entry.q_value if entry is not None else default_q

        def visits_of(c: Candidate) -> int:
            entry = recorded.get(c.content_id)
            return entry.visit_count if entry is not None else 0

        ordered = sorted(candidates, key=lambda c: (-q_of(c), -c.similarity_score))
        scores = [q_of(c) for c in ordered]
        visits = [visits_of(c) for c in ordered]
        total_visits = sum(e.visit_count for e in recorded.values())

        epsilon = self.exploration_rate(user_id)
        index, is_exploration = self.exploration.choose(
            scores, visits, epsilon, self.rng, total_visits=total_visits
        )
        chosen = ordered[index]
        n = visits[index]
        confidence = 1.0 - math.exp(-n / CONFIDENCE_VISIT_SCALE) if n > 0 else 0.0

        logger.debug(
            f"select_action user={user_id} state={state_key} -> {chosen.content_id} "
            f"q={scores[index]:.3f} explore={is_exploration} eps={epsilon:.3f}"
        )
        return ActionSelection(
            content_id=chosen.content_id,
            q_value=scores[index],
            is_exploration=is_exploration,
            confidence=confidence,
            state_key=state_key,
        )

    # Learning ---------------------------------------------------------

    def update_policy(self, user_id: str, experience: Experience) -> PolicyUpdate:
        """
        Apply one TD update: Q(s,a) += alpha * (r + gamma * max_a' Q(s',a') - Q(s,a)).

        The bootstrap max runs over the user's recorded entries for s' and is
        0 when s' has none. When s' == s the key being updated is itself part
        of that max, and its value is read inside the atomic section.
        """
        state_key = self.discretizer.key(experience.state_before)
        next_key = self.discretizer.key(experience.state_after)
        content_id = experience.content_id
        reward = experience.reward
        alpha = self.config.alpha
        gamma = self.config.gamma
        default_q = self.config.default_q_value
        same_state = next_key == state_key

        next_entries = self.store.state_actions(user_id, next_key)
        if same_state:
            next_entries.pop(content_id, None)
        others_max = max((e.q_value for e in next_entries.values()), default=None)

        outcome: dict[str, float] = {}

        def apply(old: QEntry | None) -> QEntry:
            current = old.q_value if old is not None else default_q
            candidates = [] if others_max is None else [others_max]
            if same_state and old is not None:
                candidates.append(old.q_value)
            bootstrap = max(candidates) if candidates else 0.0

            td_error = reward + gamma * bootstrap - current
            new_q = current + alpha * td_error
            if not math.isfinite(new_q):
                raise ValueError(f"non-finite Q-value for {user_id}/{state_key}/{content_id}")
            outcome["old"] = current
            outcome["td"] = td_error
            now = datetime.now(timezone.utc)
            if old is None:
                return QEntry(user_id, state_key, content_id, new_q, 1, now)
            return replace(old, q_value=new_q, visit_count=old.visit_count + 1, last_updated=now)

        _, new = self.store.update(user_id, state_key, content_id, apply)

        logger.debug(
            f"update user={user_id} {state_key}->{next_key} content={content_id} "
            f"r={reward:.3f} Q {outcome['old']:.4f}->{new.q_value:.4f} td={outcome['td']:.4f}"
        )
        return PolicyUpdate(
            state_key=state_key,
            next_state_key=next_key,
            content_id=content_id,
            old_q=outcome["old"],
            new_q=new.q_value,
            td_error=outcome["td"],
            reward=reward,
            visit_count=new.visit_count,
        )

    def replay(self, user_id: str, experiences: Iterable[Experience]) -> list[PolicyUpdate]:
        """Re-apply logged experiences in order, e.g. to rebuild a Q-table from history."""
        updates = [self.update_policy(user_id, exp) for exp in experiences]
        if updates:
            logger.info(f"Replayed {len(updates)} experiences for {user_id}")
        return updates

    def decay_exploration(self, user_id: str) -> float:
        """
        epsilon <- max(epsilon_min, epsilon * decay). Returns the new rate.

        The read and the write happen inside one store call, so concurrent
        decays for the same user each take effect.
        """
        cfg = self.config

        def decay(stored: float | None) -> float:
            current = cfg.epsilon_initial if stored is None else stored
            return max(cfg.epsilon_min, current * cfg.epsilon_decay)

        return self.store.update_exploration_rate(user_id, decay)
