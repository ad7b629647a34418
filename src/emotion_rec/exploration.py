"""
Exploration policies shared by action selection and ranking.

Both the policy engine and the ranker make exploration decisions; they go
through the same ExplorationPolicy so the two cannot drift apart.
"""

import logging
import math
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Sequence

import numpy as np

from .config import UCB_CONSTANT

logger = logging.getLogger(__name__)


class ExplorationStrategy(Enum):
    EPSILON_GREEDY = "epsilon_greedy"
    UCB = "ucb"


class RandomSource:
    """
    Thread-safe wrapper around a numpy Generator.

    numpy Generators are not safe to share across threads, so every draw
    takes a lock.
    """

    def __init__(self, generator: np.random.Generator | None = None):
        self._generator = generator if generator is not None else np.random.default_rng()
        self._lock = threading.Lock()

    def random(self) -> float:
        with self._lock:
            return float(self._generator.random())

    def integers(self, high: int) -> int:
        """Uniform integer in [0, high)."""
        with self._lock:
            return int(self._generator.integers(high))


class SeededRandom(RandomSource):
    """Reproducible random source for tests and simulations."""

    def __init__(self, seed: int):
        super().__init__(np.random.default_rng(seed))
        self.seed = seed


_default_rng: RandomSource | None = None
_default_rng_lock = threading.Lock()


def default_rng() -> RandomSource:
    """Process-wide random source, created on first use."""
    global _default_rng
    if _default_rng is None:
        with _default_rng_lock:
            if _default_rng is None:
                _default_rng = RandomSource()
    return _default_rng


def _first_argmax(values: Sequence[float]) -> int:
    best = 0
    for i in range(1, len(values)):
        if values[i] > values[best]:
            best = i
    return best


class ExplorationPolicy(ABC):
    """
    Pick one option out of a scored list.

    Scores must already be ordered by the caller's tie-break priority: among
    equal scores the lowest index wins.
    """

    strategy: ExplorationStrategy

    @abstractmethod
    def choose(
        self,
        scores: Sequence[float],
        visits: Sequence[int],
        epsilon: float,
        rng: RandomSource,
        total_visits: int | None = None,
    ) -> tuple[int, bool]:
        """Return (index, is_exploration). Raises ValueError on empty input."""


class EpsilonGreedyPolicy(ExplorationPolicy):
    strategy = ExplorationStrategy.EPSILON_GREEDY

    def choose(self, scores, visits, epsilon, rng, total_visits=None):
        if len(scores) == 0:
            raise ValueError("cannot choose from an empty list")
        if rng.random() < epsilon:
            return rng.integers(len(scores)), True
        return _first_argmax(scores), False


class UCBPolicy(ExplorationPolicy):
    """
    Upper confidence bound: score + c * sqrt(ln N / n_i).

    Options never tried get an infinite bonus, so they are picked first.
    epsilon is ignored.
    """

    strategy = ExplorationStrategy.UCB

    def __init__(self, c: float = UCB_CONSTANT):
        if c < 0:
            raise ValueError("c must be non-negative")
        self.c = c

    def choose(self, scores, visits, epsilon, rng, total_visits=None):
        if len(scores) == 0:
            raise ValueError("cannot choose from an empty list")
        if len(visits) != len(scores):
            raise ValueError("scores and visits must have the same length")

        greedy = _first_argmax(scores)
        for i, n in enumerate(visits):
            if n <= 0:
                return i, i != greedy

        total = total_visits if total_visits is not None else sum(visits)
        log_total = math.log(max(total, 1))
        bounds = [s + self.c * math.sqrt(log_total / n) for s, n in zip(scores, visits)]
        pick = _first_argmax(bounds)
        return pick, pick != greedy


def make_policy(
    strategy: ExplorationStrategy | str = ExplorationStrategy.EPSILON_GREEDY,
    ucb_constant: float = UCB_CONSTANT,
) -> ExplorationPolicy:
    strategy = ExplorationStrategy(strategy)
    if strategy is ExplorationStrategy.UCB:
        return UCBPolicy(ucb_constant)
    return EpsilonGreedyPolicy()
