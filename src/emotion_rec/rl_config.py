import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from .config import (
    ALPHA,
    GAMMA,
    EPSILON_INITIAL,
    EPSILON_DECAY,
    EPSILON_MIN,
    UCB_CONSTANT,
    DEFAULT_Q_VALUE,
    VALENCE_BUCKETS,
    AROUSAL_BUCKETS,
    STRESS_BUCKETS,
    Q_VALUE_WEIGHT,
    SIMILARITY_WEIGHT,
    CANDIDATE_OVERFETCH,
    RETRIEVAL_TIMEOUT,
    MAX_EXPERIENCES_PER_USER,
)
from .exploration import ExplorationStrategy
from .reward import RewardStrategy, RewardConfig


class QScale(Enum):
    """How stored Q-values are mapped onto [0, 1] before blending with similarity."""

    AUTO = "auto"        # UNIT while every value is in [0, 1], else SIGNED for the whole set
    UNIT = "unit"        # Use as-is, clamp to [0, 1]
    SIGNED = "signed"    # Treat as [-1, 1], map with (q + 1) / 2


@dataclass
class RLConfig:
    """
    Q-learning hyperparameters.

    Defaults come from config.py (and therefore from the environment); pass
    explicit values in tests rather than patching the module.
    """

    alpha: float = ALPHA
    gamma: float = GAMMA
    epsilon_initial: float = EPSILON_INITIAL
    epsilon_decay: float = EPSILON_DECAY
    epsilon_min: float = EPSILON_MIN
    default_q_value: float = DEFAULT_Q_VALUE
    exploration_strategy: ExplorationStrategy = ExplorationStrategy.EPSILON_GREEDY
    ucb_constant: float = UCB_CONSTANT

    def __post_init__(self) -> None:
        self.exploration_strategy = ExplorationStrategy(self.exploration_strategy)
        self.validate()

    def validate(self) -> None:
        if not (0.0 <= self.alpha <= 1.0):
            raise ValueError("alpha must be in [0, 1]")
        if not (0.0 <= self.gamma <= 1.0):
            raise ValueError("gamma must be in [0, 1]")
        if not (0.0 <= self.epsilon_initial <= 1.0):
            raise ValueError("epsilon_initial must be in [0, 1]")
        if not (0.0 <= self.epsilon_min <= 1.0):
            raise ValueError("epsilon_min must be in [0, 1]")
        if self.epsilon_min > self.epsilon_initial:
            raise ValueError("epsilon_min must not exceed epsilon_initial")
        if not (0.0 < self.epsilon_decay <= 1.0):
            raise ValueError("epsilon_decay must be in (0, 1]")
        if self.ucb_constant < 0:
            raise ValueError("ucb_constant must be non-negative")
        if not (-1.0 <= self.default_q_value <= 1.0):
            raise ValueError("default_q_value must be in [-1, 1]")


@dataclass
class RankingConfig:
    """Blend of learned value and content similarity used by the ranker."""

    q_weight: float = Q_VALUE_WEIGHT
    similarity_weight: float = SIMILARITY_WEIGHT
    q_scale: QScale = QScale.AUTO

    def __post_init__(self) -> None:
        self.q_scale = QScale(self.q_scale)
        self.validate()

    def validate(self) -> None:
        if self.q_weight < 0 or self.similarity_weight < 0:
            raise ValueError("q_weight and similarity_weight must be non-negative")
        if abs(self.q_weight + self.similarity_weight - 1.0) > 1e-6:
            raise ValueError("q_weight + similarity_weight must sum to 1")


@dataclass
class EngineConfig:
    """Everything the recommender facade needs, validated up front."""

    rl: RLConfig = field(default_factory=RLConfig)
    ranking: RankingConfig = field(default_factory=RankingConfig)
    reward_strategy: RewardStrategy = RewardStrategy.ALIGNMENT
    reward: RewardConfig = field(default_factory=RewardConfig)

    valence_buckets: int = VALENCE_BUCKETS
    arousal_buckets: int = AROUSAL_BUCKETS
    stress_buckets: int = STRESS_BUCKETS

    retrieval_timeout: float | None = RETRIEVAL_TIMEOUT
    candidate_overfetch: int = CANDIDATE_OVERFETCH
    max_experiences_per_user: int = MAX_EXPERIENCES_PER_USER

    def __post_init__(self) -> None:
        self.reward_strategy = RewardStrategy(self.reward_strategy)
        self.validate()

    def validate(self) -> None:
        self.rl.validate()
        self.ranking.validate()
        for name in ("valence_buckets", "arousal_buckets", "stress_buckets"):
            if getattr(self, name) < 2:
                raise ValueError(f"{name} must be at least 2")
        if self.retrieval_timeout is not None and self.retrieval_timeout <= 0:
            raise ValueError("retrieval_timeout must be positive")
        if self.candidate_overfetch < 1:
            raise ValueError("candidate_overfetch must be at least 1")
        if self.max_experiences_per_user < 1:
            raise ValueError("max_experiences_per_user must be at least 1")

    @classmethod
    def from_file(cls, path: Path | str) -> "EngineConfig":
        """
        Load overrides from a JSON file.

        Top-level keys map to EngineConfig fields; "rl", "ranking" and "reward"
        hold nested dicts for the sub-configs. Unknown keys raise ValueError.
        """
        payload: Any = json.loads(Path(path).read_text())
        if not isinstance(payload, dict):
            raise ValueError(f"{path} must contain a JSON object")
        return cls.from_dict(payload)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "EngineConfig":
        payload = dict(payload)
        nested = {
            "rl": RLConfig,
            "ranking": RankingConfig,
            "reward": RewardConfig,
        }
        kwargs: dict[str, Any] = {}
        for key, sub_cls in nested.items():
            if key in payload:
                try:
                    kwargs[key] = sub_cls(**payload.pop(key))
                except TypeError as e:
                    raise ValueError(f"invalid '{key}' section: {e}") from e
        try:
            return cls(**kwargs, **payload)
        except TypeError as e:
            raise ValueError(f"invalid engine config: {e}") from e
