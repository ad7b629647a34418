"""
Configuration constants for the emotion-aware recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0, max_val: float | None = None) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value
        max_val: Maximum allowed value (None for unbounded)

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        if max_val is not None and val > max_val:
            logger.warning(f"{key}={val} is above maximum {max_val}, using {max_val}")
            return max_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("EMOTION_REC_DB", "data/emotion_rec.db"))
DB_POOL_SIZE = _get_int_env("EMOTION_REC_DB_POOL_SIZE", 50, min_val=1)  # One connection per thread
DB_HEALTH_CHECK_INTERVAL = _get_float_env("EMOTION_REC_DB_HEALTH_CHECK", 300.0, min_val=0.0)  # Seconds

# Reinforcement Learning Hyperparameters
ALPHA = _get_float_env("EMOTION_REC_ALPHA", 0.1, min_val=0.0, max_val=1.0)  # Learning rate
GAMMA = _get_float_env("EMOTION_REC_GAMMA", 0.95, min_val=0.0, max_val=1.0)  # Discount factor
EPSILON_INITIAL = _get_float_env("EMOTION_REC_EPSILON", 0.15, min_val=0.0, max_val=1.0)
EPSILON_DECAY = _get_float_env("EMOTION_REC_EPSILON_DECAY", 0.95, min_val=0.01, max_val=1.0)
EPSILON_MIN = _get_float_env("EMOTION_REC_EPSILON_MIN", 0.10, min_val=0.0, max_val=1.0)
UCB_CONSTANT = _get_float_env("EMOTION_REC_UCB_C", 2.0, min_val=0.0)

# Optimistic-but-neutral prior for unseen (state, content) pairs
DEFAULT_Q_VALUE = 0.5

# State discretization: 5 x 5 x 3 = 75 states
VALENCE_BUCKETS = 5
AROUSAL_BUCKETS = 5
STRESS_BUCKETS = 3

# Ranking Weights (must sum to 1.0)
Q_VALUE_WEIGHT = 0.7
SIMILARITY_WEIGHT = 0.3
CANDIDATE_OVERFETCH = 3  # Query the retriever for N x limit candidates before re-ranking

# Reward: direction/magnitude strategy
DIRECTION_WEIGHT = 0.6
MAGNITUDE_WEIGHT = 0.4
PROXIMITY_RADIUS = 0.15
PROXIMITY_BONUS = 0.2
TRANSITION_BLEND = 0.75      # Share of the emotional transition term
COMPLETION_BLEND = 0.15
RATING_BLEND = 0.10

# Reward: alignment/completion/rating strategy
ALIGNMENT_WEIGHT = 0.6
ALIGNMENT_COMPLETION_WEIGHT = 0.25
ALIGNMENT_RATING_WEIGHT = 0.15
# Diagonal of the state box [-1,1] x [-1,1] x [0,1]
MAX_STATE_DISTANCE = 3.0

# Completion credit by fraction watched (upper bound, credit); completed = 1.0
COMPLETION_CREDIT_STEPS = (
    (0.10, -0.5),   # Barely watched
    (0.25, -0.2),
    (0.50, 0.0),
    (0.75, 0.3),
)
COMPLETION_CREDIT_NEAR_END = 0.6
NEUTRAL_RATING = 3.0

# Retrieval
RETRIEVAL_TIMEOUT = _get_float_env("EMOTION_REC_RETRIEVAL_TIMEOUT", 5.0, min_val=0.01)
RETRIEVER_URL = os.environ.get("EMOTION_REC_RETRIEVER_URL", "")

# Experience log
MAX_EXPERIENCES_PER_USER = _get_int_env("EMOTION_REC_MAX_EXPERIENCES", 1000, min_val=1)

# Progress analytics
TREND_WINDOW = 10
TREND_THRESHOLD = 0.1
MIN_EXPERIENCES_FOR_CONVERGENCE = 5
EXPERIENCE_SATURATION = 50
CONVERGENCE_WEIGHTS = {
    'reward_variance': 0.35,   # Inverse variance of recent rewards
    'q_stability': 0.25,       # 1 - mean |dQ| over recent updates
    'recent_reward': 0.25,     # Recent average reward rescaled to [0, 1]
    'experience': 0.15,        # min(n / 50, 1)
}
STAGE_LEARNING_THRESHOLD = 30
STAGE_CONFIDENT_THRESHOLD = 70
POLICY_CHANGE_THRESHOLD = 0.1
TOP_CONTENT_COUNT = 5

# In-memory Q-table partitioning
Q_TABLE_SHARDS = 16
