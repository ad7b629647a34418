"""Append-only record of completed recommendation cycles."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from .config import MAX_EXPERIENCES_PER_USER
from .state import EmotionalState, DesiredState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Experience:
    """One (state, action, reward, next state) transition plus viewing context."""

    user_id: str
    content_id: str
    state_before: EmotionalState
    state_after: EmotionalState
    reward: float
    desired_state: DesiredState | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed: bool = False
    rating: float | None = None
    watch_duration: float = 0.0
    total_duration: float = 0.0
    q_value_before: float | None = None
    q_value_after: float | None = None
    was_exploration: bool = False

    @property
    def q_delta(self) -> float | None:
        if self.q_value_before is None or self.q_value_after is None:
            return None
        return self.q_value_after - self.q_value_before


class ExperienceLog(ABC):
    @abstractmethod
    def append(self, experience: Experience) -> None:
        ...

    @abstractmethod
    def history(self, user_id: str, limit: int | None = None) -> list[Experience]:
        """Experiences for a user, oldest first; `limit` keeps the most recent."""

    @abstractmethod
    def count(self, user_id: str) -> int:
        ...

    @abstractmethod
    def clear(self, user_id: str | None = None) -> None:
        ...


class InMemoryExperienceLog(ExperienceLog):
    """Per-user FIFO buffer; the oldest experience is dropped once full."""

    def __init__(self, max_per_user: int = MAX_EXPERIENCES_PER_USER):
        if max_per_user < 1:
            raise ValueError("max_per_user must be at least 1")
        self.max_per_user = max_per_user
        self._data: dict[str, deque[Experience]] = {}
        self._lock = threading.Lock()

    def append(self, experience):
        with self._lock:
            buf = self._data.get(experience.user_id)
            if buf is None:
                buf = deque(maxlen=self.max_per_user)
                self._data[experience.user_id] = buf
            buf.append(experience)

    def history(self, user_id, limit=None):
        with self._lock:
            items = list(self._data.get(user_id, ()))
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return items

    def count(self, user_id):
        with self._lock:
            return len(self._data.get(user_id, ()))

    def clear(self, user_id=None):
        with self._lock:
            if user_id is None:
                self._data.clear()
            else:
                self._data.pop(user_id, None)
