"""
Q-table storage.

The policy engine talks to a QTableStore; the in-memory implementation here
is the default, database.SQLiteQTable is the persistent one.
"""

from __future__ import annotations

import logging
import threading
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Iterator

from .config import Q_TABLE_SHARDS

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class QEntry:
    user_id: str
    state_key: str
    content_id: str
    q_value: float
    visit_count: int = 0
    last_updated: datetime = field(default_factory=_now)


# fn(current_entry_or_None) -> new entry
UpdateFn = Callable[[QEntry | None], QEntry]

# fn(current_rate_or_None) -> new rate
RateUpdateFn = Callable[[float | None], float]


class QTableStore(ABC):
    """
    Storage contract for Q-values and per-user exploration rates.

    update() is the only write path for Q-values and must be atomic per
    (user_id, state_key, content_id): two concurrent updates to the same key
    never lose one another. Reads may observe any committed value.
    """

    @abstractmethod
    def get(self, user_id: str, state_key: str, content_id: str) -> QEntry | None:
        ...

    @abstractmethod
    def state_actions(self, user_id: str, state_key: str) -> dict[str, QEntry]:
        """All recorded entries for a user in one state, keyed by content_id."""

    @abstractmethod
    def update(
        self, user_id: str, state_key: str, content_id: str, fn: UpdateFn
    ) -> tuple[QEntry | None, QEntry]:
        """Apply fn to the current entry atomically; return (old, new)."""

    @abstractmethod
    def get_exploration_rate(self, user_id: str) -> float | None:
        """Stored epsilon for a user, or None if none has been recorded."""

    @abstractmethod
    def set_exploration_rate(self, user_id: str, rate: float) -> None:
        ...

    @abstractmethod
    def update_exploration_rate(self, user_id: str, fn: RateUpdateFn) -> float:
        """Apply fn to the stored rate (or None) atomically and store the result."""

    @abstractmethod
    def entries(self, user_id: str | None = None) -> Iterator[QEntry]:
        ...

    def stats(self) -> dict:
        """Summary figures for diagnostics."""
        values = []
        users = set()
        states = set()
        visits = 0
        for entry in self.entries():
            values.append(entry.q_value)
            users.add(entry.user_id)
            states.add((entry.user_id, entry.state_key))
            visits += entry.visit_count
        if not values:
            return {
                "entries": 0, "users": 0, "states": 0, "total_visits": 0,
                "mean_q": 0.0, "min_q": 0.0, "max_q": 0.0,
            }
        return {
            "entries": len(values),
            "users": len(users),
            "states": len(states),
            "total_visits": visits,
            "mean_q": sum(values) / len(values),
            "min_q": min(values),
            "max_q": max(values),
        }


class InMemoryQTable(QTableStore):
    """
    Dict-backed store partitioned into lock-guarded shards.

    A (user_id, state_key) pair always lands in the same shard, so updates to
    one key serialize while updates to other shards run in parallel.
    """

    def __init__(self, shards: int = Q_TABLE_SHARDS, initial_exploration_rate: float | None = None):
        if shards < 1:
            raise ValueError("shards must be at least 1")
        self._shards: list[dict[tuple[str, str], dict[str, QEntry]]] = [{} for _ in range(shards)]
        self._locks = [threading.Lock() for _ in range(shards)]
        self._rates: dict[str, float] = {}
        self._rates_lock = threading.Lock()
        self._initial_rate = initial_exploration_rate

    def _shard(self, user_id: str, state_key: str) -> int:
        return zlib.crc32(f"{user_id}\x00{state_key}".encode("utf-8")) % len(self._shards)

    def get(self, user_id, state_key, content_id):
        idx = self._shard(user_id, state_key)
        with self._locks[idx]:
            return self._shards[idx].get((user_id, state_key), {}).get(content_id)

    def state_actions(self, user_id, state_key):
        idx = self._shard(user_id, state_key)
        with self._locks[idx]:
            return dict(self._shards[idx].get((user_id, state_key), {}))

    def update(self, user_id, state_key, content_id, fn):
        idx = self._shard(user_id, state_key)
        with self._locks[idx]:
            bucket = self._shards[idx].setdefault((user_id, state_key), {})
            old = bucket.get(content_id)
            new = fn(old)
            if (new.user_id, new.state_key, new.content_id) != (user_id, state_key, content_id):
                new = replace(new, user_id=user_id, state_key=state_key, content_id=content_id)
            bucket[content_id] = new
            return old, new

    def get_exploration_rate(self, user_id):
        with self._rates_lock:
            return self._rates.get(user_id, self._initial_rate)

    def set_exploration_rate(self, user_id, rate):
        with self._rates_lock:
            self._rates[user_id] = rate

    def update_exploration_rate(self, user_id, fn):
        with self._rates_lock:
            new_rate = fn(self._rates.get(user_id, self._initial_rate))
            self._rates[user_id] = new_rate
            return new_rate

    def entries(self, user_id=None):
        snapshot: list[QEntry] = []
        for idx, shard in enumerate(self._shards):
            with self._locks[idx]:
                for (uid, _), bucket in shard.items():
                    if user_id is None or uid == user_id:
                        snapshot.extend(bucket.values())
        return iter(snapshot)

    def clear(self) -> None:
        for idx in range(len(self._shards)):
            with self._locks[idx]:
                self._shards[idx].clear()
        with self._rates_lock:
            self._rates.clear()
