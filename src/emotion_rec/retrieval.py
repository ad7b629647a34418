"""
Candidate retrieval by emotional-transition similarity.

The recommender asks a VectorRetriever for content whose expected emotional
effect points the same way as the transition the user needs. Two backends:
an in-process index over ContentProfiles and an HTTP client for a remote
similarity service.
"""

from __future__ import annotations

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Iterable

import httpx
import numpy as np
from scipy.spatial.distance import cdist

from .config import RETRIEVAL_TIMEOUT
from .errors import RetrievalError, RetrievalTimeout
from .state import EmotionalState, DesiredState
from .utils import call_with_timeout, clamp

logger = logging.getLogger(__name__)


@dataclass
class ContentProfile:
    """Expected emotional effect of one catalog item."""

    content_id: str
    title: str = ""
    valence_delta: float = 0.0
    arousal_delta: float = 0.0
    stress_reduction: float = 0.0
    genres: list[str] = field(default_factory=list)
    category: str = ""
    duration: float = 0.0           # minutes
    total_watches: int = 0
    outcome_variance: float = 0.5   # Spread of observed outcomes, 0 = perfectly predictable

    def effect_vector(self) -> np.ndarray:
        """Effect in transition-vector coordinates (stress reduction is a negative stress delta)."""
        return np.array([self.valence_delta, self.arousal_delta, -self.stress_reduction], dtype=float)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict) -> "ContentProfile":
        return cls(
            content_id=str(payload["content_id"]),
            title=payload.get("title", ""),
            valence_delta=float(payload.get("valence_delta", 0.0)),
            arousal_delta=float(payload.get("arousal_delta", 0.0)),
            stress_reduction=float(payload.get("stress_reduction", 0.0)),
            genres=list(payload.get("genres", [])),
            category=payload.get("category", ""),
            duration=float(payload.get("duration", 0.0)),
            total_watches=int(payload.get("total_watches", 0)),
            outcome_variance=float(payload.get("outcome_variance", 0.5)),
        )


@dataclass
class Candidate:
    content_id: str
    similarity_score: float          # [0, 1]
    profile: ContentProfile | None = None


def transition_vector(current: EmotionalState, desired: DesiredState) -> np.ndarray:
    """The change the user needs: [dv, da, ds]."""
    return np.array(
        [
            desired.target_valence - current.valence,
            desired.target_arousal - current.arousal,
            desired.target_stress - current.stress,
        ],
        dtype=float,
    )


class VectorRetriever(ABC):
    @abstractmethod
    def query(self, vector: np.ndarray, limit: int) -> list[Candidate]:
        """
        Top `limit` candidates by similarity to `vector`, best first.

        Implementations may return fewer than `limit`.
        """

    def query_within(self, vector: np.ndarray, limit: int, timeout: float | None) -> list[Candidate]:
        """
        query() bounded by `timeout` seconds.

        The default runs query() on the shared call pool, so a query that
        never returns keeps one of its workers. Retrievers that can bound
        their own I/O override this.
        """
        return call_with_timeout(self.query, timeout, vector, limit)


class InMemoryVectorRetriever(VectorRetriever):
    """
    Brute-force cosine search over a small in-process index.

    Similarity is rescaled from [-1, 1] to [0, 1]. A zero query or a zero
    effect vector scores a neutral 0.5.
    """

    def __init__(self, profiles: Iterable[ContentProfile] = ()):
        self._profiles: list[ContentProfile] = []
        self._ids: dict[str, int] = {}
        self._matrix = np.zeros((0, 3), dtype=float)
        for profile in profiles:
            self.add(profile)

    @classmethod
    def from_profiles(cls, profiles: Iterable[ContentProfile]) -> "InMemoryVectorRetriever":
        return cls(profiles)

    def __len__(self) -> int:
        return len(self._profiles)

    def add(self, profile: ContentProfile, vector: np.ndarray | None = None) -> None:
        """Index a profile; re-adding a content_id replaces the old row."""
        row = np.asarray(vector if vector is not None else profile.effect_vector(), dtype=float)
        if row.shape != (3,):
            raise ValueError(f"vector for {profile.content_id} must have 3 components")
        idx = self._ids.get(profile.content_id)
        if idx is not None:
            self._profiles[idx] = profile
            self._matrix[idx] = row
            return
        self._ids[profile.content_id] = len(self._profiles)
        self._profiles.append(profile)
        self._matrix = np.vstack([self._matrix, row])

    def get(self, content_id: str) -> ContentProfile | None:
        idx = self._ids.get(content_id)
        return self._profiles[idx] if idx is not None else None

    def profiles(self) -> list[ContentProfile]:
        return list(self._profiles)

    def query(self, vector, limit):
        if limit <= 0 or not self._profiles:
            return []
        query = np.asarray(vector, dtype=float).reshape(1, -1)

        # cdist's cosine distance is 1 - cos, undefined for zero-norm rows
        with np.errstate(invalid="ignore", divide="ignore"):
            distances = cdist(query, self._matrix, metric="cosine")[0]
        degenerate = (np.linalg.norm(self._matrix, axis=1) == 0) | (np.linalg.norm(query) == 0)
        similarity = np.where(degenerate | np.isnan(distances), 0.5, (2.0 - distances) / 2.0)
        similarity = np.clip(similarity, 0.0, 1.0)

        # Best similarity first, content_id ascending on ties
        order = sorted(
            range(len(self._profiles)),
            key=lambda i: (-similarity[i], self._profiles[i].content_id),
        )[:limit]
        return [
            Candidate(
                content_id=self._profiles[i].content_id,
                similarity_score=float(similarity[i]),
                profile=self._profiles[i],
            )
            for i in order
        ]


class HttpVectorRetriever(VectorRetriever):
    """
    Client for a remote similarity service.

    POSTs {"vector": [...], "limit": n} to `{base_url}/query` and expects
    {"results": [{"content_id", "similarity", "profile"?}, ...]}.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = RETRIEVAL_TIMEOUT,
        max_retries: int = 3,
        backoff: float = 0.5,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(1, max_retries)
        self.backoff = backoff
        self.client = httpx.Client(
            base_url=self.base_url,
            headers={"User-Agent": "emotion-rec/0.1"},
            timeout=timeout,
            transport=transport,
        )

    def query(self, vector, limit):
        return self._query(vector, limit, deadline=None)

    def query_within(self, vector, limit, timeout):
        """
        Bound the whole query, retries included, by `timeout` seconds.

        Each request gets the time still left as its httpx timeout and no
        backoff sleep runs past the deadline, so no extra thread is needed.
        """
        if timeout is None:
            return self.query(vector, limit)
        return self._query(vector, limit, deadline=time.monotonic() + timeout)

    def _query(self, vector, limit, deadline: float | None):
        body = {"vector": [float(x) for x in np.asarray(vector, dtype=float)], "limit": int(limit)}
        retries = 0
        while True:
            request_timeout = httpx.USE_CLIENT_DEFAULT
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise RetrievalTimeout(f"retriever at {self.base_url} timed out")
                request_timeout = remaining
            try:
                resp = self.client.post("/query", json=body, timeout=request_timeout)
                if resp.status_code in (429, 503) and retries < self.max_retries - 1:
                    wait_time = self.backoff * (2 ** retries)
                    if deadline is not None and time.monotonic() + wait_time >= deadline:
                        logger.error(f"Retriever returned {resp.status_code}, no time left to retry")
                        raise RetrievalTimeout(f"retriever at {self.base_url} timed out")
                    logger.warning(
                        f"Retriever returned {resp.status_code}, retrying in {wait_time:.1f}s... "
                        f"(attempt {retries + 1}/{self.max_retries})"
                    )
                    time.sleep(wait_time)
                    retries += 1
                    continue
                resp.raise_for_status()
                return self._parse(resp.json(), limit)
            except httpx.TimeoutException as e:
                logger.error(f"Retriever timed out at {self.base_url}: {e}")
                raise RetrievalTimeout(f"retriever at {self.base_url} timed out") from e
            except httpx.HTTPStatusError as e:
                logger.error(f"Retriever HTTP error: {e}")
                raise RetrievalError(f"retriever returned {e.response.status_code}") from e
            except httpx.HTTPError as e:
                logger.error(f"Retriever request error: {e}")
                raise RetrievalError(str(e)) from e
            except (ValueError, KeyError, TypeError) as e:
                raise RetrievalError(f"malformed retriever response: {e}") from e

    @staticmethod
    def _parse(payload: dict, limit: int) -> list[Candidate]:
        results = payload["results"]
        candidates = []
        for item in results[:limit]:
            profile = item.get("profile")
            content_id = str(item["content_id"])
            if profile is not None:
                profile = ContentProfile.from_dict({"content_id": content_id, **profile})
            candidates.append(
                Candidate(
                    content_id=content_id,
                    similarity_score=clamp(float(item["similarity"]), 0.0, 1.0),
                    profile=profile,
                )
            )
        return candidates

    def close(self):
        self.client.close()


def query_with_timeout(
    retriever: VectorRetriever,
    vector: np.ndarray,
    limit: int,
    timeout: float | None,
) -> list[Candidate]:
    """
    Query a retriever, giving up after `timeout` seconds.

    Raises:
        RetrievalTimeout: the query did not finish in time (retryable).
        RetrievalError: the retriever itself failed.
    """
    try:
        return retriever.query_within(vector, limit, timeout)
    except RetrievalError:
        raise
    except Exception as e:
        raise RetrievalError(f"{type(retriever).__name__} failed: {e}") from e


# Catalog helpers -------------------------------------------------------

# Typical emotional effect per category: (valence, arousal, stress reduction)
_CATEGORY_EFFECTS = {
    "movie": (0.3, 0.2, 0.1),
    "series": (0.2, 0.3, 0.0),
    "documentary": (0.2, 0.0, 0.1),
    "music": (0.4, 0.1, 0.3),
    "meditation": (0.3, -0.6, 0.6),
    "short": (0.4, 0.3, 0.1),
}

_CATEGORY_GENRES = {
    "movie": ["drama", "comedy", "thriller", "romance", "action", "sci-fi", "horror", "fantasy"],
    "series": ["drama", "comedy", "crime", "fantasy", "mystery", "sci-fi", "thriller"],
    "documentary": ["nature", "history", "science", "biographical", "social", "wildlife"],
    "music": ["classical", "jazz", "ambient", "world", "electronic", "acoustic"],
    "meditation": ["guided", "ambient", "nature-sounds", "mindfulness", "breathing", "sleep"],
    "short": ["animation", "comedy", "experimental", "musical", "drama"],
}

_CATEGORY_DURATIONS = {
    "movie": (90, 180),
    "series": (30, 60),
    "documentary": (45, 120),
    "music": (3, 60),
    "meditation": (5, 45),
    "short": (1, 15),
}


def synthetic_catalog(count: int, seed: int = 0) -> list[ContentProfile]:
    """Deterministic mock catalog spread evenly across content categories."""
    rng = np.random.default_rng(seed)
    categories = list(_CATEGORY_EFFECTS)
    catalog = []
    for i in range(count):
        category = categories[i % len(categories)]
        base_v, base_a, base_s = _CATEGORY_EFFECTS[category]
        genres = list(rng.choice(_CATEGORY_GENRES[category], size=2, replace=False))
        lo, hi = _CATEGORY_DURATIONS[category]
        catalog.append(
            ContentProfile(
                content_id=f"mock_{category}_{i + 1:03d}",
                title=f"{genres[0].title()} {category.title()} #{i + 1}",
                valence_delta=clamp(base_v + rng.normal(0, 0.3), -1.0, 1.0),
                arousal_delta=clamp(base_a + rng.normal(0, 0.3), -1.0, 1.0),
                stress_reduction=clamp(base_s + rng.normal(0, 0.2), -1.0, 1.0),
                genres=genres,
                category=category,
                duration=float(rng.integers(lo, hi + 1)),
                total_watches=int(rng.integers(0, 200)),
                outcome_variance=float(rng.uniform(0.05, 0.6)),
            )
        )
    return catalog


def load_catalog(path: Path | str) -> list[ContentProfile]:
    """Read a JSON list of content profiles."""
    payload = json.loads(Path(path).read_text())
    if isinstance(payload, dict):
        payload = payload.get("items", [])
    if not isinstance(payload, list):
        raise ValueError(f"{path} must contain a JSON list of profiles")
    return [ContentProfile.from_dict(item) for item in payload]
