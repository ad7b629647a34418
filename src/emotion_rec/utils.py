"""Utility functions shared across emotion_rec."""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import TypeVar, Callable, Any

import numpy as np

from .errors import RetrievalTimeout

logger = logging.getLogger(__name__)

T = TypeVar('T')

# Shared pool for timeout-guarded collaborator calls
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="emotion-rec-call")


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def cosine_similarity(a, b) -> float | None:
    """
    Cosine similarity of two vectors.

    Returns None when either vector has zero magnitude so callers can pick
    their own neutral value.
    """
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    norm_a = float(np.linalg.norm(a))
    norm_b = float(np.linalg.norm(b))
    if norm_a == 0.0 or norm_b == 0.0:
        return None
    return clamp(float(a @ b) / (norm_a * norm_b), -1.0, 1.0)


def call_with_timeout(func: Callable[..., T], timeout: float | None, *args: Any, **kwargs: Any) -> T:
    """
    Run func on a worker thread and wait at most `timeout` seconds.

    Python threads cannot be killed: a call that hangs past its timeout keeps
    its worker until it returns, and once all 8 workers are held new calls
    queue behind them and time out. Prefer a collaborator that bounds its own
    I/O (see HttpVectorRetriever.query_within) for anything that can hang.

    Raises:
        RetrievalTimeout: if the call has not returned in time. The worker
            keeps running in the background; its result is discarded.
    """
    if timeout is None:
        return func(*args, **kwargs)

    future = _executor.submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        logger.warning(f"{getattr(func, '__name__', func)} timed out after {timeout:.2f}s")
        raise RetrievalTimeout(f"call did not complete within {timeout:.2f}s") from None
