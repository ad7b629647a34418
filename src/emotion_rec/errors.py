"""Exception types raised by the recommendation core and its adapters."""


class EmotionRecError(Exception):
    """Base class for all emotion_rec errors."""

    retryable = False


class ValidationFault(EmotionRecError):
    """
    Malformed or out-of-range input.

    The core treats valid ranges as a caller precondition and never raises
    this itself; the CLI and other boundary code use it to reject input.
    """


class StorageFault(EmotionRecError):
    """Q-table or experience-history read/write failure."""


class RetrievalError(EmotionRecError):
    """The vector retriever failed to answer a query."""


class RetrievalTimeout(RetrievalError):
    """The vector retriever did not answer within the caller's timeout."""

    retryable = True
