"""
Embedding model server client interface and error taxonomy.
"""

from abc import ABC, abstractmethod
from numbers import Real
from typing import Any, List, Optional, Sequence


class EmbeddingError(Exception):
    """Base exception for embedding failures.

    Attributes:
        code: Short machine-readable failure code
        cause: Underlying exception, when available
    """

    def __init__(self, message: str, code: str = 'EMBEDDING_ERROR', cause: Optional[BaseException] = None):
        super().__init__(message)
        self.code = code
        self.cause = cause


class ModelServerError(EmbeddingError):
    """Transient I/O failure talking to the model server. Retried by the provider."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, code='MODEL_SERVER_ERROR', cause=cause)


class EmbeddingTimeoutError(EmbeddingError):
    """A model server call did not complete within the per-call timeout."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, code='TIMEOUT', cause=cause)


class MalformedResponseError(EmbeddingError):
    """The model server reply could not be interpreted as embeddings."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, code='INVALID_RESPONSE', cause=cause)


class DimensionMismatchError(EmbeddingError):
    """A vector's length differs from the canonical dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f'Embedding dimension mismatch: expected {expected}, got {actual}', code='DIMENSION_MISMATCH')
        self.expected = expected
        self.actual = actual


def validate_vector(vector: Any) -> List[float]:
    """Check that a reply item is a non-empty list of numbers and return it as floats.

    Raises:
        MalformedResponseError: If the value is not a numeric list
    """
    if not isinstance(vector, (list, tuple)) or not vector:
        raise MalformedResponseError(f'Expected a non-empty list of floats, got {type(vector).__name__}')
    if not all(isinstance(value, Real) and not isinstance(value, bool) for value in vector):
        raise MalformedResponseError('Embedding contains non-numeric values')
    return [float(value) for value in vector]


class EmbeddingModelClient(ABC):
    """Blocking client for one request/response exchange with an embedding model server."""

    model_id: str

    @abstractmethod
    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        """Return one vector per input text, in input order.

        Raises:
            ModelServerError: On transient transport failures
            MalformedResponseError: If the reply cannot be interpreted
        """

    @abstractmethod
    def health_check(self) -> bool:
        """Return True if the model server is reachable and serving the configured model."""
