"""
Vector similarity store interface and an in-memory cosine implementation.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..models.core import SearchHit
from .logging_config import get_logger

logger = get_logger(__name__)

VectorRecord = Tuple[str, Sequence[float], Dict[str, Any]]


class VectorStoreError(Exception):
    """Custom exception for vector store errors."""
    pass


class VectorDimensionError(VectorStoreError):
    """A vector's length differs from the collection's dimension."""

    def __init__(self, expected: int, actual: int):
        super().__init__(f'Vector dimension mismatch: collection uses {expected}, got {actual}')
        self.expected = expected
        self.actual = actual


class VectorStore(ABC):
    """Persists vectors with scoping metadata and answers filtered nearest-neighbour queries."""

    @abstractmethod
    async def upsert(self, record_id: str, vector: Sequence[float], payload: Dict[str, Any]) -> None:
        """Insert or wholesale replace the vector and payload stored under ``record_id``."""

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> None:
        """Upsert many ``(id, vector, payload)`` records."""
        for record_id, vector, payload in records:
            await self.upsert(record_id, vector, payload)

    @abstractmethod
    async def search(self,
                     vector: Sequence[float],
                     filter: Optional[Dict[str, Any]] = None,
                     limit: int = 10,
                     score_threshold: float = 0.0) -> List[SearchHit]:
        """
        Rank stored vectors matching every ``filter`` equality by cosine similarity.

        Returns:
            At most ``limit`` hits with score >= ``score_threshold``, best first
        """

    @abstractmethod
    async def get(self, record_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        """Return ``(vector, payload)`` for ``record_id`` or None."""

    @abstractmethod
    async def delete(self, record_id: str) -> bool:
        """Delete a record. Returns False if it did not exist."""

    async def health_check(self) -> bool:
        return True


def _normalize(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    return vector / norm if norm > 0 else vector


def scope_filter(user_id: str, project_name: Optional[str] = None) -> Dict[str, Any]:
    """Equality filter scoping a search to an owner and optionally a project."""
    scope = {'user_id': user_id}
    if project_name:
        scope['project_name'] = project_name
    return scope


class InMemoryVectorStore(VectorStore):
    """In-process vector store using cosine similarity over normalized numpy vectors."""

    def __init__(self, dimension: Optional[int] = None):
        self.dimension = dimension
        self._vectors: Dict[str, np.ndarray] = {}
        self._index: Dict[str, np.ndarray] = {}
        self._payloads: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._vectors)

    def _as_array(self, vector: Sequence[float]) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float64)
        if array.ndim != 1 or array.size == 0:
            raise VectorStoreError('Vectors must be non-empty and one-dimensional')
        if self.dimension is not None and array.size != self.dimension:
            raise VectorDimensionError(self.dimension, array.size)
        return array

    async def upsert(self, record_id: str, vector: Sequence[float], payload: Dict[str, Any]) -> None:
        array = self._as_array(vector)
        async with self._lock:
            if self.dimension is None:
                self.dimension = int(array.size)
                logger.debug(f'Vector collection dimension set to {self.dimension}')
            # Replace vector, index and payload together
            self._vectors[record_id] = array
            self._index[record_id] = _normalize(array)
            self._payloads[record_id] = dict(payload)

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> None:
        prepared = [(record_id, self._as_array(vector), dict(payload)) for record_id, vector, payload in records]
        sizes = {array.size for _, array, _ in prepared}
        if len(sizes) > 1:
            raise VectorStoreError(f'Batch mixes vector dimensions: {sorted(sizes)}')
        async with self._lock:
            for record_id, array, payload in prepared:
                if self.dimension is None:
                    self.dimension = int(array.size)
                self._vectors[record_id] = array
                self._index[record_id] = _normalize(array)
                self._payloads[record_id] = payload

    async def search(self,
                     vector: Sequence[float],
                     filter: Optional[Dict[str, Any]] = None,
                     limit: int = 10,
                     score_threshold: float = 0.0) -> List[SearchHit]:
        if not self._index or limit <= 0:
            return []

        query = self._as_array(vector)
        norm = np.linalg.norm(query)
        if norm == 0:
            # Zero vector carries no semantic content
            return []
        query = query / norm

        filter = filter or {}
        candidates = [
            record_id for record_id, payload in self._payloads.items()
            if all(payload.get(key) == value for key, value in filter.items())
        ]
        if not candidates:
            return []

        matrix = np.stack([self._index[record_id] for record_id in candidates])
        scores = matrix @ query

        ranked = sorted(zip(candidates, scores.tolist()), key=lambda item: item[1], reverse=True)
        return [
            SearchHit(id=record_id, score=float(score), payload=dict(self._payloads[record_id]))
            for record_id, score in ranked if score >= score_threshold
        ][:limit]

    async def get(self, record_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        if record_id not in self._vectors:
            return None
        return self._vectors[record_id].tolist(), dict(self._payloads[record_id])

    async def delete(self, record_id: str) -> bool:
        async with self._lock:
            if record_id not in self._vectors:
                return False
            del self._vectors[record_id]
            del self._index[record_id]
            del self._payloads[record_id]
            return True

