"""
Persistence interface for detected relationships.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Sequence

from ..models.core import Relationship


class RelationshipStoreError(Exception):
    """Custom exception for relationship persistence errors."""
    pass


class RelationshipStore(ABC):
    """Optional persistence collaborator for the relationship graph."""

    @abstractmethod
    async def store_relationships(self, source_memory_id: str, relationships: Sequence[Relationship]) -> None:
        """Replace the outgoing edges of ``source_memory_id`` with ``relationships``.

        Storing an empty sequence clears the memory's outgoing edges.
        """

    @abstractmethod
    async def get_relationships(self, memory_id: str) -> List[Relationship]:
        """Outgoing edges of ``memory_id`` ordered by descending strength."""

    async def health_check(self) -> bool:
        return True


class InMemoryRelationshipStore(RelationshipStore):
    """Relationship store kept in process memory."""

    def __init__(self):
        self._edges: Dict[str, List[Relationship]] = {}

    async def store_relationships(self, source_memory_id: str, relationships: Sequence[Relationship]) -> None:
        if any(relationship.source_memory_id != source_memory_id for relationship in relationships):
            raise RelationshipStoreError(f'Relationships must all originate from memory {source_memory_id}')
        if relationships:
            self._edges[source_memory_id] = list(relationships)
        else:
            self._edges.pop(source_memory_id, None)

    async def get_relationships(self, memory_id: str) -> List[Relationship]:
        edges = list(self._edges.get(memory_id, []))
        return sorted(edges, key=lambda relationship: relationship.strength, reverse=True)
