"""
Relationship detection between a memory and its nearest neighbours.
"""

import math
from typing import AbstractSet, Callable, List, Optional, Sequence

from ..models.core import (Memory, Relationship, RelationshipType, SemanticMetadata, SimilarMemory, TagMetadata,
                           TemporalMetadata, TopicMetadata)
from ..utils.config import ProcessingConfig
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import now_utc
from ..utils.vector_store import VectorStore, scope_filter

logger = get_logger(__name__)

# Temporal edges weaker than this are dropped
MIN_TEMPORAL_STRENGTH = 0.1


class RelationshipDetectionError(Exception):
    """Raised when the neighbour candidate set cannot be obtained."""

    def __init__(self, message: str, memory_id: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.memory_id = memory_id
        self.cause = cause


def jaccard_similarity(left: AbstractSet[str], right: AbstractSet[str]) -> float:
    """|intersection| / |union|, 0.0 when both sets are empty."""
    union = left | right
    if not union:
        return 0.0
    return len(left & right) / len(union)


def temporal_strength(time_diff_seconds: float, window_seconds: float) -> float:
    """Exponential decay with a time constant of one third of the window; 0.0 outside the window."""
    if window_seconds <= 0 or time_diff_seconds > window_seconds:
        return 0.0
    return math.exp(-time_diff_seconds / (window_seconds / 3.0))


class RelationshipDetector:
    """Derives typed, strength-scored edges from one shared neighbour candidate pool."""

    def __init__(self, config: ProcessingConfig, vector_store: VectorStore):
        """
        Initialize the detector.

        Args:
            config: ProcessingConfig with thresholds and limits
            vector_store: Store queried once per memory for neighbour candidates
        """
        self.config = config
        self.vector_store = vector_store

    async def find_candidates(self, memory: Memory, embedding: Sequence[float]) -> List[SimilarMemory]:
        """Fetch the broad neighbour pool shared by every signal, excluding the memory itself."""
        limit = self.config.max_similar_memories_to_check
        # One extra slot in case the memory's own indexed vector comes back
        hits = await self.vector_store.search(embedding,
                                              filter=scope_filter(memory.user_id, memory.project_name),
                                              limit=limit + 1,
                                              score_threshold=self.config.candidate_score_threshold)
        return [SimilarMemory.from_hit(hit) for hit in hits if hit.id != memory.id][:limit]

    async def detect(self, memory: Memory, embedding: Sequence[float]) -> List[Relationship]:
        """
        Detect relationships for a memory.

        Args:
            memory: Source memory
            embedding: Source memory's vector

        Returns:
            At most ``max_relationships_per_memory`` relationships by descending strength;
            equal strengths keep detection order (semantic, topic, tag, temporal)

        Raises:
            RelationshipDetectionError: If the candidate search fails
        """
        try:
            candidates = await self.find_candidates(memory, embedding)
        except Exception as e:
            logger.error(f'Candidate search failed for memory {memory.id}: {e}')
            raise RelationshipDetectionError(f'Failed to detect relationships for memory {memory.id}', memory.id, cause=e)

        detected_at = now_utc()
        signals: List[Callable[[Memory, List[SimilarMemory]], List[Relationship]]] = [
            self.detect_semantic_similarity,
            self.detect_topic_overlap,
            self.detect_tag_similarity,
            self.detect_temporal_proximity,
        ]

        relationships: List[Relationship] = []
        for signal in signals:
            try:
                found = signal(memory, candidates)
            except Exception as e:
                logger.warning(f'{signal.__name__} failed for memory {memory.id}: {e}')
                continue
            for relationship in found:
                relationship.created_at = detected_at
            relationships.extend(found)

        # sort is stable, so ties keep detection order
        relationships.sort(key=lambda relationship: relationship.strength, reverse=True)
        limited = relationships[:self.config.max_relationships_per_memory]

        logger.debug(f'Detected {len(relationships)} relationships for memory {memory.id} '
                     f'from {len(candidates)} candidates, kept {len(limited)}')
        return limited

    def detect_semantic_similarity(self, memory: Memory, candidates: List[SimilarMemory]) -> List[Relationship]:
        return [
            Relationship(source_memory_id=memory.id,
                         target_memory_id=candidate.id,
                         relationship_type=RelationshipType.SEMANTIC_SIMILARITY,
                         strength=candidate.similarity_score,
                         metadata=SemanticMetadata(similarity_score=candidate.similarity_score)) for candidate in candidates
            if candidate.id != memory.id and candidate.similarity_score >= self.config.semantic_similarity_threshold
        ]

    def detect_topic_overlap(self, memory: Memory, candidates: List[SimilarMemory]) -> List[Relationship]:
        if not memory.topic:
            return []
        return [
            Relationship(source_memory_id=memory.id,
                         target_memory_id=candidate.id,
                         relationship_type=RelationshipType.TOPIC_OVERLAP,
                         strength=self.config.topic_overlap_threshold,
                         metadata=TopicMetadata(shared_topic=memory.topic)) for candidate in candidates
            if candidate.id != memory.id and candidate.topic == memory.topic
        ]

    def detect_tag_similarity(self, memory: Memory, candidates: List[SimilarMemory]) -> List[Relationship]:
        if not memory.tags:
            return []

        relationships = []
        for candidate in candidates:
            if candidate.id == memory.id or not candidate.tags:
                continue
            similarity = jaccard_similarity(memory.tags, candidate.tags)
            if similarity >= self.config.tag_similarity_threshold:
                relationships.append(
                    Relationship(source_memory_id=memory.id,
                                 target_memory_id=candidate.id,
                                 relationship_type=RelationshipType.TAG_SIMILARITY,
                                 strength=similarity,
                                 metadata=TagMetadata(shared_tags=sorted(memory.tags & candidate.tags),
                                                      jaccard_similarity=similarity)))
        return relationships

    def detect_temporal_proximity(self, memory: Memory, candidates: List[SimilarMemory]) -> List[Relationship]:
        window = self.config.temporal_proximity_window_seconds

        relationships = []
        for candidate in candidates:
            if candidate.id == memory.id:
                continue
            time_diff = abs((memory.created_at - candidate.created_at).total_seconds())
            strength = temporal_strength(time_diff, window)
            if strength > MIN_TEMPORAL_STRENGTH:
                relationships.append(
                    Relationship(source_memory_id=memory.id,
                                 target_memory_id=candidate.id,
                                 relationship_type=RelationshipType.TEMPORAL_PROXIMITY,
                                 strength=strength,
                                 metadata=TemporalMetadata(time_diff_seconds=time_diff)))
        return relationships
