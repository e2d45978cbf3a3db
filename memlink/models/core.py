"""
Core data models for memory processing and the relationship graph.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union

from ..utils.timestamp_utils import now_utc, to_datetime, to_epoch_seconds


class RelationshipType(str, Enum):
    """Kinds of directed edges between memories."""
    SEMANTIC_SIMILARITY = 'semantic_similarity'
    TOPIC_OVERLAP = 'topic_overlap'
    TAG_SIMILARITY = 'tag_similarity'
    TEMPORAL_PROXIMITY = 'temporal_proximity'
    USER_CONNECTION = 'user_connection'
    PROJECT_CONNECTION = 'project_connection'


def clamp_strength(value: float) -> float:
    """Clamp a relationship strength to [0, 1]."""
    return max(0.0, min(1.0, float(value)))


@dataclass
class Memory:
    """A stored unit of user content subject to analysis and relationship linking.

    Content is treated as immutable once analyzed; the embedding may be attached lazily.
    """
    id: str
    user_id: str
    content: str
    created_at: datetime
    project_name: Optional[str] = None
    tags: FrozenSet[str] = field(default_factory=frozenset)
    topic: Optional[str] = None
    memory_type: Optional[str] = None
    embedding: Optional[List[float]] = None

    def __post_init__(self):
        self.tags = frozenset(self.tags or ())
        self.created_at = to_datetime(self.created_at)

    def with_embedding(self, embedding: List[float]) -> 'Memory':
        return replace(self, embedding=list(embedding))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Memory':
        """Build a Memory from a wire event (``memory_id``/``id``, ``memory_topic``/``topic`` accepted)."""
        return cls(id=data.get('memory_id') or data['id'],
                   user_id=data['user_id'],
                   content=data.get('content', ''),
                   created_at=to_datetime(data.get('created_at')),
                   project_name=data.get('project_name') or None,
                   tags=frozenset(data.get('tags') or ()),
                   topic=data.get('memory_topic') or data.get('topic') or None,
                   memory_type=data.get('memory_type') or None,
                   embedding=data.get('embedding') or None)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'memory_id': self.id,
            'user_id': self.user_id,
            'project_name': self.project_name,
            'content': self.content,
            'tags': sorted(self.tags),
            'memory_topic': self.topic,
            'memory_type': self.memory_type,
            'embedding': self.embedding,
            'created_at': to_epoch_seconds(self.created_at)
        }


@dataclass
class ContentAnalysis:
    """Derived snapshot of a memory's content, recomputed if content changes."""
    memory_id: str
    user_id: str
    content_hash: str
    word_count: int
    character_count: int
    topics: List[str]
    entities: List[str]
    sentiment_score: float
    language: str
    keywords: List[str]
    analyzed_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['analyzed_at'] = to_epoch_seconds(self.analyzed_at)
        return data


@dataclass
class RelationshipMetadata:
    """Base of the per-type metadata union. ``extra`` holds forward-compatible fields."""
    detection_method: str = ''
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        extra = data.pop('extra')
        data.update(extra)
        return data


@dataclass
class SemanticMetadata(RelationshipMetadata):
    similarity_score: float = 0.0
    detection_method: str = 'vector_similarity'


@dataclass
class TopicMetadata(RelationshipMetadata):
    shared_topic: str = ''
    detection_method: str = 'exact_match'


@dataclass
class TagMetadata(RelationshipMetadata):
    shared_tags: List[str] = field(default_factory=list)
    jaccard_similarity: float = 0.0
    detection_method: str = 'jaccard_similarity'

    @property
    def total_shared(self) -> int:
        return len(self.shared_tags)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['total_shared'] = self.total_shared
        return data


@dataclass
class TemporalMetadata(RelationshipMetadata):
    time_diff_seconds: float = 0.0
    detection_method: str = 'exponential_decay'

    @property
    def time_diff_hours(self) -> float:
        return round(self.time_diff_seconds / 3600.0, 1)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['time_diff_hours'] = self.time_diff_hours
        return data


RelationshipMetadataType = Union[SemanticMetadata, TopicMetadata, TagMetadata, TemporalMetadata, RelationshipMetadata]

_METADATA_CLASSES = {
    'semantic_similarity': SemanticMetadata,
    'topic_overlap': TopicMetadata,
    'tag_similarity': TagMetadata,
    'temporal_proximity': TemporalMetadata,
}

# Serialized-only fields recomputed from the stored ones
_DERIVED_METADATA_FIELDS = {'total_shared', 'time_diff_hours'}


def metadata_from_dict(relationship_type: Union[str, 'RelationshipType'], data: Dict[str, Any]) -> RelationshipMetadataType:
    """Rebuild typed metadata from its flattened dict form; unknown keys land in ``extra``."""
    metadata_class = _METADATA_CLASSES.get(RelationshipType(relationship_type).value, RelationshipMetadata)
    known = {name for name in metadata_class.__dataclass_fields__ if name != 'extra'}
    kwargs = {key: value for key, value in data.items() if key in known}
    extra = {key: value for key, value in data.items() if key not in known and key not in _DERIVED_METADATA_FIELDS}
    return metadata_class(extra=extra, **kwargs)


@dataclass
class Relationship:
    """Directed, typed, strength-scored edge between two memories."""
    source_memory_id: str
    target_memory_id: str
    relationship_type: RelationshipType
    strength: float
    created_at: datetime = field(default_factory=now_utc)
    metadata: RelationshipMetadataType = field(default_factory=RelationshipMetadata)

    def __post_init__(self):
        self.relationship_type = RelationshipType(self.relationship_type)
        self.strength = clamp_strength(self.strength)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_memory_id': self.source_memory_id,
            'target_memory_id': self.target_memory_id,
            'relationship_type': self.relationship_type.value,
            'strength': self.strength,
            'created_at': to_epoch_seconds(self.created_at),
            'metadata': self.metadata.to_dict()
        }


@dataclass
class SearchHit:
    """One nearest-neighbour result from the vector store."""
    id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimilarMemory:
    """Neighbour candidate used as input to every relationship signal."""
    id: str
    similarity_score: float
    content: str
    tags: FrozenSet[str]
    created_at: datetime
    topic: Optional[str] = None
    memory_type: Optional[str] = None

    @classmethod
    def from_hit(cls, hit: SearchHit) -> 'SimilarMemory':
        payload = hit.payload or {}
        return cls(id=hit.id,
                   similarity_score=hit.score,
                   content=payload.get('content', ''),
                   tags=frozenset(payload.get('tags') or ()),
                   created_at=to_datetime(payload.get('created_at', 0)),
                   topic=payload.get('topic') or None,
                   memory_type=payload.get('memory_type') or None)


@dataclass
class ProcessedMemory:
    """Result of running one memory through the processing pipeline."""
    memory_id: str
    analysis: ContentAnalysis
    relationships: List[Relationship]
    processing_completed_at: datetime = field(default_factory=now_utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'memory_id': self.memory_id,
            'analysis': self.analysis.to_dict(),
            'relationships': [relationship.to_dict() for relationship in self.relationships],
            'processing_completed_at': to_epoch_seconds(self.processing_completed_at)
        }


@dataclass
class ProcessingFailure:
    """A per-item failure captured during batch processing."""
    memory_id: str
    index: int
    error: str
    code: str = 'PROCESSING_FAILED'

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BatchProcessingResult:
    """Successes in input order plus captured failures."""
    processed: List[ProcessedMemory] = field(default_factory=list)
    failures: List[ProcessingFailure] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'processed': [item.to_dict() for item in self.processed],
            'failures': [failure.to_dict() for failure in self.failures]
        }


def _zero_type_counts() -> Dict[str, int]:
    return {relationship_type.value: 0 for relationship_type in RelationshipType}


@dataclass
class ProcessingStats:
    """Running processing statistics owned by one orchestrator instance."""
    memories_processed: int = 0
    analyses_completed: int = 0
    relationships_detected: int = 0
    average_processing_time_ms: float = 0.0
    relationships_by_type: Dict[str, int] = field(default_factory=_zero_type_counts)
    language_distribution: Dict[str, int] = field(default_factory=dict)
    topic_distribution: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# Smoothing factor for the processing-time moving average
LATENCY_EMA_ALPHA = 0.1


def _bump(histogram: Dict[str, int], keys: Iterable[str]) -> Dict[str, int]:
    updated = dict(histogram)
    for key in keys:
        updated[key] = updated.get(key, 0) + 1
    return updated


def accumulate_stats(stats: ProcessingStats, processed: ProcessedMemory, elapsed_ms: float) -> ProcessingStats:
    """Return new statistics with one successfully processed memory folded in.

    The first latency sample sets the moving average directly; later samples blend with alpha 0.1.

    Args:
        stats: Current statistics (not modified)
        processed: Successful processing result
        elapsed_ms: Wall-clock processing time in milliseconds

    Returns:
        Updated ProcessingStats
    """
    if stats.memories_processed == 0:
        average = float(elapsed_ms)
    else:
        average = LATENCY_EMA_ALPHA * elapsed_ms + (1 - LATENCY_EMA_ALPHA) * stats.average_processing_time_ms

    return ProcessingStats(memories_processed=stats.memories_processed + 1,
                           analyses_completed=stats.analyses_completed + 1,
                           relationships_detected=stats.relationships_detected + len(processed.relationships),
                           average_processing_time_ms=average,
                           relationships_by_type=_bump(stats.relationships_by_type,
                                                       (r.relationship_type.value for r in processed.relationships)),
                           language_distribution=_bump(stats.language_distribution, [processed.analysis.language]),
                           topic_distribution=_bump(stats.topic_distribution, processed.analysis.topics))
