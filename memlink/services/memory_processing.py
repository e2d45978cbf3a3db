"""
Memory Processing Orchestrator: analyze, embed, detect relationships, persist, index, publish.
"""

import asyncio
import time
import uuid
from dataclasses import replace
from typing import List, Optional, Sequence

from ..models.core import (BatchProcessingResult, Memory, ProcessedMemory, ProcessingFailure, ProcessingStats,
                           accumulate_stats)
from ..utils.config import MessagingConfig, ProcessingConfig
from ..utils.embedding_client import EmbeddingError, validate_vector
from ..utils.logging_config import get_logger
from ..utils.messaging import MessageBus, MessagingError
from ..utils.relationship_store import RelationshipStore
from ..utils.timestamp_utils import now_utc, to_epoch_seconds
from ..utils.vector_store import VectorStore
from .content_analysis import ContentAnalysisError, ContentAnalyzer
from .embedding_provider import EmbeddingProvider
from .relationship_detection import RelationshipDetectionError, RelationshipDetector

logger = get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when the service is missing a required collaborator."""
    pass


class MemoryProcessingError(Exception):
    """Custom exception for memory processing failures."""

    def __init__(self,
                 message: str,
                 memory_id: Optional[str] = None,
                 code: str = 'PROCESSING_FAILED',
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.memory_id = memory_id
        self.code = code
        self.cause = cause


class MemoryProcessingService:
    """Runs memories through content analysis and relationship detection and keeps running statistics."""

    def __init__(self,
                 config: ProcessingConfig,
                 vector_store: VectorStore,
                 relationship_store: Optional[RelationshipStore] = None,
                 embedding_provider: Optional[EmbeddingProvider] = None,
                 message_bus: Optional[MessageBus] = None,
                 messaging_config: Optional[MessagingConfig] = None,
                 stats: Optional[ProcessingStats] = None):
        """
        Initialize the processing service.

        Args:
            config: ProcessingConfig with detection thresholds and batch settings
            vector_store: Store used for neighbour search and for indexing processed memories
            relationship_store: Optional persistence for detected relationships
            embedding_provider: In-process embedding provider, preferred over the bus
            message_bus: Bus used for remote embedding requests and event publication
            messaging_config: Subjects and timeouts for the bus
            stats: Initial statistics, defaults to empty
        """
        self.config = config
        self.vector_store = vector_store
        self.relationship_store = relationship_store
        self.embedding_provider = embedding_provider
        self.message_bus = message_bus
        self.messaging_config = messaging_config or MessagingConfig()
        self._stats = stats or ProcessingStats()

        self.content_analyzer = ContentAnalyzer(config)
        self.relationship_detector = RelationshipDetector(config, vector_store)

    async def process(self, memory: Memory) -> ProcessedMemory:
        """
        Process one memory.

        Args:
            memory: Memory to analyze and link

        Returns:
            ProcessedMemory with analysis and detected relationships

        Raises:
            MemoryProcessingError: If any processing stage fails, including a missing embedding source
        """
        started = time.perf_counter()

        try:
            analysis = self.content_analyzer.analyze(memory.content, memory.id, memory.user_id)
        except ContentAnalysisError as e:
            raise MemoryProcessingError(f'Failed to analyze memory {memory.id}', memory.id, 'ANALYSIS_FAILED', cause=e)

        embedding = await self._obtain_embedding(memory, analysis.content_hash)

        try:
            relationships = await self.relationship_detector.detect(memory, embedding)
        except RelationshipDetectionError as e:
            raise MemoryProcessingError(f'Failed to detect relationships for memory {memory.id}',
                                        memory.id,
                                        'RELATIONSHIP_DETECTION_FAILED',
                                        cause=e)

        if self.relationship_store is not None:
            try:
                await self.relationship_store.store_relationships(memory.id, relationships)
            except Exception as e:
                logger.error(f'Failed to store relationships for memory {memory.id}: {e}')
                raise MemoryProcessingError(f'Failed to store relationships for memory {memory.id}',
                                            memory.id,
                                            'STORAGE_FAILED',
                                            cause=e)

        if self.config.index_processed_memories:
            await self._index(memory, embedding, analysis.content_hash)

        processed = ProcessedMemory(memory_id=memory.id,
                                    analysis=analysis,
                                    relationships=relationships,
                                    processing_completed_at=now_utc())

        elapsed_ms = (time.perf_counter() - started) * 1000
        self._stats = accumulate_stats(self._stats, processed, elapsed_ms)

        logger.info(f'Processed memory {memory.id}: {len(relationships)} relationships in {elapsed_ms:.1f}ms')
        return processed

    async def process_batch(self, memories: Sequence[Memory]) -> BatchProcessingResult:
        """
        Process memories in windows of ``batch_window_size``.

        Items within a window run concurrently; windows run one after another. A failing item is
        recorded as a ProcessingFailure and does not affect the others.

        Args:
            memories: Memories to process

        Returns:
            BatchProcessingResult with successes in input order and captured failures
        """
        window_size = max(1, self.config.batch_window_size)
        outcomes: List[Optional[ProcessedMemory]] = [None] * len(memories)
        failures: List[ProcessingFailure] = []

        async def run(index: int, memory: Memory) -> None:
            try:
                outcomes[index] = await self.process(memory)
            except MemoryProcessingError as e:
                logger.warning(f'Memory {memory.id} failed in batch at index {index}: {e}')
                failures.append(ProcessingFailure(memory_id=memory.id, index=index, error=str(e), code=e.code))
            except Exception as e:
                logger.error(f'Unexpected error processing memory {memory.id} at index {index}: {e}')
                failures.append(ProcessingFailure(memory_id=memory.id, index=index, error=str(e), code='PROCESSING_FAILED'))

        for start in range(0, len(memories), window_size):
            window = memories[start:start + window_size]
            await asyncio.gather(*(run(start + offset, memory) for offset, memory in enumerate(window)))

        if failures:
            logger.warning(f'Failed to process {len(failures)} of {len(memories)} memories')

        failures.sort(key=lambda failure: failure.index)
        return BatchProcessingResult(processed=[item for item in outcomes if item is not None], failures=failures)

    async def publish(self, processed: ProcessedMemory) -> None:
        """Publish a processed memory event, and a relationships event when there are any. Never raises."""
        if self.message_bus is None:
            logger.warning('No message bus available for publishing processed event')
            return

        try:
            await self.message_bus.publish(self.messaging_config.processed_subject, processed.to_dict())
            if processed.relationships:
                await self.message_bus.publish(
                    self.messaging_config.relationships_subject, {
                        'relationships': [relationship.to_dict() for relationship in processed.relationships],
                        'source_memory_id': processed.memory_id,
                        'created_at': to_epoch_seconds()
                    })
        except Exception as e:
            logger.error(f'Failed to publish processed memory event for {processed.memory_id}: {e}')

    async def request_embedding(self, memory_id: str, text: str) -> List[float]:
        """
        Request an embedding from a remote worker over the message bus.

        Raises:
            ConfigurationError: If no message bus is wired
            MemoryProcessingError: If the request fails, times out or the reply carries an error
        """
        if self.message_bus is None:
            raise ConfigurationError('A message bus is required for embedding requests')

        request = {'id': memory_id, 'text': text, 'request_id': f'req-{uuid.uuid4().hex}'}
        try:
            reply = await self.message_bus.request(self.messaging_config.embeddings_subject,
                                                   request,
                                                   timeout=self.messaging_config.embedding_request_timeout)
            if reply.get('error'):
                raise MessagingError(reply['error'])
            return validate_vector(reply.get('embedding'))
        except (MessagingError, EmbeddingError) as e:
            raise MemoryProcessingError('Failed to request embedding from worker',
                                        memory_id,
                                        'EMBEDDING_REQUEST_FAILED',
                                        cause=e)

    def get_stats(self) -> ProcessingStats:
        return replace(self._stats,
                       relationships_by_type=dict(self._stats.relationships_by_type),
                       language_distribution=dict(self._stats.language_distribution),
                       topic_distribution=dict(self._stats.topic_distribution))

    def reset_stats(self) -> None:
        self._stats = ProcessingStats()

    def update_config(self, **overrides) -> ProcessingConfig:
        """
        Replace configuration fields and rebuild the analyzer and detector.

        Raises:
            ConfigurationError: If an override names an unknown field
        """
        try:
            self.config = replace(self.config, **overrides)
        except TypeError as e:
            raise ConfigurationError(f'Invalid processing configuration override: {e}')

        self.content_analyzer = ContentAnalyzer(self.config)
        self.relationship_detector = RelationshipDetector(self.config, self.vector_store)
        logger.info(f'Updated processing configuration: {sorted(overrides)}')
        return self.config

    async def _obtain_embedding(self, memory: Memory, digest: str) -> List[float]:
        if memory.embedding:
            return list(memory.embedding)

        stored = await self._stored_embedding(memory, digest)
        if stored is not None:
            return stored

        if self.embedding_provider is not None:
            try:
                return await self.embedding_provider.embed(memory.content)
            except EmbeddingError as e:
                raise MemoryProcessingError(f'Failed to embed memory {memory.id}', memory.id, e.code, cause=e)

        if self.message_bus is not None:
            return await self.request_embedding(memory.id, memory.content)

        cause = ConfigurationError('No embedding provider or message bus configured for embedding requests')
        raise MemoryProcessingError(f'No embedding source for memory {memory.id}',
                                    memory.id,
                                    'MISSING_EMBEDDING_SOURCE',
                                    cause=cause)

    async def _stored_embedding(self, memory: Memory, digest: str) -> Optional[List[float]]:
        """Reuse the indexed vector when it was computed from identical content."""
        try:
            record = await self.vector_store.get(memory.id)
        except Exception as e:
            logger.warning(f'Could not look up stored vector for memory {memory.id}: {e}')
            return None

        if record is None:
            return None
        vector, payload = record
        if payload.get('content_hash') != digest:
            return None
        logger.debug(f'Reusing stored vector for memory {memory.id}')
        return list(vector)

    async def _index(self, memory: Memory, embedding: List[float], digest: str) -> None:
        if not any(embedding):
            logger.debug(f'Skipping index of zero vector for memory {memory.id}')
            return

        payload = {
            'user_id': memory.user_id,
            'project_name': memory.project_name,
            'content': memory.content,
            'content_hash': digest,
            'tags': sorted(memory.tags),
            'topic': memory.topic,
            'memory_type': memory.memory_type,
            'created_at': to_epoch_seconds(memory.created_at)
        }
        try:
            await self.vector_store.upsert(memory.id, embedding, payload)
        except Exception as e:
            logger.error(f'Failed to index memory {memory.id}: {e}')
            raise MemoryProcessingError(f'Failed to index memory {memory.id}', memory.id, 'INDEXING_FAILED', cause=e)
