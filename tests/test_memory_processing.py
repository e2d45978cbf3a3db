"""Tests for the memory processing orchestrator."""

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from memlink.models.core import ProcessingStats, RelationshipType
from memlink.services.content_analysis import content_hash
from memlink.services.embedding_provider import EmbeddingProvider
from memlink.services.embedding_worker import EmbeddingWorker
from memlink.services.memory_processing import ConfigurationError, MemoryProcessingError, MemoryProcessingService
from memlink.utils.messaging import InProcessMessageBus, MessagingError
from memlink.utils.relationship_store import InMemoryRelationshipStore
from memlink.utils.vector_store import InMemoryVectorStore

from .conftest import make_memory


@pytest.fixture
def vector_store():
    return InMemoryVectorStore()


@pytest.fixture
def provider(fake_client, embedding_config):
    return EmbeddingProvider(fake_client, embedding_config)


@pytest.fixture
def service(processing_config, vector_store, provider, messaging_config):
    return MemoryProcessingService(processing_config,
                                   vector_store,
                                   relationship_store=InMemoryRelationshipStore(),
                                   embedding_provider=provider,
                                   messaging_config=messaging_config)


class TestProcess:

    @pytest.mark.asyncio
    async def test_relates_new_memory_to_indexed_one(self, service):
        await service.process(make_memory('m1', 'Planning the release', embedding=[1.0, 0.0, 0.0, 0.0]))
        processed = await service.process(make_memory('m2', 'Release planning notes', embedding=[0.9, 0.1, 0.0, 0.0]))

        types = {r.relationship_type for r in processed.relationships}
        assert types == {RelationshipType.SEMANTIC_SIMILARITY, RelationshipType.TEMPORAL_PROXIMITY}
        assert all(r.source_memory_id == 'm2' and r.target_memory_id == 'm1' for r in processed.relationships)

        stored = await service.relationship_store.get_relationships('m2')
        assert len(stored) == 2

        stats = service.get_stats()
        assert stats.memories_processed == 2
        assert stats.analyses_completed == 2
        assert stats.relationships_detected == 2
        assert stats.relationships_by_type['semantic_similarity'] == 1
        assert stats.relationships_by_type['temporal_proximity'] == 1
        assert stats.relationships_by_type['user_connection'] == 0
        assert sum(stats.language_distribution.values()) == 2

    @pytest.mark.asyncio
    async def test_indexes_vector_with_content_hash(self, service, vector_store, fake_client):
        memory = make_memory('m1', 'The cat sat on the mat', tags={'pets'}, project_name='home')

        await service.process(memory)

        vector, payload = await vector_store.get('m1')
        assert len(vector) == 4
        assert payload['content_hash'] == content_hash(memory.content)
        assert payload['user_id'] == 'user-1'
        assert payload['project_name'] == 'home'
        assert payload['tags'] == ['pets']
        assert len(fake_client.calls) == 1

    @pytest.mark.asyncio
    async def test_reuses_stored_vector_for_unchanged_content(self, service, vector_store, fake_client):
        memory = make_memory('m1', 'Unchanged content')
        await vector_store.upsert('m1', [0.5, 0.5, 0.5, 0.5], {'user_id': 'user-1', 'content_hash': content_hash(memory.content)})

        await service.process(memory)

        assert fake_client.calls == []

    @pytest.mark.asyncio
    async def test_changed_content_is_embedded_again(self, service, vector_store, fake_client):
        await vector_store.upsert('m1', [0.5, 0.5, 0.5, 0.5], {'user_id': 'user-1', 'content_hash': 'stale'})

        await service.process(make_memory('m1', 'Edited content'))

        assert len(fake_client.calls) == 1

    @pytest.mark.asyncio
    async def test_missing_embedding_source_fails_that_memory(self, processing_config, vector_store):
        service = MemoryProcessingService(processing_config, vector_store)

        with pytest.raises(MemoryProcessingError) as exc_info:
            await service.process(make_memory('m1'))
        assert exc_info.value.memory_id == 'm1'
        assert exc_info.value.code == 'MISSING_EMBEDDING_SOURCE'
        assert isinstance(exc_info.value.cause, ConfigurationError)

    @pytest.mark.asyncio
    async def test_embedding_requested_over_bus(self, processing_config, vector_store, provider, messaging_config):
        bus = InProcessMessageBus()
        worker = EmbeddingWorker(provider, bus, messaging_config)
        worker.start()
        service = MemoryProcessingService(processing_config, vector_store, message_bus=bus, messaging_config=messaging_config)

        processed = await service.process(make_memory('m1', 'Remote embedding please'))

        assert processed.memory_id == 'm1'
        assert worker.successful_requests == 1
        assert (await vector_store.get('m1')) is not None

    @pytest.mark.asyncio
    async def test_bus_error_reply_fails_processing(self, processing_config, vector_store, messaging_config):
        bus = InProcessMessageBus()

        async def failing_worker(message):
            return {'request_id': message['request_id'], 'error': 'model unavailable', 'processing_time_ms': 1.0}

        bus.subscribe(messaging_config.embeddings_subject, failing_worker)
        service = MemoryProcessingService(processing_config, vector_store, message_bus=bus, messaging_config=messaging_config)

        with pytest.raises(MemoryProcessingError) as exc_info:
            await service.process(make_memory('m1'))
        assert exc_info.value.code == 'EMBEDDING_REQUEST_FAILED'
        assert exc_info.value.memory_id == 'm1'

    @pytest.mark.asyncio
    async def test_reprocessing_replaces_stored_relationships(self, processing_config, vector_store, provider):
        relationship_store = InMemoryRelationshipStore()
        service = MemoryProcessingService(replace(processing_config, max_relationships_per_memory=2),
                                          vector_store,
                                          relationship_store=relationship_store,
                                          embedding_provider=provider)
        memory = make_memory('m', 'Shared vector', embedding=[1.0, 0.0, 0.0, 0.0])
        for neighbour in ('a', 'b'):
            await vector_store.upsert(neighbour, [1.0, 0.1, 0.0, 0.0], {'user_id': 'user-1'})
        await service.process(memory)

        for neighbour in ('a', 'b'):
            await vector_store.delete(neighbour)
        for neighbour in ('c', 'd'):
            await vector_store.upsert(neighbour, [1.0, 0.1, 0.0, 0.0], {'user_id': 'user-1'})
        await service.process(memory)

        stored = await relationship_store.get_relationships('m')
        assert sorted(r.target_memory_id for r in stored) == ['c', 'd']

    @pytest.mark.asyncio
    async def test_skips_indexing_when_disabled(self, processing_config, vector_store, provider):
        service = MemoryProcessingService(replace(processing_config, index_processed_memories=False),
                                          vector_store,
                                          embedding_provider=provider)

        await service.process(make_memory('m1'))

        assert len(vector_store) == 0


class TestProcessBatch:

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, processing_config, provider):
        store = InMemoryVectorStore(dimension=4)
        await store.upsert('other', [1.0, 0.0, 0.0, 0.0], {'user_id': 'user-2'})
        service = MemoryProcessingService(processing_config, store, embedding_provider=provider)
        memories = [
            make_memory('m0', 'first'),
            make_memory('m1', 'second', embedding=[1.0, 0.0, 0.0]),
            make_memory('m2', 'third'),
            make_memory('m3', 'fourth'),
        ]

        result = await service.process_batch(memories)

        assert [item.memory_id for item in result.processed] == ['m0', 'm2', 'm3']
        assert len(result.failures) == 1
        assert result.failures[0].memory_id == 'm1'
        assert result.failures[0].index == 1
        assert result.failures[0].code == 'RELATIONSHIP_DETECTION_FAILED'
        assert service.get_stats().memories_processed == 3

    @pytest.mark.asyncio
    async def test_missing_embedding_source_is_recorded_per_item(self, processing_config, vector_store):
        service = MemoryProcessingService(processing_config, vector_store)
        memories = [
            make_memory(f'm{index}', f'note {index}', embedding=None if index == 1 else [1.0, 0.0, 0.0, float(index)])
            for index in range(7)
        ]

        result = await service.process_batch(memories)

        assert [item.memory_id for item in result.processed] == ['m0', 'm2', 'm3', 'm4', 'm5', 'm6']
        assert len(result.failures) == 1
        assert result.failures[0].memory_id == 'm1'
        assert result.failures[0].index == 1
        assert result.failures[0].code == 'MISSING_EMBEDDING_SOURCE'
        assert service.get_stats().memories_processed == 6

    @pytest.mark.asyncio
    async def test_unexpected_error_is_recorded_per_item(self, service):
        detect = service.relationship_detector.detect

        async def flaky_detect(memory, embedding):
            if memory.id == 'm1':
                raise RuntimeError('unexpected')
            return await detect(memory, embedding)

        service.relationship_detector.detect = flaky_detect
        result = await service.process_batch([make_memory('m0', 'first'), make_memory('m1', 'second')])

        assert [item.memory_id for item in result.processed] == ['m0']
        assert [(failure.memory_id, failure.code) for failure in result.failures] == [('m1', 'PROCESSING_FAILED')]
        assert 'unexpected' in result.failures[0].error

    @pytest.mark.asyncio
    async def test_windows_bound_concurrency_and_keep_order(self, processing_config, vector_store):
        service = MemoryProcessingService(replace(processing_config, batch_window_size=2), vector_store)
        active = 0
        peak = 0

        async def fake_process(memory):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            # later items finish first within a window
            await asyncio.sleep(0.02 if memory.id in ('m0', 'm2', 'm4') else 0.001)
            active -= 1
            return MagicMock(memory_id=memory.id)

        service.process = fake_process
        result = await service.process_batch([make_memory(f'm{index}') for index in range(5)])

        assert peak == 2
        assert [item.memory_id for item in result.processed] == ['m0', 'm1', 'm2', 'm3', 'm4']
        assert result.failures == []


class TestPublish:

    @pytest.mark.asyncio
    async def test_publishes_processed_and_relationship_events(self, processing_config, vector_store, provider,
                                                               messaging_config):
        bus = MagicMock()
        bus.publish = AsyncMock()
        service = MemoryProcessingService(processing_config,
                                          vector_store,
                                          embedding_provider=provider,
                                          message_bus=bus,
                                          messaging_config=messaging_config)
        await service.process(make_memory('m1', 'one', embedding=[1.0, 0.0, 0.0, 0.0]))
        processed = await service.process(make_memory('m2', 'two', embedding=[1.0, 0.0, 0.0, 0.0]))

        await service.publish(processed)

        subjects = [call.args[0] for call in bus.publish.await_args_list]
        assert subjects == ['memories.processed', 'memories.relationships']
        relationship_event = bus.publish.await_args_list[1].args[1]
        assert relationship_event['source_memory_id'] == 'm2'
        assert len(relationship_event['relationships']) == len(processed.relationships)

    @pytest.mark.asyncio
    async def test_publish_failures_are_swallowed(self, service):
        bus = MagicMock()
        bus.publish = AsyncMock(side_effect=MessagingError('bus down'))
        service.message_bus = bus
        processed = await service.process(make_memory('m1', embedding=[1.0, 0.0, 0.0, 0.0]))

        await service.publish(processed)

        bus.publish.assert_awaited_once()


class TestStatsAndConfig:

    @pytest.mark.asyncio
    async def test_reset_stats(self, service):
        await service.process(make_memory('m1'))
        assert service.get_stats().memories_processed == 1

        service.reset_stats()

        assert service.get_stats() == ProcessingStats()

    def test_injected_stats_are_used(self, processing_config, vector_store):
        initial = ProcessingStats(memories_processed=7, average_processing_time_ms=12.0)
        service = MemoryProcessingService(processing_config, vector_store, stats=initial)
        assert service.get_stats().memories_processed == 7

    def test_get_stats_returns_a_copy(self, service):
        stats = service.get_stats()
        stats.relationships_by_type['semantic_similarity'] = 99
        assert service.get_stats().relationships_by_type['semantic_similarity'] == 0

    def test_update_config_rebuilds_collaborators(self, service):
        service.update_config(semantic_similarity_threshold=0.9, max_keywords=3)

        assert service.config.semantic_similarity_threshold == 0.9
        assert service.relationship_detector.config.semantic_similarity_threshold == 0.9
        assert service.content_analyzer.config.max_keywords == 3

    def test_update_config_rejects_unknown_field(self, service):
        with pytest.raises(ConfigurationError):
            service.update_config(no_such_setting=1)
