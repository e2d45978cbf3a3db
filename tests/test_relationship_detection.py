"""Tests for relationship detection."""

import math
from dataclasses import replace
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from memlink.models.core import RelationshipType, SearchHit, TagMetadata, TopicMetadata
from memlink.services.relationship_detection import (RelationshipDetectionError, RelationshipDetector, jaccard_similarity,
                                                     temporal_strength)
from memlink.utils.timestamp_utils import to_epoch_seconds
from memlink.utils.vector_store import VectorStoreError

from .conftest import BASE_TIME, make_memory

EMBEDDING = [0.1, 0.2, 0.3, 0.4]
# Far enough in the past to produce no temporal edge
DISTANT = to_epoch_seconds(BASE_TIME - timedelta(days=10))


def hit(memory_id, score, **payload):
    payload.setdefault('created_at', DISTANT)
    return SearchHit(id=memory_id, score=score, payload=payload)


def detector_with(processing_config, hits):
    store = MagicMock()
    store.search = AsyncMock(return_value=hits)
    return RelationshipDetector(processing_config, store), store


class TestJaccard:

    def test_partial_overlap(self):
        assert jaccard_similarity({'a', 'b', 'c'}, {'b', 'c', 'd'}) == pytest.approx(0.5)

    def test_disjoint(self):
        assert jaccard_similarity({'a'}, {'b'}) == 0.0

    def test_both_empty(self):
        assert jaccard_similarity(set(), set()) == 0.0


class TestTemporalStrength:

    def test_decays_with_one_third_window_time_constant(self):
        assert temporal_strength(8 * 3600, 24 * 3600) == pytest.approx(math.exp(-1), abs=1e-3)

    def test_outside_window_is_zero(self):
        assert temporal_strength(25 * 3600, 24 * 3600) == 0.0


class TestDetect:

    @pytest.mark.asyncio
    async def test_searches_scoped_candidate_pool(self, processing_config):
        detector, store = detector_with(processing_config, [])
        memory = make_memory('m1', project_name='alpha')

        await detector.detect(memory, EMBEDDING)

        store.search.assert_awaited_once_with(EMBEDDING,
                                              filter={
                                                  'user_id': 'user-1',
                                                  'project_name': 'alpha'
                                              },
                                              limit=51,
                                              score_threshold=0.3)

    @pytest.mark.asyncio
    async def test_own_hit_does_not_shrink_candidate_pool(self, processing_config):
        config = replace(processing_config, max_similar_memories_to_check=3)
        hits = [hit('m1', 1.0), hit('m2', 0.5), hit('m3', 0.5), hit('m4', 0.5)]
        detector, _ = detector_with(config, hits)

        candidates = await detector.find_candidates(make_memory('m1'), EMBEDDING)

        assert [candidate.id for candidate in candidates] == ['m2', 'm3', 'm4']

    @pytest.mark.asyncio
    async def test_candidate_pool_is_trimmed_to_limit(self, processing_config):
        config = replace(processing_config, max_similar_memories_to_check=2)
        detector, _ = detector_with(config, [hit('m2', 0.5), hit('m3', 0.5), hit('m4', 0.5)])

        candidates = await detector.find_candidates(make_memory('m1'), EMBEDDING)

        assert [candidate.id for candidate in candidates] == ['m2', 'm3']

    @pytest.mark.asyncio
    async def test_semantic_edges_respect_threshold(self, processing_config):
        detector, _ = detector_with(processing_config, [hit('m2', 0.9), hit('m3', 0.5)])

        relationships = await detector.detect(make_memory('m1'), EMBEDDING)

        assert len(relationships) == 1
        assert relationships[0].target_memory_id == 'm2'
        assert relationships[0].relationship_type == RelationshipType.SEMANTIC_SIMILARITY
        assert relationships[0].strength == pytest.approx(0.9)
        assert relationships[0].metadata.similarity_score == pytest.approx(0.9)

    @pytest.mark.asyncio
    async def test_memory_is_never_related_to_itself(self, processing_config):
        now = to_epoch_seconds(BASE_TIME)
        detector, _ = detector_with(processing_config, [hit('m1', 1.0, created_at=now, tags=['x'], topic='work')])
        memory = make_memory('m1', tags={'x'}, topic='work')

        assert await detector.detect(memory, EMBEDDING) == []

    @pytest.mark.asyncio
    async def test_topic_overlap_is_binary(self, processing_config):
        detector, _ = detector_with(processing_config, [hit('m2', 0.4, topic='work'), hit('m3', 0.4, topic='home')])

        relationships = await detector.detect(make_memory('m1', topic='work'), EMBEDDING)

        assert [r.target_memory_id for r in relationships] == ['m2']
        assert relationships[0].relationship_type == RelationshipType.TOPIC_OVERLAP
        assert relationships[0].strength == pytest.approx(0.8)
        assert relationships[0].metadata == TopicMetadata(shared_topic='work')

    @pytest.mark.asyncio
    async def test_tag_similarity_uses_jaccard(self, processing_config):
        hits = [hit('m2', 0.4, tags=['b', 'c', 'd']), hit('m3', 0.4, tags=['x']), hit('m4', 0.4)]
        detector, _ = detector_with(processing_config, hits)

        relationships = await detector.detect(make_memory('m1', tags={'a', 'b', 'c'}), EMBEDDING)

        assert len(relationships) == 1
        relationship = relationships[0]
        assert relationship.target_memory_id == 'm2'
        assert relationship.relationship_type == RelationshipType.TAG_SIMILARITY
        assert relationship.strength == pytest.approx(0.5)
        assert isinstance(relationship.metadata, TagMetadata)
        assert relationship.metadata.shared_tags == ['b', 'c']
        assert relationship.metadata.total_shared == 2

    @pytest.mark.asyncio
    async def test_untagged_memory_gets_no_tag_edges(self, processing_config):
        detector, _ = detector_with(processing_config, [hit('m2', 0.4, tags=['a'])])
        assert await detector.detect(make_memory('m1'), EMBEDDING) == []

    @pytest.mark.asyncio
    async def test_temporal_proximity_within_window(self, processing_config):
        eight_hours_earlier = to_epoch_seconds(BASE_TIME - timedelta(hours=8))
        twenty_five_hours_earlier = to_epoch_seconds(BASE_TIME - timedelta(hours=25))
        hits = [hit('m2', 0.4, created_at=eight_hours_earlier), hit('m3', 0.4, created_at=twenty_five_hours_earlier)]
        detector, _ = detector_with(processing_config, hits)

        relationships = await detector.detect(make_memory('m1'), EMBEDDING)

        assert len(relationships) == 1
        assert relationships[0].target_memory_id == 'm2'
        assert relationships[0].relationship_type == RelationshipType.TEMPORAL_PROXIMITY
        assert relationships[0].strength == pytest.approx(0.368, abs=1e-3)
        assert relationships[0].metadata.time_diff_hours == 8.0

    @pytest.mark.asyncio
    async def test_no_temporal_edge_at_or_beyond_window(self, processing_config):
        window = processing_config.temporal_proximity_window_seconds
        at_window = to_epoch_seconds(BASE_TIME - timedelta(seconds=window))
        past_window = to_epoch_seconds(BASE_TIME - timedelta(seconds=window + 1))
        later_at_window = to_epoch_seconds(BASE_TIME + timedelta(seconds=window))
        hits = [
            hit('m2', 0.4, created_at=at_window),
            hit('m3', 0.4, created_at=past_window),
            hit('m4', 0.4, created_at=later_at_window),
        ]
        detector, _ = detector_with(processing_config, hits)

        assert await detector.detect(make_memory('m1'), EMBEDDING) == []

    @pytest.mark.asyncio
    async def test_results_capped_and_sorted_by_strength(self, processing_config):
        hits = [hit(f'm{index}', 0.76 + index * 0.02) for index in range(2, 12)]
        detector, _ = detector_with(replace(processing_config, max_relationships_per_memory=3), hits)

        relationships = await detector.detect(make_memory('m1'), EMBEDDING)

        assert [r.target_memory_id for r in relationships] == ['m11', 'm10', 'm9']
        strengths = [r.strength for r in relationships]
        assert strengths == sorted(strengths, reverse=True)

    @pytest.mark.asyncio
    async def test_equal_strengths_keep_detection_order(self, processing_config):
        detector, _ = detector_with(processing_config, [hit('m2', 0.8, topic='work')])

        relationships = await detector.detect(make_memory('m1', topic='work'), EMBEDDING)

        assert [r.relationship_type for r in relationships] == [
            RelationshipType.SEMANTIC_SIMILARITY, RelationshipType.TOPIC_OVERLAP
        ]

    @pytest.mark.asyncio
    async def test_failing_signal_yields_no_edges_of_that_type(self, processing_config):
        detector, _ = detector_with(processing_config, [hit('m2', 0.9, tags=['a'])])

        def broken(memory, candidates):
            raise RuntimeError('tag index corrupt')

        detector.detect_tag_similarity = broken
        relationships = await detector.detect(make_memory('m1', tags={'a'}), EMBEDDING)

        assert [r.relationship_type for r in relationships] == [RelationshipType.SEMANTIC_SIMILARITY]

    @pytest.mark.asyncio
    async def test_search_failure_raises_detection_error(self, processing_config):
        store = MagicMock()
        store.search = AsyncMock(side_effect=VectorStoreError('cluster unavailable'))
        detector = RelationshipDetector(processing_config, store)

        with pytest.raises(RelationshipDetectionError) as exc_info:
            await detector.detect(make_memory('m1'), EMBEDDING)
        assert exc_info.value.memory_id == 'm1'
        assert isinstance(exc_info.value.cause, VectorStoreError)
