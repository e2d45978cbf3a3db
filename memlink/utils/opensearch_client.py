"""
OpenSearch k-NN implementation of the vector similarity store.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from opensearchpy import OpenSearch, RequestsHttpConnection, helpers
from opensearchpy.exceptions import NotFoundError, OpenSearchException
from requests_aws4auth import AWS4Auth

from ..models.core import SearchHit
from .config import OpenSearchConfig
from .logging_config import get_logger
from .vector_store import VectorDimensionError, VectorRecord, VectorStore, VectorStoreError

logger = get_logger(__name__)


def lucene_score_to_cosine(score: float) -> float:
    """Map a Lucene ``cosinesimil`` score, ``(1 + cos) / 2``, back to cosine similarity."""
    return 2.0 * score - 1.0


def cosine_to_lucene_score(cosine: float) -> float:
    return (1.0 + cosine) / 2.0


class OpenSearchVectorStore(VectorStore):
    """OpenSearch vector store with AWS authentication and error handling.

    Every document carries its scoping metadata (``user_id``, ``project_name``) next to the
    ``embedding`` field; searches apply those as term filters inside the k-NN clause.
    """

    def __init__(self, config: OpenSearchConfig, client: Optional[OpenSearch] = None):
        """
        Initialize OpenSearch vector store.

        Args:
            config: OpenSearchConfig instance with connection parameters
            client: Pre-built OpenSearch client (tests inject a stub)
        """
        self.config = config
        self.index_name = config.index_name
        self.dimension = config.dimension
        self.client = client or self._build_client(config)
        self._index_ready = False

        logger.info(f'Initialized OpenSearch vector store for endpoint: {config.endpoint}, index: {self.index_name}')

    @staticmethod
    def _build_client(config: OpenSearchConfig) -> OpenSearch:
        auth = None
        if config.use_aws_auth:
            credentials = boto3.Session().get_credentials()
            auth = AWS4Auth(region=config.region, service='aoss', refreshable_credentials=credentials)

        endpoint = config.endpoint
        if '://' in endpoint:
            # Remove protocol if present
            endpoint = endpoint.split('://', 1)[1]

        return OpenSearch(hosts=[{
            'host': endpoint,
            'port': config.port
        }],
                          http_auth=auth,
                          use_ssl=config.use_aws_auth,
                          verify_certs=config.use_aws_auth,
                          connection_class=RequestsHttpConnection)

    def index_body(self) -> Dict[str, Any]:
        return {
            'mappings': {
                'properties': {
                    'id': {
                        'type': 'keyword'
                    },
                    'user_id': {
                        'type': 'keyword'
                    },
                    'project_name': {
                        'type': 'keyword'
                    },
                    'content': {
                        'type': 'text'
                    },
                    'content_hash': {
                        'type': 'keyword'
                    },
                    'tags': {
                        'type': 'keyword'
                    },
                    'topic': {
                        'type': 'keyword'
                    },
                    'memory_type': {
                        'type': 'keyword'
                    },
                    'created_at': {
                        'type': 'double'
                    },
                    'embedding': {
                        'type': 'knn_vector',
                        'dimension': self.dimension,
                        'method': {
                            'name': 'hnsw',
                            'space_type': 'cosinesimil',
                            'engine': 'lucene'
                        }
                    }
                }
            },
            'settings': {
                'index': {
                    'knn': True
                }
            }
        }

    def _ensure_index(self) -> None:
        if self._index_ready:
            return
        try:
            if not self.client.indices.exists(index=self.index_name):
                self.client.indices.create(index=self.index_name, body=self.index_body())
                logger.info(f'Created index {self.index_name} (dimension {self.dimension})')
            self._index_ready = True
        except OpenSearchException as e:
            logger.error(f'Error creating index {self.index_name}: {e}')
            raise VectorStoreError(f'Failed to create index: {e}')

    def _check_dimension(self, vector: Sequence[float]) -> List[float]:
        if len(vector) != self.dimension:
            raise VectorDimensionError(self.dimension, len(vector))
        return [float(value) for value in vector]

    def _document(self, record_id: str, vector: Sequence[float], payload: Dict[str, Any]) -> Dict[str, Any]:
        document = {key: value for key, value in payload.items() if key != 'embedding'}
        document['id'] = record_id
        document['embedding'] = self._check_dimension(vector)
        return document

    def _upsert_sync(self, record_id: str, vector: Sequence[float], payload: Dict[str, Any]) -> None:
        document = self._document(record_id, vector, payload)
        self._ensure_index()
        try:
            # index() with an explicit id replaces the whole document
            response = self.client.index(index=self.index_name, id=record_id, body=document)
        except OpenSearchException as e:
            logger.error(f'Error indexing document {record_id}: {e}')
            raise VectorStoreError(f'Failed to index document {record_id}: {e}')

        if response.get('result') not in ('created', 'updated'):
            logger.warning(f'Unexpected result indexing document {record_id}: {response}')

    def _upsert_batch_sync(self, records: Sequence[VectorRecord]) -> None:
        actions = [{
            '_op_type': 'index',
            '_index': self.index_name,
            '_id': record_id,
            '_source': self._document(record_id, vector, payload)
        } for record_id, vector, payload in records]
        if not actions:
            return
        self._ensure_index()
        try:
            success, errors = helpers.bulk(self.client, actions, raise_on_error=False)
        except OpenSearchException as e:
            logger.error(f'Error bulk indexing {len(actions)} documents: {e}')
            raise VectorStoreError(f'Bulk index failed: {e}')
        if errors:
            raise VectorStoreError(f'Bulk index failed for {len(errors)} of {len(actions)} documents')
        logger.debug(f'Bulk indexed {success} documents in {self.index_name}')

    def search_body(self,
                    vector: Sequence[float],
                    filter: Optional[Dict[str, Any]],
                    limit: int,
                    score_threshold: float) -> Dict[str, Any]:
        knn: Dict[str, Any] = {'vector': self._check_dimension(vector), 'k': limit}
        if filter:
            knn['filter'] = {'bool': {'filter': [{'term': {key: value}} for key, value in filter.items()]}}

        return {
            'size': limit,
            'min_score': cosine_to_lucene_score(score_threshold),
            'query': {
                'knn': {
                    'embedding': knn
                }
            },
            '_source': {
                'excludes': ['embedding']  # Don't return embedding in results
            }
        }

    def _search_sync(self, vector: Sequence[float], filter: Optional[Dict[str, Any]], limit: int,
                     score_threshold: float) -> List[SearchHit]:
        body = self.search_body(vector, filter, limit, score_threshold)
        try:
            response = self.client.search(index=self.index_name, body=body)
        except NotFoundError:
            return []
        except OpenSearchException as e:
            logger.error(f'Error performing vector search: {e}')
            raise VectorStoreError(f'Vector search failed: {e}')

        hits = []
        for hit in response['hits']['hits']:
            score = lucene_score_to_cosine(hit['_score'])
            if score >= score_threshold:
                hits.append(SearchHit(id=hit['_id'], score=score, payload=hit['_source']))

        logger.debug(f'Vector search returned {len(hits)} results for filter {filter}')
        return hits[:limit]

    def _get_sync(self, record_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        try:
            response = self.client.get(index=self.index_name, id=record_id)
        except NotFoundError:
            return None
        except OpenSearchException as e:
            logger.error(f'Error getting document {record_id}: {e}')
            raise VectorStoreError(f'Failed to get document: {e}')

        if not response.get('found'):
            return None
        source = dict(response['_source'])
        vector = source.pop('embedding', None) or []
        return [float(value) for value in vector], source

    def _delete_sync(self, record_id: str) -> bool:
        try:
            response = self.client.delete(index=self.index_name, id=record_id)
        except NotFoundError:
            logger.warning(f'Document {record_id} not found for deletion')
            return False
        except OpenSearchException as e:
            logger.error(f'Error deleting document {record_id}: {e}')
            raise VectorStoreError(f'Failed to delete document: {e}')
        return response.get('result') == 'deleted'

    async def upsert(self, record_id: str, vector: Sequence[float], payload: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._upsert_sync, record_id, vector, payload)

    async def upsert_batch(self, records: Sequence[VectorRecord]) -> None:
        await asyncio.to_thread(self._upsert_batch_sync, list(records))

    async def search(self,
                     vector: Sequence[float],
                     filter: Optional[Dict[str, Any]] = None,
                     limit: int = 10,
                     score_threshold: float = 0.0) -> List[SearchHit]:
        if limit <= 0:
            return []
        if not any(vector):
            # Lucene cosine rejects zero-norm queries; a zero vector has no neighbours
            return []
        return await asyncio.to_thread(self._search_sync, vector, filter, limit, score_threshold)

    async def get(self, record_id: str) -> Optional[Tuple[List[float], Dict[str, Any]]]:
        return await asyncio.to_thread(self._get_sync, record_id)

    async def delete(self, record_id: str) -> bool:
        return await asyncio.to_thread(self._delete_sync, record_id)

    async def health_check(self) -> bool:
        """
        Perform a health check on the OpenSearch service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return bool(await asyncio.to_thread(self.client.ping))
        except Exception as e:
            logger.error(f'OpenSearch health check failed: {e}')
            return False
