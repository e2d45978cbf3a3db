"""
Amazon Neptune relationship store with Gremlin Python driver and AWS SigV4 authentication.
"""

import asyncio
import json
from functools import wraps
from typing import List, Sequence

from boto3 import Session
from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from gremlin_python.driver.aiohttp.transport import AiohttpTransport
from gremlin_python.driver.driver_remote_connection import DriverRemoteConnection
from gremlin_python.process.anonymous_traversal import traversal
from gremlin_python.process.graph_traversal import __

from ..models.core import Relationship, metadata_from_dict
from .config import NeptuneConfig
from .logging_config import get_logger
from .relationship_store import RelationshipStore, RelationshipStoreError
from .timestamp_utils import to_datetime, to_epoch_seconds

logger = get_logger(__name__)

MEMORY_LABEL = 'Memory'
EDGE_LABEL = 'RELATED_TO'


def reconnect_on_connection_error(func):
    """Decorator translating Gremlin failures and re-establishing a closed connection.

    The failed call is not re-run; the next call uses the fresh connection.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except RelationshipStoreError:
            raise
        except Exception as e:
            if 'cannot write to closing transport' in str(e).lower():
                logger.warning(f'Connection error detected: {e}. Reconnecting...')
                self.close()
                self._connect()
            logger.error(f'Error in {func.__name__}: {e}')
            raise RelationshipStoreError(f'Failed to {func.__name__}: {e}')

    return wrapper


class NeptuneRelationshipStore(RelationshipStore):
    """Stores relationships as ``RELATED_TO`` edges between ``Memory`` vertices in Neptune."""

    def __init__(self, config: NeptuneConfig):
        """
        Initialize Neptune client with Gremlin driver.

        Args:
            config: NeptuneConfig instance with connection parameters
        """
        self.config = config
        self.connection = None
        self.g = None
        self._lock = asyncio.Lock()
        self._connect()

        logger.info(f'Connected to Neptune at {config.endpoint}')

    def _connect(self):
        """Establish connection to Neptune."""
        conn_string = f'wss://{self.config.endpoint}:{self.config.port}/gremlin'

        credentials = Session().get_credentials()
        if credentials is None:
            raise RelationshipStoreError('No AWS credentials found')
        creds = credentials.get_frozen_credentials()

        region = self.config.region or Session().region_name or 'us-east-1'

        # Create signed request for WebSocket connection
        request = AWSRequest(method='GET', url=conn_string, data=None)
        SigV4Auth(creds, 'neptune-db', region).add_auth(request)

        self.connection = DriverRemoteConnection(conn_string,
                                                 'g',
                                                 headers=dict(request.headers.items()),
                                                 transport_factory=lambda: AiohttpTransport(call_from_event_loop=True))
        self.g = traversal().with_remote(self.connection)

    def close(self):
        """Close the Neptune connection."""
        if self.connection is not None:
            self.connection.close()

    def _memory_vertex(self, memory_id: str):
        return self.g.V().has(MEMORY_LABEL, 'id', memory_id)\
            .fold()\
            .coalesce(__.unfold(), __.add_v(MEMORY_LABEL).property('id', memory_id))

    @reconnect_on_connection_error
    def _store_sync(self, source_id: str, relationships: Sequence[Relationship]) -> int:
        # The new edge set replaces every outgoing edge of the source
        self.g.V().has(MEMORY_LABEL, 'id', source_id).out_e(EDGE_LABEL).drop().iterate()
        if relationships:
            self._memory_vertex(source_id).iterate()

        for relationship in relationships:
            target_id = relationship.target_memory_id
            self._memory_vertex(target_id).iterate()

            self.g.V().has(MEMORY_LABEL, 'id', source_id)\
                .add_e(EDGE_LABEL).to(__.V().has(MEMORY_LABEL, 'id', target_id))\
                .property('relationship_type', relationship.relationship_type.value)\
                .property('strength', relationship.strength)\
                .property('created_at', to_epoch_seconds(relationship.created_at))\
                .property('metadata', json.dumps(relationship.metadata.to_dict()))\
                .iterate()

        logger.debug(f'Stored {len(relationships)} relationship edges for memory {source_id}')
        return len(relationships)

    @reconnect_on_connection_error
    def _get_sync(self, memory_id: str) -> List[Relationship]:
        rows = self.g.V().has(MEMORY_LABEL, 'id', memory_id)\
            .out_e(EDGE_LABEL)\
            .project('target', 'relationship_type', 'strength', 'created_at', 'metadata')\
            .by(__.in_v().values('id'))\
            .by('relationship_type')\
            .by('strength')\
            .by('created_at')\
            .by('metadata')\
            .to_list()

        relationships = [
            Relationship(source_memory_id=memory_id,
                         target_memory_id=row['target'],
                         relationship_type=row['relationship_type'],
                         strength=float(row['strength']),
                         created_at=to_datetime(row['created_at']),
                         metadata=metadata_from_dict(row['relationship_type'], json.loads(row['metadata'] or '{}')))
            for row in rows
        ]
        return sorted(relationships, key=lambda relationship: relationship.strength, reverse=True)

    @reconnect_on_connection_error
    def _health_sync(self) -> bool:
        self.g.V().limit(1).count().next()
        return True

    async def store_relationships(self, source_memory_id: str, relationships: Sequence[Relationship]) -> None:
        if any(relationship.source_memory_id != source_memory_id for relationship in relationships):
            raise RelationshipStoreError(f'Relationships must all originate from memory {source_memory_id}')
        # One Gremlin connection; serialize traversals
        async with self._lock:
            await asyncio.to_thread(self._store_sync, source_memory_id, list(relationships))

    async def get_relationships(self, memory_id: str) -> List[Relationship]:
        async with self._lock:
            return await asyncio.to_thread(self._get_sync, memory_id)

    async def health_check(self) -> bool:
        """
        Perform a health check on the Neptune service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            async with self._lock:
                return await asyncio.to_thread(self._health_sync)
        except Exception as e:
            logger.error(f'Neptune health check failed: {e}')
            return False
