"""
Health check utilities for the application.
"""

from typing import Any, Dict, Optional

from .logging_config import get_logger
from .relationship_store import RelationshipStore
from .vector_store import VectorStore

logger = get_logger(__name__)


async def check_health(provider, vector_store: VectorStore, relationship_store: Optional[RelationshipStore] = None) -> bool:
    """Check the health of all system components.

    Returns:
        True if all components are healthy, False otherwise
    """
    try:
        health_status = await get_health_status(provider, vector_store, relationship_store)

        # Check if all components are healthy
        all_healthy = all(status.get('healthy', False) for status in health_status.values())

        if all_healthy:
            logger.info('All system components are healthy')
        else:
            logger.warning('Some system components are unhealthy')

        return all_healthy

    except Exception as e:
        logger.error(f'Health check failed: {e}')
        return False


async def get_health_status(provider,
                            vector_store: VectorStore,
                            relationship_store: Optional[RelationshipStore] = None) -> Dict[str, Any]:
    """Get detailed health status of all components.

    Args:
        provider: EmbeddingProvider, or None when embeddings come over the message bus
        vector_store: Vector similarity store
        relationship_store: Optional relationship store

    Returns:
        Dictionary with health status of each component
    """
    health_status = {}

    if provider is not None:
        try:
            health_status['embedding_provider'] = {
                'healthy': await provider.health_check(),
                'service': 'Embedding model server',
                'model': provider.model_id,
                'memory_usage': provider.memory_usage()
            }
        except Exception as e:
            health_status['embedding_provider'] = {'healthy': False, 'service': 'Embedding model server', 'error': str(e)}

    try:
        health_status['vector_store'] = {
            'healthy': await vector_store.health_check(),
            'service': type(vector_store).__name__
        }
    except Exception as e:
        health_status['vector_store'] = {'healthy': False, 'service': type(vector_store).__name__, 'error': str(e)}

    if relationship_store is not None:
        try:
            health_status['relationship_store'] = {
                'healthy': await relationship_store.health_check(),
                'service': type(relationship_store).__name__
            }
        except Exception as e:
            health_status['relationship_store'] = {
                'healthy': False,
                'service': type(relationship_store).__name__,
                'error': str(e)
            }

    return health_status
