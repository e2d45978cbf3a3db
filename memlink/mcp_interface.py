"""
MCP Interface Layer using fastmcp for agent orchestration.
"""
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .models.core import Memory
from .services.embedding_provider import EmbeddingProvider
from .services.embedding_worker import EmbeddingWorker
from .services.memory_processing import ConfigurationError, MemoryProcessingError, MemoryProcessingService
from .utils.bedrock_embed import BedrockEmbedClient
from .utils.config import AppConfig, config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger
from .utils.messaging import InProcessMessageBus
from .utils.neptune_client import NeptuneRelationshipStore
from .utils.ollama_embed import OllamaEmbedClient
from .utils.opensearch_client import OpenSearchVectorStore

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Memory Relationships')

_service: Optional[MemoryProcessingService] = None


def build_memory_processing_service(app_config: AppConfig) -> MemoryProcessingService:
    """Wire the embedding provider, stores and message bus into a processing service.

    Args:
        app_config: Application configuration

    Returns:
        Ready MemoryProcessingService

    Raises:
        ConfigurationError: If the embedding provider name is unknown
    """
    provider_name = app_config.embedding.provider.lower()
    if provider_name == 'bedrock':
        client = BedrockEmbedClient(app_config.embedding)
    elif provider_name == 'ollama':
        client = OllamaEmbedClient(app_config.embedding)
    else:
        raise ConfigurationError(f'Unknown embedding provider: {app_config.embedding.provider}')

    provider = EmbeddingProvider(client, app_config.embedding)
    bus = InProcessMessageBus()
    EmbeddingWorker(provider, bus, app_config.messaging).start()

    relationship_store = None
    if app_config.neptune.endpoint:
        relationship_store = NeptuneRelationshipStore(app_config.neptune)

    service = MemoryProcessingService(app_config.processing,
                                      OpenSearchVectorStore(app_config.opensearch),
                                      relationship_store=relationship_store,
                                      embedding_provider=provider,
                                      message_bus=bus,
                                      messaging_config=app_config.messaging)
    logger.info(f'Initialized memory processing service with {provider_name} embeddings')
    return service


def get_service() -> MemoryProcessingService:
    global _service
    if _service is None:
        _service = build_memory_processing_service(config)
    return _service


async def process_memory(memory: Dict[str, Any]) -> Dict[str, Any]:
    """Analyze a memory and detect its relationships.

    Args:
        memory: Memory event with memory_id, user_id, content and optional project_name, tags,
            memory_topic, memory_type, embedding and created_at

    Returns:
        Processed memory with analysis and relationships

    Raises:
        ToolError: If processing fails
    """
    try:
        service = get_service()
        processed = await service.process(Memory.from_dict(memory))
        await service.publish(processed)
        return processed.to_dict()

    except (KeyError, ValueError) as e:
        logger.error(f'Invalid memory in MCP process_memory: {e}')
        raise ToolError(f'Invalid memory: {e}')
    except (MemoryProcessingError, ConfigurationError) as e:
        logger.error(f'Memory processing error in MCP process_memory: {e}')
        raise ToolError(f'Memory processing failed: {e}')


async def process_memories(memories: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Process a batch of memories; failures are reported per item.

    Args:
        memories: List of memory events

    Returns:
        Dict with ``processed`` results in input order and ``failures``
    """
    try:
        parsed = [Memory.from_dict(memory) for memory in memories]
    except (KeyError, ValueError) as e:
        raise ToolError(f'Invalid memory in batch: {e}')

    service = get_service()
    result = await service.process_batch(parsed)

    for processed in result.processed:
        await service.publish(processed)

    logger.debug(f'MCP batch processed {len(result.processed)} memories with {len(result.failures)} failures')
    return result.to_dict()


async def get_processing_stats() -> Dict[str, Any]:
    """Return running processing statistics."""
    return get_service().get_stats().to_dict()


async def reset_processing_stats() -> Dict[str, Any]:
    get_service().reset_stats()
    return {'reset': True}


async def health() -> Dict[str, Any]:
    """Report health of the embedding model server and the stores."""
    service = get_service()
    status = await get_health_status(service.embedding_provider, service.vector_store, service.relationship_store)
    return {'healthy': all(component.get('healthy', False) for component in status.values()), 'components': status}


for tool in (process_memory, process_memories, get_processing_stats, reset_processing_stats, health):
    mcp.tool()(tool)

if __name__ == '__main__':
    transport = config.mcp.transport
    host = config.mcp.host
    port = config.mcp.port
    mcp.run(transport=transport, host=host, port=port)
