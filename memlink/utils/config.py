"""
Configuration management for embedding, vector search, graph storage and processing settings.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()

# Hard ceiling on concurrently in-flight embedding sub-batches
MAX_CONCURRENT_BATCHES_CEILING = 10


@dataclass
class EmbeddingConfig:
    """Configuration for the embedding provider and its model server."""
    provider: str
    region: str
    model_id: str
    ollama_base_url: str
    ollama_model: str
    dimension: int
    batch_size: int
    max_concurrent_batches: int
    retry_attempts: int
    retry_delay: float
    request_timeout: float
    memory_budget_mb: float
    cache_max_entries: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    use_aws_auth: bool


@dataclass
class NeptuneConfig:
    """Configuration for Amazon Neptune graph database."""
    endpoint: str
    port: int
    region: str


@dataclass
class ProcessingConfig:
    """Configuration for relationship detection and memory processing."""
    semantic_similarity_threshold: float = 0.75
    topic_overlap_threshold: float = 0.8
    tag_similarity_threshold: float = 0.3
    temporal_proximity_window_seconds: float = 24 * 60 * 60
    candidate_score_threshold: float = 0.3
    max_keywords: int = 10
    enable_sentiment_analysis: bool = True
    enable_entity_extraction: bool = True
    max_relationships_per_memory: int = 20
    max_similar_memories_to_check: int = 50
    batch_window_size: int = 5
    index_processed_memories: bool = True


@dataclass
class MessagingConfig:
    """Configuration for request/reply and event subjects."""
    embeddings_subject: str = 'embeddings.request'
    embeddings_batch_subject: str = 'embeddings.batch'
    embeddings_stats_subject: str = 'embeddings.stats'
    processed_subject: str = 'memories.processed'
    relationships_subject: str = 'memories.relationships'
    embedding_request_timeout: float = 30.0


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    embedding: EmbeddingConfig
    opensearch: OpenSearchConfig
    neptune: NeptuneConfig
    processing: ProcessingConfig
    messaging: MessagingConfig
    mcp: MCPConfig


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ('1', 'true', 'yes', 'on')


def clamp_concurrency(requested: int) -> int:
    """Clamp a requested sub-batch concurrency to [1, MAX_CONCURRENT_BATCHES_CEILING].

    Args:
        requested: Configured number of concurrent sub-batches

    Returns:
        Effective number of concurrent sub-batches
    """
    return max(1, min(requested, MAX_CONCURRENT_BATCHES_CEILING))


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Embedding configuration
    embedding_config = EmbeddingConfig(provider=os.getenv('EMBEDDING_PROVIDER', 'bedrock'),
                                       region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                       model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                       ollama_base_url=os.getenv('OLLAMA_BASE_URL', 'http://localhost:11434'),
                                       ollama_model=os.getenv('OLLAMA_MODEL', 'nomic-embed-text:latest'),
                                       dimension=int(os.getenv('EMBEDDING_DIMENSION', '1024')),
                                       batch_size=int(os.getenv('EMBEDDING_BATCH_SIZE', '32')),
                                       max_concurrent_batches=int(os.getenv('EMBEDDING_MAX_CONCURRENT_BATCHES', '3')),
                                       retry_attempts=int(os.getenv('EMBEDDING_RETRY_ATTEMPTS', '3')),
                                       retry_delay=float(os.getenv('EMBEDDING_RETRY_DELAY', '1.0')),
                                       request_timeout=float(os.getenv('EMBEDDING_REQUEST_TIMEOUT', '30')),
                                       memory_budget_mb=float(os.getenv('EMBEDDING_MEMORY_BUDGET_MB', '512')),
                                       cache_max_entries=int(os.getenv('EMBEDDING_CACHE_MAX_ENTRIES', '1000')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'memory_embeddings'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         use_aws_auth=_env_bool('OPENSEARCH_USE_AWS_AUTH', 'true'))

    # Neptune configuration
    neptune_config = NeptuneConfig(endpoint=os.getenv('NEPTUNE_ENDPOINT', ''),
                                   port=int(os.getenv('NEPTUNE_PORT', '8182')),
                                   region=os.getenv('NEPTUNE_AWS_REGION', 'us-east-1'))

    # Relationship detection and processing configuration
    processing_config = ProcessingConfig(
        semantic_similarity_threshold=float(os.getenv('MEMORY_PROCESSING_SEMANTIC_THRESHOLD', '0.75')),
        topic_overlap_threshold=float(os.getenv('MEMORY_PROCESSING_TOPIC_THRESHOLD', '0.8')),
        tag_similarity_threshold=float(os.getenv('MEMORY_PROCESSING_TAG_THRESHOLD', '0.3')),
        temporal_proximity_window_seconds=float(os.getenv('MEMORY_PROCESSING_TEMPORAL_WINDOW_SECONDS', '86400')),
        max_keywords=int(os.getenv('MEMORY_PROCESSING_MAX_KEYWORDS', '10')),
        enable_sentiment_analysis=_env_bool('MEMORY_PROCESSING_ENABLE_SENTIMENT', 'true'),
        enable_entity_extraction=_env_bool('MEMORY_PROCESSING_ENABLE_ENTITIES', 'true'),
        max_relationships_per_memory=int(os.getenv('MEMORY_PROCESSING_MAX_RELATIONSHIPS', '20')),
        max_similar_memories_to_check=int(os.getenv('MEMORY_PROCESSING_MAX_SIMILAR', '50')),
        batch_window_size=int(os.getenv('MEMORY_PROCESSING_BATCH_WINDOW', '5')),
        index_processed_memories=_env_bool('MEMORY_PROCESSING_INDEX_MEMORIES', 'true'))

    # Messaging configuration
    messaging_config = MessagingConfig(
        embeddings_subject=os.getenv('MESSAGING_EMBEDDINGS_SUBJECT', 'embeddings.request'),
        embeddings_batch_subject=os.getenv('MESSAGING_EMBEDDINGS_BATCH_SUBJECT', 'embeddings.batch'),
        embeddings_stats_subject=os.getenv('MESSAGING_EMBEDDINGS_STATS_SUBJECT', 'embeddings.stats'),
        processed_subject=os.getenv('MESSAGING_PROCESSED_SUBJECT', 'memories.processed'),
        relationships_subject=os.getenv('MESSAGING_RELATIONSHIPS_SUBJECT', 'memories.relationships'),
        embedding_request_timeout=float(os.getenv('MESSAGING_EMBEDDING_REQUEST_TIMEOUT', '30')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     embedding=embedding_config,
                     opensearch=opensearch_config,
                     neptune=neptune_config,
                     processing=processing_config,
                     messaging=messaging_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
