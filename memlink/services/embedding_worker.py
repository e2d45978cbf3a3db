"""
Embedding worker serving embedding requests over the message bus.
"""

import time
from typing import Any, Dict, Optional

from ..utils.config import MessagingConfig
from ..utils.logging_config import get_logger
from ..utils.messaging import SubscribableMessageBus
from .embedding_provider import EmbeddingProvider

logger = get_logger(__name__)


class EmbeddingWorker:
    """Answers single, batch and stats requests with an EmbeddingProvider.

    Handler failures are sent back as ``{request_id, error, processing_time_ms}`` replies and
    never raised to the bus.
    """

    def __init__(self, provider: EmbeddingProvider, bus: SubscribableMessageBus, messaging_config: MessagingConfig):
        self.provider = provider
        self.bus = bus
        self.messaging_config = messaging_config

        self.started_at: Optional[float] = None
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.total_processing_time_ms = 0.0

    def start(self) -> None:
        """Subscribe the request, batch and stats handlers."""
        self.started_at = time.monotonic()
        self.bus.subscribe(self.messaging_config.embeddings_subject, self.handle_request)
        self.bus.subscribe(self.messaging_config.embeddings_batch_subject, self.handle_batch)
        self.bus.subscribe(self.messaging_config.embeddings_stats_subject, self.handle_stats)
        logger.info(f'Embedding worker listening on {self.messaging_config.embeddings_subject}, '
                    f'{self.messaging_config.embeddings_batch_subject} and {self.messaging_config.embeddings_stats_subject}')

    def stop(self) -> None:
        self.bus.unsubscribe(self.messaging_config.embeddings_subject)
        self.bus.unsubscribe(self.messaging_config.embeddings_batch_subject)
        self.bus.unsubscribe(self.messaging_config.embeddings_stats_subject)
        logger.info('Embedding worker stopped')

    async def handle_request(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Embed ``message['text']`` and reply with the vector."""
        started = time.perf_counter()
        request_id = message.get('request_id')
        self.total_requests += 1

        try:
            text = message.get('text')
            if not isinstance(text, str):
                raise ValueError('Request text must be a string')
            embedding = await self.provider.embed(text)
        except Exception as e:
            return self._failure(request_id, e, started)

        elapsed_ms = self._success(started)
        return {
            'request_id': request_id,
            'embedding': embedding,
            'dimension': len(embedding),
            'processing_time_ms': elapsed_ms
        }

    async def handle_batch(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Embed ``message['texts']`` and reply with vectors in request order."""
        started = time.perf_counter()
        request_id = message.get('request_id')
        self.total_requests += 1

        try:
            texts = message.get('texts')
            if not isinstance(texts, list) or not all(isinstance(text, str) for text in texts):
                raise ValueError('Batch texts must be a list of strings')
            embeddings = await self.provider.embed_batch(texts)
        except Exception as e:
            return self._failure(request_id, e, started)

        elapsed_ms = self._success(started)
        return {
            'request_id': request_id,
            'embeddings': embeddings,
            'dimension': self.provider.dimension,
            'processing_time_ms': elapsed_ms,
            'batch_size': len(texts)
        }

    async def handle_stats(self, message: Dict[str, Any]) -> Dict[str, Any]:
        return self.get_stats()

    def get_stats(self) -> Dict[str, Any]:
        completed = self.successful_requests + self.failed_requests
        return {
            'total_requests': self.total_requests,
            'successful_requests': self.successful_requests,
            'failed_requests': self.failed_requests,
            'average_processing_time_ms': self.total_processing_time_ms / completed if completed else 0.0,
            'uptime_seconds': time.monotonic() - self.started_at if self.started_at is not None else 0.0,
            'model_id': self.provider.model_id,
            'dimension': self.provider.dimension,
            'cache': self.provider.cache_stats(),
            'memory_usage': self.provider.memory_usage()
        }

    def _success(self, started: float) -> float:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.successful_requests += 1
        self.total_processing_time_ms += elapsed_ms
        return elapsed_ms

    def _failure(self, request_id: Optional[str], error: Exception, started: float) -> Dict[str, Any]:
        elapsed_ms = (time.perf_counter() - started) * 1000
        self.failed_requests += 1
        self.total_processing_time_ms += elapsed_ms
        logger.error(f'Embedding request {request_id} failed: {error}')
        return {'request_id': request_id, 'error': str(error), 'processing_time_ms': elapsed_ms}
