"""
Embedding Provider: batching, bounded concurrency, retry, caching and memory-budget tracking
in front of an embedding model server.
"""

import asyncio
import hashlib
from collections import OrderedDict
from typing import Dict, List, Optional, Sequence

from ..utils.config import EmbeddingConfig, clamp_concurrency
from ..utils.embedding_client import (DimensionMismatchError, EmbeddingError, EmbeddingModelClient, EmbeddingTimeoutError,
                                      MalformedResponseError, ModelServerError, validate_vector)
from ..utils.logging_config import get_logger
from ..utils.retry import retry_async

logger = get_logger(__name__)

# Estimated in-memory size of one vector component
BYTES_PER_FLOAT = 8

# Utilization above which a budget warning is logged
BUDGET_WARNING_RATIO = 0.9


class EmbeddingProvider:
    """Turns text into fixed-length vectors through an EmbeddingModelClient.

    The dimension of the first successful response becomes canonical for the lifetime of the
    instance; any later response of a different length raises DimensionMismatchError.
    """

    def __init__(self, client: EmbeddingModelClient, config: EmbeddingConfig):
        """
        Initialize the embedding provider.

        Args:
            client: Blocking model server client, called from worker threads
            config: EmbeddingConfig with batching, retry, timeout, cache and budget settings
        """
        self.client = client
        self.config = config
        self.batch_size = max(1, config.batch_size)
        self.max_concurrent_batches = clamp_concurrency(config.max_concurrent_batches)
        if config.max_concurrent_batches > self.max_concurrent_batches:
            logger.warning(f'max_concurrent_batches={config.max_concurrent_batches} exceeds ceiling, '
                           f'using {self.max_concurrent_batches}')
        self._semaphore = asyncio.Semaphore(self.max_concurrent_batches)

        self._dimension: Optional[int] = None
        self._cache: 'OrderedDict[str, List[float]]' = OrderedDict()
        self._cache_sizes: Dict[str, int] = {}
        self._cache_hits = 0
        self._cache_misses = 0

        self._cached_bytes = 0
        self._in_flight_bytes = 0
        self._budget_warned = False

        self.in_flight_batches = 0
        self.peak_in_flight_batches = 0

        logger.info(f'Initialized EmbeddingProvider for model {client.model_id} '
                    f'(batch_size={self.batch_size}, max_concurrent_batches={self.max_concurrent_batches})')

    @property
    def model_id(self) -> str:
        return self.client.model_id

    @property
    def dimension(self) -> int:
        """Canonical dimension once established, otherwise the configured dimension."""
        return self._dimension if self._dimension is not None else self.config.dimension

    @property
    def dimension_established(self) -> bool:
        return self._dimension is not None

    def zero_vector(self) -> List[float]:
        """Sentinel vector for text with no semantic content."""
        return [0.0] * self.dimension

    async def embed(self, text: str) -> List[float]:
        """
        Embed a single text, consulting the in-process cache first.

        Args:
            text: Text to embed

        Returns:
            Embedding vector; the zero vector for empty or whitespace-only text

        Raises:
            EmbeddingError: If the model server call fails or returns an invalid vector
        """
        if not text or not text.strip():
            return self.zero_vector()

        key = self._cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self._cache_hits += 1
            return list(cached)

        self._cache_misses += 1
        vector = (await self._dispatch([text]))[0]
        self._cache_put(key, text, vector)
        return list(vector)

    async def embed_batch(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed many texts, preserving input order.

        Non-blank texts are chunked into sub-batches of ``batch_size`` and dispatched concurrently,
        at most ``max_concurrent_batches`` at a time. Blank texts get zero vectors without a network
        call. If any sub-batch fails after retries the whole call fails.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text, positionally aligned with the input

        Raises:
            EmbeddingError: If any sub-batch fails
        """
        if not texts:
            return []

        results: List[Optional[List[float]]] = [None] * len(texts)
        pending = [index for index, text in enumerate(texts) if text and text.strip()]
        chunks = [pending[start:start + self.batch_size] for start in range(0, len(pending), self.batch_size)]

        async def run_chunk(indices: List[int]) -> None:
            vectors = await self._dispatch([texts[index] for index in indices])
            for index, vector in zip(indices, vectors):
                results[index] = vector
                self._cache_put(self._cache_key(texts[index]), texts[index], vector)

        await asyncio.gather(*(run_chunk(chunk) for chunk in chunks))

        logger.debug(f'Embedded batch of {len(texts)} texts in {len(chunks)} sub-batches')
        return [list(vector) if vector is not None else self.zero_vector() for vector in results]

    async def health_check(self) -> bool:
        """
        Check that the model server is reachable.

        Returns:
            True if healthy, False otherwise
        """
        try:
            return bool(await asyncio.to_thread(self.client.health_check))
        except Exception as e:
            logger.error(f'Embedding provider health check failed: {e}')
            return False

    def memory_usage(self) -> Dict[str, float]:
        """Estimated cached and in-flight memory against the configured budget. Informative only."""
        budget_bytes = self.config.memory_budget_mb * 1024 * 1024
        total = self._cached_bytes + self._in_flight_bytes
        return {
            'cached_bytes': self._cached_bytes,
            'in_flight_bytes': self._in_flight_bytes,
            'total_bytes': total,
            'budget_bytes': budget_bytes,
            'utilization': total / budget_bytes if budget_bytes > 0 else 0.0
        }

    def cache_stats(self) -> Dict[str, int]:
        return {
            'size': len(self._cache),
            'max_size': self.config.cache_max_entries,
            'hits': self._cache_hits,
            'misses': self._cache_misses
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        self._cache_sizes.clear()
        self._cached_bytes = 0
        self._check_budget()

    async def _dispatch(self, texts: List[str]) -> List[List[float]]:
        """Run one sub-batch through the concurrency pool."""
        estimate = self._estimate_bytes(texts)
        async with self._semaphore:
            self.in_flight_batches += 1
            self.peak_in_flight_batches = max(self.peak_in_flight_batches, self.in_flight_batches)
            self._in_flight_bytes += estimate
            self._check_budget()
            try:
                return await self._call_model(texts)
            finally:
                self.in_flight_batches -= 1
                self._in_flight_bytes -= estimate

    async def _call_model(self, texts: List[str]) -> List[List[float]]:
        """Call the model server with timeout and bounded retry, then validate the reply."""
        timeout = self.config.request_timeout

        async def attempt() -> List[List[float]]:
            try:
                return await asyncio.wait_for(asyncio.to_thread(self.client.embed_texts, texts), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise EmbeddingTimeoutError(f'Embedding call for {len(texts)} texts timed out after {timeout}s', cause=e)
            except EmbeddingError:
                raise
            except Exception as e:
                raise EmbeddingError(f'Unexpected error generating embeddings: {e}', code='UNKNOWN_ERROR', cause=e)

        vectors = await retry_async(attempt,
                                    attempts=self.config.retry_attempts,
                                    delay=self.config.retry_delay,
                                    retry_on=(ModelServerError, EmbeddingTimeoutError),
                                    description=f'Embedding call for {len(texts)} texts')

        if not isinstance(vectors, list) or len(vectors) != len(texts):
            raise MalformedResponseError(
                f'Expected {len(texts)} embeddings, got {len(vectors) if isinstance(vectors, list) else type(vectors).__name__}')

        validated = [validate_vector(vector) for vector in vectors]
        for vector in validated:
            self._check_dimension(vector)
        return validated

    def _check_dimension(self, vector: List[float]) -> None:
        if self._dimension is None:
            self._dimension = len(vector)
            if self._dimension != self.config.dimension:
                logger.info(f'Embedding dimension established at {self._dimension} (configured {self.config.dimension})')
            return
        if len(vector) != self._dimension:
            raise DimensionMismatchError(self._dimension, len(vector))

    @staticmethod
    def _cache_key(text: str) -> str:
        return hashlib.sha256(text.encode('utf-8')).hexdigest()

    def _cache_put(self, key: str, text: str, vector: List[float]) -> None:
        if self.config.cache_max_entries <= 0:
            return
        if key in self._cache:
            self._cached_bytes -= self._cache_sizes.pop(key)
            del self._cache[key]

        self._cache[key] = vector
        size = len(text.encode('utf-8')) + len(vector) * BYTES_PER_FLOAT
        self._cache_sizes[key] = size
        self._cached_bytes += size

        while len(self._cache) > self.config.cache_max_entries:
            oldest, _ = self._cache.popitem(last=False)
            self._cached_bytes -= self._cache_sizes.pop(oldest)
        self._check_budget()

    def _estimate_bytes(self, texts: Sequence[str]) -> int:
        return sum(len(text.encode('utf-8')) for text in texts) + len(texts) * self.dimension * BYTES_PER_FLOAT

    def _check_budget(self) -> None:
        utilization = self.memory_usage()['utilization']
        if utilization > BUDGET_WARNING_RATIO and not self._budget_warned:
            logger.warning(f'Embedding memory usage at {utilization:.0%} of {self.config.memory_budget_mb}MB budget')
            self._budget_warned = True
        elif utilization <= BUDGET_WARNING_RATIO:
            self._budget_warned = False
