"""Test configuration and fixtures."""

import hashlib
import threading
import time
from datetime import datetime, timezone
from typing import List, Optional, Sequence

import pytest

from memlink.models.core import Memory
from memlink.utils.config import EmbeddingConfig, MessagingConfig, OpenSearchConfig, ProcessingConfig
from memlink.utils.embedding_client import EmbeddingModelClient

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def vector_for(text: str, dimension: int = 4) -> List[float]:
    """Deterministic, non-zero vector for a text."""
    digest = hashlib.sha256(text.encode('utf-8')).digest()
    return [round(byte / 255.0 + 0.01, 6) for byte in digest[:dimension]]


class FakeEmbeddingClient(EmbeddingModelClient):
    """Blocking model client that records calls and tracks how many run at once."""

    def __init__(self, dimension: int = 4, delay: float = 0.0, errors: Optional[Sequence[Optional[Exception]]] = None):
        self.model_id = 'fake-embed'
        self.dimension = dimension
        self.delay = delay
        self.errors = list(errors or [])
        self.calls: List[List[str]] = []
        self.active = 0
        self.peak_active = 0
        self.healthy = True
        self._lock = threading.Lock()

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        with self._lock:
            self.calls.append(list(texts))
            self.active += 1
            self.peak_active = max(self.peak_active, self.active)
            error = self.errors.pop(0) if self.errors else None
        try:
            if self.delay:
                time.sleep(self.delay)
            if error is not None:
                raise error
            return [vector_for(text, self.dimension) for text in texts]
        finally:
            with self._lock:
                self.active -= 1

    def health_check(self) -> bool:
        return self.healthy


def make_memory(memory_id: str, content: str = 'Some memory content', **overrides) -> Memory:
    fields = {'user_id': 'user-1', 'created_at': BASE_TIME}
    fields.update(overrides)
    return Memory(id=memory_id, content=content, **fields)


@pytest.fixture
def embedding_config() -> EmbeddingConfig:
    return EmbeddingConfig(provider='bedrock',
                           region='us-east-1',
                           model_id='amazon.titan-embed-text-v2:0',
                           ollama_base_url='http://ollama:11434',
                           ollama_model='nomic-embed-text:latest',
                           dimension=4,
                           batch_size=2,
                           max_concurrent_batches=2,
                           retry_attempts=3,
                           retry_delay=0.0,
                           request_timeout=1.0,
                           memory_budget_mb=1.0,
                           cache_max_entries=100)


@pytest.fixture
def processing_config() -> ProcessingConfig:
    return ProcessingConfig()


@pytest.fixture
def messaging_config() -> MessagingConfig:
    return MessagingConfig()


@pytest.fixture
def opensearch_config() -> OpenSearchConfig:
    return OpenSearchConfig(endpoint='localhost',
                            port=9200,
                            region='us-east-1',
                            index_name='test-memories',
                            dimension=4,
                            use_aws_auth=False)


@pytest.fixture
def fake_client() -> FakeEmbeddingClient:
    return FakeEmbeddingClient()
