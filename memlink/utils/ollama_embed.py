"""
Ollama embedding model client over HTTP.
"""

from typing import List, Optional, Sequence

import requests

from .config import EmbeddingConfig
from .embedding_client import EmbeddingModelClient, MalformedResponseError, ModelServerError, validate_vector
from .logging_config import get_logger

logger = get_logger(__name__)


class OllamaEmbedClient(EmbeddingModelClient):
    """Client for an Ollama server's ``/api/embeddings`` endpoint."""

    def __init__(self, config: EmbeddingConfig, session: Optional[requests.Session] = None):
        self.config = config
        self.base_url = config.ollama_base_url.rstrip('/')
        self.model_id = config.ollama_model
        self.session = session or requests.Session()

        logger.info(f'Initialized Ollama Embed client at {self.base_url} with model: {self.model_id}')

    def _embed_one(self, text: str) -> List[float]:
        try:
            response = self.session.post(f'{self.base_url}/api/embeddings',
                                         json={
                                             'model': self.model_id,
                                             'prompt': text
                                         },
                                         timeout=self.config.request_timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            raise ModelServerError(f'Ollama request to {self.base_url} failed: {e}', cause=e)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(f'Invalid JSON from Ollama: {e}', cause=e)

        if not isinstance(data, dict) or 'embedding' not in data:
            raise MalformedResponseError('Invalid response format from Ollama API')
        return validate_vector(data['embedding'])

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        # Ollama's embeddings endpoint takes one prompt per call
        return [self._embed_one(text) for text in texts]

    def health_check(self) -> bool:
        """Return True if the server lists the configured model."""
        try:
            response = self.session.get(f'{self.base_url}/api/tags', timeout=5)
            if response.status_code != 200:
                return False
            models = response.json().get('models') or []
            base_name = self.model_id.split(':')[0]
            return any(model.get('name') == self.model_id or model.get('name', '').startswith(base_name) for model in models)
        except (requests.RequestException, ValueError) as e:
            logger.error(f'Ollama health check failed: {e}')
            return False
