"""
Amazon Bedrock embedding model client.
"""

import json
from typing import Any, Dict, List, Optional, Sequence

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .config import EmbeddingConfig
from .embedding_client import EmbeddingModelClient, MalformedResponseError, ModelServerError, validate_vector
from .logging_config import get_logger

logger = get_logger(__name__)

# Cohere accepts at most this many texts per invoke_model call
COHERE_MAX_TEXTS = 96


class BedrockEmbedClient(EmbeddingModelClient):
    """Bedrock runtime client for Titan and Cohere embedding models.

    Retries are owned by the EmbeddingProvider, so botocore's own retry loop is disabled.
    """

    def __init__(self, config: EmbeddingConfig, bedrock_client: Optional[Any] = None):
        """
        Initialize Bedrock embedding client.

        Args:
            config: EmbeddingConfig instance with model and region settings
            bedrock_client: Pre-built bedrock-runtime client (tests inject a stub)
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        self.bedrock = bedrock_client or boto3.client(
            service_name='bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(connect_timeout=10, read_timeout=config.request_timeout, retries={'max_attempts': 0}))

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    @property
    def _is_titan(self) -> bool:
        return 'titan' in self.model_id.lower()

    @property
    def _is_cohere(self) -> bool:
        return 'cohere' in self.model_id.lower()

    def _invoke(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make a single Bedrock invoke_model call.

        Args:
            data: Request body

        Returns:
            Decoded response body

        Raises:
            ModelServerError: On client or transport errors
            MalformedResponseError: If the body is not JSON
        """
        try:
            response = self.bedrock.invoke_model(body=json.dumps(data),
                                                 modelId=self.model_id,
                                                 accept='application/json',
                                                 contentType='application/json')
        except (ClientError, BotoCoreError) as e:
            raise ModelServerError(f'Bedrock invoke_model failed for {self.model_id}: {e}', cause=e)

        try:
            return json.loads(response.get('body').read())
        except (ValueError, AttributeError) as e:
            raise MalformedResponseError(f'Invalid response body from Bedrock: {e}', cause=e)

    def embed_texts(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate document embeddings for a list of texts.

        Args:
            texts: Texts to embed

        Returns:
            One vector per text, in input order

        Raises:
            ModelServerError: If a Bedrock call fails
            MalformedResponseError: If a reply carries no usable embedding
        """
        if not texts:
            return []

        if self._is_titan:
            vectors = []
            for text in texts:
                response = self._invoke({'inputText': text, 'dimensions': self.dimension})
                if 'embedding' not in response:
                    raise MalformedResponseError('Titan response has no embedding field')
                vectors.append(validate_vector(response['embedding']))
            return vectors

        if self._is_cohere:
            vectors = []
            for start in range(0, len(texts), COHERE_MAX_TEXTS):
                chunk = list(texts[start:start + COHERE_MAX_TEXTS])
                response = self._invoke({'input_type': 'search_document', 'texts': chunk})
                embeddings = response.get('embeddings')
                if not isinstance(embeddings, list) or len(embeddings) != len(chunk):
                    received = len(embeddings) if isinstance(embeddings, list) else 0
                    raise MalformedResponseError(f'Expected {len(chunk)} embeddings from Cohere, got {received}')
                vectors.extend(validate_vector(embedding) for embedding in embeddings)
            return vectors

        raise MalformedResponseError(f'Unsupported Bedrock embedding model: {self.model_id}')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed_texts(['health check'])[0]) > 0
        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
