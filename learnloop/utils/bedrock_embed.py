"""
Amazon Bedrock embedding client wrapper with retry logic and dimension checks.
"""

import json
import random
import time
from typing import List

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import BedrockEmbedConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockEmbedError(Exception):
    """Custom exception for Bedrock embedding errors."""
    pass


class EmbeddingDimensionError(BedrockEmbedError):
    """Raised when an embedding does not match the similarity index dimension."""
    pass


def validate_dimension(embedding: List[float], dimension: int) -> List[float]:
    """Reject embeddings whose length differs from the index dimension."""
    if len(embedding) != dimension:
        raise EmbeddingDimensionError(f'Expected {dimension}-dimensional embedding, got {len(embedding)} dimensions')
    return embedding


class BedrockEmbed:
    """Amazon Bedrock embedding client producing fixed-length vectors."""

    def __init__(self, config: BedrockEmbedConfig):
        """
        Initialize Bedrock embedding client.

        Args:
            config: BedrockEmbedConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id
        self.dimension = config.dimension

        if 'cohere' in self.model_id.lower() and self.dimension != 1024:
            raise BedrockEmbedError(f'Cohere models only support 1024 dimensions, got {self.dimension}')

        self.bedrock = boto3.client(service_name='bedrock-runtime', region_name=config.region)

        logger.info(f'Initialized Bedrock Embed client with model: {self.model_id}')

    def _call_with_retry(self, data: dict) -> dict:
        """
        Make a Bedrock API call with retry logic.

        Raises:
            BedrockEmbedError: If all retry attempts fail
        """
        body = json.dumps(data)

        for attempt in range(self.config.retry_attempts):
            try:
                logger.debug(f'Bedrock Embed request attempt {attempt + 1}/{self.config.retry_attempts}')
                response = self.bedrock.invoke_model(body=body,
                                                     modelId=self.model_id,
                                                     accept='application/json',
                                                     contentType='application/json')
                return json.loads(response.get('body').read())

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock Embed attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    time.sleep(delay)
                else:
                    raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock Embed: {e}')
                raise BedrockEmbedError(f'Unexpected Bedrock Embed error: {e}')

        raise BedrockEmbedError(f'Bedrock Embed failed after {self.config.retry_attempts} attempts')

    def _request_body(self, text: str, input_type: str) -> dict:
        if 'titan' in self.model_id.lower():
            return {'inputText': text, 'dimensions': self.dimension, 'normalize': True}
        if 'cohere' in self.model_id.lower():
            return {'input_type': input_type, 'texts': [text]}
        raise BedrockEmbedError(f'Unsupported embedding model: {self.model_id}')

    def embed(self, text: str, input_type: str = 'search_query') -> List[float]:
        """
        Embed text into a vector of the configured dimension.

        Questions are embedded both when a memory is written and when it is
        looked up, so the same input type is used on both sides by default.

        Args:
            text: Text to embed
            input_type: Cohere input type; ignored by Titan models

        Returns:
            Embedding vector

        Raises:
            BedrockEmbedError: If the text is empty or embedding generation fails
            EmbeddingDimensionError: If the model returns a vector of the wrong length
        """
        if not text or not text.strip():
            raise BedrockEmbedError('Cannot generate embedding for empty text')

        response = self._call_with_retry(self._request_body(text, input_type))

        if 'embedding' in response:
            embedding = response['embedding']
        else:
            embeddings = response.get('embeddings') or []
            embedding = embeddings[0] if embeddings else []

        return validate_dimension([float(value) for value in embedding], self.dimension)

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock embedding service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            return len(self.embed('test')) == self.dimension

        except Exception as e:
            logger.error(f'Bedrock Embed health check failed: {e}')
            return False
