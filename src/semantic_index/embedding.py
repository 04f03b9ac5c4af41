"""Embedding provider abstraction for model-agnostic vector generation.

The engine treats embedding as a black box: ``embed(text, model_name)``
returns a vector and its dimensionality. Callers check the dimensionality
against the index they target. The OpenAI implementation batches requests,
retries transient failures with exponential backoff, and also works against
OpenAI-compatible servers via ``base_url``.
"""

import asyncio
from dataclasses import dataclass
from typing import Protocol

import httpx
from loguru import logger
from openai import APIConnectionError, AsyncOpenAI, OpenAIError, RateLimitError
from pydantic import BaseModel, Field

from semantic_index.errors import ConfigurationError, EmbeddingProviderError

OPENAI_PREFIX = "openai/"


class EmbeddingConfig(BaseModel):
    """Configuration for embedding generation.

    Attributes:
        model: Default model for new documents (e.g., "openai/text-embedding-3-small")
        dimensions: Dimensionality of the default model's vectors
        batch_size: Number of texts to embed per API call
        max_retries: Maximum attempts for transient failures
        timeout_seconds: API request timeout
        api_key: API key for external services (set via env var)
        base_url: Override for OpenAI-compatible endpoints
    """

    model: str = "openai/text-embedding-3-small"
    dimensions: int = Field(default=1536, ge=128, le=4096)
    batch_size: int = Field(default=100, ge=1, le=500)
    max_retries: int = Field(default=3, ge=1, le=10)
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    api_key: str | None = None
    base_url: str | None = None


@dataclass(frozen=True)
class Embedding:
    """A single embedding vector."""

    vector: list[float]
    dimensions: int


class EmbeddingProvider(Protocol):
    """Protocol for embedding provider implementations."""

    async def embed(self, text: str, model_name: str) -> Embedding:
        """Embed one text with the named model.

        Raises:
            EmbeddingProviderError: If the provider fails
        """
        ...

    async def embed_batch(self, texts: list[str], model_name: str) -> list[Embedding]:
        """Embed texts with the named model, preserving input order.

        Raises:
            EmbeddingProviderError: If the provider fails
        """
        ...


class OpenAIEmbedding:
    """OpenAI embedding provider with retry logic and batching."""

    def __init__(self, config: EmbeddingConfig, client: AsyncOpenAI | None = None):
        """Initialize the provider.

        Args:
            config: Embedding configuration with API key
            client: Pre-built client (created lazily from config otherwise)
        """
        self.config = config
        self._client = client

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            try:
                # Retries are handled here so backoff is consistent across errors.
                self._client = AsyncOpenAI(
                    api_key=self.config.api_key,
                    base_url=self.config.base_url,
                    timeout=self.config.timeout_seconds,
                    max_retries=0,
                )
            except OpenAIError as exc:
                raise EmbeddingProviderError(f"Cannot create OpenAI client: {exc}") from exc
        return self._client

    async def embed(self, text: str, model_name: str) -> Embedding:
        embeddings = await self.embed_batch([text], model_name)
        return embeddings[0]

    async def embed_batch(self, texts: list[str], model_name: str) -> list[Embedding]:
        """Generate embeddings, splitting into API calls of ``batch_size`` texts.

        Args:
            texts: Input texts
            model_name: Model identifier, with or without the "openai/" prefix

        Returns:
            Embeddings in input order

        Raises:
            EmbeddingProviderError: For API failures after all retries or
                malformed responses
        """
        if not texts:
            return []

        model = model_name.removeprefix(OPENAI_PREFIX)
        results: list[Embedding] = []
        for start in range(0, len(texts), self.config.batch_size):
            batch = texts[start : start + self.config.batch_size]
            vectors = await self._create_with_retries(batch, model)
            results.extend(Embedding(vector=vector, dimensions=len(vector)) for vector in vectors)
        return results

    async def _create_with_retries(self, texts: list[str], model: str) -> list[list[float]]:
        for attempt in range(self.config.max_retries):
            try:
                response = await self.client.embeddings.create(model=model, input=texts)
                vectors = [
                    item.embedding for item in sorted(response.data, key=lambda item: item.index)
                ]
                self._validate(vectors, len(texts), model)

                logger.debug(
                    f"Embedded {len(texts)} texts with {model} "
                    f"(attempt {attempt + 1}/{self.config.max_retries})"
                )
                return vectors

            except (APIConnectionError, httpx.TimeoutException) as e:
                logger.warning(
                    f"Connection error embedding batch "
                    f"(attempt {attempt + 1}/{self.config.max_retries}): {e}"
                )
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(2**attempt)  # Exponential backoff
                else:
                    raise EmbeddingProviderError(
                        f"Embedding with {model} failed after {self.config.max_retries} attempts"
                    ) from e

            except RateLimitError as e:
                logger.warning(
                    f"Rate limited (attempt {attempt + 1}/{self.config.max_retries}): {e}"
                )
                if attempt < self.config.max_retries - 1:
                    await asyncio.sleep(2 ** (attempt + 1))  # Longer backoff
                else:
                    raise EmbeddingProviderError(
                        f"Embedding with {model} still rate limited after "
                        f"{self.config.max_retries} attempts"
                    ) from e

            except OpenAIError as e:
                # Non-retryable API error
                logger.error(f"API error embedding batch with {model}: {e}")
                raise EmbeddingProviderError(f"Embedding with {model} failed: {e}") from e

        raise EmbeddingProviderError("Exhausted all retry attempts")

    @staticmethod
    def _validate(vectors: list[list[float]], expected: int, model: str) -> None:
        if len(vectors) != expected:
            raise EmbeddingProviderError(
                f"{model} returned {len(vectors)} embeddings for {expected} inputs"
            )
        lengths = {len(vector) for vector in vectors}
        if 0 in lengths or len(lengths) > 1:
            raise EmbeddingProviderError(
                f"{model} returned inconsistent embedding lengths {sorted(lengths)}"
            )


def create_embedding_provider(config: EmbeddingConfig) -> EmbeddingProvider:
    """Factory function to create an embedding provider based on model config.

    Args:
        config: Embedding configuration

    Returns:
        Embedding provider implementation

    Raises:
        ConfigurationError: If the model prefix is not supported

    Example:
        >>> config = EmbeddingConfig(model="openai/text-embedding-3-small", api_key="sk-...")
        >>> provider = create_embedding_provider(config)
    """
    if config.model.startswith(OPENAI_PREFIX):
        return OpenAIEmbedding(config)
    raise ConfigurationError(
        f"Unknown model prefix in {config.model!r}. Expected {OPENAI_PREFIX!r}"
    )
