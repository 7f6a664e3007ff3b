# DocChat Embeddings Module
# Client for a remote, OpenAI-compatible embedding service

import logging
from typing import List, Optional, Sequence

import numpy as np
import openai
from openai import AsyncOpenAI

from ..config import Settings, get_settings
from ..errors import DimensionMismatchError, EmbeddingError

logger = logging.getLogger(__name__)

EMPTY_VECTOR = np.zeros(0, dtype=np.float32)


def to_vector(values) -> np.ndarray:
    """Convert a service response embedding to a float32 vector."""
    if values is None:
        return EMPTY_VECTOR
    return np.asarray(values, dtype=np.float32)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate cosine similarity between two vectors"""
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise DimensionMismatchError(a.size, b.size)

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


class EmbeddingClient:
    """Embeds text through a remote embedding service.

    Model, batch size, retries and timeout are fixed per instance; the
    underlying SDK client is created lazily on first use.
    """

    def __init__(self,
                 settings: Optional[Settings] = None,
                 model: Optional[str] = None,
                 batch_size: Optional[int] = None,
                 max_retries: Optional[int] = None,
                 timeout: Optional[float] = None,
                 client: Optional[AsyncOpenAI] = None):
        """
        Initialize embedding client

        Args:
            settings: Configuration source (API key, base URL and defaults)
            model: Embedding model identifier
            batch_size: Texts per request in embed_many
            max_retries: Retries per request, handled by the SDK
            timeout: Request timeout in seconds
            client: Pre-built SDK client, mainly for tests
        """
        self.settings = settings or get_settings()
        self.model = model or self.settings.embedding_model
        self.batch_size = batch_size or self.settings.embedding_batch_size
        self.max_retries = self.settings.embedding_max_retries if max_retries is None else max_retries
        self.timeout = timeout or self.settings.embedding_timeout
        self._client = client
        self.dimension: Optional[int] = None

    @property
    def is_initialized(self) -> bool:
        return self._client is not None

    async def initialize(self) -> None:
        """Create the SDK client if it does not exist yet."""
        if self._client is not None:
            return

        logger.info(f"Initializing embedding client for model: {self.model}")
        try:
            self._client = AsyncOpenAI(
                api_key=self.settings.require_api_key(),
                base_url=self.settings.api_base_url,
                max_retries=self.max_retries,
                timeout=self.timeout
            )
        except openai.OpenAIError as e:
            logger.error(f"Embedding client initialization failed: {e}")
            raise EmbeddingError(f"Failed to initialize embedder: {e}") from e

    def _record_dimension(self, vectors: List[np.ndarray]) -> None:
        if self.dimension is None:
            for vector in vectors:
                if vector.size:
                    self.dimension = int(vector.size)
                    logger.info(f"Embedding dimension: {self.dimension}")
                    break

    async def embed_one(self, text: str) -> np.ndarray:
        """Generate embedding for a single text"""
        await self.initialize()

        text = text.strip()
        if not text:
            raise EmbeddingError("Failed to embed text: input is empty")

        try:
            response = await self._client.embeddings.create(model=self.model, input=text)
        except openai.OpenAIError as e:
            logger.error(f"Single embedding failed: {e}")
            raise EmbeddingError(f"Failed to embed text: {e}") from e

        if not response.data:
            raise EmbeddingError("Failed to embed text: empty response")

        vector = to_vector(response.data[0].embedding)
        self._record_dimension([vector])
        return vector

    async def embed_many(self, texts: Sequence[str]) -> List[np.ndarray]:
        """Embed texts batch by batch, one request at a time.

        The result is positional: entry ``i`` belongs to ``texts[i]``. An
        entry the service left out comes back as an empty vector. Any failed
        request aborts the whole call.
        """
        await self.initialize()

        vectors: List[np.ndarray] = []
        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size

        for batch_number, start in enumerate(range(0, len(texts), self.batch_size), 1):
            batch = list(texts[start:start + self.batch_size])
            logger.debug(f"Embedding batch {batch_number}/{total_batches} ({len(batch)} texts)")

            try:
                response = await self._client.embeddings.create(model=self.model, input=batch)
            except openai.OpenAIError as e:
                logger.error(f"Batch embedding failed: {e}")
                raise EmbeddingError(f"Batch embedding failed: {e}") from e

            by_index = {item.index: item.embedding for item in response.data}
            batch_vectors = [to_vector(by_index.get(i)) for i in range(len(batch))]
            self._record_dimension(batch_vectors)
            vectors.extend(batch_vectors)

        return vectors

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
        self._client = None
